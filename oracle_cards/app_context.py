# app_context.py
# Description: Per-session wiring of the local store, remote gateway, sync engine and scheduler.
#
# Imports
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
from oracle_cards.config import (
    load_settings, get_user_db_path, get_sync_state_path, SyncSettings, RemoteSettings,
)
from oracle_cards.Constants import TABLE_PROFILES
from oracle_cards.Logging_Config import configure_logging
from oracle_cards.DB.Oracle_DB import OracleCardsDB
from oracle_cards.Sync.scheduler import SyncScheduler
from oracle_cards.Sync.sync_engine import DeltaSyncEngine, SyncResult, SyncStatus
from oracle_cards.Sync.sync_state import SyncStateStore
from oracle_cards.remote_api.client import HTTPRemoteGateway
from oracle_cards.remote_api.gateway import RemoteGateway
#
#######################################################################################################################
#
# Functions:

@dataclass(frozen=True)
class UserSession:
    """What the authentication collaborator hands over on sign-in."""
    user_id: str
    access_token: Optional[str] = None
    email: Optional[str] = None


GatewayFactory = Callable[[UserSession], Optional[RemoteGateway]]


def http_gateway_factory(config: Dict[str, Any]) -> GatewayFactory:
    remote = RemoteSettings.from_config(config)

    def factory(session: UserSession) -> Optional[RemoteGateway]:
        if not remote.is_configured:
            logger.warning("Remote backend not configured; running local-only.")
            return None
        return HTTPRemoteGateway(remote.base_url, remote.anon_key, access_token=session.access_token,
                                 timeout=remote.timeout, use_delta_endpoint=remote.use_delta_endpoint)
    return factory


class OracleAppContext:
    """
    Owns everything that belongs to one signed-in user. Created empty at app
    start (pass `setup_logging=True` from the app's entry point to install the
    console and rotating file handlers); `start(session)` opens the user's own
    database file and starts background sync, `sign_out()` tears all of it down.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, gateway_factory: Optional[GatewayFactory] = None,
                 clock: Optional[Callable[[], datetime]] = None, setup_logging: bool = False):
        self.config = config if config is not None else load_settings()
        if setup_logging:
            configure_logging(self.config)
        self.gateway_factory = gateway_factory or http_gateway_factory(self.config)
        self._clock = clock
        self.session: Optional[UserSession] = None
        self._db: Optional[OracleCardsDB] = None
        self._gateway: Optional[RemoteGateway] = None
        self._engine: Optional[DeltaSyncEngine] = None
        self._scheduler: Optional[SyncScheduler] = None

    @property
    def is_signed_in(self) -> bool:
        return self.session is not None

    @property
    def db(self) -> OracleCardsDB:
        if self._db is None:
            raise RuntimeError("No user is signed in.")
        return self._db

    @property
    def engine(self) -> Optional[DeltaSyncEngine]:
        return self._engine

    @property
    def scheduler(self) -> Optional[SyncScheduler]:
        return self._scheduler

    @property
    def db_path(self) -> Optional[Path]:
        return self._db.db_path if self._db else None

    async def start(self, session: UserSession, start_scheduler: bool = True):
        """Opens the session's store and, when a remote is available, starts background sync."""
        if self.session is not None:
            await self.sign_out()
        logger.info(f"Starting session for user '{session.user_id}'.")
        self._db = OracleCardsDB(get_user_db_path(session.user_id, self.config), session.user_id,
                                 clock=self._clock)
        self.session = session
        if session.email and self._db.get_record(TABLE_PROFILES, session.user_id, include_deleted=True) is None:
            self._db.save_profile({"email": session.email})

        self._gateway = self.gateway_factory(session)
        if self._gateway is None:
            return
        state_store = SyncStateStore(get_sync_state_path(session.user_id, self.config))
        self._engine = DeltaSyncEngine(self._db, self._gateway, state_store,
                                       SyncSettings.from_config(self.config), clock=self._clock)
        self._scheduler = SyncScheduler(self._engine)
        if start_scheduler:
            self._scheduler.start()

    async def sign_out(self):
        """Stops sync (aborting an in-flight cycle) and closes the user's store."""
        if self.session is None:
            return
        logger.info(f"Signing out user '{self.session.user_id}'.")
        try:
            if self._scheduler is not None:
                await self._scheduler.stop()
            if self._gateway is not None:
                await self._gateway.close()
        finally:
            if self._db is not None:
                self._db.close_connection()
            self._db = None
            self._gateway = None
            self._engine = None
            self._scheduler = None
            self.session = None

    async def sync_now(self) -> Optional[SyncResult]:
        if self._scheduler is None:
            return None
        return await self._scheduler.sync_now()

    def set_online(self, online: bool):
        if self._scheduler is not None:
            self._scheduler.set_online(online)

    @property
    def sync_status(self) -> Optional[SyncStatus]:
        return self._engine.status if self._engine else None

#
# End of app_context.py
#######################################################################################################################
