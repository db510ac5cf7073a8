# scheduler.py
# Description: Decides when sync cycles run.
#
# Imports
import asyncio
from typing import Optional
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
from oracle_cards.config import SyncSettings
from oracle_cards.DB.Oracle_DB import RecordChange
from oracle_cards.Sync.sync_engine import DeltaSyncEngine, SyncResult
#
#######################################################################################################################
#
# Functions:

class SyncScheduler:
    """
    Background asyncio task driving a `DeltaSyncEngine`.

    A cycle is triggered by local mutations (debounced), by the periodic
    interval, and by connectivity coming back. Triggers that arrive while a cycle
    runs collapse into a single follow-up cycle. While offline, triggers are
    remembered and acted on once `set_online(True)` is called.
    """

    def __init__(self, engine: DeltaSyncEngine, settings: Optional[SyncSettings] = None):
        self.engine = engine
        self.settings = settings or engine.settings
        self.online = True
        self.cycles_run = 0
        self.last_result: Optional[SyncResult] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._trigger: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Starts the background task. Must be called from inside the running event loop."""
        if self.is_running:
            return
        self._loop = asyncio.get_running_loop()
        self._trigger = asyncio.Event()
        self.engine.db.add_change_listener(self._on_record_change)
        self._task = self._loop.create_task(self._run_loop(), name="oracle-cards-sync")
        logger.info(f"Sync scheduler started (interval={self.settings.interval_seconds}s, "
                    f"debounce={self.settings.debounce_seconds}s).")
        # Catch up on whatever happened while the app was closed.
        self.request_sync()

    async def stop(self):
        """Cancels the background task, aborting an in-flight cycle at its next await."""
        self.engine.db.remove_change_listener(self._on_record_change)
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Sync scheduler stopped.")

    def request_sync(self):
        """Asks for a cycle soon. Safe to call from any thread."""
        if self._loop is None or self._trigger is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._trigger.set)

    def set_online(self, online: bool):
        changed = online != self.online
        self.online = online
        if changed:
            logger.info(f"Connectivity changed: {'online' if online else 'offline'}.")
            if online:
                self.request_sync()

    async def sync_now(self) -> SyncResult:
        """Runs a cycle right away, outside the scheduler's timing."""
        return await self._run_once()

    def _on_record_change(self, change: RecordChange):
        logger.debug(f"Local change {change.operation} {change.table}/{change.record_id}; scheduling sync.")
        self.request_sync()

    async def _wait_for_trigger(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._trigger.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _debounce(self):
        """Waits until no new trigger arrived for `debounce_seconds`, bounded by the interval."""
        debounce = self.settings.debounce_seconds
        if debounce <= 0:
            return
        waited = 0.0
        while waited < self.settings.interval_seconds:
            self._trigger.clear()
            if not await self._wait_for_trigger(debounce):
                return
            waited += debounce

    async def _run_loop(self):
        while True:
            triggered = await self._wait_for_trigger(self.settings.interval_seconds)
            if triggered:
                await self._debounce()
            if not self.online:
                # Keep the trigger set so reconnecting syncs immediately.
                if triggered:
                    logger.debug("Offline; deferring sync until connectivity returns.")
                    await self._wait_until_online()
                continue
            self._trigger.clear()
            await self._run_once()

    async def _wait_until_online(self):
        while not self.online:
            self._trigger.clear()
            await self._trigger.wait()
        self._trigger.set()

    async def _run_once(self) -> SyncResult:
        try:
            result = await self.engine.run_cycle()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error in sync cycle: {e}")
            result = SyncResult(error=str(e))
        if not result.skipped:
            self.cycles_run += 1
        self.last_result = result
        return result

#
# End of scheduler.py
#######################################################################################################################
