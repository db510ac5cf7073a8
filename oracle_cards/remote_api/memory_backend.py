# oracle_cards/remote_api/memory_backend.py
#
# Loopback remote store. Implements the same ownership and delta-endpoint rules
# as the hosted backend, so several local clients can sync against one shared
# instance (offline development, tests, multi-device simulation).
#
# Imports
import copy
import logging
import threading
from datetime import datetime
from typing import Optional, Dict, Any, List, Set, Callable
#
# Local Imports
from oracle_cards.Constants import (
    SYNC_TABLES, TABLE_CARDS, TABLE_DECKS, TABLE_PROFILES, OP_INSERT, OP_UPDATE, OP_DELETE,
)
from oracle_cards.DB.entities import ensure_utc, utc_now
from .exceptions import TransportError, RejectedError, AuthenticationError
from .gateway import RemoteGateway
from .schemas import DeltaRequest, DeltaResponse, PushOperation
#
########################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value).replace('Z', '+00:00')))


class InMemoryBackend:
    """
    Shared in-process remote store.

    Rows are kept in wire form (JSON-ready dicts). `updated_at` is taken from the
    client row, as the hosted backend does, and drives last-write-wins. Pulls with
    a `since` filter on the instant the backend received each write, so an edit
    uploaded late by a device that was offline still reaches the other devices.
    Deletes leave a tombstone row (`is_deleted = true`) so the deletion reaches
    other devices through pulls.

    Simulation knobs:
        fail_pull_tables: tables whose pull reports a "<table>_error".
        rejected_ids: record ids whose writes are refused.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {table: {} for table in SYNC_TABLES}
        self._received_at: Dict[str, Dict[str, datetime]] = {table: {} for table in SYNC_TABLES}
        self._lock = threading.Lock()
        self._clock = clock or utc_now
        self.fail_pull_tables: Set[str] = set()
        self.rejected_ids: Set[str] = set()
        self.request_count = 0

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    # --- Ownership ---
    def _owner_of(self, table: str, row: Dict[str, Any]) -> Optional[str]:
        if table == TABLE_PROFILES:
            return row.get('id')
        if table == TABLE_CARDS:
            deck = self._tables[TABLE_DECKS].get(row.get('deck_id'))
            return deck.get('user_id') if deck else None
        return row.get('user_id')

    def _check_table(self, table: str):
        if table not in self._tables:
            raise RejectedError(f"Table {table} not allowed for sync", status_code=400)

    def _check_write_allowed(self, table: str, row: Dict[str, Any], user_id: str):
        if row.get('id') in self.rejected_ids:
            raise RejectedError(f"Write to {table} {row.get('id')} refused by policy", status_code=403)
        owner = self._owner_of(table, row)
        if owner != user_id:
            raise RejectedError(
                f"new row violates row-level security policy for table \"{table}\"", status_code=403)
        existing = self._tables[table].get(row.get('id'))
        if existing is not None and self._owner_of(table, existing) != user_id:
            raise RejectedError(f"{table} {row.get('id')} belongs to another user", status_code=403)

    # --- Store operations ---
    def query(self, table: str, since: Optional[datetime], user_id: str) -> List[Dict[str, Any]]:
        """Owned rows received at or after `since`; all live rows when `since` is None."""
        self._check_table(table)
        since = ensure_utc(since)
        with self._lock:
            rows = []
            for row in self._tables[table].values():
                if self._owner_of(table, row) != user_id:
                    continue
                if since is None:
                    if row.get('is_deleted'):
                        continue
                elif self._received_at[table][row['id']] < since:
                    continue
                rows.append(copy.deepcopy(row))
        rows.sort(key=lambda r: _parse_ts(r.get('updated_at')))
        return rows

    def upsert(self, table: str, row: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        self._check_table(table)
        if not row.get('id'):
            raise RejectedError(f"{table} row without id", status_code=400)
        with self._lock:
            self._check_write_allowed(table, row, user_id)
            stored = copy.deepcopy(row)
            previous = self._tables[table].get(stored['id'])
            if previous is not None:
                stored = {**previous, **stored}
            stored.setdefault('is_deleted', False)
            self._tables[table][stored['id']] = stored
            self._received_at[table][stored['id']] = self.now()
            logger.debug(f"Backend stored {table} {stored['id']} for user {user_id}.")
            return copy.deepcopy(stored)

    def update(self, table: str, record_id: str, data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        self._check_table(table)
        with self._lock:
            if record_id not in self._tables[table]:
                raise RejectedError(f"{table} {record_id} not found", status_code=404)
        return self.upsert(table, {**data, 'id': record_id}, user_id)

    def delete(self, table: str, record_id: str, user_id: str, deleted_at: Optional[datetime] = None) -> None:
        """Tombstones an owned row. Deleting an unknown id is a no-op."""
        self._check_table(table)
        with self._lock:
            existing = self._tables[table].get(record_id)
            if existing is None:
                return
            self._check_write_allowed(table, existing, user_id)
            existing['is_deleted'] = True
            existing['updated_at'] = ensure_utc(deleted_at or self.now()).isoformat()
            self._received_at[table][record_id] = self.now()
            logger.debug(f"Backend tombstoned {table} {record_id}.")

    def get_row(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._tables[table].get(record_id)
            return copy.deepcopy(row) if row else None

    # --- Delta endpoint ---
    def handle_delta(self, body: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        """
        Mirrors the sync-delta function: push ops are applied first, each with its
        own result or error entry; then, if `pull_since` is set, owned rows of every
        table received at or after `pull_since` are returned. A failing table pull is
        reported as "<table>_error" instead of failing the whole request.
        """
        push_results = []
        for op in body.get('push_ops') or []:
            try:
                table, operation, record_id = op.get('table'), op.get('operation'), op.get('id')
                data = op.get('data') or {}
                self._check_table(table)
                if operation == OP_INSERT:
                    result = {"success": True, "data": self.upsert(table, {**data, 'id': record_id}, user_id)}
                elif operation == OP_UPDATE:
                    result = {"success": True, "data": self.update(table, record_id, data, user_id)}
                elif operation == OP_DELETE:
                    self.delete(table, record_id, user_id, _parse_ts(data.get('updated_at')))
                    result = {"success": True}
                else:
                    raise RejectedError(f"Unsupported operation: {operation}", status_code=400)
                push_results.append({"operation": op, "result": result})
            except RejectedError as e:
                push_results.append({"operation": op, "error": str(e)})

        pull_changes: Dict[str, Any] = {}
        pull_since = _parse_ts(body.get('pull_since'))
        if pull_since is not None:
            for table in SYNC_TABLES:
                if table in self.fail_pull_tables:
                    pull_changes[f"{table}_error"] = f"simulated failure reading {table}"
                    continue
                rows = self.query(table, pull_since, user_id)
                if rows:
                    pull_changes[table] = rows

        return {
            "push_results": push_results,
            "pull_changes": pull_changes,
            "timestamp": self.now().isoformat(),
        }


class InMemoryRemoteGateway(RemoteGateway):
    """
    Gateway bound to one user's session on an `InMemoryBackend`.

    `reachable = False` makes every call raise `TransportError`;
    `authenticated = False` makes every call raise `AuthenticationError`.
    """

    def __init__(self, backend: InMemoryBackend, user_id: str, delta_enabled: bool = True):
        self.backend = backend
        self.user_id = user_id
        self.delta_enabled = delta_enabled
        self.reachable = True
        self.authenticated = True

    @property
    def supports_delta(self) -> bool:
        return self.delta_enabled

    def _check_session(self):
        self.backend.request_count += 1
        if not self.reachable:
            raise TransportError("Remote backend unreachable (offline).")
        if not self.authenticated:
            raise AuthenticationError("JWT expired", status_code=401)

    async def fetch_updated_since(self, table: str, since: Optional[datetime], owner_id: str) -> List[Dict[str, Any]]:
        self._check_session()
        if owner_id != self.user_id:
            raise RejectedError("Cannot read rows of another user", status_code=403)
        if table in self.backend.fail_pull_tables:
            raise TransportError(f"simulated failure reading {table}")
        return self.backend.query(table, since, owner_id)

    async def upsert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        self._check_session()
        return self.backend.upsert(table, row, self.user_id)

    async def delete(self, table: str, record_id: str, deleted_at: Optional[datetime] = None) -> None:
        self._check_session()
        self.backend.delete(table, record_id, self.user_id, deleted_at)

    async def sync_delta(self, pull_since: Optional[datetime], push_ops: List[PushOperation]) -> DeltaResponse:
        if not self.delta_enabled:
            return await super().sync_delta(pull_since, push_ops)
        self._check_session()
        request = DeltaRequest(pull_since=pull_since, push_ops=push_ops)
        return DeltaResponse.from_payload(self.backend.handle_delta(request.to_payload(), self.user_id))

#
# End of oracle_cards/remote_api/memory_backend.py
########################################################################################################################
