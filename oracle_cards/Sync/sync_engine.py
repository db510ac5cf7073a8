# sync_engine.py
# Description: Pull-then-push delta synchronization between the local store and the remote gateway.
#
"""
sync_engine.py
--------------

`DeltaSyncEngine` runs sync cycles:

    IDLE -> PULLING -> APPLYING -> PUSHING -> IDLE
              |                       |
              +------> FAILED <-------+ (always settles back to IDLE)

1. Pull every record changed since the watermark (full pull the first time).
2. Apply them one record per transaction, resolving conflicts last-write-wins.
3. Advance the watermark, but only when the pull was complete and every record applied.
4. Push the pending dirty records, parents first, one outcome per record.

Cycles never overlap: a call made while a cycle runs returns a skipped result.
Failures never propagate to callers; they end up in the returned `SyncResult`
and in the engine's `SyncStatus`.
"""
# Imports
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
from oracle_cards.Constants import (
    SYNC_TABLES, TABLE_CARDS, TABLE_DECKS, FAILURE_TRANSPORT, FAILURE_REJECTED,
)
from oracle_cards.config import SyncSettings
from oracle_cards.DB.Oracle_DB import OracleCardsDB, OracleDBError, InputError, ApplyOutcome
from oracle_cards.DB.entities import SyncableRecord, ensure_utc, utc_now
from oracle_cards.Sync.change_tracker import ChangeTracker
from oracle_cards.Sync.sync_state import SyncStateStore
from oracle_cards.remote_api.exceptions import (
    TransportError, RejectedError, AuthenticationError, WireFormatError,
)
from oracle_cards.remote_api.gateway import RemoteGateway
from oracle_cards.remote_api.utils import record_to_wire, record_from_wire, build_push_op
#
#######################################################################################################################
#
# Functions:

FAILURE_APPLY = "apply"
REAUTH_MESSAGE = "Re-authentication required to sync your changes."
MAX_RECENT_CONFLICTS = 50


class SyncState(str, Enum):
    IDLE = "idle"
    PULLING = "pulling"
    APPLYING = "applying"
    PUSHING = "pushing"
    FAILED = "failed"


@dataclass(frozen=True)
class ConflictResolved:
    """A dirty local record met a remote change during apply; `winner` is 'remote' or 'local'."""
    table: str
    record_id: str
    winner: str
    local_updated_at: Optional[datetime]
    remote_updated_at: datetime
    resolved_at: datetime


@dataclass(frozen=True)
class RecordFailure:
    table: str
    record_id: Optional[str]
    kind: str
    error: str


@dataclass
class SyncResult:
    skipped: bool = False
    cancelled: bool = False
    pull_complete: bool = False
    pulled: int = 0
    applied: int = 0
    purged: int = 0
    pushed: int = 0
    conflicts: List[ConflictResolved] = field(default_factory=list)
    failures: List[RecordFailure] = field(default_factory=list)
    watermark: Optional[datetime] = None
    error: Optional[str] = None
    auth_required: bool = False

    @property
    def ok(self) -> bool:
        return not self.skipped and self.error is None and self.pull_complete and not self.failures


@dataclass
class SyncStatus:
    state: SyncState = SyncState.IDLE
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    user_visible_error: Optional[str] = None
    consecutive_failures: int = 0
    auth_required: bool = False
    recent_conflicts: List[ConflictResolved] = field(default_factory=list)
    given_up: List[str] = field(default_factory=list)
    dirty_counts: Dict[str, int] = field(default_factory=dict)


class _PullAborted(Exception):
    """Raised inside a cycle when the pull phase cannot continue at all."""


class DeltaSyncEngine:
    """
    Reconciles one user's local store with the remote store.

    Args:
        db: The user's local store. The engine is its only sync-side writer.
        gateway: Remote transport; its coroutines are the only suspension points.
        state_store: Persists the pull watermark.
        settings: Batch size, backoff and surfacing policy.
        clock: Optional callable returning the current UTC datetime.
    """

    def __init__(self, db: OracleCardsDB, gateway: RemoteGateway, state_store: SyncStateStore,
                 settings: Optional[SyncSettings] = None, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.gateway = gateway
        self.state_store = state_store
        self.settings = settings or SyncSettings()
        self.tracker = ChangeTracker(db)
        self.status = SyncStatus()
        self._clock = clock or utc_now
        self._cycle_lock = asyncio.Lock()
        self._status_listeners: List[Callable[[SyncStatus], None]] = []
        self._conflict_listeners: List[Callable[[ConflictResolved], None]] = []
        logger.info(f"DeltaSyncEngine initialized for user '{db.user_id}' "
                    f"(delta endpoint: {gateway.supports_delta}, watermark: {state_store.last_pull_at}).")

    # --- Listeners ---
    def add_status_listener(self, listener: Callable[[SyncStatus], None]):
        self._status_listeners.append(listener)

    def add_conflict_listener(self, listener: Callable[[ConflictResolved], None]):
        self._conflict_listeners.append(listener)

    def _notify(self, listeners, payload):
        for listener in list(listeners):
            try:
                listener(payload)
            except Exception as e:
                logger.error(f"Sync listener {listener!r} raised: {e}")

    def _set_state(self, state: SyncState):
        if self.status.state != state:
            logger.debug(f"Sync state {self.status.state.value} -> {state.value}")
            self.status.state = state
            self._notify(self._status_listeners, self.status)

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    @property
    def user_id(self) -> str:
        return self.db.user_id

    # --- Cycle ---
    async def run_cycle(self) -> SyncResult:
        """
        Runs one pull-apply-push cycle. Returns immediately with `skipped=True`
        when a cycle is already in flight.

        Cancellation propagates to the caller; work committed before the
        cancellation point stays, and the watermark is only advanced once the
        apply phase has finished.
        """
        if self._cycle_lock.locked():
            logger.debug("Sync cycle already running; skipping trigger.")
            return SyncResult(skipped=True)

        async with self._cycle_lock:
            result = SyncResult()
            logger.info(f"Starting sync cycle [User ID: {self.user_id}]...")
            try:
                await self._run(result)
            except asyncio.CancelledError:
                logger.warning("Sync cycle cancelled.")
                result.cancelled = True
                raise
            except (OracleDBError, InputError) as e:
                logger.error(f"Local store error during sync cycle: {e}")
                result.error = str(e)
                self._set_state(SyncState.FAILED)
            finally:
                self._finish_cycle(result)
            return result

    async def _run(self, result: SyncResult):
        try:
            changes, anchor = await self._pull(result)
        except AuthenticationError as e:
            self._require_reauth(result, e)
            self._set_state(SyncState.FAILED)
            return
        except _PullAborted:
            self._set_state(SyncState.FAILED)
            return

        self._apply(changes, result)
        if not result.pull_complete:
            logger.warning("Pull incomplete; watermark not advanced and push deferred to the next cycle.")
            self._set_state(SyncState.FAILED)
            return

        apply_failed = {(f.table, f.record_id) for f in result.failures if f.kind == FAILURE_APPLY}
        if apply_failed:
            # Held back so the failed records come in again with the next pull.
            logger.warning(f"{len(apply_failed)} pulled record(s) could not be applied; watermark not advanced.")
        else:
            watermark = anchor - timedelta(seconds=self.settings.watermark_overlap_seconds)
            self.state_store.advance(watermark)
        result.watermark = self.state_store.last_pull_at

        await self._push(result, skip=apply_failed)

    # --- Pull ---
    async def _pull(self, result: SyncResult) -> Tuple[Dict[str, List[dict]], datetime]:
        """
        Returns the pulled rows per table and the instant the next watermark is
        anchored on. Sets `result.pull_complete` when every table was read.
        """
        self._set_state(SyncState.PULLING)
        since = self.state_store.last_pull_at
        started_at = self._now()
        errors: List[str] = []

        if since is None or not self.gateway.supports_delta:
            logger.info(f"Pulling per table since {since.isoformat() if since else 'the beginning'}.")
            changes: Dict[str, List[dict]] = {}
            for table in SYNC_TABLES:
                try:
                    changes[table] = await self.gateway.fetch_updated_since(table, since, self.user_id)
                except AuthenticationError:
                    raise
                except (TransportError, RejectedError) as e:
                    logger.warning(f"Pull of {table} failed: {e}")
                    errors.append(f"{table}: {e}")
            anchor = started_at
        else:
            logger.info(f"Pulling via delta endpoint since {since.isoformat()}.")
            try:
                response = await self.gateway.sync_delta(since, [])
            except AuthenticationError:
                raise
            except (TransportError, RejectedError) as e:
                logger.warning(f"Delta pull failed: {e}")
                result.error = str(e)
                raise _PullAborted() from e
            changes = response.pull_changes
            for table, message in response.pull_errors.items():
                logger.warning(f"Pull of {table} reported an error: {message}")
                errors.append(f"{table}: {message}")
            anchor = response.server_timestamp or started_at

        result.pulled = sum(len(rows) for rows in changes.values())
        result.pull_complete = not errors
        if errors:
            result.error = "Pull incomplete: " + "; ".join(errors)
        logger.info(f"Pulled {result.pulled} record(s){'' if not errors else f' with {len(errors)} table error(s)'}.")
        return changes, anchor

    # --- Apply ---
    def _apply(self, changes: Dict[str, List[dict]], result: SyncResult):
        """Applies pulled rows parents-first, one transaction per record."""
        self._set_state(SyncState.APPLYING)
        touched_decks = set()
        for table in SYNC_TABLES:
            for row in changes.get(table) or []:
                record_id = row.get('id') if isinstance(row, dict) else None
                try:
                    remote = record_from_wire(table, row)
                    applied = self.db.apply_remote_record(remote, purge_tombstones=True)
                except (WireFormatError, OracleDBError, InputError) as e:
                    logger.error(f"Could not apply remote {table} record {record_id}: {e}")
                    result.failures.append(RecordFailure(table, record_id, FAILURE_APPLY, str(e)))
                    continue

                if applied.outcome != ApplyOutcome.UNCHANGED:
                    result.applied += 1
                if applied.purged:
                    result.purged += 1
                if applied.is_conflict:
                    self._record_conflict(remote, applied.outcome, applied.local_updated_at, result)
                if table == TABLE_CARDS:
                    touched_decks.add(remote.deck_id)
                elif table == TABLE_DECKS:
                    touched_decks.add(remote.id)

        if touched_decks:
            self.db.recompute_card_counts(touched_decks)
        logger.info(f"Applied {result.applied} remote change(s), purged {result.purged}, "
                    f"{len(result.conflicts)} conflict(s).")

    def _record_conflict(self, remote: SyncableRecord, outcome: ApplyOutcome,
                         local_updated_at: Optional[datetime], result: SyncResult):
        conflict = ConflictResolved(
            table=remote.TABLE,
            record_id=remote.id,
            winner="remote" if outcome == ApplyOutcome.REMOTE_WON else "local",
            local_updated_at=local_updated_at,
            remote_updated_at=remote.updated_at,
            resolved_at=self._now(),
        )
        result.conflicts.append(conflict)
        self.status.recent_conflicts = (self.status.recent_conflicts + [conflict])[-MAX_RECENT_CONFLICTS:]
        self._notify(self._conflict_listeners, conflict)

    # --- Push ---
    def _collect_pending(self, result: SyncResult, skip: Set[Tuple[str, str]]) -> List[SyncableRecord]:
        """
        Pending records across all tables, parents first. Deletes of records the
        remote store never saw are purged here without a network call. Records in
        `skip` (remote copies that failed to apply this cycle) wait for the next one.
        """
        now = self._now()
        pending = []
        for table in SYNC_TABLES:
            for record in self.tracker.pending_push(table, now):
                if (table, record.id) in skip:
                    continue
                if record.is_deleted and not record.remote_known:
                    self.db.purge_record(table, record.id)
                    result.purged += 1
                    continue
                pending.append(record)
        return pending

    async def _push(self, result: SyncResult, skip: Optional[Set[Tuple[str, str]]] = None):
        self._set_state(SyncState.PUSHING)
        pending = self._collect_pending(result, skip or set())
        if not pending:
            logger.info("No local changes to push.")
            return
        logger.info(f"Pushing {len(pending)} local change(s).")
        if self.gateway.supports_delta:
            await self._push_delta(pending, result)
        else:
            await self._push_per_record(pending, result)
        logger.info(f"Pushed {result.pushed}/{len(pending)} change(s); {len(result.failures)} failure(s).")

    async def _push_per_record(self, pending: List[SyncableRecord], result: SyncResult):
        for record in pending:
            try:
                if record.is_deleted:
                    await self.gateway.delete(record.TABLE, record.id, record.updated_at)
                else:
                    await self.gateway.upsert(record.TABLE, record_to_wire(record))
            except AuthenticationError as e:
                self._require_reauth(result, e)
                return
            except RejectedError as e:
                self._record_rejection(record, str(e), result)
                continue
            except TransportError as e:
                self._record_transport_failure(record, str(e), result)
                continue
            self._mark_pushed(record, result)

    async def _push_delta(self, pending: List[SyncableRecord], result: SyncResult):
        batch_size = self.settings.push_batch_size
        for start in range(0, len(pending), batch_size):
            batch = pending[start:start + batch_size]
            try:
                response = await self.gateway.sync_delta(None, [build_push_op(record) for record in batch])
            except AuthenticationError as e:
                self._require_reauth(result, e)
                return
            except RejectedError as e:
                for record in batch:
                    self._record_rejection(record, str(e), result)
                continue
            except TransportError as e:
                # Remaining batches would hit the same wall.
                for record in pending[start:]:
                    self._record_transport_failure(record, str(e), result)
                return

            outcomes = {(r.operation.table, r.operation.id): r for r in response.push_results}
            for record in batch:
                outcome = outcomes.get((record.TABLE, record.id))
                if outcome is None:
                    self._record_transport_failure(record, "No push result returned for operation", result)
                elif outcome.ok:
                    self._mark_pushed(record, result)
                else:
                    self._record_rejection(record, outcome.error, result)

    def _mark_pushed(self, record: SyncableRecord, result: SyncResult):
        clean = self.db.mark_record_synced(record.TABLE, record.id, record.updated_at,
                                           purge_deleted=self.settings.purge_deleted_after_push)
        result.pushed += 1
        if record.is_deleted and clean and self.settings.purge_deleted_after_push:
            result.purged += 1
        if not clean:
            logger.debug(f"{record.TABLE} {record.id} changed while in flight; it stays dirty.")

    def _record_rejection(self, record: SyncableRecord, error: str, result: SyncResult):
        now = self._now()
        failure = self.db.record_push_failure(
            record.TABLE, record.id, FAILURE_REJECTED, error,
            next_attempt_at_fn=lambda attempts: now + timedelta(seconds=self.settings.backoff_seconds(attempts)),
            give_up_fn=lambda attempts: attempts >= self.settings.max_rejections,
        )
        result.failures.append(RecordFailure(record.TABLE, record.id, FAILURE_REJECTED, error))
        if failure.given_up:
            logger.warning(f"Giving up on {record.TABLE} {record.id} after {failure.attempts} rejection(s): {error}")
        else:
            logger.warning(f"Push of {record.TABLE} {record.id} rejected (attempt {failure.attempts}), "
                           f"retrying after {failure.next_attempt_at}: {error}")

    def _record_transport_failure(self, record: SyncableRecord, error: str, result: SyncResult):
        logger.warning(f"Push of {record.TABLE} {record.id} failed, will retry next cycle: {error}")
        result.failures.append(RecordFailure(record.TABLE, record.id, FAILURE_TRANSPORT, error))

    def _require_reauth(self, result: SyncResult, error: Exception):
        logger.error(f"Remote rejected the session: {error}")
        result.auth_required = True
        result.error = str(error)

    # --- Status ---
    def _finish_cycle(self, result: SyncResult):
        """Folds a cycle's outcome into the status and settles the state machine back to IDLE."""
        if not result.cancelled:
            transport_failed = any(f.kind == FAILURE_TRANSPORT for f in result.failures)
            if result.error is not None or transport_failed:
                self.status.consecutive_failures += 1
                self.status.last_error = result.error or next(
                    f.error for f in result.failures if f.kind == FAILURE_TRANSPORT)
            else:
                self.status.consecutive_failures = 0
                self.status.last_error = None
                self.status.last_sync_at = self._now()
            self.status.auth_required = result.auth_required
        try:
            self.status.given_up = [f"{f.table_name}/{f.record_id}"
                                    for f in self.db.list_push_failures(given_up_only=True)]
            self.status.dirty_counts = self.tracker.dirty_counts()
        except OracleDBError as e:
            logger.error(f"Could not refresh sync status counters: {e}")
        self.status.user_visible_error = self._user_visible_error()
        if not result.cancelled:
            logger.info(f"Sync cycle finished: pulled={result.pulled} applied={result.applied} "
                        f"pushed={result.pushed} failures={len(result.failures)} error={result.error}")
        self.status.state = SyncState.IDLE
        self._notify(self._status_listeners, self.status)

    def _user_visible_error(self) -> Optional[str]:
        if self.status.auth_required:
            return REAUTH_MESSAGE
        if self.status.consecutive_failures >= self.settings.surface_after_failures:
            return f"Sync has failed {self.status.consecutive_failures} times in a row: {self.status.last_error}"
        if self.status.given_up:
            return f"{len(self.status.given_up)} change(s) could not be synced and were set aside."
        return None

    # --- Maintenance ---
    def retry_given_up(self) -> int:
        """Clears every push failure so given-up records are retried on the next cycle."""
        cleared = self.db.reset_push_failures()
        self.status.given_up = []
        self.status.user_visible_error = self._user_visible_error()
        logger.info(f"Cleared {cleared} push failure record(s).")
        return cleared

    def reset_watermark(self):
        """Forces the next cycle to do a full pull."""
        self.state_store.reset()

#
# End of sync_engine.py
#######################################################################################################################
