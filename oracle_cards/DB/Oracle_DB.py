# Oracle_DB.py
# Description: Local entity store and repository for decks, cards, readings, journal entries and profiles.
#
"""
Oracle_DB.py
------------

SQLite-backed local store for the oracle card app. It is the single on-device
source of truth; the UI layer and the sync engine both go through it.

This library provides:
- Schema management with versioning.
- Thread-safe database connections using `threading.local`, with an in-process
  write lock serializing outermost write transactions.
- Typed CRUD operations returning pydantic entities (see `entities.py`).
- Soft deletion: deleted records stay on disk until a sync round-trip confirms
  the remote delete, then they are purged.
- Dirty tracking: every local mutation bumps `updated_at` and clears `synced_at`.
  A record is dirty iff `synced_at IS NULL OR synced_at < updated_at`.
- Sync support: applying pulled remote records with last-write-wins, marking
  pushed records as synced, and bookkeeping of push failures for backoff.
- Change notification: every local mutation emits a `RecordChange` to the
  registered listeners (the sync scheduler subscribes here).

Denormalized counters: `decks.card_count` is recomputed from the non-deleted
cards of the deck inside the same transaction as every card create/soft-delete.

Timestamps are stored as ISO 8601 UTC strings with microsecond precision and a
'Z' suffix, so lexical comparison in SQL matches chronological order.
"""
# Imports
import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union
#
# Third-Party Libraries
from pydantic import ValidationError
#
# Local Imports
from oracle_cards.Constants import (
    TABLE_PROFILES, TABLE_DECKS, TABLE_CARDS, TABLE_READINGS, TABLE_JOURNAL_ENTRIES,
    CHANGE_CREATE, CHANGE_UPDATE, CHANGE_DELETE,
)
from oracle_cards.DB.entities import (
    SyncableRecord, Profile, Deck, Card, Reading, JournalEntry,
    METADATA_FIELDS, model_for_table, utc_now, ensure_utc,
)
#
########################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)


# --- Custom Exceptions ---
class OracleDBError(Exception):
    """Base exception for OracleCardsDB related errors."""
    pass


class SchemaError(OracleDBError):
    """Exception for schema version mismatches or migration failures."""
    pass


class InputError(ValueError):
    """Custom exception for input validation errors."""
    pass


class NotFoundError(OracleDBError):
    """
    Raised when a local mutation references an id that does not exist (or is soft-deleted).

    Attributes:
        entity (Optional[str]): The table involved (e.g., "cards").
        entity_id (Any): The id that was not found.
    """

    def __init__(self, message="Record not found.", entity: Optional[str] = None, entity_id: Any = None):
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id

    def __str__(self):
        base = super().__str__()
        details = []
        if self.entity:
            details.append(f"Entity: {self.entity}")
        if self.entity_id:
            details.append(f"ID: {self.entity_id}")
        return f"{base} ({', '.join(details)})" if details else base


class ConflictError(OracleDBError):
    """Indicates a unique constraint violation, e.g. creating a record with an id that already exists."""

    def __init__(self, message="Conflict detected.", entity: Optional[str] = None, entity_id: Any = None):
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id


# --- Result / Event Types ---
class ApplyOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    # Last-write-wins outcomes, only possible when the local copy was dirty.
    REMOTE_WON = "remote_won"
    LOCAL_WON = "local_won"


@dataclass(frozen=True)
class ApplyResult:
    outcome: ApplyOutcome
    purged: bool = False
    local_updated_at: Optional[datetime] = None

    @property
    def is_conflict(self) -> bool:
        return self.outcome in (ApplyOutcome.REMOTE_WON, ApplyOutcome.LOCAL_WON)


@dataclass(frozen=True)
class RecordChange:
    """Emitted to change listeners after every committed local mutation."""
    table: str
    record_id: str
    operation: str


@dataclass
class PushFailure:
    table_name: str
    record_id: str
    attempts: int
    failure_kind: str
    last_error: Optional[str]
    last_attempt_at: datetime
    next_attempt_at: Optional[datetime]
    given_up: bool


ChangeListener = Callable[[RecordChange], None]


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).strftime('%Y-%m-%dT%H:%M:%S.%fZ')


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value.replace('Z', '+00:00')))


# --- Database Class ---
class OracleCardsDB:
    """
    Manages the SQLite connection and all local reads/writes for one user's data.

    Key features:
    - Initialization with a database path and the owning `user_id` (one DB per user).
    - Automatic schema creation and version checking.
    - Thread-local SQLite connections (WAL mode for file databases).
    - Generic CRUD (`create_record`, `update_record`, `soft_delete_record`,
      `query_active`) plus typed convenience methods per entity.
    - Sync primitives used by the change tracker and the sync engine.

    Attributes:
        db_path (Path): Absolute path to the SQLite file, or Path(":memory:").
        db_path_str (str): String form of `db_path`.
        user_id (str): Identity of the signed-in user owning this store.
    """

    _CURRENT_SCHEMA_VERSION = 1
    _SCHEMA_NAME = "oracle_cards_schema"

    _SYNC_COLUMNS_SQL = """
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    synced_at TEXT,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    remote_known INTEGER NOT NULL DEFAULT 0
    """

    _FULL_SCHEMA_SQL_V1 = f"""
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS db_schema_version(
  schema_name TEXT PRIMARY KEY NOT NULL,
  version     INTEGER NOT NULL
);
INSERT OR IGNORE INTO db_schema_version(schema_name, version) VALUES('oracle_cards_schema', 0);

CREATE TABLE IF NOT EXISTS profiles(
  id                TEXT PRIMARY KEY,
  email             TEXT NOT NULL,
  username          TEXT,
  avatar_url        TEXT,
  subscription_tier TEXT NOT NULL DEFAULT 'free',
  {_SYNC_COLUMNS_SQL}
);

CREATE TABLE IF NOT EXISTS decks(
  id              TEXT PRIMARY KEY,
  user_id         TEXT NOT NULL,
  name            TEXT NOT NULL,
  description     TEXT,
  cover_image_url TEXT,
  card_count      INTEGER NOT NULL DEFAULT 0 CHECK(card_count >= 0),
  {_SYNC_COLUMNS_SQL}
);
CREATE INDEX IF NOT EXISTS idx_decks_user ON decks(user_id, is_deleted);

-- No FOREIGN KEY on deck_id: pulled children may land before their parent.
CREATE TABLE IF NOT EXISTS cards(
  id             TEXT PRIMARY KEY,
  deck_id        TEXT NOT NULL,
  title          TEXT NOT NULL,
  meaning        TEXT,
  keywords       TEXT,
  style_template TEXT,
  symbols        TEXT,
  image_url      TEXT,
  position       INTEGER NOT NULL DEFAULT 0,
  {_SYNC_COLUMNS_SQL}
);
CREATE INDEX IF NOT EXISTS idx_cards_deck ON cards(deck_id, is_deleted, position);

CREATE TABLE IF NOT EXISTS readings(
  id                TEXT PRIMARY KEY,
  user_id           TEXT NOT NULL,
  deck_id           TEXT NOT NULL,
  spread_type       TEXT NOT NULL,
  intention         TEXT,
  card_positions    TEXT,
  ai_interpretation TEXT,
  {_SYNC_COLUMNS_SQL}
);
CREATE INDEX IF NOT EXISTS idx_readings_user ON readings(user_id, is_deleted);

CREATE TABLE IF NOT EXISTS journal_entries(
  id         TEXT PRIMARY KEY,
  user_id    TEXT NOT NULL,
  reading_id TEXT NOT NULL,
  content    TEXT NOT NULL,
  mood       TEXT,
  tags       TEXT,
  photo_urls TEXT,
  {_SYNC_COLUMNS_SQL}
);
CREATE INDEX IF NOT EXISTS idx_journal_reading ON journal_entries(reading_id, is_deleted);

CREATE TABLE IF NOT EXISTS push_failures(
  table_name      TEXT NOT NULL,
  record_id       TEXT NOT NULL,
  attempts        INTEGER NOT NULL DEFAULT 0,
  failure_kind    TEXT NOT NULL,
  last_error      TEXT,
  last_attempt_at TEXT NOT NULL,
  next_attempt_at TEXT,
  given_up        INTEGER NOT NULL DEFAULT 0,
  PRIMARY KEY (table_name, record_id)
);

UPDATE db_schema_version
   SET version = 1
 WHERE schema_name = 'oracle_cards_schema'
   AND version < 1;
"""

    def __init__(self, db_path: Union[str, Path], user_id: str,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initializes the OracleCardsDB instance.

        Args:
            db_path: Path to the SQLite database file or ":memory:". Note that an
                     in-memory database is private to the thread that opened it.
            user_id: The signed-in user owning this store. Must not be empty.
            clock: Optional callable returning the current UTC datetime (tests inject one).

        Raises:
            ValueError: If `user_id` is empty or None.
            OracleDBError: If the directory cannot be created or initialization fails.
            SchemaError: If the schema version is unsupported.
        """
        if isinstance(db_path, Path):
            self.is_memory_db = False
            self.db_path = db_path.resolve()
        else:
            self.is_memory_db = (db_path == ':memory:')
            self.db_path = Path(db_path).resolve() if not self.is_memory_db else Path(":memory:")
        self.db_path_str = str(self.db_path) if not self.is_memory_db else ':memory:'

        if not user_id:
            raise ValueError("User ID cannot be empty or None.")
        self.user_id = user_id
        self._clock = clock or utc_now

        if not self.is_memory_db:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise OracleDBError(f"Failed to create database directory {self.db_path.parent}: {e}") from e

        logger.info(f"Initializing OracleCardsDB for path: {self.db_path_str} [User ID: {self.user_id}]")
        self._local = threading.local()
        self._write_lock = threading.RLock()
        self._change_listeners: List[ChangeListener] = []
        try:
            self._initialize_schema()
            logger.debug(f"OracleCardsDB initialization completed successfully for {self.db_path_str}")
        except (OracleDBError, sqlite3.Error) as e:
            logger.critical(f"FATAL: DB Initialization failed for {self.db_path_str}: {e}", exc_info=True)
            self.close_connection()
            if isinstance(e, SchemaError):
                raise
            raise OracleDBError(f"Database initialization failed: {e}") from e

    # --- Connection Management ---
    def _get_thread_connection(self) -> sqlite3.Connection:
        """
        Retrieves or creates the thread-local SQLite connection.

        Connections run in autocommit mode (`isolation_level=None`); transactions
        are only opened explicitly by `TransactionContextManager`.
        """
        conn = getattr(self._local, 'conn', None)
        if conn:
            try:
                conn.execute("SELECT 1")
            except (sqlite3.ProgrammingError, sqlite3.OperationalError):
                logger.warning(
                    f"Thread-local connection for {self.db_path_str} was closed or became unusable. Reopening.")
                try:
                    conn.close()
                except sqlite3.Error:
                    pass
                conn = None

        if not conn:
            try:
                conn = sqlite3.connect(
                    self.db_path_str,
                    check_same_thread=False,
                    timeout=15,
                    isolation_level=None,
                )
                conn.row_factory = sqlite3.Row
                if not self.is_memory_db:
                    conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA foreign_keys = ON;")
                self._local.conn = conn
                logger.debug(f"Opened SQLite connection to {self.db_path_str} for thread {threading.get_ident()}")
            except sqlite3.Error as e:
                logger.error(f"Failed to connect to database {self.db_path_str}: {e}", exc_info=True)
                self._local.conn = None
                raise OracleDBError(f"Failed to connect to database '{self.db_path_str}': {e}") from e
        return self._local.conn

    def get_connection(self) -> sqlite3.Connection:
        return self._get_thread_connection()

    def close_connection(self):
        """
        Closes the current thread's connection, rolling back any open transaction
        and checkpointing the WAL file first.
        """
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            try:
                if conn.in_transaction:
                    logger.warning(
                        f"Connection to {self.db_path_str} is in an uncommitted transaction during close. Rolling back.")
                    conn.rollback()
                if not self.is_memory_db:
                    mode_row = conn.execute("PRAGMA journal_mode;").fetchone()
                    if mode_row and mode_row[0].lower() == 'wal':
                        conn.execute("PRAGMA wal_checkpoint(TRUNCATE);")
                conn.close()
                logger.debug(f"Closed connection for thread {threading.get_ident()} to {self.db_path_str}.")
            except sqlite3.Error as e:
                logger.warning(f"Error during SQLite connection close/checkpoint for {self.db_path_str}: {e}")
            finally:
                self._local.conn = None

    # --- Query Execution ---
    def execute_query(self, query: str, params: Optional[Union[tuple, Dict[str, Any]]] = None) -> sqlite3.Cursor:
        """
        Executes a single SQL statement on the thread's connection.

        Raises:
            ConflictError: On a UNIQUE constraint violation.
            OracleDBError: For any other SQLite error.
        """
        conn = self.get_connection()
        try:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"Executing SQL: {query[:300]}... Params: {str(params)[:200]}...")
            return conn.execute(query, params or ())
        except sqlite3.IntegrityError as e:
            logger.warning(f"Integrity constraint violation: {query[:300]}... Error: {e}")
            if "unique constraint failed" in str(e).lower():
                raise ConflictError(f"Unique constraint violation: {e}") from e
            raise OracleDBError(f"Database constraint violation: {e}") from e
        except sqlite3.Error as e:
            logger.error(f"Query execution failed: {query[:300]}... Error: {e}", exc_info=True)
            raise OracleDBError(f"Query execution failed: {e}") from e

    # --- Transaction Context ---
    def transaction(self) -> 'TransactionContextManager':
        """
        Returns a context manager for database transactions.

        Usage:
            with db.transaction() as conn:
                conn.execute(...)
        Commit happens on clean exit, rollback on exception. Nested blocks join
        the outermost transaction.
        """
        return TransactionContextManager(self)

    # --- Schema Initialization ---
    def _get_db_version(self, conn: sqlite3.Connection) -> int:
        try:
            cursor = conn.execute("SELECT version FROM db_schema_version WHERE schema_name = ? LIMIT 1",
                                  (self._SCHEMA_NAME,))
            result = cursor.fetchone()
            return result['version'] if result else 0
        except sqlite3.Error as e:
            if "no such table" in str(e).lower():
                return 0
            raise SchemaError(f"Could not determine schema version for '{self._SCHEMA_NAME}': {e}") from e

    def _initialize_schema(self):
        """Creates the schema on a fresh database, or verifies the version of an existing one."""
        conn = self.get_connection()
        current_version = self._get_db_version(conn)
        target_version = self._CURRENT_SCHEMA_VERSION
        logger.info(f"Checking DB schema '{self._SCHEMA_NAME}'. Current version: {current_version}. "
                    f"Code supports: {target_version}")

        if current_version == target_version:
            return
        if current_version > target_version:
            raise SchemaError(
                f"Database schema '{self._SCHEMA_NAME}' version ({current_version}) is newer than supported "
                f"by code ({target_version}). Aborting.")
        if current_version != 0:
            raise SchemaError(
                f"Migration path undefined for '{self._SCHEMA_NAME}' from version {current_version} "
                f"to {target_version}.")

        try:
            # executescript issues its own COMMIT, so it runs outside TransactionContextManager.
            conn.executescript(self._FULL_SCHEMA_SQL_V1)
        except sqlite3.Error as e:
            raise SchemaError(f"DB schema V{target_version} setup failed for '{self._SCHEMA_NAME}': {e}") from e

        final_version = self._get_db_version(conn)
        if final_version != target_version:
            raise SchemaError(f"Schema version update check failed. Expected {target_version}, got: {final_version}")
        logger.info(f"Database schema '{self._SCHEMA_NAME}' initialized to version {final_version}.")

    # --- Internal Helpers ---
    def _generate_uuid(self) -> str:
        return str(uuid.uuid4())

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    def _next_updated_at(self, previous: Optional[datetime]) -> datetime:
        """
        Timestamp for a local mutation. Always strictly after `previous`, even when
        the device clock lags behind a timestamp that came from the remote store.
        """
        now = self._now()
        if previous is not None and now <= previous:
            return previous + timedelta(microseconds=1)
        return now

    def _model(self, table: str):
        try:
            return model_for_table(table)
        except ValueError as e:
            raise InputError(str(e)) from e

    def _row_to_record(self, table: str, row: Optional[sqlite3.Row]) -> Optional[SyncableRecord]:
        """Converts a sqlite3.Row into its entity, decoding JSON list columns and timestamps."""
        if not row:
            return None
        model = self._model(table)
        item = dict(row)
        for field in model.JSON_FIELDS:
            raw = item.get(field)
            if isinstance(raw, str):
                try:
                    item[field] = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(
                        f"Failed to decode JSON for field '{field}' in {table} row (ID: {item.get('id')}). "
                        f"Value: '{raw[:100]}...'")
                    item[field] = []
        for ts_field in ('created_at', 'updated_at', 'synced_at'):
            item[ts_field] = from_db_timestamp(item.get(ts_field))
        item['is_deleted'] = bool(item.get('is_deleted'))
        item['remote_known'] = bool(item.get('remote_known'))
        return model.model_validate(item)

    def _record_to_row(self, record: SyncableRecord) -> Dict[str, Any]:
        """Flattens an entity into column values (JSON text, ISO timestamps, 0/1 booleans)."""
        row = record.model_dump()
        json_ready = record.model_dump(mode='json', include=set(record.JSON_FIELDS))
        for field in record.JSON_FIELDS:
            row[field] = json.dumps(json_ready[field])
        for ts_field in ('created_at', 'updated_at', 'synced_at'):
            row[ts_field] = to_db_timestamp(row[ts_field])
        row['is_deleted'] = 1 if record.is_deleted else 0
        row['remote_known'] = 1 if record.remote_known else 0
        return row

    def _fetch_record(self, conn: sqlite3.Connection, table: str, record_id: str) -> Optional[SyncableRecord]:
        self._model(table)
        row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return self._row_to_record(table, row)

    def _insert_record(self, conn: sqlite3.Connection, record: SyncableRecord):
        row = self._record_to_row(record)
        columns = list(row.keys())
        placeholders = ", ".join("?" for _ in columns)
        try:
            conn.execute(f"INSERT INTO {record.TABLE} ({', '.join(columns)}) VALUES ({placeholders})",
                         tuple(row[c] for c in columns))
        except sqlite3.IntegrityError as e:
            if "unique constraint failed" in str(e).lower():
                raise ConflictError(f"{record.TABLE} record with ID '{record.id}' already exists.",
                                    entity=record.TABLE, entity_id=record.id) from e
            raise OracleDBError(f"Database integrity error inserting into {record.TABLE}: {e}") from e

    def _overwrite_record(self, conn: sqlite3.Connection, record: SyncableRecord):
        row = self._record_to_row(record)
        columns = [c for c in row.keys() if c != 'id']
        set_clause = ", ".join(f"{c} = ?" for c in columns)
        conn.execute(f"UPDATE {record.TABLE} SET {set_clause} WHERE id = ?",
                     tuple(row[c] for c in columns) + (record.id,))

    def _require_active_parent(self, conn: sqlite3.Connection, record: SyncableRecord):
        if not record.PARENT:
            return
        parent_table, fk_column = record.PARENT
        parent_id = getattr(record, fk_column)
        row = conn.execute(f"SELECT is_deleted FROM {parent_table} WHERE id = ?", (parent_id,)).fetchone()
        if not row or row['is_deleted']:
            raise NotFoundError(f"Parent {parent_table} record '{parent_id}' does not exist locally.",
                                entity=parent_table, entity_id=parent_id)

    def _refresh_card_count(self, conn: sqlite3.Connection, deck_id: str, *, mark_dirty: bool) -> Optional[int]:
        """
        Recomputes `decks.card_count` from the deck's non-deleted cards.

        With `mark_dirty=True` (local card create/delete) the deck is dirtied too,
        so the new count gets pushed.
        """
        deck = self._fetch_record(conn, TABLE_DECKS, deck_id)
        if deck is None:
            return None
        count = conn.execute("SELECT COUNT(*) FROM cards WHERE deck_id = ? AND is_deleted = 0",
                             (deck_id,)).fetchone()[0]
        if mark_dirty:
            conn.execute("UPDATE decks SET card_count = ?, updated_at = ?, synced_at = NULL WHERE id = ?",
                         (count, to_db_timestamp(self._next_updated_at(deck.updated_at)), deck_id))
        elif deck.card_count != count:
            conn.execute("UPDATE decks SET card_count = ? WHERE id = ?", (count, deck_id))
        return count

    def _next_card_position(self, conn: sqlite3.Connection, deck_id: str) -> int:
        row = conn.execute("SELECT MAX(position) FROM cards WHERE deck_id = ? AND is_deleted = 0",
                           (deck_id,)).fetchone()
        return 0 if row[0] is None else row[0] + 1

    # --- Change Listeners ---
    def add_change_listener(self, listener: ChangeListener):
        if listener not in self._change_listeners:
            self._change_listeners.append(listener)

    def remove_change_listener(self, listener: ChangeListener):
        if listener in self._change_listeners:
            self._change_listeners.remove(listener)

    def _emit_change(self, table: str, record_id: str, operation: str):
        change = RecordChange(table=table, record_id=record_id, operation=operation)
        for listener in list(self._change_listeners):
            try:
                listener(change)
            except Exception as e:
                logger.error(f"Change listener {listener!r} failed for {change}: {e}", exc_info=True)

    # --- Generic Repository Operations ---
    def create_record(self, table: str, payload: Dict[str, Any]) -> SyncableRecord:
        """
        Creates a new local record, dirty and never synced.

        Args:
            table: One of the sync tables.
            payload: Entity fields. An 'id' may be supplied; other metadata keys are ignored.
                     Owner fields default to this store's `user_id`.

        Returns:
            The created entity.

        Raises:
            InputError: If the payload fails validation.
            NotFoundError: If the parent record (deck for cards/readings, reading for
                           journal entries) does not exist locally.
            ConflictError: If a record with the supplied id already exists.
        """
        model = self._model(table)
        data = {k: v for k, v in payload.items() if k not in METADATA_FIELDS or k == 'id'}
        ignored = set(payload) - set(data)
        if ignored:
            logger.warning(f"Ignoring metadata fields {sorted(ignored)} supplied on create for {table}.")
        if model.OWNER_FIELD == 'user_id':
            data.setdefault('user_id', self.user_id)
        if table == TABLE_PROFILES:
            data.setdefault('id', self.user_id)
        if table == TABLE_DECKS:
            data['card_count'] = 0

        now = self._now()
        data['id'] = data.get('id') or self._generate_uuid()
        data.update(created_at=now, updated_at=now, synced_at=None, is_deleted=False, remote_known=False)

        with self.transaction() as conn:
            if table == TABLE_CARDS and data.get('position') is None and data.get('deck_id'):
                data['position'] = self._next_card_position(conn, data['deck_id'])
            try:
                record = model.model_validate(data)
            except ValidationError as e:
                raise InputError(f"Invalid {table} payload: {e}") from e
            self._require_active_parent(conn, record)
            self._insert_record(conn, record)
            if table == TABLE_CARDS:
                self._refresh_card_count(conn, record.deck_id, mark_dirty=True)
            logger.info(f"Created {table} record {record.id}.")

        self._emit_change(table, record.id, CHANGE_CREATE)
        return record

    def update_record(self, table: str, record_id: str, partial: Dict[str, Any]) -> SyncableRecord:
        """
        Merges `partial` into an active record, bumps `updated_at` and marks it dirty.

        Immutable fields (owner and parent references, derived counters) and sync
        metadata are skipped with a warning. A local edit also clears any push
        failure bookkeeping for the record, so a given-up record is retried.

        Raises:
            InputError: If `partial` is empty or the merged record fails validation.
            NotFoundError: If the record does not exist or is soft-deleted.
        """
        if not partial:
            raise InputError(f"No data provided for {table} update.")
        model = self._model(table)
        allowed = set(model.mutable_fields())
        changes = {}
        for key, value in partial.items():
            if key in allowed:
                changes[key] = value
            else:
                logger.warning(f"Attempted to update immutable or unknown field '{key}' in {table} ID {record_id}, "
                               f"skipping.")

        with self.transaction() as conn:
            current = self._fetch_record(conn, table, record_id)
            if current is None or current.is_deleted:
                raise NotFoundError(f"Cannot update: {table} record not found.", entity=table, entity_id=record_id)
            if not changes:
                logger.info(f"No updatable fields provided for {table} ID {record_id}.")
                return current

            merged = current.model_dump()
            merged.update(changes)
            merged['updated_at'] = self._next_updated_at(current.updated_at)
            merged['synced_at'] = None
            try:
                updated = model.model_validate(merged)
            except ValidationError as e:
                raise InputError(f"Invalid {table} update: {e}") from e
            self._overwrite_record(conn, updated)
            self._delete_push_failure(conn, table, record_id)
            logger.info(f"Updated {table} record {record_id} (fields: {sorted(changes)}).")

        self._emit_change(table, record_id, CHANGE_UPDATE)
        return updated

    def soft_delete_record(self, table: str, record_id: str) -> None:
        """
        Soft-deletes a record: `is_deleted = 1`, `updated_at` bumped, `synced_at` cleared.

        Deleting a card refreshes its deck's `card_count` in the same transaction.
        Deleting a deck soft-deletes its active cards as well. Deleting an already
        soft-deleted record is a no-op.

        Raises:
            NotFoundError: If the record does not exist.
        """
        self._model(table)
        cascaded: List[str] = []
        with self.transaction() as conn:
            current = self._fetch_record(conn, table, record_id)
            if current is None:
                raise NotFoundError(f"Cannot delete: {table} record not found.", entity=table, entity_id=record_id)
            if current.is_deleted:
                logger.info(f"{table} ID {record_id} already soft-deleted. Success (idempotent).")
                return

            conn.execute(f"UPDATE {table} SET is_deleted = 1, updated_at = ?, synced_at = NULL WHERE id = ?",
                         (to_db_timestamp(self._next_updated_at(current.updated_at)), record_id))
            self._delete_push_failure(conn, table, record_id)

            if table == TABLE_CARDS:
                self._refresh_card_count(conn, current.deck_id, mark_dirty=True)
            elif table == TABLE_DECKS:
                rows = conn.execute("SELECT id, updated_at FROM cards WHERE deck_id = ? AND is_deleted = 0",
                                    (record_id,)).fetchall()
                for row in rows:
                    card_ts = self._next_updated_at(from_db_timestamp(row['updated_at']))
                    conn.execute("UPDATE cards SET is_deleted = 1, updated_at = ?, synced_at = NULL WHERE id = ?",
                                 (to_db_timestamp(card_ts), row['id']))
                    cascaded.append(row['id'])
                conn.execute("UPDATE decks SET card_count = 0 WHERE id = ?", (record_id,))
            logger.info(f"Soft-deleted {table} record {record_id}"
                        f"{f' and {len(cascaded)} card(s)' if cascaded else ''}.")

        self._emit_change(table, record_id, CHANGE_DELETE)
        for card_id in cascaded:
            self._emit_change(TABLE_CARDS, card_id, CHANGE_DELETE)

    def get_record(self, table: str, record_id: str, include_deleted: bool = False) -> Optional[SyncableRecord]:
        record = self._fetch_record(self.get_connection(), table, record_id)
        if record is None or (record.is_deleted and not include_deleted):
            return None
        return record

    def query_active(self, table: str, filters: Optional[Dict[str, Any]] = None,
                     limit: Optional[int] = None, offset: int = 0) -> List[SyncableRecord]:
        """
        Returns non-deleted records matching equality `filters`, in the entity's
        natural order (cards by position ascending; everything else newest first).
        """
        model = self._model(table)
        clauses = ["is_deleted = 0"]
        params: List[Any] = []
        for column, value in (filters or {}).items():
            if column not in model.model_fields or column in model.JSON_FIELDS:
                raise InputError(f"Cannot filter {table} on '{column}'.")
            clauses.append(f"{column} = ?")
            params.append(value)
        query = f"SELECT * FROM {table} WHERE {' AND '.join(clauses)} ORDER BY {model.ORDER_BY}"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        cursor = self.execute_query(query, tuple(params))
        return [self._row_to_record(table, row) for row in cursor.fetchall()]

    # --- Profile Methods ---
    def get_profile(self) -> Optional[Profile]:
        return self.get_record(TABLE_PROFILES, self.user_id)

    def save_profile(self, profile_data: Dict[str, Any]) -> Profile:
        """Creates this user's profile, or updates it if one exists."""
        if self.get_record(TABLE_PROFILES, self.user_id, include_deleted=True) is None:
            return self.create_record(TABLE_PROFILES, {**profile_data, 'id': self.user_id})
        return self.update_record(TABLE_PROFILES, self.user_id, profile_data)

    # --- Deck Methods ---
    def add_deck(self, name: str, description: Optional[str] = None, cover_image_url: Optional[str] = None,
                 deck_id: Optional[str] = None) -> Deck:
        if not name or not name.strip():
            raise InputError("Deck name cannot be empty.")
        return self.create_record(TABLE_DECKS, {
            'id': deck_id, 'name': name.strip(), 'description': description, 'cover_image_url': cover_image_url,
        })

    def get_deck(self, deck_id: str) -> Optional[Deck]:
        return self.get_record(TABLE_DECKS, deck_id)

    def list_decks(self, limit: Optional[int] = None, offset: int = 0) -> List[Deck]:
        return self.query_active(TABLE_DECKS, {'user_id': self.user_id}, limit, offset)

    def update_deck(self, deck_id: str, update_data: Dict[str, Any]) -> Deck:
        return self.update_record(TABLE_DECKS, deck_id, update_data)

    def soft_delete_deck(self, deck_id: str) -> None:
        self.soft_delete_record(TABLE_DECKS, deck_id)

    # --- Card Methods ---
    def add_card(self, deck_id: str, title: str, **card_fields: Any) -> Card:
        if not title or not title.strip():
            raise InputError("Card title cannot be empty.")
        return self.create_record(TABLE_CARDS, {**card_fields, 'deck_id': deck_id, 'title': title.strip()})

    def get_card(self, card_id: str) -> Optional[Card]:
        return self.get_record(TABLE_CARDS, card_id)

    def list_cards_for_deck(self, deck_id: str) -> List[Card]:
        return self.query_active(TABLE_CARDS, {'deck_id': deck_id})

    def update_card(self, card_id: str, update_data: Dict[str, Any]) -> Card:
        return self.update_record(TABLE_CARDS, card_id, update_data)

    def soft_delete_card(self, card_id: str) -> None:
        self.soft_delete_record(TABLE_CARDS, card_id)

    # --- Reading Methods ---
    def add_reading(self, deck_id: str, spread_type: str, card_positions: Optional[List[Dict[str, Any]]] = None,
                    intention: Optional[str] = None, ai_interpretation: Optional[str] = None) -> Reading:
        return self.create_record(TABLE_READINGS, {
            'deck_id': deck_id, 'spread_type': spread_type, 'card_positions': card_positions or [],
            'intention': intention, 'ai_interpretation': ai_interpretation,
        })

    def get_reading(self, reading_id: str) -> Optional[Reading]:
        return self.get_record(TABLE_READINGS, reading_id)

    def list_readings(self, limit: Optional[int] = None, offset: int = 0) -> List[Reading]:
        return self.query_active(TABLE_READINGS, {'user_id': self.user_id}, limit, offset)

    def update_reading(self, reading_id: str, update_data: Dict[str, Any]) -> Reading:
        return self.update_record(TABLE_READINGS, reading_id, update_data)

    def set_reading_interpretation(self, reading_id: str, interpretation: str) -> Reading:
        # Interpretation text comes from the AI collaborator; it syncs like any other edit.
        return self.update_record(TABLE_READINGS, reading_id, {'ai_interpretation': interpretation})

    def soft_delete_reading(self, reading_id: str) -> None:
        self.soft_delete_record(TABLE_READINGS, reading_id)

    # --- Journal Methods ---
    def add_journal_entry(self, reading_id: str, content: str, mood: Optional[str] = None,
                          tags: Optional[List[str]] = None, photo_urls: Optional[List[str]] = None) -> JournalEntry:
        if content is None:
            raise InputError("Journal entry content cannot be None.")
        return self.create_record(TABLE_JOURNAL_ENTRIES, {
            'reading_id': reading_id, 'content': content, 'mood': mood,
            'tags': tags or [], 'photo_urls': photo_urls or [],
        })

    def get_journal_entry(self, entry_id: str) -> Optional[JournalEntry]:
        return self.get_record(TABLE_JOURNAL_ENTRIES, entry_id)

    def list_journal_entries(self, reading_id: Optional[str] = None) -> List[JournalEntry]:
        filters = {'user_id': self.user_id}
        if reading_id is not None:
            filters['reading_id'] = reading_id
        return self.query_active(TABLE_JOURNAL_ENTRIES, filters)

    def update_journal_entry(self, entry_id: str, update_data: Dict[str, Any]) -> JournalEntry:
        return self.update_record(TABLE_JOURNAL_ENTRIES, entry_id, update_data)

    def soft_delete_journal_entry(self, entry_id: str) -> None:
        self.soft_delete_record(TABLE_JOURNAL_ENTRIES, entry_id)

    # --- Sync Support: Change Tracking ---
    def get_dirty_records(self, table: str) -> List[SyncableRecord]:
        """All records (soft-deleted included) with `synced_at` absent or older than `updated_at`."""
        self._model(table)
        query = (f"SELECT * FROM {table} WHERE synced_at IS NULL OR synced_at < updated_at "
                 f"ORDER BY created_at ASC, id ASC")
        cursor = self.execute_query(query)
        return [self._row_to_record(table, row) for row in cursor.fetchall()]

    def count_dirty_records(self, table: str) -> int:
        self._model(table)
        row = self.execute_query(
            f"SELECT COUNT(*) FROM {table} WHERE synced_at IS NULL OR synced_at < updated_at").fetchone()
        return row[0]

    # --- Sync Support: Applying Remote Records ---
    def apply_remote_record(self, remote: SyncableRecord, purge_tombstones: bool = True) -> ApplyResult:
        """
        Upserts one pulled remote record, in its own transaction.

        - No local copy: inserted as synced (remote tombstones are simply ignored).
        - Local copy clean: overwritten and marked synced. An identical snapshot is a
          no-op, which keeps re-applying the same pull idempotent.
        - Local copy dirty: last-write-wins on `updated_at`. A strictly newer remote
          overwrites the local copy entirely; otherwise the remote copy is discarded
          and the local copy stays dirty for the next push.

        A remote tombstone that ends up as the clean local state is purged when
        `purge_tombstones` is True.

        `synced_at` is set to max(now, remote.updated_at) so that a remote clock
        running ahead of ours never makes the record look dirty.
        """
        table = remote.TABLE
        self._model(table)
        with self.transaction() as conn:
            local = self._fetch_record(conn, table, remote.id)
            synced_at = max(self._now(), remote.updated_at)
            accepted = remote.model_copy(update={'synced_at': synced_at, 'remote_known': True})

            if local is None:
                if remote.is_deleted:
                    logger.debug(f"Ignoring remote tombstone for unknown {table} record {remote.id}.")
                    return ApplyResult(ApplyOutcome.UNCHANGED)
                self._insert_record(conn, accepted)
                logger.debug(f"Inserted remote {table} record {remote.id}.")
                return ApplyResult(ApplyOutcome.INSERTED)

            if not local.is_dirty:
                if local.same_snapshot(remote):
                    if not local.remote_known:
                        conn.execute(f"UPDATE {table} SET remote_known = 1 WHERE id = ?", (remote.id,))
                    return ApplyResult(ApplyOutcome.UNCHANGED, local_updated_at=local.updated_at)
                outcome = ApplyOutcome.UPDATED
            elif remote.updated_at > local.updated_at:
                outcome = ApplyOutcome.REMOTE_WON
                logger.warning(f"Conflict on {table} {remote.id}: remote wins "
                               f"(RemoteTS: {remote.updated_at.isoformat()} > LocalTS: {local.updated_at.isoformat()}).")
            else:
                if not local.remote_known:
                    conn.execute(f"UPDATE {table} SET remote_known = 1 WHERE id = ?", (remote.id,))
                logger.warning(f"Conflict on {table} {remote.id}: local wins "
                               f"(LocalTS: {local.updated_at.isoformat()} >= RemoteTS: {remote.updated_at.isoformat()}).")
                return ApplyResult(ApplyOutcome.LOCAL_WON, local_updated_at=local.updated_at)

            self._delete_push_failure(conn, table, remote.id)
            if remote.is_deleted and purge_tombstones:
                conn.execute(f"DELETE FROM {table} WHERE id = ?", (remote.id,))
                logger.debug(f"Purged {table} record {remote.id} after remote deletion.")
                return ApplyResult(outcome, purged=True, local_updated_at=local.updated_at)
            self._overwrite_record(conn, accepted)
            return ApplyResult(outcome, local_updated_at=local.updated_at)

    def recompute_card_counts(self, deck_ids: Iterable[str]) -> Dict[str, int]:
        """
        Re-derives `card_count` for the given decks without touching sync metadata.
        Called after a pull so counts match the locally present cards.
        """
        counts = {}
        with self.transaction() as conn:
            for deck_id in set(deck_ids):
                count = self._refresh_card_count(conn, deck_id, mark_dirty=False)
                if count is not None:
                    counts[deck_id] = count
        return counts

    # --- Sync Support: Pushed Records ---
    def mark_record_synced(self, table: str, record_id: str, expected_updated_at: datetime,
                           purge_deleted: bool = True) -> bool:
        """
        Marks a pushed record as synced, provided it was not modified while the push was in flight.

        Soft-deleted records are physically purged instead when `purge_deleted` is True.

        Returns:
            True if the record is now clean (or purged), False if it changed concurrently
            or no longer exists.
        """
        self._model(table)
        with self.transaction() as conn:
            current = self._fetch_record(conn, table, record_id)
            if current is None:
                return False
            if current.updated_at != ensure_utc(expected_updated_at):
                # The push itself went through, so the remote holds a copy either way.
                if not current.remote_known:
                    conn.execute(f"UPDATE {table} SET remote_known = 1 WHERE id = ?", (record_id,))
                logger.info(f"{table} {record_id} was modified during push; leaving it dirty.")
                return False
            self._delete_push_failure(conn, table, record_id)
            if current.is_deleted and purge_deleted:
                conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
                logger.debug(f"Purged {table} record {record_id} after confirmed remote delete.")
                return True
            synced_at = max(self._now(), current.updated_at)
            conn.execute(f"UPDATE {table} SET synced_at = ?, remote_known = 1 WHERE id = ? AND updated_at = ?",
                         (to_db_timestamp(synced_at), record_id, to_db_timestamp(current.updated_at)))
            return True

    def purge_record(self, table: str, record_id: str) -> bool:
        """Physically removes a soft-deleted record. Active records are never purged."""
        self._model(table)
        with self.transaction() as conn:
            current = self._fetch_record(conn, table, record_id)
            if current is None:
                return False
            if not current.is_deleted:
                raise InputError(f"Refusing to purge active {table} record {record_id}.")
            conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._delete_push_failure(conn, table, record_id)
            logger.debug(f"Purged {table} record {record_id}.")
            return True

    # --- Sync Support: Push Failure Bookkeeping ---
    def _delete_push_failure(self, conn: sqlite3.Connection, table: str, record_id: str):
        conn.execute("DELETE FROM push_failures WHERE table_name = ? AND record_id = ?", (table, record_id))

    @staticmethod
    def _row_to_push_failure(row: sqlite3.Row) -> PushFailure:
        return PushFailure(
            table_name=row['table_name'],
            record_id=row['record_id'],
            attempts=row['attempts'],
            failure_kind=row['failure_kind'],
            last_error=row['last_error'],
            last_attempt_at=from_db_timestamp(row['last_attempt_at']),
            next_attempt_at=from_db_timestamp(row['next_attempt_at']),
            given_up=bool(row['given_up']),
        )

    def get_push_failure(self, table: str, record_id: str) -> Optional[PushFailure]:
        row = self.execute_query("SELECT * FROM push_failures WHERE table_name = ? AND record_id = ?",
                                 (table, record_id)).fetchone()
        return self._row_to_push_failure(row) if row else None

    def list_push_failures(self, given_up_only: bool = False) -> List[PushFailure]:
        query = "SELECT * FROM push_failures"
        if given_up_only:
            query += " WHERE given_up = 1"
        query += " ORDER BY table_name, record_id"
        return [self._row_to_push_failure(row) for row in self.execute_query(query).fetchall()]

    def record_push_failure(self, table: str, record_id: str, failure_kind: str, error: str,
                            next_attempt_at_fn: Callable[[int], Optional[datetime]],
                            give_up_fn: Callable[[int], bool]) -> PushFailure:
        """
        Increments the failure counter of a record and stores the retry schedule.

        `next_attempt_at_fn(attempts)` and `give_up_fn(attempts)` receive the new
        attempt count, so the backoff policy stays with the caller.
        """
        self._model(table)
        now = self._now()
        with self.transaction() as conn:
            row = conn.execute("SELECT attempts, failure_kind FROM push_failures WHERE table_name = ? AND record_id = ?",
                               (table, record_id)).fetchone()
            # The counter restarts when the kind of failure changes.
            attempts = 1 if not row or row['failure_kind'] != failure_kind else row['attempts'] + 1
            next_attempt_at = next_attempt_at_fn(attempts)
            given_up = give_up_fn(attempts)
            conn.execute(
                """
                INSERT INTO push_failures (table_name, record_id, attempts, failure_kind, last_error,
                                           last_attempt_at, next_attempt_at, given_up)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(table_name, record_id) DO UPDATE SET
                    attempts = excluded.attempts,
                    failure_kind = excluded.failure_kind,
                    last_error = excluded.last_error,
                    last_attempt_at = excluded.last_attempt_at,
                    next_attempt_at = excluded.next_attempt_at,
                    given_up = excluded.given_up
                """,
                (table, record_id, attempts, failure_kind, error[:1000] if error else None,
                 to_db_timestamp(now), to_db_timestamp(next_attempt_at), 1 if given_up else 0))
        return PushFailure(table, record_id, attempts, failure_kind, error, now, next_attempt_at, given_up)

    def get_blocked_record_ids(self, table: str, now: Optional[datetime] = None) -> Set[str]:
        """Ids of records that are given up or still inside their backoff window."""
        now_str = to_db_timestamp(now or self._now())
        rows = self.execute_query(
            "SELECT record_id FROM push_failures WHERE table_name = ? "
            "AND (given_up = 1 OR (next_attempt_at IS NOT NULL AND next_attempt_at > ?))",
            (table, now_str)).fetchall()
        return {row['record_id'] for row in rows}

    def reset_push_failures(self, table: Optional[str] = None) -> int:
        with self.transaction() as conn:
            if table:
                cursor = conn.execute("DELETE FROM push_failures WHERE table_name = ?", (table,))
            else:
                cursor = conn.execute("DELETE FROM push_failures")
            return cursor.rowcount


# --- Transaction Context Manager Class (Helper for `with db.transaction():`) ---
class TransactionContextManager:
    def __init__(self, db_instance: OracleCardsDB):
        self.db = db_instance
        self.conn: Optional[sqlite3.Connection] = None
        self.is_outermost_transaction = False

    def __enter__(self) -> sqlite3.Connection:
        self.conn = self.db.get_connection()
        if not self.conn.in_transaction:
            self.db._write_lock.acquire()
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                self.db._write_lock.release()
                raise OracleDBError(f"Could not begin transaction: {e}") from e
            self.is_outermost_transaction = True
            logger.debug(f"Transaction started (outermost) on thread {threading.get_ident()}.")
        return self.conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self.is_outermost_transaction:
            return False
        try:
            if exc_type:
                logger.debug(f"Transaction failed, rolling back on thread {threading.get_ident()}: "
                             f"{exc_type.__name__} - {exc_val}")
                try:
                    self.conn.rollback()
                except sqlite3.Error as rb_err:
                    logger.critical(f"Rollback FAILED on thread {threading.get_ident()}: {rb_err}", exc_info=True)
                if isinstance(exc_val, sqlite3.Error):
                    raise OracleDBError(f"Transaction failed: {exc_val}") from exc_val
            else:
                try:
                    self.conn.commit()
                except sqlite3.Error as commit_err:
                    logger.error(f"Commit FAILED on thread {threading.get_ident()}, attempting rollback: {commit_err}",
                                 exc_info=True)
                    try:
                        self.conn.rollback()
                    except sqlite3.Error as rb_err:
                        logger.critical(f"Rollback after failed commit also FAILED: {rb_err}", exc_info=True)
                    raise OracleDBError(f"Commit failed: {commit_err}") from commit_err
        finally:
            self.db._write_lock.release()
        return False

#
# End of Oracle_DB.py
#######################################################################################################################
