# change_tracker.py
# Description: Derives the per-table dirty sets from the local store.
#
# Imports
from datetime import datetime
from typing import Dict, List, Optional
#
# Local Imports
from oracle_cards.Constants import SYNC_TABLES
from oracle_cards.DB.Oracle_DB import OracleCardsDB
from oracle_cards.DB.entities import SyncableRecord
#
#######################################################################################################################
#
# Functions:

class ChangeTracker:
    """
    Stateless view over the store: every call recomputes from the database, so
    nothing here can drift from the records themselves.
    """

    def __init__(self, db: OracleCardsDB):
        self.db = db

    def dirty_records(self, table: str) -> List[SyncableRecord]:
        """All dirty records of `table`, soft-deleted ones included."""
        return self.db.get_dirty_records(table)

    def pending_push(self, table: str, now: Optional[datetime] = None) -> List[SyncableRecord]:
        """Dirty records that are neither given up nor waiting out a backoff window."""
        blocked = self.db.get_blocked_record_ids(table, now)
        return [record for record in self.dirty_records(table) if record.id not in blocked]

    def dirty_counts(self) -> Dict[str, int]:
        return {table: self.db.count_dirty_records(table) for table in SYNC_TABLES}

    def has_pending_changes(self) -> bool:
        return any(self.dirty_counts().values())

#
# End of change_tracker.py
#######################################################################################################################
