# test_sync_state.py
#
# Imports
import json
from datetime import datetime, timedelta, timezone
#
# Third-Party Imports
import pytest
#
# Local Imports
from oracle_cards.Sync.sync_state import SyncStateStore
#
#######################################################################################################################
#
# Functions:

@pytest.fixture
def temp_state_file(tmp_path):
    """Provides a path to a temporary state file."""
    return tmp_path / "sync_state.json"


class TestSyncStateStore:
    def test_missing_file_means_never_pulled(self, temp_state_file):
        store = SyncStateStore(temp_state_file)
        assert store.last_pull_at is None
        assert not temp_state_file.exists()

    def test_advance_persists_watermark(self, temp_state_file):
        watermark = datetime(2025, 3, 1, 8, 30, tzinfo=timezone.utc)
        SyncStateStore(temp_state_file).advance(watermark)

        with open(temp_state_file, 'r') as f:
            assert json.load(f) == {'last_pull_at': watermark.isoformat()}
        assert SyncStateStore(temp_state_file).last_pull_at == watermark

    def test_watermark_never_moves_backwards(self, temp_state_file):
        store = SyncStateStore(temp_state_file)
        watermark = datetime(2025, 3, 1, 8, 30, tzinfo=timezone.utc)
        store.advance(watermark)
        store.advance(watermark - timedelta(minutes=5))
        assert store.last_pull_at == watermark
        assert SyncStateStore(temp_state_file).last_pull_at == watermark

    def test_naive_watermark_is_treated_as_utc(self, temp_state_file):
        store = SyncStateStore(temp_state_file)
        store.advance(datetime(2025, 3, 1, 8, 30))
        assert store.last_pull_at.tzinfo is not None
        assert store.last_pull_at.utcoffset() == timedelta(0)

    def test_corrupt_file_starts_from_scratch(self, temp_state_file):
        temp_state_file.write_text("{not json", encoding='utf-8')
        assert SyncStateStore(temp_state_file).last_pull_at is None

    def test_reset_forgets_watermark(self, temp_state_file):
        store = SyncStateStore(temp_state_file)
        store.advance(datetime(2025, 3, 1, tzinfo=timezone.utc))
        store.reset()
        assert store.last_pull_at is None
        assert SyncStateStore(temp_state_file).last_pull_at is None

#
# End of test_sync_state.py
#######################################################################################################################
