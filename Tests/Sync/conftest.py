# Tests/Sync/conftest.py
#
# Simulated devices: each has its own local store, watermark file and engine,
# all talking to one shared in-memory backend.
#
# Imports
from dataclasses import dataclass
#
# Third-Party Imports
import pytest
#
# Local Imports
from oracle_cards.config import SyncSettings
from oracle_cards.DB.Oracle_DB import OracleCardsDB
from oracle_cards.Sync.sync_engine import DeltaSyncEngine
from oracle_cards.Sync.sync_state import SyncStateStore
from oracle_cards.remote_api.memory_backend import InMemoryBackend, InMemoryRemoteGateway
#
#######################################################################################################################
#
# Functions:

TEST_SYNC_SETTINGS = SyncSettings(
    interval_seconds=60.0,
    debounce_seconds=0.01,
    push_batch_size=50,
    max_rejections=3,
    retry_backoff_base_seconds=10.0,
    retry_backoff_max_seconds=60.0,
    surface_after_failures=2,
    purge_deleted_after_push=True,
    watermark_overlap_seconds=5.0,
)


@dataclass
class Device:
    """One signed-in app instance."""
    db: OracleCardsDB
    gateway: InMemoryRemoteGateway
    state_store: SyncStateStore
    engine: DeltaSyncEngine


@pytest.fixture
def backend(clock):
    """Shared remote store, on the same controllable clock as the devices."""
    return InMemoryBackend(clock=clock)


@pytest.fixture
def sync_settings():
    return TEST_SYNC_SETTINGS


@pytest.fixture
def make_device(tmp_path, clock, backend, sync_settings):
    """Factory for simulated devices; every store it opens is closed at teardown."""
    devices = []

    def _make(user_id: str = "user-alice", delta_enabled: bool = True, gateway_cls=InMemoryRemoteGateway,
              settings: SyncSettings = None) -> Device:
        name = f"{user_id}-{len(devices)}"
        db = OracleCardsDB(tmp_path / f"{name}.db", user_id, clock=clock)
        gateway = gateway_cls(backend, user_id, delta_enabled=delta_enabled)
        state_store = SyncStateStore(tmp_path / f"{name}-sync_state.json")
        engine = DeltaSyncEngine(db, gateway, state_store, settings or sync_settings, clock=clock)
        device = Device(db, gateway, state_store, engine)
        devices.append(device)
        return device

    yield _make
    for device in devices:
        device.db.close_connection()


@pytest.fixture
def device(make_device):
    return make_device()

#
# End of conftest.py
#######################################################################################################################
