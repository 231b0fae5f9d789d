"""
Pytest configuration and shared fixtures for todo-sync tests.
"""

import pytest
from pathlib import Path
from typing import AsyncGenerator

# Add src to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from todo_sync.utils.config import SyncConfig
from todo_sync.storage.database import Database
from todo_sync.sync.event_log import EventLog
from todo_sync.sync.presence import PresenceTracker
from todo_sync.sync.broadcaster import Broadcaster
from todo_sync.sync.reconciler import Reconciler
from todo_sync.managers.sync import SyncCore
from tests.fixtures.sync_fixtures import RecordingTransport


@pytest.fixture
async def test_db(tmp_path: Path) -> AsyncGenerator[Database, None]:
    """Create a test database."""
    db = Database(tmp_path / "test.db")
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def test_config(tmp_path: Path) -> SyncConfig:
    """Create test configuration."""
    return SyncConfig(
        database={"path": tmp_path / "core.db"},
        logging={"level": "DEBUG", "format": "console"},
        event_log={"page_size": 3},
    )


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def event_log(test_db: Database) -> EventLog:
    return EventLog(test_db, page_size=3)


@pytest.fixture
def presence(test_db: Database) -> PresenceTracker:
    return PresenceTracker(test_db, heartbeat_timeout=60)


@pytest.fixture
def broadcaster(event_log, presence, transport) -> Broadcaster:
    return Broadcaster(event_log, presence, transport, on_drop=transport.disconnect)


@pytest.fixture
def reconciler(event_log, presence, transport) -> Reconciler:
    return Reconciler(event_log, presence, transport, max_backlog=10)


@pytest.fixture
async def core(test_config: SyncConfig, transport: RecordingTransport) -> AsyncGenerator[SyncCore, None]:
    """Create an initialized sync core on a temp database."""
    sync_core = SyncCore(test_config, transport)
    await sync_core.initialize()
    yield sync_core
    await sync_core.stop()
