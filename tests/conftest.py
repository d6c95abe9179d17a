# Shared fixtures for the task board tests

import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from clawcontrol.board import (
    AgentRegistry,
    BoardManager,
    JsonFilePersistence,
    NotificationStore,
    PersistenceError,
    TaskStore,
    reset_board_manager,
)
from clawcontrol.config import Settings

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock the tests move forward by hand."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class MemoryPersistence:
    """Persistence port kept in a dict. Set fail=True to simulate a disk error."""

    def __init__(self, records=None):
        self.records = dict(records or {})
        self.fail = False
        self.saves = 0

    def load_all(self):
        return dict(self.records)

    def save_all(self, records):
        if self.fail:
            raise PersistenceError("disk full")
        self.records = dict(records)
        self.saves += 1


@pytest.fixture
def temp_store_path():
    """Create a temporary directory for test storage."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(temp_store_path):
    return Settings(
        data_dir=temp_store_path,
        notification_poll_interval=0.01,
        delivery_timeout=1.0,
        agent_token="secret",
        _env_file=None,
    )


@pytest.fixture
def task_store(clock):
    return TaskStore(MemoryPersistence(), clock=clock)


@pytest.fixture
def registry(task_store, clock):
    return AgentRegistry(MemoryPersistence(), task_store, clock=clock)


@pytest.fixture
def notification_store(clock):
    return NotificationStore(MemoryPersistence(), clock=clock)


@pytest.fixture
def manager(task_store, registry, notification_store, settings):
    """Manager over in-memory stores sharing one fake clock."""
    reset_board_manager()
    return BoardManager(task_store, registry, notification_store, settings=settings)


@pytest.fixture
def file_manager(settings, clock):
    """Manager backed by JSON files in a temp directory."""
    reset_board_manager()
    return BoardManager.from_settings(settings, clock=clock)


@pytest.fixture
def json_persistence(temp_store_path):
    return JsonFilePersistence(temp_store_path / "tasks.json")
