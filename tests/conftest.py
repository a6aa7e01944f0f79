"""
PyTest Configuration and Fixtures
=================================

Shared fixtures and configuration for Maggrab tests.

Every test gets its own temporary data directory and a settable clock, so
schedule and retention behaviour can be checked without waiting.
"""

import pytest
import sys
from pathlib import Path

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

from maggrab.config.settings import (
    DownloaderCredentials,
    DownloaderSettings,
    ProcessingSettings,
    SchedulerSettings,
    StorageSettings,
)
from maggrab.storage.file_store import FileStore
from maggrab.storage.repository import GrabberRepository


START_MS = 1_700_000_000_000


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingPublisher:
    """Event publisher that keeps everything it receives."""

    def __init__(self):
        self.events = []

    def publish(self, event) -> None:
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if e.type == event_type]


# ============================================================================
# Environment
# ============================================================================


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep real credentials and MAGGRAB_* overrides out of tests."""
    for name in ("MYJD_EMAIL", "MYJD_PASSWORD", "MYJD_DEVICE"):
        monkeypatch.delenv(name, raising=False)


# ============================================================================
# Storage Fixtures
# ============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def storage_settings(data_dir):
    return StorageSettings(data_dir=str(data_dir))


@pytest.fixture
def store(data_dir, clock):
    return FileStore(data_dir, backup_count=5, clock=clock)


@pytest.fixture
def repository(store, storage_settings, clock):
    return GrabberRepository(store, storage_settings, clock=clock)


# ============================================================================
# Component Settings
# ============================================================================


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def processing_settings():
    """Processing settings with retries that do not sleep."""
    return ProcessingSettings(retry_attempts=3, retry_base_delay=0.0, retry_max_delay=0.0)


@pytest.fixture
def scheduler_settings():
    """Long tick and heartbeat periods; tests drive ticks by hand."""
    return SchedulerSettings(
        tick_seconds=3600,
        heartbeat_seconds=3600,
        health_threshold_seconds=7200,
        max_concurrent_runs=3,
    )


@pytest.fixture
def downloader_settings():
    return DownloaderSettings(failure_backoff_seconds=30, max_backoff_seconds=900)


@pytest.fixture
def credentials():
    return DownloaderCredentials(email="alice@example.com", password="secret", device="")


@pytest.fixture
def no_credentials():
    return DownloaderCredentials(email="", password="", device="")
