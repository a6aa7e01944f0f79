"""
Application Wiring
==================

Builds the store, downloader connection, pipeline and daemon from settings.
"""

from dataclasses import dataclass
from typing import Optional

from .config.settings import MaggrabSettings, get_settings
from .downloader.client import DownloaderClient
from .downloader.connection import ConnectionManager
from .events import EventBroadcaster
from .processing.pipeline import IngestionPipeline
from .scheduler.daemon import GrabberDaemon
from .storage.file_store import FileStore
from .storage.repository import GrabberRepository
from .utils.timeutils import Clock, now_ms


@dataclass
class Application:
    """Wired components sharing one store and one downloader session."""
    settings: MaggrabSettings
    repository: GrabberRepository
    connection: ConnectionManager
    pipeline: IngestionPipeline
    daemon: GrabberDaemon
    events: EventBroadcaster


def build_application(
    settings: Optional[MaggrabSettings] = None,
    client: Optional[DownloaderClient] = None,
    clock: Clock = now_ms,
) -> Application:
    """Create every component from settings.

    Args:
        settings: Application settings (global settings when omitted)
        client: Downloader client override (MyJDownloader when omitted)
        clock: Epoch-millisecond clock shared by all components
    """
    settings = settings or get_settings()
    events = EventBroadcaster()

    store = FileStore(
        settings.storage.data_dir,
        backup_count=settings.storage.backup_count,
        clock=clock,
    )
    repository = GrabberRepository(store, settings.storage, clock=clock)

    connection = ConnectionManager(
        repository,
        client=client,
        publisher=events,
        settings=settings.downloader,
        clock=clock,
    )
    pipeline = IngestionPipeline(
        repository,
        connection,
        publisher=events,
        settings=settings.processing,
        clock=clock,
    )
    daemon = GrabberDaemon(
        repository,
        pipeline,
        connection,
        publisher=events,
        settings=settings.scheduler,
        clock=clock,
    )

    return Application(
        settings=settings,
        repository=repository,
        connection=connection,
        pipeline=pipeline,
        daemon=daemon,
        events=events,
    )
