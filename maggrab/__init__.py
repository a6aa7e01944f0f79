"""
Maggrab - Feed Grabber Daemon
=============================

Polls syndication feeds, pulls download links out of linked articles and
forwards them to a MyJDownloader instance.

Main Components:
- Storage: crash-safe JSON collections with backups and retention limits
- Processing: feed fetching, link extraction and the per-feed pipeline
- Downloader: lazily connected MyJDownloader session with failure backoff
- Scheduler: per-feed ticks, restart recovery, heartbeat and maintenance
"""

__version__ = "0.1.0"
__author__ = "Maggrab Development Team"
__description__ = "Feed grabber daemon for MyJDownloader"

from .config.settings import get_settings
from .utils.logging import configure_application_logging, get_logger_for_component
from .utils.exceptions import MaggrabError

__all__ = [
    "get_settings",
    "configure_application_logging",
    "get_logger_for_component",
    "MaggrabError",
]
