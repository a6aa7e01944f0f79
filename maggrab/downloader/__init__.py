"""
Maggrab Downloader Integration
==============================

Session management and link submission for the MyJDownloader service.
"""

from .client import DeviceInfo, DownloaderClient, MyJDownloaderClient
from .connection import ConnectionManager, ConnectionState

__all__ = [
    "DeviceInfo",
    "DownloaderClient",
    "MyJDownloaderClient",
    "ConnectionManager",
    "ConnectionState",
]
