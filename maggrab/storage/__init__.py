"""
Maggrab Storage Layer
=====================

Crash-safe JSON persistence for the grabber daemon.

This module provides:
- FileStore: atomic writes, rotating backups, corruption recovery
- GrabberRepository: typed collection operations with retention limits
- Pydantic models for every persisted document
"""

from .file_store import Collection, FileStore
from .repository import GrabberRepository

__all__ = [
    "Collection",
    "FileStore",
    "GrabberRepository",
]
