"""
Crash-Safe JSON Collection Store
================================

One JSON document per collection under the data directory. Every write goes
through backup, temp-file, verify, rename; every read recovers from the
newest parsable backup when the live file is damaged.

Read-modify-write sequences are serialized per collection with an
``asyncio.Lock``; blocking file I/O runs in a worker thread so other feeds
keep making progress.
"""

import asyncio
import inspect
import itertools
import json
import os
import shutil
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..utils.exceptions import StorageError, ErrorCode
from ..utils.logging import get_logger_for_component
from ..utils.timeutils import Clock, now_ms
from . import migrations
from .models import AppSettings, Stats


class Collection(str, Enum):
    """Durable collections owned by the store."""
    FEEDS = "feeds"
    LOGS = "logs"
    STATS = "stats"
    SETTINGS = "settings"
    PROCESSED = "processed"
    EXTRACTED = "extracted"
    GRABBED = "grabbed"
    SCHEDULE = "schedule"

    @property
    def filename(self) -> str:
        return f"{self.value}.json"


_DEFAULTS: Dict[Collection, Callable[[], Any]] = {
    Collection.FEEDS: list,
    Collection.LOGS: list,
    Collection.STATS: lambda: Stats().model_dump(),
    Collection.SETTINGS: lambda: AppSettings().model_dump(),
    Collection.PROCESSED: list,
    Collection.EXTRACTED: list,
    Collection.GRABBED: list,
    Collection.SCHEDULE: list,
}


def default_value(collection: Collection) -> Any:
    """Fresh default document for a collection."""
    return _DEFAULTS[collection]()


Updater = Callable[[Any], Union[Any, Awaitable[Any]]]


class FileStore:
    """Atomic, self-healing JSON persistence for typed collections."""

    BACKUP_DIRNAME = "backups"

    def __init__(self, data_dir: Union[str, Path], backup_count: int = 5, clock: Clock = now_ms):
        """Initialize the store.

        Args:
            data_dir: Directory holding the collection files
            backup_count: Backups retained per collection
            clock: Epoch-millisecond clock used for migration timestamps
        """
        self.data_dir = Path(data_dir)
        self.backup_dir = self.data_dir / self.BACKUP_DIRNAME
        self.backup_count = backup_count
        self.clock = clock
        self.logger = get_logger_for_component("storage")

        self._locks: Dict[Collection, asyncio.Lock] = {}
        self._sequence = itertools.count()
        self._initialized = False

    # ------------------------------------------------------------------ setup

    async def initialize(self) -> None:
        """Create the data and backup directories.

        Raises:
            StorageError: If the directories cannot be created
        """
        await asyncio.to_thread(self._ensure_directories)

    def _ensure_directories(self) -> None:
        if self._initialized:
            return
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self.backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(
                f"Failed to create data directory {self.data_dir}: {e}",
                error_code=ErrorCode.STORAGE_DIRECTORY,
                user_message="Data directory could not be created",
            ) from e
        self._initialized = True

    def _lock(self, collection: Collection) -> asyncio.Lock:
        lock = self._locks.get(collection)
        if lock is None:
            lock = self._locks[collection] = asyncio.Lock()
        return lock

    def path_for(self, collection: Collection) -> Path:
        return self.data_dir / collection.filename

    # ------------------------------------------------------------- public API

    async def read(self, collection: Collection) -> Any:
        """Read a collection, falling back to backups and then its default."""
        async with self._lock(collection):
            return await asyncio.to_thread(self._load, collection)

    async def write(self, collection: Collection, value: Any) -> None:
        """Replace a collection's document atomically."""
        async with self._lock(collection):
            await asyncio.to_thread(self._commit, collection, value)

    async def with_lock(self, collection: Collection, fn: Updater) -> Any:
        """Run an exclusive read-modify-write on one collection.

        ``fn`` receives the current document and returns the replacement
        (sync or async). Returning ``None`` leaves the file untouched.

        Returns:
            The document as it stands after the update
        """
        async with self._lock(collection):
            current = await asyncio.to_thread(self._load, collection)
            updated = fn(current)
            if inspect.isawaitable(updated):
                updated = await updated
            if updated is None:
                return current
            await asyncio.to_thread(self._commit, collection, updated)
            return updated

    def list_backups(self, collection: Collection) -> List[Path]:
        """Backups for a collection, newest first."""
        if not self.backup_dir.exists():
            return []
        pattern = f"{collection.filename}.*.bak"
        return sorted(self.backup_dir.glob(pattern), key=lambda p: p.name, reverse=True)

    # --------------------------------------------------------------- reading

    def _load(self, collection: Collection) -> Any:
        path = self.path_for(collection)

        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return default_value(collection)
        except OSError as e:
            self.logger.error(f"Error reading {path}: {e}, using default")
            return default_value(collection)

        try:
            value = self._parse(collection, raw.decode("utf-8"))
        except ValueError as e:
            self.logger.error(
                f"Corrupted document in {path}: {e}",
                extra={"collection": collection.value, "preview": raw[:200]},
            )
            value = self._restore_from_backup(collection)
            if value is None:
                self.logger.error(f"No valid backup for {path}, using default value")
                return default_value(collection)
            self.logger.warning(f"Restored {path} from backup")

        value, migrated = self._decode(collection, value)
        if migrated:
            self.logger.info(f"Upgraded legacy format of {collection.value}")
            self._commit(collection, value)

        return value

    @staticmethod
    def _parse(collection: Collection, text: str) -> Any:
        if not text.strip():
            raise ValueError("empty document")

        value = json.loads(text)

        expected = type(default_value(collection))
        if not isinstance(value, expected):
            raise ValueError(
                f"expected {expected.__name__}, found {type(value).__name__}"
            )
        return value

    def _decode(self, collection: Collection, value: Any):
        if collection is Collection.PROCESSED:
            return migrations.upgrade_processed_urls(value, self.clock())
        if collection is Collection.SETTINGS:
            return migrations.strip_legacy_settings(value)
        return value, False

    def _restore_from_backup(self, collection: Collection) -> Optional[Any]:
        path = self.path_for(collection)

        for backup in self.list_backups(collection):
            try:
                value = self._parse(collection, backup.read_text(encoding="utf-8"))
                shutil.copyfile(backup, path)
                self.logger.info(f"Recovered {collection.value} from {backup.name}")
                return value
            except (OSError, ValueError) as e:
                self.logger.warning(f"Backup {backup.name} unusable: {e}")
                continue

        return None

    # --------------------------------------------------------------- writing

    def _commit(self, collection: Collection, value: Any) -> None:
        self._ensure_directories()
        path = self.path_for(collection)

        self._create_backup(collection)

        temp_path = path.with_name(f"{path.name}.tmp.{next(self._sequence)}")
        content = json.dumps(value, indent=2, ensure_ascii=False)

        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())

            # Verify the temp file before it becomes visible
            json.loads(temp_path.read_text(encoding="utf-8"))

            os.replace(temp_path, path)
        except (OSError, ValueError) as e:
            temp_path.unlink(missing_ok=True)
            self.logger.error(f"Failed to write {path}: {e}")
            raise StorageError(
                f"Failed to write {collection.value}: {e}",
                collection=collection.value,
                error_code=ErrorCode.STORAGE_WRITE,
            ) from e

    def _create_backup(self, collection: Collection) -> None:
        path = self.path_for(collection)
        if not path.exists():
            return

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        backup_path = self.backup_dir / f"{path.name}.{stamp}-{next(self._sequence):06d}.bak"

        try:
            shutil.copyfile(path, backup_path)
            for old in self.list_backups(collection)[self.backup_count:]:
                old.unlink(missing_ok=True)
        except OSError as e:
            self.logger.warning(f"Backup of {path.name} failed: {e}")
