"""
Grabber Repository
==================

Typed operations over the file store. Every mutation is a single locked
read-modify-write on one collection, so concurrent pipeline runs never lose
each other's updates.
"""

from typing import Any, List, Optional, Set

from ..config.settings import StorageSettings
from ..utils.logging import get_logger_for_component
from ..utils.timeutils import Clock, DAY_MS, now_ms
from .file_store import Collection, FileStore, default_value
from .models import (
    AppSettings,
    CleanupResult,
    ExtractedItem,
    Feed,
    GrabbedItem,
    LogEntry,
    LogLevel,
    LogSource,
    ProcessedUrl,
    ScheduleEntry,
    StatKey,
    Stats,
)


class GrabberRepository:
    """Repository for feeds, activity logs, stats and the dedup ledger."""

    def __init__(
        self,
        store: FileStore,
        settings: Optional[StorageSettings] = None,
        clock: Clock = now_ms,
    ):
        """Initialize repository.

        Args:
            store: Underlying file store
            settings: Retention limits (defaults used when omitted)
            clock: Epoch-millisecond clock for record timestamps
        """
        self.store = store
        self.settings = settings or StorageSettings()
        self.clock = clock
        self.logger = get_logger_for_component("repository")

    async def initialize(self) -> None:
        await self.store.initialize()

    # ================================================================ feeds

    async def get_feeds(self) -> List[Feed]:
        raw = await self.store.read(Collection.FEEDS)
        return [Feed.model_validate(f) for f in raw]

    async def get_feed(self, feed_id: str) -> Optional[Feed]:
        for feed in await self.get_feeds():
            if feed.id == feed_id:
                return feed
        return None

    async def create_feed(
        self,
        name: str,
        url: str,
        interval: Optional[int] = None,
        title_filter: Optional[str] = None,
    ) -> Feed:
        """Create a feed; the interval defaults to the stored check interval."""
        if interval is None:
            interval = (await self.get_settings()).check_interval

        feed = Feed(
            name=name,
            url=url,
            interval=interval,
            title_filter=title_filter or None,
        )

        def append(feeds: List[dict]) -> List[dict]:
            return feeds + [feed.model_dump(mode="json")]

        await self.store.with_lock(Collection.FEEDS, append)
        self.logger.info(f"Created feed {feed.name} ({feed.id})")
        return feed

    async def update_feed(self, feed_id: str, **updates: Any) -> Optional[Feed]:
        """Apply field updates to a feed.

        Returns:
            The updated feed, or None when it no longer exists
        """
        result: List[Feed] = []

        def apply(feeds: List[dict]) -> Optional[List[dict]]:
            for index, raw in enumerate(feeds):
                if raw.get("id") == feed_id:
                    updated = Feed.model_validate({**raw, **updates})
                    feeds[index] = updated.model_dump(mode="json")
                    result.append(updated)
                    return feeds
            return None

        await self.store.with_lock(Collection.FEEDS, apply)
        return result[0] if result else None

    async def add_found_count(self, feed_id: str, amount: int) -> Optional[Feed]:
        """Atomically add ``amount`` to a feed's ``total_found``."""
        result: List[Feed] = []

        def bump(feeds: List[dict]) -> Optional[List[dict]]:
            for index, raw in enumerate(feeds):
                if raw.get("id") == feed_id:
                    updated = Feed.model_validate(raw)
                    updated.total_found += amount
                    feeds[index] = updated.model_dump(mode="json")
                    result.append(updated)
                    return feeds
            return None

        await self.store.with_lock(Collection.FEEDS, bump)
        return result[0] if result else None

    async def delete_feed(self, feed_id: str) -> bool:
        """Delete a feed and cascade its schedule entry."""
        removed = []

        def drop(feeds: List[dict]) -> Optional[List[dict]]:
            remaining = [f for f in feeds if f.get("id") != feed_id]
            if len(remaining) == len(feeds):
                return None
            removed.append(feed_id)
            return remaining

        await self.store.with_lock(Collection.FEEDS, drop)
        if not removed:
            return False

        await self.remove_schedule_entry(feed_id)
        self.logger.info(f"Deleted feed {feed_id}")
        return True

    # ================================================================= logs

    async def get_logs(self, limit: int = 100) -> List[LogEntry]:
        raw = await self.store.read(Collection.LOGS)
        return [LogEntry.model_validate(e) for e in raw[:limit]]

    async def add_log(self, level: LogLevel, message: str, source: LogSource) -> LogEntry:
        """Prepend an activity log entry, keeping the newest ``log_limit``."""
        entry = LogEntry(level=level, message=message, source=source, timestamp=self.clock())
        limit = self.settings.log_limit

        def prepend(logs: List[dict]) -> List[dict]:
            return ([entry.model_dump(mode="json")] + logs)[:limit]

        await self.store.with_lock(Collection.LOGS, prepend)
        return entry

    # ================================================================ stats

    async def get_stats(self) -> Stats:
        return Stats.model_validate(await self.store.read(Collection.STATS))

    async def increment_stat(self, key: StatKey, amount: int = 1) -> Stats:
        """Atomically add ``amount`` to one counter."""
        field = StatKey(key).value

        def bump(stats: dict) -> dict:
            current = Stats.model_validate(stats).model_dump()
            current[field] += amount
            return current

        return Stats.model_validate(await self.store.with_lock(Collection.STATS, bump))

    # ============================================================= settings

    async def get_settings(self) -> AppSettings:
        return AppSettings.model_validate(await self.store.read(Collection.SETTINGS))

    async def update_settings(self, **updates: Any) -> AppSettings:
        def merge(stored: dict) -> dict:
            return AppSettings.model_validate({**stored, **updates}).model_dump()

        return AppSettings.model_validate(
            await self.store.with_lock(Collection.SETTINGS, merge)
        )

    # ======================================================= processed urls

    async def get_processed_urls(self) -> Set[str]:
        raw = await self.store.read(Collection.PROCESSED)
        return {entry["url"] for entry in raw}

    async def is_processed(self, url: str) -> bool:
        return url in await self.get_processed_urls()

    async def mark_processed(self, url: str) -> None:
        """Record a url in the dedup ledger; a known url is left untouched."""
        limit = self.settings.processed_limit
        timestamp = self.clock()

        def add(processed: List[dict]) -> Optional[List[dict]]:
            if any(entry.get("url") == url for entry in processed):
                return None
            processed.append(ProcessedUrl(url=url, timestamp=timestamp).model_dump())
            return processed[-limit:]

        await self.store.with_lock(Collection.PROCESSED, add)

    # ===================================================== extracted items

    async def get_extracted_items(self, limit: int = 500) -> List[ExtractedItem]:
        raw = await self.store.read(Collection.EXTRACTED)
        return [ExtractedItem.model_validate(i) for i in raw[:limit]]

    async def add_extracted_item(
        self,
        feed_id: str,
        article_title: str,
        article_url: str,
        download_url: str,
        host: str,
    ) -> ExtractedItem:
        item = ExtractedItem(
            feed_id=feed_id,
            article_title=article_title,
            article_url=article_url,
            download_url=download_url,
            host=host,
            timestamp=self.clock(),
        )
        limit = self.settings.item_limit

        def prepend(items: List[dict]) -> List[dict]:
            return ([item.model_dump(mode="json")] + items)[:limit]

        await self.store.with_lock(Collection.EXTRACTED, prepend)
        return item

    async def mark_extracted_item_submitted(self, item_id: str) -> bool:
        """Flip ``submitted`` to True. The flag never goes back to False."""
        found = []

        def flag(items: List[dict]) -> Optional[List[dict]]:
            for raw in items:
                if raw.get("id") == item_id:
                    found.append(item_id)
                    if raw.get("submitted"):
                        return None
                    raw["submitted"] = True
                    return items
            return None

        await self.store.with_lock(Collection.EXTRACTED, flag)
        return bool(found)

    # ======================================================= grabbed items

    async def get_grabbed_items(self, limit: int = 500) -> List[GrabbedItem]:
        raw = await self.store.read(Collection.GRABBED)
        return [GrabbedItem.model_validate(i) for i in raw[:limit]]

    async def add_grabbed_item(
        self,
        feed_id: str,
        feed_name: str,
        title: str,
        link: str,
        pub_date: Optional[str] = None,
        has_download: bool = False,
    ) -> GrabbedItem:
        item = GrabbedItem(
            feed_id=feed_id,
            feed_name=feed_name,
            title=title,
            link=link,
            pub_date=pub_date,
            has_download=has_download,
            timestamp=self.clock(),
        )
        limit = self.settings.item_limit

        def prepend(items: List[dict]) -> List[dict]:
            return ([item.model_dump(mode="json")] + items)[:limit]

        await self.store.with_lock(Collection.GRABBED, prepend)
        return item

    # ============================================================ schedule

    async def get_schedule(self) -> List[ScheduleEntry]:
        raw = await self.store.read(Collection.SCHEDULE)
        return [ScheduleEntry.model_validate(e) for e in raw]

    async def get_schedule_entry(self, feed_id: str) -> Optional[ScheduleEntry]:
        for entry in await self.get_schedule():
            if entry.feed_id == feed_id:
                return entry
        return None

    async def set_schedule_entry(self, entry: ScheduleEntry) -> None:
        """Insert or replace the entry for ``entry.feed_id``."""
        def upsert(schedule: List[dict]) -> List[dict]:
            others = [e for e in schedule if e.get("feed_id") != entry.feed_id]
            return others + [entry.model_dump()]

        await self.store.with_lock(Collection.SCHEDULE, upsert)

    async def remove_schedule_entry(self, feed_id: str) -> bool:
        removed = []

        def drop(schedule: List[dict]) -> Optional[List[dict]]:
            remaining = [e for e in schedule if e.get("feed_id") != feed_id]
            if len(remaining) == len(schedule):
                return None
            removed.append(feed_id)
            return remaining

        await self.store.with_lock(Collection.SCHEDULE, drop)
        return bool(removed)

    # ==================================================== data management

    async def clear_entries(self) -> None:
        """Reset activity data while keeping feeds, settings and schedule."""
        for collection in (
            Collection.LOGS,
            Collection.STATS,
            Collection.PROCESSED,
            Collection.EXTRACTED,
            Collection.GRABBED,
        ):
            await self.store.write(collection, default_value(collection))
        self.logger.info("Cleared logs, stats, processed urls, extracted and grabbed items")

    async def reset_all(self) -> None:
        """Wipe every collection back to its default."""
        for collection in Collection:
            await self.store.write(collection, default_value(collection))
        self.logger.warning("All collections reset to defaults")

    async def cleanup_old_data(self, max_age_days: Optional[int] = None) -> CleanupResult:
        """Remove entries strictly older than the age cutoff.

        Args:
            max_age_days: Age cutoff in days (defaults to ``retention_days``)

        Returns:
            Counts of removed entries per collection
        """
        days = max_age_days if max_age_days is not None else self.settings.retention_days
        cutoff = self.clock() - days * DAY_MS
        result = CleanupResult()

        for collection, field in (
            (Collection.LOGS, "logs"),
            (Collection.EXTRACTED, "extracted"),
            (Collection.GRABBED, "grabbed"),
            (Collection.PROCESSED, "processed"),
        ):
            removed = []

            def trim(entries: List[dict]) -> Optional[List[dict]]:
                fresh = [e for e in entries if e.get("timestamp", 0) >= cutoff]
                removed.append(len(entries) - len(fresh))
                return fresh if len(fresh) != len(entries) else None

            await self.store.with_lock(collection, trim)
            setattr(result, field, removed[0])

        if result.total:
            self.logger.info(
                f"Cleanup removed {result.logs} logs, {result.extracted} extracted, "
                f"{result.grabbed} grabbed, {result.processed} processed urls"
            )
        return result
