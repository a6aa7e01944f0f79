"""
Ingestion Pipeline
==================

One run of one feed: fetch the feed, drop items already processed or
filtered out by title, then for a bounded number of new items fetch the
article page, extract download links, record the attempt and hand the
preferred link to the downloader connection.

Every attempted item is marked processed, successful or not, so a page that
keeps failing cannot block the feed forever.
"""

from dataclasses import dataclass
from typing import List, Optional

from ..config.settings import ProcessingSettings
from ..downloader.connection import ConnectionManager
from ..events import DaemonEvent, EventPublisher, EventType, NullPublisher
from ..storage.models import Feed, FeedStatus, LogLevel, LogSource, StatKey, Stats
from ..storage.repository import GrabberRepository
from ..utils.exceptions import MaggrabError, PageFetchError
from ..utils.logging import PerformanceLogger, get_logger_for_component
from ..utils.timeutils import Clock, now_ms
from .feed_fetcher import FeedFetcher, FeedItem
from .link_extractor import DownloadLink, LinkExtractor


@dataclass
class RunResult:
    """Outcome counters of a single pipeline run."""
    feed_id: str
    status: FeedStatus = FeedStatus.IDLE
    items_total: int = 0
    already_processed: int = 0
    filtered: int = 0
    new_items: int = 0
    processed: int = 0
    links_extracted: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status is not FeedStatus.ERROR


class IngestionPipeline:
    """Runs the fetch, dedupe, extract and submit sequence for a feed."""

    def __init__(
        self,
        repository: GrabberRepository,
        connection: ConnectionManager,
        publisher: Optional[EventPublisher] = None,
        fetcher: Optional[FeedFetcher] = None,
        extractor: Optional[LinkExtractor] = None,
        settings: Optional[ProcessingSettings] = None,
        clock: Clock = now_ms,
    ):
        """Initialize pipeline.

        Args:
            repository: Store operations
            connection: Downloader connection used for submissions
            publisher: Live-update publisher
            fetcher: Feed and page fetcher (built from settings when omitted)
            extractor: Link extractor (built from settings when omitted)
            settings: Processing settings
            clock: Epoch-millisecond clock
        """
        self.repository = repository
        self.connection = connection
        self.publisher = publisher or NullPublisher()
        self.settings = settings or ProcessingSettings()
        self.fetcher = fetcher or FeedFetcher(self.settings)
        self.extractor = extractor or LinkExtractor(
            file_hosts=self.settings.file_hosting_domains,
            preferred_hosts=self.settings.preferred_hosts,
            redirect_pattern=self.settings.redirect_pattern,
        )
        self.clock = clock
        self.logger = get_logger_for_component("pipeline")

    async def run(self, feed_id: str) -> Optional[RunResult]:
        """Run the pipeline for one feed.

        Args:
            feed_id: Feed to process

        Returns:
            Run counters, or None when the feed does not exist
        """
        feed = await self.repository.get_feed(feed_id)
        if feed is None:
            self.logger.warning(f"Feed {feed_id} not found, skipping run")
            return None

        logger = get_logger_for_component("pipeline", feed_id=feed.id, feed_name=feed.name)
        result = RunResult(feed_id=feed.id)

        await self.repository.update_feed(
            feed.id, status=FeedStatus.RUNNING, last_checked=self.clock()
        )
        self._publish(EventType.FEED_STATUS, {"feed_id": feed.id, "status": FeedStatus.RUNNING.value})
        await self._log(LogLevel.INFO, f"Starting grab job for feed: {feed.name}")

        try:
            with PerformanceLogger(logger, "grab run") as perf:
                await self._process_feed(feed, result, logger)
                perf.add_context(
                    new_items=result.new_items,
                    processed=result.processed,
                    links_extracted=result.links_extracted,
                )
            result.status = FeedStatus.IDLE

        except Exception as e:
            result.status = FeedStatus.ERROR
            # MaggrabError.__str__ carries the error code prefix
            result.error = e.args[0] if isinstance(e, MaggrabError) and e.args else str(e)
            logger.error(f"Run failed for {feed.name}: {e}", exc_info=not isinstance(e, MaggrabError))
            await self._log(LogLevel.ERROR, f"Error grabbing {feed.name}: {result.error}")

        await self.repository.update_feed(feed.id, status=result.status)
        self._publish(EventType.FEED_STATUS, {"feed_id": feed.id, "status": result.status.value})
        return result

    async def _process_feed(self, feed: Feed, result: RunResult, logger) -> None:
        parsed = await self.fetcher.fetch_feed(feed.url)
        result.items_total = len(parsed.items)

        if not parsed.items:
            await self._log(LogLevel.INFO, f"No items found in {feed.name}")
            return

        processed = await self.repository.get_processed_urls()
        unprocessed = self._unique_unprocessed(parsed.items, processed)
        result.already_processed = len(parsed.items) - len(unprocessed)

        new_items = unprocessed
        if feed.title_filter:
            needle = feed.title_filter.lower()
            new_items = [i for i in unprocessed if needle in (i.title or "").lower()]
        result.filtered = len(unprocessed) - len(new_items)
        result.new_items = len(new_items)

        if not new_items:
            await self._log(
                LogLevel.INFO,
                f"No new items in {feed.name} ({result.already_processed} already processed, "
                f"{result.filtered} filtered out)",
            )
            return

        await self._log(
            LogLevel.SUCCESS,
            f"Found {len(new_items)} new items in {feed.name} "
            f"({result.already_processed} already processed, {result.filtered} filtered out)",
        )

        stats = await self.repository.increment_stat(StatKey.TOTAL_SCRAPED, len(new_items))
        await self.repository.add_found_count(feed.id, len(new_items))
        self._publish_stats(stats)

        batch = new_items[: self.settings.max_items_per_run]
        if len(new_items) > len(batch):
            logger.info(f"Processing {len(batch)} of {len(new_items)} new items this run")

        for item in batch:
            await self._process_item(feed, item, result, logger)

    @staticmethod
    def _unique_unprocessed(items: List[FeedItem], processed: set) -> List[FeedItem]:
        """Items with a link not yet processed, first occurrence only."""
        seen = set()
        unique = []
        for item in items:
            if not item.link or item.link in processed or item.link in seen:
                continue
            seen.add(item.link)
            unique.append(item)
        return unique

    async def _process_item(self, feed: Feed, item: FeedItem, result: RunResult, logger) -> None:
        title = item.title or item.link
        try:
            links = await self._find_download_links(item.link, logger)

            grabbed = await self.repository.add_grabbed_item(
                feed_id=feed.id,
                feed_name=feed.name,
                title=title,
                link=item.link,
                pub_date=item.pub_date,
                has_download=bool(links),
            )
            self._publish(EventType.GRABBED, grabbed.model_dump(mode="json"))

            if links:
                await self._handle_links(feed, item, title, links, result)

        except Exception as e:
            logger.warning(f"Failed to process item {item.link}: {e}")
            await self._log(LogLevel.WARN, f"Failed to process item: {title} ({e})")

        finally:
            await self.repository.mark_processed(item.link)
            result.processed += 1

    async def _find_download_links(self, page_url: str, logger) -> List[DownloadLink]:
        try:
            markup = await self.fetcher.fetch_page(page_url)
        except PageFetchError as e:
            logger.warning(f"Could not fetch article page {page_url}: {e}")
            return []

        try:
            return self.extractor.extract(markup, page_url)
        except Exception as e:
            logger.warning(f"Could not extract links from {page_url}: {e}")
            return []

    async def _handle_links(
        self,
        feed: Feed,
        item: FeedItem,
        title: str,
        links: List[DownloadLink],
        result: RunResult,
    ) -> None:
        preferred = self.extractor.choose_preferred(links)

        await self._log(
            LogLevel.INFO,
            f"Extracted {len(links)} link(s) from: {title} - using {preferred.host}",
        )

        extracted = await self.repository.add_extracted_item(
            feed_id=feed.id,
            article_title=title,
            article_url=item.link,
            download_url=preferred.url,
            host=preferred.host,
        )
        self._publish(EventType.EXTRACTED, extracted.model_dump(mode="json"))

        stats = await self.repository.increment_stat(StatKey.LINKS_FOUND)
        self._publish_stats(stats)
        result.links_extracted += 1

        await self.connection.submit(preferred.url, title, extracted.id)

    async def _log(self, level: LogLevel, message: str) -> None:
        await self.repository.add_log(level, message, LogSource.GRABBER)

    def _publish_stats(self, stats: Stats) -> None:
        self._publish(EventType.STATS, stats.model_dump())

    def _publish(self, event_type: EventType, data: dict) -> None:
        self.publisher.publish(DaemonEvent(type=event_type, data=data, timestamp=self.clock()))
