"""
Feed and Page Fetcher
=====================

aiohttp-based fetching of feed documents and article pages with status and
timeout classification. Transient failures (timeouts, connection errors,
429 and 5xx responses) are retried with exponential backoff; a document that
is not a feed raises ``FeedFormatError`` immediately.
"""

import asyncio
import ssl
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import aiohttp
import certifi
import feedparser

from ..config.settings import ProcessingSettings
from ..recovery.retry_logic import RetryConfig, RetryManager
from ..utils.exceptions import (
    ErrorCode,
    FeedFetchError,
    FeedFormatError,
    MaggrabError,
    PageFetchError,
)
from ..utils.logging import get_logger_for_component


FEED_HEADERS = {
    "User-Agent": "Maggrab/0.1 (+feed grabber daemon)",
    "Accept": "application/rss+xml, application/atom+xml, application/xml, text/xml, */*",
    "Accept-Encoding": "gzip, deflate",
}

PAGE_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,*/*;q=0.8",
}

HTML_FEED_MESSAGE = (
    "Invalid RSS feed URL - this appears to be an HTML page, not an RSS feed. "
    "Try adding /rss.xml to the URL."
)


@dataclass
class FeedItem:
    """One entry of a syndication feed."""

    title: Optional[str]
    link: Optional[str]
    pub_date: Optional[str] = None


@dataclass
class ParsedFeed:
    """Parsed feed document."""

    url: str
    title: Optional[str] = None
    items: List[FeedItem] = field(default_factory=list)


def _looks_like_html(content: bytes, content_type: str) -> bool:
    if "html" in content_type.lower() and "xml" not in content_type.lower():
        return True
    head = content[:1024].lstrip().lower()
    return head.startswith(b"<!doctype html") or b"<html" in head


class FeedFetcher:
    """Fetches feed documents and article pages with bounded retries."""

    def __init__(
        self,
        settings: Optional[ProcessingSettings] = None,
        retry_manager: Optional[RetryManager] = None,
    ):
        """Initialize fetcher.

        Args:
            settings: Timeouts and retry policy (defaults used when omitted)
            retry_manager: Retry manager (built from settings when omitted)
        """
        self.settings = settings or ProcessingSettings()
        self.retry_config = RetryConfig(
            max_attempts=self.settings.retry_attempts,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
            jitter=self.settings.retry_jitter,
        )
        self.retry_manager = retry_manager or RetryManager(self.retry_config)
        self.logger = get_logger_for_component("feed_fetcher")

        self.ssl_context = ssl.create_default_context(cafile=certifi.where())

    @asynccontextmanager
    async def get_session(self, timeout: int, headers: Dict[str, str]):
        """Get configured aiohttp session."""
        connector = aiohttp.TCPConnector(
            ssl=self.ssl_context,
            limit_per_host=5,
            enable_cleanup_closed=True,
        )

        async with aiohttp.ClientSession(
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=timeout),
            headers=headers,
        ) as session:
            yield session

    # ---------------------------------------------------------------- feeds

    async def fetch_feed(self, feed_url: str) -> ParsedFeed:
        """Fetch and parse a feed, retrying transient failures.

        Raises:
            FeedFormatError: The document is not a feed (never retried)
            FeedFetchError: Network or HTTP failure after all attempts
        """
        return await self.retry_manager.retry_async(
            self._fetch_feed_once,
            feed_url,
            config=self.retry_config,
            operation=f"fetch_feed({feed_url})",
        )

    async def _fetch_feed_once(self, feed_url: str) -> ParsedFeed:
        self.logger.debug(f"Fetching feed: {feed_url}")

        try:
            async with self.get_session(self.settings.feed_timeout, FEED_HEADERS) as session:
                async with session.get(feed_url) as response:
                    if response.status != 200:
                        raise self._feed_status_error(feed_url, response.status, response.reason)
                    content = await response.read()
                    content_type = response.headers.get("Content-Type", "")

        except MaggrabError:
            raise
        except asyncio.TimeoutError as e:
            raise FeedFetchError(
                f"Request timeout after {self.settings.feed_timeout}s",
                feed_url=feed_url,
                error_code=ErrorCode.FEED_FETCH_TIMEOUT,
            ) from e
        except aiohttp.InvalidURL as e:
            raise FeedFetchError(
                f"Invalid feed URL: {e}",
                feed_url=feed_url,
                error_code=ErrorCode.FEED_INVALID_URL,
                recoverable=False,
            ) from e
        except aiohttp.ClientError as e:
            raise FeedFetchError(
                f"Network error: {e}",
                feed_url=feed_url,
                error_code=ErrorCode.FEED_NETWORK_ERROR,
            ) from e

        return self.parse_feed(content, feed_url, content_type)

    def parse_feed(self, content: bytes, feed_url: str, content_type: str = "") -> ParsedFeed:
        """Parse a raw feed document.

        Args:
            content: Raw response body
            feed_url: Source URL (for messages)
            content_type: Response Content-Type header

        Raises:
            FeedFormatError: If the document is HTML or otherwise not a feed
        """
        feed_data = feedparser.parse(content)
        entries = feed_data.get("entries") or []

        if not entries and not feed_data.get("version"):
            if _looks_like_html(content, content_type):
                raise FeedFormatError(HTML_FEED_MESSAGE, feed_url=feed_url)
            reason = feed_data.get("bozo_exception", "unrecognised document")
            raise FeedFormatError(f"Document is not a valid feed: {reason}", feed_url=feed_url)

        if feed_data.get("bozo"):
            self.logger.info(f"Feed has parse warnings but was usable: {feed_url}")

        items = [
            FeedItem(
                title=entry.get("title"),
                link=entry.get("link"),
                pub_date=entry.get("published") or entry.get("updated"),
            )
            for entry in entries
        ]

        self.logger.info(f"Fetched {len(items)} items from {feed_url}")
        return ParsedFeed(url=feed_url, title=feed_data.feed.get("title"), items=items)

    @staticmethod
    def _feed_status_error(feed_url: str, status: int, reason: Optional[str]) -> FeedFetchError:
        message = f"HTTP {status}: {reason or ''}".strip()
        if status == 429:
            return FeedFetchError(message, feed_url=feed_url, error_code=ErrorCode.FEED_RATE_LIMITED)
        if status >= 500:
            return FeedFetchError(message, feed_url=feed_url, error_code=ErrorCode.FEED_SERVER_ERROR)
        if status == 404:
            code = ErrorCode.FEED_NOT_FOUND
        elif status in (401, 403):
            code = ErrorCode.FEED_ACCESS_DENIED
        else:
            code = ErrorCode.FEED_NETWORK_ERROR
        return FeedFetchError(message, feed_url=feed_url, error_code=code, recoverable=False)

    # ---------------------------------------------------------------- pages

    async def fetch_page(self, page_url: str) -> str:
        """Fetch an article page's markup, retrying transient failures.

        Raises:
            PageFetchError: After all attempts, or at once for permanent errors
        """
        return await self.retry_manager.retry_async(
            self._fetch_page_once,
            page_url,
            config=self.retry_config,
            operation=f"fetch_page({page_url})",
        )

    async def _fetch_page_once(self, page_url: str) -> str:
        try:
            async with self.get_session(self.settings.page_timeout, PAGE_HEADERS) as session:
                async with session.get(page_url) as response:
                    if response.status != 200:
                        raise self._page_status_error(page_url, response.status)
                    return await response.text(errors="replace")

        except MaggrabError:
            raise
        except asyncio.TimeoutError as e:
            raise PageFetchError(
                f"Page timeout after {self.settings.page_timeout}s",
                page_url=page_url,
                error_code=ErrorCode.PAGE_TIMEOUT,
            ) from e
        except aiohttp.InvalidURL as e:
            raise PageFetchError(f"Invalid page URL: {e}", page_url=page_url, recoverable=False) from e
        except aiohttp.ClientError as e:
            raise PageFetchError(
                f"Network error: {e}",
                page_url=page_url,
                error_code=ErrorCode.PAGE_NETWORK_ERROR,
            ) from e

    @staticmethod
    def _page_status_error(page_url: str, status: int) -> PageFetchError:
        if status == 429:
            code, recoverable = ErrorCode.PAGE_RATE_LIMITED, True
        elif status >= 500:
            code, recoverable = ErrorCode.PAGE_SERVER_ERROR, True
        else:
            code, recoverable = ErrorCode.PAGE_FETCH_FAILED, False
        return PageFetchError(
            f"HTTP {status} for {page_url}",
            page_url=page_url,
            status_code=status,
            error_code=code,
            recoverable=recoverable,
        )
