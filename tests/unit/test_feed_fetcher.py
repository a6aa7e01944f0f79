"""
Tests for feed parsing, HTTP status classification and fetch retries.
"""

from unittest.mock import AsyncMock

import pytest

from maggrab.processing.feed_fetcher import FeedFetcher, FeedItem, ParsedFeed
from maggrab.recovery.retry_logic import RetryConfig, RetryManager
from maggrab.utils.exceptions import (
    ErrorCode,
    FeedFetchError,
    FeedFormatError,
    PageFetchError,
    is_retryable_error,
)


RSS_DOCUMENT = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Magazines</title>
    <link>https://magazines.example/</link>
    <item>
      <title>Issue 1</title>
      <link>https://magazines.example/issue-1.html</link>
      <pubDate>Mon, 01 Jan 2024 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Issue 2</title>
      <link>https://magazines.example/issue-2.html</link>
    </item>
  </channel>
</rss>
"""

EMPTY_RSS_DOCUMENT = b"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>Nothing yet</title></channel></rss>
"""

HTML_DOCUMENT = b"""<!DOCTYPE html>
<html><head><title>Magazines</title></head>
<body><a href="/issue-1.html">Issue 1</a></body></html>
"""


@pytest.fixture
def fetcher(processing_settings):
    return FeedFetcher(processing_settings)


class TestParseFeed:

    def test_items_are_extracted(self, fetcher):
        parsed = fetcher.parse_feed(RSS_DOCUMENT, "https://magazines.example/rss.xml")

        assert parsed.title == "Magazines"
        assert [i.link for i in parsed.items] == [
            "https://magazines.example/issue-1.html",
            "https://magazines.example/issue-2.html",
        ]
        assert parsed.items[0].pub_date == "Mon, 01 Jan 2024 10:00:00 GMT"
        assert parsed.items[1].pub_date is None

    def test_empty_feed_has_no_items(self, fetcher):
        parsed = fetcher.parse_feed(EMPTY_RSS_DOCUMENT, "https://magazines.example/rss.xml")

        assert parsed.items == []

    def test_html_page_is_a_format_error(self, fetcher):
        with pytest.raises(FeedFormatError) as exc_info:
            fetcher.parse_feed(HTML_DOCUMENT, "https://magazines.example/", "text/html; charset=utf-8")

        error = exc_info.value
        assert "appears to be an HTML page" in str(error)
        assert "/rss.xml" in str(error)
        assert error.recoverable is False
        assert not is_retryable_error(error)


class TestStatusClassification:

    @pytest.mark.parametrize(
        "status,code,retryable",
        [
            (429, ErrorCode.FEED_RATE_LIMITED, True),
            (503, ErrorCode.FEED_SERVER_ERROR, True),
            (404, ErrorCode.FEED_NOT_FOUND, False),
            (403, ErrorCode.FEED_ACCESS_DENIED, False),
        ],
    )
    def test_feed_status_codes(self, status, code, retryable):
        error = FeedFetcher._feed_status_error("https://x/rss", status, "reason")

        assert error.error_code == code
        assert is_retryable_error(error) is retryable

    @pytest.mark.parametrize("status,retryable", [(429, True), (502, True), (404, False), (410, False)])
    def test_page_status_codes(self, status, retryable):
        error = FeedFetcher._page_status_error("https://x/page", status)

        assert isinstance(error, PageFetchError)
        assert error.status_code == status
        assert is_retryable_error(error) is retryable


class TestFetchRetries:

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, fetcher):
        parsed = ParsedFeed(url="https://x/rss", items=[FeedItem(title="a", link="https://x/a")])
        fetcher._fetch_feed_once = AsyncMock(side_effect=[
            FeedFetchError("Network error", feed_url="https://x/rss", error_code=ErrorCode.FEED_NETWORK_ERROR),
            parsed,
        ])

        assert await fetcher.fetch_feed("https://x/rss") is parsed
        assert fetcher._fetch_feed_once.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_configured_attempts(self, fetcher):
        fetcher._fetch_feed_once = AsyncMock(side_effect=FeedFetchError(
            "Request timeout", feed_url="https://x/rss", error_code=ErrorCode.FEED_FETCH_TIMEOUT
        ))

        with pytest.raises(FeedFetchError):
            await fetcher.fetch_feed("https://x/rss")
        assert fetcher._fetch_feed_once.await_count == 3

    @pytest.mark.asyncio
    async def test_format_error_is_not_retried(self, fetcher):
        fetcher._fetch_feed_once = AsyncMock(side_effect=FeedFormatError("not a feed"))

        with pytest.raises(FeedFormatError):
            await fetcher.fetch_feed("https://x/")
        assert fetcher._fetch_feed_once.await_count == 1

    @pytest.mark.asyncio
    async def test_permanent_page_error_is_not_retried(self, fetcher):
        fetcher._fetch_page_once = AsyncMock(side_effect=FeedFetcher._page_status_error("https://x/p", 404))

        with pytest.raises(PageFetchError):
            await fetcher.fetch_page("https://x/p")
        assert fetcher._fetch_page_once.await_count == 1


class TestRetryDelays:

    def test_exponential_backoff_is_capped(self):
        manager = RetryManager()
        config = RetryConfig(base_delay=2.0, max_delay=5.0, jitter=False)

        delays = [manager._calculate_delay(attempt, config) for attempt in (1, 2, 3, 4)]

        assert delays == [2.0, 4.0, 5.0, 5.0]

    def test_jitter_stays_within_a_quarter_of_the_delay(self):
        manager = RetryManager()
        config = RetryConfig(base_delay=4.0, max_delay=60.0, jitter=True)

        delays = [manager._calculate_delay(2, config) for _ in range(50)]

        assert all(6.0 <= d <= 10.0 for d in delays)

    def test_fetcher_uses_configured_jitter(self, processing_settings):
        assert FeedFetcher(processing_settings).retry_config.jitter is True
        no_jitter = processing_settings.model_copy(update={"retry_jitter": False})
        assert FeedFetcher(no_jitter).retry_config.jitter is False

    def test_plain_connection_errors_are_retryable(self):
        assert RetryManager.should_retry(ConnectionError("reset"), RetryConfig())
        assert not RetryManager.should_retry(ValueError("bad"), RetryConfig())
