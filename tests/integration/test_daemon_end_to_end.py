"""
End-to-end daemon tests.

Wires the real store, pipeline, connection manager and daemon through
``build_application``; only the network edges (feed/page fetcher and the
MyJDownloader client) are replaced.
"""

from unittest.mock import AsyncMock

import pytest

from maggrab.app import build_application
from maggrab.config.settings import (
    LoggingSettings,
    MaggrabSettings,
    ProcessingSettings,
    SchedulerSettings,
    StorageSettings,
)
from maggrab.downloader.client import DeviceInfo
from maggrab.events import EventType
from maggrab.processing.feed_fetcher import FeedItem, ParsedFeed
from maggrab.storage.models import FeedStatus
from maggrab.utils.timeutils import DAY_MS


ARTICLE = '<html><body><a href="/engine/go.php?url=aHR0cHM6Ly9uZmlsZS5jYy9hYmM=">Get</a></body></html>'


def _parsed(url, links):
    return ParsedFeed(url=url, items=[FeedItem(title=f"Item {link}", link=link) for link in links])


@pytest.fixture
def settings(data_dir):
    return MaggrabSettings(
        storage=StorageSettings(data_dir=str(data_dir)),
        scheduler=SchedulerSettings(
            tick_seconds=3600, heartbeat_seconds=3600, health_threshold_seconds=7200
        ),
        processing=ProcessingSettings(retry_base_delay=0.0, retry_max_delay=0.0),
        logging=LoggingSettings(file_path=None),
    )


@pytest.fixture
def client():
    client = AsyncMock()
    client.list_devices.return_value = [DeviceInfo(id="dev-1", name="NAS")]
    return client


@pytest.fixture
def feeds_online():
    """Current feed contents keyed by feed url."""
    return {
        "https://mags.example/rss.xml": ["https://mags.example/1", "https://mags.example/2"],
        "https://books.example/rss.xml": ["https://books.example/a"],
    }


def _start_app(settings, client, clock, feeds_online):
    app = build_application(settings, client=client, clock=clock)

    fetcher = AsyncMock()
    fetcher.fetch_feed.side_effect = lambda url: _parsed(url, feeds_online[url])
    fetcher.fetch_page.return_value = ARTICLE
    app.pipeline.fetcher = fetcher
    return app, fetcher


def _drain(queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


@pytest.mark.integration
class TestDaemonEndToEnd:

    @pytest.mark.asyncio
    async def test_new_feed_runs_immediately_and_submits(self, settings, client, clock, feeds_online, monkeypatch):
        monkeypatch.setenv("MYJD_EMAIL", "alice@example.com")
        monkeypatch.setenv("MYJD_PASSWORD", "secret")

        app, fetcher = _start_app(settings, client, clock, feeds_online)
        queue = app.events.subscribe()

        await app.daemon.start()
        feed = await app.daemon.add_feed("Mags", "https://mags.example/rss.xml", interval=15)
        await app.daemon.wait_for_runs()

        fetcher.fetch_feed.assert_awaited_once_with("https://mags.example/rss.xml")

        stats = await app.repository.get_stats()
        assert stats.total_scraped == 2
        assert stats.links_found == 2
        assert stats.submitted == 2
        client.add_links.assert_awaited_with(["https://nfile.cc/abc"], "dev-1", autostart=True)

        stored = await app.repository.get_feed(feed.id)
        assert stored.status == FeedStatus.IDLE
        assert stored.total_found == 2

        statuses = [
            e.data["status"]
            for e in _drain(queue)
            if e.type == EventType.FEED_STATUS and e.data["feed_id"] == feed.id
        ]
        assert statuses == ["running", "idle"]

        assert all(item.submitted for item in await app.repository.get_extracted_items())

        await app.daemon.stop()

    @pytest.mark.asyncio
    async def test_restart_after_outage_runs_one_catch_up_per_feed(self, settings, client, clock, feeds_online):
        app, fetcher = _start_app(settings, client, clock, feeds_online)
        await app.daemon.start()
        mags = await app.daemon.add_feed("Mags", "https://mags.example/rss.xml", interval=15)
        books = await app.daemon.add_feed("Books", "https://books.example/rss.xml", interval=60)
        await app.daemon.wait_for_runs()
        await app.daemon.stop()

        # Two days offline, with one new item published meanwhile
        clock.advance(2 * DAY_MS)
        feeds_online["https://mags.example/rss.xml"].append("https://mags.example/3")

        app, fetcher = _start_app(settings, client, clock, feeds_online)
        await app.daemon.start()
        await app.daemon.wait_for_runs()

        fetched = sorted(call.args[0] for call in fetcher.fetch_feed.await_args_list)
        assert fetched == ["https://books.example/rss.xml", "https://mags.example/rss.xml"]

        assert await app.daemon.tick(mags.id) is False
        assert await app.daemon.tick(books.id) is False

        assert (await app.repository.get_stats()).total_scraped == 4
        assert app.daemon.get_health()["healthy"] is True

        await app.daemon.stop()
