"""
Tests for typed repository operations: feeds, logs, stats, the dedup
ledger, item collections, schedule entries and age-based cleanup.
"""

import asyncio

import pytest

from maggrab.storage.file_store import Collection
from maggrab.storage.models import FeedStatus, LogLevel, LogSource, ScheduleEntry, StatKey
from maggrab.utils.timeutils import DAY_MS


class TestFeeds:

    @pytest.mark.asyncio
    async def test_create_feed_uses_stored_check_interval(self, repository):
        await repository.update_settings(check_interval=30)

        feed = await repository.create_feed("Movies", "https://example.com/rss")

        assert feed.interval == 30
        assert feed.status == FeedStatus.IDLE
        assert (await repository.get_feed(feed.id)).name == "Movies"

    @pytest.mark.asyncio
    async def test_update_feed_and_missing_feed(self, repository):
        feed = await repository.create_feed("A", "https://a.example/rss", interval=5)

        updated = await repository.update_feed(feed.id, status=FeedStatus.RUNNING, last_checked=123)

        assert updated.status == FeedStatus.RUNNING
        assert updated.last_checked == 123
        assert await repository.update_feed("missing", status=FeedStatus.IDLE) is None

    @pytest.mark.asyncio
    async def test_add_found_count_accumulates(self, repository):
        feed = await repository.create_feed("A", "https://a.example/rss")

        await asyncio.gather(
            repository.add_found_count(feed.id, 3),
            repository.add_found_count(feed.id, 4),
        )

        assert (await repository.get_feed(feed.id)).total_found == 7

    @pytest.mark.asyncio
    async def test_delete_feed_cascades_schedule(self, repository):
        feed = await repository.create_feed("A", "https://a.example/rss")
        await repository.set_schedule_entry(
            ScheduleEntry(feed_id=feed.id, next_run=1, interval_minutes=15)
        )

        assert await repository.delete_feed(feed.id) is True
        assert await repository.get_feed(feed.id) is None
        assert await repository.get_schedule_entry(feed.id) is None
        assert await repository.delete_feed(feed.id) is False


class TestRetention:

    @pytest.mark.asyncio
    async def test_processed_urls_keep_most_recent_1000(self, repository, clock):
        for i in range(1500):
            clock.advance(1)
            await repository.mark_processed(f"https://site.example/post/{i}")

        raw = await repository.store.read(Collection.PROCESSED)
        assert len(raw) == 1000
        assert raw[0]["url"] == "https://site.example/post/500"
        assert raw[-1]["url"] == "https://site.example/post/1499"

    @pytest.mark.asyncio
    async def test_logs_keep_most_recent_100(self, repository):
        for i in range(600):
            await repository.add_log(LogLevel.INFO, f"entry {i}", LogSource.DAEMON)

        logs = await repository.get_logs(limit=1000)
        assert len(logs) == 100
        assert logs[0].message == "entry 599"
        assert logs[-1].message == "entry 500"

    @pytest.mark.asyncio
    async def test_marking_processed_twice_stores_one_entry(self, repository):
        await repository.mark_processed("https://site.example/a")
        await repository.mark_processed("https://site.example/a")

        raw = await repository.store.read(Collection.PROCESSED)
        assert [entry["url"] for entry in raw] == ["https://site.example/a"]
        assert await repository.is_processed("https://site.example/a")


class TestStatsAndItems:

    @pytest.mark.asyncio
    async def test_concurrent_increments(self, repository):
        await asyncio.gather(
            *(repository.increment_stat(StatKey.LINKS_FOUND) for _ in range(10)),
            repository.increment_stat(StatKey.TOTAL_SCRAPED, 5),
        )

        stats = await repository.get_stats()
        assert stats.links_found == 10
        assert stats.total_scraped == 5
        assert stats.submitted == 0

    @pytest.mark.asyncio
    async def test_extracted_item_submitted_flag(self, repository):
        item = await repository.add_extracted_item(
            feed_id="f1",
            article_title="Title",
            article_url="https://site.example/a",
            download_url="https://nfile.cc/abc",
            host="nfile.cc",
        )

        assert await repository.mark_extracted_item_submitted(item.id) is True
        assert await repository.mark_extracted_item_submitted(item.id) is True
        assert await repository.mark_extracted_item_submitted("unknown") is False
        assert (await repository.get_extracted_items())[0].submitted is True

    @pytest.mark.asyncio
    async def test_grabbed_items_most_recent_first(self, repository):
        await repository.add_grabbed_item("f1", "Feed", "first", "https://x/1")
        await repository.add_grabbed_item("f1", "Feed", "second", "https://x/2", has_download=True)

        items = await repository.get_grabbed_items()
        assert [i.title for i in items] == ["second", "first"]
        assert items[0].has_download is True


class TestDataManagement:

    @pytest.mark.asyncio
    async def test_cleanup_removes_only_strictly_older_entries(self, repository, clock):
        cutoff_age = 60 * DAY_MS
        now = clock.now

        # One entry just past the cutoff, one exactly on it, one recent
        for offset in (cutoff_age + 1, cutoff_age, 1000):
            clock.now = now - offset
            await repository.add_log(LogLevel.INFO, f"log {offset}", LogSource.DAEMON)
            await repository.add_extracted_item("f", "t", f"https://a/{offset}", "https://nfile.cc/x", "nfile.cc")
            await repository.add_grabbed_item("f", "Feed", "t", f"https://a/{offset}")
            await repository.mark_processed(f"https://a/{offset}")
        clock.now = now

        result = await repository.cleanup_old_data(60)

        assert (result.logs, result.extracted, result.grabbed, result.processed) == (1, 1, 1, 1)
        assert result.total == 4
        assert len(await repository.get_logs()) == 2
        assert len(await repository.get_extracted_items()) == 2
        assert len(await repository.get_grabbed_items()) == 2
        assert await repository.get_processed_urls() == {
            f"https://a/{cutoff_age}",
            "https://a/1000",
        }

    @pytest.mark.asyncio
    async def test_clear_entries_keeps_feeds_and_settings(self, repository):
        feed = await repository.create_feed("A", "https://a.example/rss")
        await repository.update_settings(check_interval=20)
        await repository.add_log(LogLevel.INFO, "hello", LogSource.DAEMON)
        await repository.increment_stat(StatKey.SUBMITTED)
        await repository.mark_processed("https://x")

        await repository.clear_entries()

        assert await repository.get_feed(feed.id) is not None
        assert (await repository.get_settings()).check_interval == 20
        assert await repository.get_logs() == []
        assert (await repository.get_stats()).submitted == 0
        assert await repository.get_processed_urls() == set()

    @pytest.mark.asyncio
    async def test_reset_all_wipes_everything(self, repository):
        await repository.create_feed("A", "https://a.example/rss")
        await repository.update_settings(check_interval=20)

        await repository.reset_all()

        assert await repository.get_feeds() == []
        assert (await repository.get_settings()).check_interval == 15
