"""
Tests for the grabber daemon: restart recovery, tick timing, single-flight
runs, the concurrency cap, health reporting and feed management.
"""

import asyncio
from unittest.mock import AsyncMock, Mock, patch

import pytest

from maggrab.events import EventType
from maggrab.scheduler.daemon import DaemonState, GrabberDaemon
from maggrab.storage.models import ScheduleEntry
from maggrab.utils.exceptions import ErrorCode, SchedulerError, StorageError
from maggrab.utils.timeutils import DAY_MS, MINUTE_MS


class BlockingPipeline:
    """Pipeline stand-in whose runs finish only when released."""

    def __init__(self):
        self.calls = []
        self.release = asyncio.Event()

    async def run(self, feed_id):
        self.calls.append(feed_id)
        await self.release.wait()


def _daemon(repository, pipeline, publisher, scheduler_settings, clock):
    connection = Mock()
    connection.reset = AsyncMock()
    connection.test_connection = AsyncMock(return_value={"success": True})
    return GrabberDaemon(
        repository,
        pipeline,
        connection,
        publisher=publisher,
        settings=scheduler_settings,
        clock=clock,
    )


@pytest.fixture
def pipeline():
    pipeline = Mock()
    pipeline.run = AsyncMock(return_value=None)
    return pipeline


@pytest.fixture
def daemon(repository, pipeline, publisher, scheduler_settings, clock):
    return _daemon(repository, pipeline, publisher, scheduler_settings, clock)


class TestStartupRecovery:

    @pytest.mark.asyncio
    async def test_overdue_feeds_get_exactly_one_catch_up(self, daemon, repository, pipeline, clock):
        overdue = await repository.create_feed("Overdue", "https://a/rss", interval=15)
        future = await repository.create_feed("Future", "https://b/rss", interval=15)
        unscheduled = await repository.create_feed("New", "https://c/rss", interval=30)

        await repository.set_schedule_entry(
            ScheduleEntry(feed_id=overdue.id, next_run=clock.now - 2 * DAY_MS, interval_minutes=15)
        )
        await repository.set_schedule_entry(
            ScheduleEntry(feed_id=future.id, next_run=clock.now + 5 * MINUTE_MS, interval_minutes=15)
        )
        await repository.set_schedule_entry(
            ScheduleEntry(feed_id="orphan", next_run=clock.now - DAY_MS, interval_minutes=15)
        )

        await daemon.start()
        await daemon.wait_for_runs()

        ran = sorted(call.args[0] for call in pipeline.run.await_args_list)
        assert ran == sorted([overdue.id, unscheduled.id])

        entry = await repository.get_schedule_entry(overdue.id)
        assert entry.next_run == clock.now + 15 * MINUTE_MS
        assert (await repository.get_schedule_entry(unscheduled.id)).next_run == clock.now + 30 * MINUTE_MS
        assert await repository.get_schedule_entry("orphan") is None

        # Ticking again at the same instant launches nothing
        assert await daemon.tick(overdue.id) is False

        await daemon.stop()

    @pytest.mark.asyncio
    async def test_failed_recovery_leaves_daemon_stopped(self, daemon, repository):
        await repository.create_feed("A", "https://a/rss", interval=15)
        failing = AsyncMock(side_effect=StorageError("disk full", collection="schedule"))

        with patch.object(repository, "get_schedule", failing):
            with pytest.raises(StorageError):
                await daemon.start()

        assert daemon.state is DaemonState.STOPPED
        health = daemon.get_health()
        assert health["healthy"] is False
        assert health["scheduled_jobs"] == 0

        # A later start recovers fully
        await daemon.start()
        await daemon.wait_for_runs()
        assert daemon.is_running
        assert daemon.get_health()["healthy"] is True
        assert daemon.get_health()["scheduled_jobs"] == 1

        await daemon.stop()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, daemon, repository):
        await daemon.start()
        await daemon.start()

        logs = await repository.get_logs()
        assert [e.message for e in logs].count("Daemon started") == 1

        await daemon.stop()
        assert daemon.state is DaemonState.STOPPED
        assert (await repository.get_logs())[0].message == "Daemon stopped"


class TestTicks:

    @pytest.mark.asyncio
    async def test_next_run_advances_from_run_start(self, daemon, repository, pipeline, clock):
        feed = await repository.create_feed("A", "https://a/rss", interval=15)
        await daemon.start()
        await daemon.wait_for_runs()
        started = clock.now

        clock.advance(14 * MINUTE_MS)
        assert await daemon.tick(feed.id) is False

        clock.advance(MINUTE_MS)
        assert await daemon.tick(feed.id) is True
        await daemon.wait_for_runs()

        entry = await repository.get_schedule_entry(feed.id)
        assert entry.next_run == started + 30 * MINUTE_MS
        assert pipeline.run.await_count == 2

        await daemon.stop()

    @pytest.mark.asyncio
    async def test_tick_for_deleted_feed_removes_entry(self, daemon, repository, clock):
        await repository.set_schedule_entry(
            ScheduleEntry(feed_id="gone", next_run=clock.now, interval_minutes=15)
        )

        assert await daemon.tick("gone") is False
        assert await repository.get_schedule_entry("gone") is None


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_single_flight_per_feed(self, repository, publisher, scheduler_settings, clock):
        pipeline = BlockingPipeline()
        daemon = _daemon(repository, pipeline, publisher, scheduler_settings, clock)
        feed = await repository.create_feed("A", "https://a/rss", interval=15)
        await daemon.start()

        results = await asyncio.gather(*(daemon.trigger_run(feed.id) for _ in range(5)))
        await asyncio.sleep(0)

        # The recovery run already holds the feed
        assert results == [False] * 5
        assert pipeline.calls == [feed.id]

        pipeline.release.set()
        await daemon.wait_for_runs()
        assert await daemon.trigger_run(feed.id) is True
        await daemon.wait_for_runs()
        assert pipeline.calls == [feed.id, feed.id]

        await daemon.stop()

    @pytest.mark.asyncio
    async def test_capacity_limit_leaves_feed_due(self, repository, publisher, scheduler_settings, clock):
        pipeline = BlockingPipeline()
        daemon = _daemon(repository, pipeline, publisher, scheduler_settings, clock)
        feeds = [await repository.create_feed(f"F{i}", f"https://{i}/rss", interval=15) for i in range(4)]

        await daemon.start()
        await asyncio.sleep(0)

        assert len(pipeline.calls) == 3
        waiting = next(f for f in feeds if f.id not in pipeline.calls)
        entry = await daemon.repository.get_schedule_entry(waiting.id)
        assert entry.next_run <= clock.now

        pipeline.release.set()
        await daemon.wait_for_runs()

        assert await daemon.tick(waiting.id) is True
        await daemon.wait_for_runs()
        assert pipeline.calls.count(waiting.id) == 1

        await daemon.stop()

    @pytest.mark.asyncio
    async def test_stop_forgets_in_flight_runs(self, repository, publisher, scheduler_settings, clock):
        pipeline = BlockingPipeline()
        daemon = _daemon(repository, pipeline, publisher, scheduler_settings, clock)
        feed = await repository.create_feed("A", "https://a/rss", interval=15)
        await daemon.start()
        await asyncio.sleep(0)

        await daemon.stop()
        assert daemon.get_health()["running_jobs"] == 0

        await daemon.start()
        assert await daemon.trigger_run(feed.id) is True
        assert await daemon.trigger_run(feed.id) is False

        pipeline.release.set()
        await daemon.wait_for_runs()
        assert pipeline.calls == [feed.id, feed.id]
        assert daemon.get_health()["running_jobs"] == 0

        await daemon.stop()

    @pytest.mark.asyncio
    async def test_trigger_run_requires_running_daemon(self, daemon, repository):
        feed = await repository.create_feed("A", "https://a/rss")

        with pytest.raises(SchedulerError) as exc_info:
            await daemon.trigger_run(feed.id)
        assert exc_info.value.error_code == ErrorCode.SCHEDULER_NOT_RUNNING


class TestHealth:

    @pytest.mark.asyncio
    async def test_health_follows_heartbeat_age(self, daemon, publisher, clock):
        assert daemon.get_health()["healthy"] is False

        await daemon.start()
        health = daemon.get_health()
        assert health["healthy"] is True
        assert health["last_heartbeat"] == clock.now
        assert publisher.of_type(EventType.HEARTBEAT)

        clock.advance(7200 * 1000)
        assert daemon.get_health()["healthy"] is False

        await daemon.stop()
        assert daemon.get_health()["healthy"] is False


class TestFeedManagement:

    @pytest.mark.asyncio
    async def test_add_feed_schedules_and_runs_immediately(self, daemon, repository, pipeline, clock):
        await daemon.start()

        feed = await daemon.add_feed("A", "https://a/rss", interval=15)
        await daemon.wait_for_runs()

        pipeline.run.assert_awaited_once_with(feed.id)
        entry = await repository.get_schedule_entry(feed.id)
        assert entry.next_run == clock.now + 15 * MINUTE_MS
        assert daemon.get_health()["scheduled_jobs"] == 1

        assert await daemon.remove_feed(feed.id) is True
        assert await repository.get_feed(feed.id) is None
        assert await repository.get_schedule_entry(feed.id) is None
        assert daemon.get_health()["scheduled_jobs"] == 0

        await daemon.stop()

    @pytest.mark.asyncio
    async def test_schedule_while_stopped_is_due_on_start(self, daemon, repository, clock):
        feed = await daemon.add_feed("A", "https://a/rss", interval=15)

        entry = await repository.get_schedule_entry(feed.id)
        assert entry.next_run == clock.now

    @pytest.mark.asyncio
    async def test_schedule_unknown_feed_raises(self, daemon):
        with pytest.raises(SchedulerError):
            await daemon.schedule_feed("missing")

    @pytest.mark.asyncio
    async def test_run_maintenance_removes_old_entries(self, daemon, repository, clock):
        clock.advance(-61 * DAY_MS)
        await repository.mark_processed("https://old")
        clock.advance(61 * DAY_MS)
        await repository.mark_processed("https://new")

        result = await daemon.run_maintenance()

        assert result.processed == 1
        assert await repository.get_processed_urls() == {"https://new"}

    @pytest.mark.asyncio
    async def test_reset_wipes_and_restarts(self, daemon, repository):
        await repository.create_feed("A", "https://a/rss")
        await daemon.start()
        await daemon.wait_for_runs()

        await daemon.reset()

        assert daemon.is_running
        assert await repository.get_feeds() == []
        daemon.connection.reset.assert_awaited()
        await daemon.stop()
