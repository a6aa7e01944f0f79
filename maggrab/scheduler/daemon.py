#!/usr/bin/env python3
"""
Maggrab Grabber Daemon
======================

Decides when each feed's pipeline run fires. Every feed has a persisted
next-run time and a tick task that checks it once per tick period, so
schedules survive restarts: on start, feeds that fell overdue while the
daemon was down get exactly one catch-up run however many intervals were
missed.

Features:
- Single-flight runs per feed and a global concurrency cap
- Heartbeat with a health check
- Periodic age-based cleanup of activity data
"""

import asyncio
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from ..config.settings import SchedulerSettings
from ..downloader.connection import ConnectionManager
from ..events import DaemonEvent, EventPublisher, EventType, NullPublisher
from ..processing.pipeline import IngestionPipeline
from ..storage.models import CleanupResult, Feed, LogLevel, LogSource, ScheduleEntry
from ..storage.repository import GrabberRepository
from ..utils.exceptions import ErrorCode, SchedulerError
from ..utils.logging import get_logger_for_component
from ..utils.timeutils import Clock, MINUTE_MS, now_ms


class DaemonState(str, Enum):
    """Lifecycle of the daemon."""
    STOPPED = "stopped"
    RUNNING = "running"


class GrabberDaemon:
    """Schedules feed pipeline runs and keeps the daemon healthy."""

    def __init__(
        self,
        repository: GrabberRepository,
        pipeline: IngestionPipeline,
        connection: ConnectionManager,
        publisher: Optional[EventPublisher] = None,
        settings: Optional[SchedulerSettings] = None,
        clock: Clock = now_ms,
    ):
        """Initialize daemon.

        Args:
            repository: Store operations (schedule, feeds, logs)
            pipeline: Runs one feed
            connection: Downloader connection, for status and reset
            publisher: Live-update publisher
            settings: Scheduling configuration
            clock: Epoch-millisecond clock
        """
        self.repository = repository
        self.pipeline = pipeline
        self.connection = connection
        self.publisher = publisher or NullPublisher()
        self.settings = settings or SchedulerSettings()
        self.clock = clock
        self.logger = get_logger_for_component("scheduler")

        self.state = DaemonState.STOPPED
        self.last_heartbeat: Optional[int] = None

        self._tick_tasks: Dict[str, asyncio.Task] = {}
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._maintenance_task: Optional[asyncio.Task] = None
        self._running: Set[str] = set()
        self._run_tasks: Set[asyncio.Task] = set()
        self._generation = 0

    @property
    def is_running(self) -> bool:
        return self.state is DaemonState.RUNNING

    # ============================================================ lifecycle

    async def start(self) -> None:
        """Start scheduling. Does nothing if already running.

        A failure after the data directory exists rolls the daemon back to
        Stopped so a later start() can try again.

        Raises:
            StorageError: If the data directory cannot be created or the
                schedule cannot be recovered
        """
        if self.is_running:
            self.logger.debug("Daemon already running")
            return

        await self.repository.initialize()
        self.state = DaemonState.RUNNING

        try:
            await self._log(LogLevel.INFO, "Daemon started")

            feeds = await self.repository.get_feeds()
            catch_ups = await self._recover_schedule(feeds)

            for feed in feeds:
                self._install_tick(feed.id)

            self._beat()
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="maggrab-heartbeat")
            self._maintenance_task = asyncio.create_task(
                self._maintenance_loop(), name="maggrab-maintenance"
            )
        except BaseException as e:
            self.logger.error(f"Daemon start failed, rolling back: {e}")
            await self._cancel_jobs()
            self.last_heartbeat = None
            raise

        self.logger.info(
            f"Daemon started with {len(feeds)} feeds, {catch_ups} catch-up runs",
            extra={"feed_count": len(feeds), "catch_up_runs": catch_ups},
        )

    async def stop(self) -> None:
        """Cancel scheduled jobs and forget in-flight runs.

        Runs already started are not aborted; they finish on their own but no
        longer count against single-flight or the concurrency cap.
        """
        if not self.is_running:
            return

        in_flight = await self._cancel_jobs()

        await self._log(LogLevel.INFO, "Daemon stopped")
        self.logger.info(f"Daemon stopped ({in_flight} runs still in flight)")

    async def _cancel_jobs(self) -> int:
        """Cancel ticks, heartbeat and maintenance and enter Stopped.

        Returns:
            Number of runs that were in flight
        """
        jobs = list(self._tick_tasks.values())
        jobs += [t for t in (self._heartbeat_task, self._maintenance_task) if t is not None]
        for job in jobs:
            job.cancel()
        await asyncio.gather(*jobs, return_exceptions=True)

        self._tick_tasks.clear()
        self._heartbeat_task = None
        self._maintenance_task = None
        in_flight = len(self._running)
        self._running.clear()
        self._generation += 1
        self.state = DaemonState.STOPPED
        return in_flight

    async def wait_for_runs(self) -> None:
        """Wait until every in-flight pipeline run has finished."""
        while self._run_tasks:
            await asyncio.gather(*list(self._run_tasks), return_exceptions=True)

    # ============================================================ scheduling

    async def _recover_schedule(self, feeds: List[Feed]) -> int:
        """Collapse missed runs into one catch-up run per overdue feed.

        Returns:
            Number of catch-up runs launched
        """
        now = self.clock()
        feed_ids = {feed.id for feed in feeds}
        entries = {}

        for entry in await self.repository.get_schedule():
            if entry.feed_id not in feed_ids:
                await self.repository.remove_schedule_entry(entry.feed_id)
                self.logger.debug(f"Removed orphan schedule entry for {entry.feed_id}")
                continue
            entries[entry.feed_id] = entry

        overdue = []
        for feed in feeds:
            entry = entries.get(feed.id)
            if entry is None:
                entry = ScheduleEntry(feed_id=feed.id, next_run=now, interval_minutes=feed.interval)
                await self.repository.set_schedule_entry(entry)
            if now >= entry.next_run:
                overdue.append(feed.id)

        catch_ups = 0
        for feed_id in overdue:
            if await self.tick(feed_id):
                catch_ups += 1

        if overdue:
            await self._log(
                LogLevel.INFO,
                f"Recovered schedule: {len(overdue)} overdue feeds, {catch_ups} catch-up runs started",
            )
        return catch_ups

    async def schedule_feed(self, feed_id: str) -> ScheduleEntry:
        """Persist the feed's next run, install its tick and run it now.

        While stopped only the entry is persisted, due immediately, so the
        feed runs once on the next start.

        Raises:
            SchedulerError: If the feed does not exist
        """
        feed = await self._require_feed(feed_id)
        now = self.clock()
        next_run = now + feed.interval * MINUTE_MS if self.is_running else now

        entry = ScheduleEntry(feed_id=feed.id, next_run=next_run, interval_minutes=feed.interval)
        await self.repository.set_schedule_entry(entry)

        if self.is_running:
            self._install_tick(feed.id)
            if self._reserve(feed.id):
                self._start_run(feed.id)

        self.logger.info(f"Scheduled {feed.name} every {feed.interval} min", extra={"feed_id": feed.id})
        return entry

    async def unschedule_feed(self, feed_id: str) -> None:
        task = self._tick_tasks.pop(feed_id, None)
        if task is not None:
            task.cancel()
        await self.repository.remove_schedule_entry(feed_id)
        self.logger.info(f"Unscheduled feed {feed_id}")

    async def tick(self, feed_id: str) -> bool:
        """Launch the feed's run if it is due and the guards allow it.

        next_run is only advanced when a run is actually launched, so a
        feed skipped for lack of capacity stays due for the next tick.

        Returns:
            True if a run was launched
        """
        entry = await self.repository.get_schedule_entry(feed_id)
        if entry is None:
            return False

        now = self.clock()
        if now < entry.next_run:
            return False

        if not self._reserve(feed_id):
            return False

        try:
            feed = await self.repository.get_feed(feed_id)
            if feed is None:
                await self.repository.remove_schedule_entry(feed_id)
                self._release(feed_id)
                return False

            await self.repository.set_schedule_entry(
                ScheduleEntry(
                    feed_id=feed.id,
                    next_run=now + feed.interval * MINUTE_MS,
                    interval_minutes=feed.interval,
                )
            )
        except BaseException:
            self._release(feed_id)
            raise

        self._start_run(feed_id)
        return True

    async def trigger_run(self, feed_id: str) -> bool:
        """Run a feed now without touching its schedule.

        Returns:
            False when the run was skipped by the concurrency guards

        Raises:
            SchedulerError: If the daemon is stopped or the feed is unknown
        """
        if not self.is_running:
            raise SchedulerError(
                "Daemon is not running",
                feed_id=feed_id,
                error_code=ErrorCode.SCHEDULER_NOT_RUNNING,
            )
        await self._require_feed(feed_id)

        if not self._reserve(feed_id):
            return False
        self._start_run(feed_id)
        return True

    def _reserve(self, feed_id: str) -> bool:
        if feed_id in self._running:
            self.logger.debug(f"Feed {feed_id} is already running, skipping")
            return False
        if len(self._running) >= self.settings.max_concurrent_runs:
            self.logger.debug(
                f"Concurrency limit {self.settings.max_concurrent_runs} reached, skipping {feed_id}"
            )
            return False
        self._running.add(feed_id)
        return True

    def _release(self, feed_id: str) -> None:
        self._running.discard(feed_id)

    def _start_run(self, feed_id: str) -> None:
        task = asyncio.create_task(
            self._guarded_run(feed_id, self._generation), name=f"maggrab-run-{feed_id}"
        )
        self._run_tasks.add(task)
        task.add_done_callback(self._run_tasks.discard)

    async def _guarded_run(self, feed_id: str, generation: int) -> None:
        try:
            await self.pipeline.run(feed_id)
        except Exception as e:
            self.logger.error(f"Pipeline run for {feed_id} crashed: {e}", exc_info=True)
        finally:
            # Reservations from before a stop() were already dropped
            if generation == self._generation:
                self._release(feed_id)

    def _install_tick(self, feed_id: str) -> None:
        existing = self._tick_tasks.pop(feed_id, None)
        if existing is not None:
            existing.cancel()
        self._tick_tasks[feed_id] = asyncio.create_task(
            self._tick_loop(feed_id), name=f"maggrab-tick-{feed_id}"
        )

    async def _tick_loop(self, feed_id: str) -> None:
        while True:
            await asyncio.sleep(self.settings.tick_seconds)
            try:
                await self.tick(feed_id)
            except Exception as e:
                self.logger.error(f"Tick for {feed_id} failed: {e}", exc_info=True)

    # ======================================================= health & upkeep

    def _beat(self) -> None:
        self.last_heartbeat = self.clock()
        self.publisher.publish(
            DaemonEvent(
                type=EventType.HEARTBEAT,
                data={
                    "timestamp": self.last_heartbeat,
                    "feed_count": len(self._tick_tasks),
                    "job_count": self._job_count(),
                    "running_count": len(self._running),
                },
                timestamp=self.last_heartbeat,
            )
        )

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.heartbeat_seconds)
            self._beat()

    def _job_count(self) -> int:
        jobs = len(self._tick_tasks)
        jobs += sum(1 for t in (self._heartbeat_task, self._maintenance_task) if t is not None)
        return jobs

    def get_health(self) -> Dict[str, Any]:
        """Healthy while running with a heartbeat younger than the threshold."""
        threshold_ms = self.settings.health_threshold_seconds * 1000
        healthy = (
            self.is_running
            and self.last_heartbeat is not None
            and self.clock() - self.last_heartbeat < threshold_ms
        )
        return {
            "healthy": healthy,
            "state": self.state.value,
            "last_heartbeat": self.last_heartbeat,
            "scheduled_jobs": len(self._tick_tasks),
            "running_jobs": len(self._running),
        }

    async def _maintenance_loop(self) -> None:
        interval = self.settings.maintenance_interval_hours * 3600
        while True:
            await asyncio.sleep(interval)
            try:
                await self.run_maintenance()
            except Exception as e:
                self.logger.error(f"Maintenance failed: {e}", exc_info=True)

    async def run_maintenance(self, max_age_days: Optional[int] = None) -> CleanupResult:
        """Remove activity data older than the retention period."""
        result = await self.repository.cleanup_old_data(max_age_days)
        if result.total:
            await self._log(
                LogLevel.INFO,
                f"Cleanup removed {result.logs} logs, {result.extracted} extracted, "
                f"{result.grabbed} grabbed and {result.processed} processed entries",
            )
        else:
            self.logger.debug("Cleanup found nothing to remove")
        return result

    # ========================================================== management

    async def add_feed(
        self,
        name: str,
        url: str,
        interval: Optional[int] = None,
        title_filter: Optional[str] = None,
    ) -> Feed:
        """Create a feed and schedule it (runs immediately while running)."""
        feed = await self.repository.create_feed(name, url, interval=interval, title_filter=title_filter)
        await self._log(LogLevel.INFO, f"Feed added: {feed.name}")
        await self.schedule_feed(feed.id)
        return feed

    async def remove_feed(self, feed_id: str) -> bool:
        feed = await self.repository.get_feed(feed_id)
        if feed is None:
            return False
        await self.unschedule_feed(feed_id)
        await self.repository.delete_feed(feed_id)
        await self._log(LogLevel.INFO, f"Feed removed: {feed.name}")
        return True

    async def clear_entries(self) -> None:
        """Wipe logs, stats, processed urls and grabbed/extracted items."""
        await self.repository.clear_entries()
        stats = await self.repository.get_stats()
        self.publisher.publish(
            DaemonEvent(type=EventType.STATS, data=stats.model_dump(), timestamp=self.clock())
        )
        await self._log(LogLevel.INFO, "All entries cleared")

    async def reset(self) -> None:
        """Stop, wipe every collection, drop the downloader session and start again."""
        was_running = self.is_running
        await self.stop()
        await self.repository.reset_all()
        await self.connection.reset()
        if was_running:
            await self.start()

    def get_connection_status(self) -> Dict[str, Any]:
        return self.connection.get_connection_status()

    async def test_connection(self) -> Dict[str, Any]:
        return await self.connection.test_connection()

    # ============================================================= helpers

    async def _require_feed(self, feed_id: str) -> Feed:
        feed = await self.repository.get_feed(feed_id)
        if feed is None:
            raise SchedulerError(f"Feed {feed_id} not found", feed_id=feed_id)
        return feed

    async def _log(self, level: LogLevel, message: str) -> None:
        await self.repository.add_log(level, message, LogSource.DAEMON)
