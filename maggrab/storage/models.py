"""
Maggrab Data Models
===================

Pydantic models for every persisted collection. Timestamps are integer
epoch milliseconds, matching the on-disk JSON documents.
"""

import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from ..utils.timeutils import now_ms


def _new_id() -> str:
    return str(uuid.uuid4())


class FeedStatus(str, Enum):
    """Lifecycle status of a feed, driven by the pipeline."""
    IDLE = "idle"
    RUNNING = "running"
    ERROR = "error"


class LogLevel(str, Enum):
    """Severity of an activity log entry."""
    INFO = "info"
    SUCCESS = "success"
    WARN = "warn"
    ERROR = "error"


class LogSource(str, Enum):
    """Component that produced an activity log entry."""
    DAEMON = "daemon"
    GRABBER = "grabber"
    DOWNLOADER = "downloader"


class StatKey(str, Enum):
    """Monotonic counters kept in the stats collection."""
    TOTAL_SCRAPED = "total_scraped"
    LINKS_FOUND = "links_found"
    SUBMITTED = "submitted"


class Feed(BaseModel):
    """Syndication feed polled by the daemon."""
    id: str = Field(default_factory=_new_id, description="Feed id")
    name: str = Field(..., min_length=1, max_length=255, description="Display name")
    url: str = Field(..., min_length=1, description="Feed document URL")
    interval: int = Field(default=15, ge=1, description="Poll interval in minutes")
    title_filter: Optional[str] = Field(default=None, description="Case-insensitive title substring filter")
    last_checked: Optional[int] = Field(default=None, description="Epoch ms of the last run start")
    status: FeedStatus = Field(default=FeedStatus.IDLE)
    total_found: int = Field(default=0, ge=0, description="Cumulative new items seen")

    def __str__(self) -> str:
        return f"Feed({self.name}:{self.id})"


class LogEntry(BaseModel):
    """User-visible activity log record."""
    id: str = Field(default_factory=_new_id)
    timestamp: int = Field(default_factory=now_ms)
    level: LogLevel
    message: str
    source: LogSource


class Stats(BaseModel):
    """Counters shown on the dashboard."""
    total_scraped: int = 0
    links_found: int = 0
    submitted: int = 0


class AppSettings(BaseModel):
    """User-editable settings persisted alongside the data."""
    check_interval: int = Field(default=15, ge=1, description="Default poll interval in minutes")


class ProcessedUrl(BaseModel):
    """Deduplication ledger entry."""
    url: str
    timestamp: int = Field(default_factory=now_ms)


class ExtractedItem(BaseModel):
    """Download link chosen for an article."""
    id: str = Field(default_factory=_new_id)
    feed_id: str
    article_title: str
    article_url: str
    download_url: str
    host: str
    timestamp: int = Field(default_factory=now_ms)
    submitted: bool = False


class GrabbedItem(BaseModel):
    """Every article the pipeline attempted, with or without a download link."""
    id: str = Field(default_factory=_new_id)
    feed_id: str
    feed_name: str
    title: str
    link: str
    pub_date: Optional[str] = None
    has_download: bool = False
    timestamp: int = Field(default_factory=now_ms)


class ScheduleEntry(BaseModel):
    """Persisted next-run time of a feed."""
    feed_id: str
    next_run: int = Field(..., description="Epoch ms of the next due run")
    interval_minutes: int = Field(..., ge=1)


class CleanupResult(BaseModel):
    """Entries removed per collection by age-based cleanup."""
    logs: int = 0
    extracted: int = 0
    grabbed: int = 0
    processed: int = 0

    @property
    def total(self) -> int:
        return self.logs + self.extracted + self.grabbed + self.processed
