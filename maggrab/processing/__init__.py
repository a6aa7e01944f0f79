"""
Maggrab Processing Pipeline
===========================

Feed fetching, download-link extraction and the per-feed ingestion run.
"""

from .feed_fetcher import FeedFetcher, FeedItem, ParsedFeed
from .link_extractor import DownloadLink, LinkExtractor, host_from_url
from .pipeline import IngestionPipeline, RunResult

__all__ = [
    "FeedFetcher",
    "FeedItem",
    "ParsedFeed",
    "DownloadLink",
    "LinkExtractor",
    "host_from_url",
    "IngestionPipeline",
    "RunResult",
]
