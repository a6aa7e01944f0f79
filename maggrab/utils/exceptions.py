"""
Maggrab Custom Exceptions
=========================

Exception hierarchy for the grabber daemon with error codes, context
information and user-facing messages.
"""

from typing import Optional, Dict, Any
from enum import Enum


class ErrorCode(str, Enum):
    """Error codes for categorizing exceptions."""

    # Configuration errors (C001-C099)
    CONFIG_INVALID = "C001"
    CONFIG_MISSING = "C002"

    # Storage errors (D001-D099)
    STORAGE_DIRECTORY = "D001"
    STORAGE_WRITE = "D002"
    STORAGE_CORRUPTION = "D003"
    STORAGE_UNKNOWN_COLLECTION = "D004"

    # Feed errors (F001-F099)
    FEED_INVALID_URL = "F001"
    FEED_FETCH_TIMEOUT = "F002"
    FEED_PARSE_ERROR = "F003"
    FEED_NETWORK_ERROR = "F004"
    FEED_ACCESS_DENIED = "F005"
    FEED_NOT_FOUND = "F006"
    FEED_RATE_LIMITED = "F007"
    FEED_SERVER_ERROR = "F008"
    FEED_INVALID_FORMAT = "F009"

    # Article page errors (P001-P099)
    PAGE_FETCH_FAILED = "P001"
    PAGE_TIMEOUT = "P002"
    PAGE_NETWORK_ERROR = "P003"
    PAGE_RATE_LIMITED = "P004"
    PAGE_SERVER_ERROR = "P005"

    # Downloader errors (J001-J099)
    DOWNLOADER_NOT_CONFIGURED = "J001"
    DOWNLOADER_AUTHENTICATION = "J002"
    DOWNLOADER_NO_DEVICES = "J003"
    DOWNLOADER_SUBMIT_FAILED = "J004"
    DOWNLOADER_BACKOFF = "J005"

    # Scheduler errors (S001-S099)
    SCHEDULER_FEED_NOT_FOUND = "S001"
    SCHEDULER_NOT_RUNNING = "S002"


class MaggrabError(Exception):
    """Base exception for all Maggrab errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[ErrorCode] = None,
        context: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
        recoverable: bool = False,
    ):
        """Initialize Maggrab error.

        Args:
            message: Technical error message for logging
            error_code: Categorized error code
            context: Additional context information
            user_message: User-friendly error message
            recoverable: Whether the error is worth retrying
        """
        super().__init__(message)
        self.error_code = error_code
        self.context = context or {}
        self.user_message = user_message or message
        self.recoverable = recoverable

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code.value if self.error_code else None,
            "error_message": str(self),
            "user_message": self.user_message,
            "context": self.context,
            "recoverable": self.recoverable,
        }

    def __str__(self) -> str:
        """String representation with error code."""
        if self.error_code:
            return f"[{self.error_code.value}] {super().__str__()}"
        return super().__str__()


def _split_kwargs(kwargs: Dict[str, Any], *consumed: str) -> Dict[str, Any]:
    return {k: v for k, v in kwargs.items() if k not in consumed}


class ConfigurationError(MaggrabError):
    """Configuration-related errors."""

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        """Initialize configuration error.

        Args:
            message: Error message
            config_key: Configuration key that caused the error
            **kwargs: Additional arguments for MaggrabError
        """
        context = kwargs.get("context", {})
        if config_key:
            context["config_key"] = config_key

        super().__init__(
            message=message,
            error_code=kwargs.get("error_code", ErrorCode.CONFIG_INVALID),
            context=context,
            user_message=kwargs.get("user_message", f"Configuration error: {message}"),
            **_split_kwargs(kwargs, "context", "error_code", "user_message"),
        )


class StorageError(MaggrabError):
    """Durable store errors."""

    def __init__(self, message: str, collection: Optional[str] = None, **kwargs):
        """Initialize storage error.

        Args:
            message: Error message
            collection: Collection that was being accessed
            **kwargs: Additional arguments for MaggrabError
        """
        context = kwargs.get("context", {})
        if collection:
            context["collection"] = collection

        super().__init__(
            message=message,
            error_code=kwargs.get("error_code", ErrorCode.STORAGE_WRITE),
            context=context,
            user_message=kwargs.get("user_message", "Storage operation failed"),
            recoverable=kwargs.get("recoverable", False),
            **_split_kwargs(kwargs, "context", "error_code", "user_message", "recoverable"),
        )


class FeedError(MaggrabError):
    """Feed fetching and parsing errors."""

    def __init__(self, message: str, feed_url: Optional[str] = None, **kwargs):
        """Initialize feed error.

        Args:
            message: Error message
            feed_url: Feed URL that caused the error
            **kwargs: Additional arguments for MaggrabError
        """
        context = kwargs.get("context", {})
        if feed_url:
            context["feed_url"] = feed_url

        super().__init__(
            message=message,
            error_code=kwargs.get("error_code", ErrorCode.FEED_FETCH_TIMEOUT),
            context=context,
            user_message=kwargs.get(
                "user_message", f"Feed processing failed: {message}"
            ),
            recoverable=kwargs.get("recoverable", True),
            **_split_kwargs(kwargs, "context", "error_code", "user_message", "recoverable"),
        )


class FeedFetchError(FeedError):
    """Feed download errors (network, HTTP status)."""

    pass


class FeedFormatError(FeedError):
    """The fetched document is not a syndication feed. Never retried."""

    def __init__(self, message: str, feed_url: Optional[str] = None, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.FEED_INVALID_FORMAT)
        kwargs["recoverable"] = False
        super().__init__(message, feed_url=feed_url, **kwargs)


class PageFetchError(MaggrabError):
    """Article page download errors."""

    def __init__(
        self,
        message: str,
        page_url: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        context = kwargs.get("context", {})
        if page_url:
            context["page_url"] = page_url
        if status_code:
            context["status_code"] = status_code

        super().__init__(
            message=message,
            error_code=kwargs.get("error_code", ErrorCode.PAGE_FETCH_FAILED),
            context=context,
            user_message=kwargs.get("user_message", "Article page could not be fetched"),
            recoverable=kwargs.get("recoverable", True),
            **_split_kwargs(kwargs, "context", "error_code", "user_message", "recoverable"),
        )
        self.status_code = status_code


class DownloaderError(MaggrabError):
    """Remote download-manager errors."""

    def __init__(self, message: str, device: Optional[str] = None, **kwargs):
        """Initialize downloader error.

        Args:
            message: Error message
            device: Device name or id involved, if any
            **kwargs: Additional arguments for MaggrabError
        """
        context = kwargs.get("context", {})
        if device:
            context["device"] = device

        super().__init__(
            message=message,
            error_code=kwargs.get("error_code", ErrorCode.DOWNLOADER_SUBMIT_FAILED),
            context=context,
            user_message=kwargs.get("user_message", "Download manager operation failed"),
            recoverable=kwargs.get("recoverable", True),
            **_split_kwargs(kwargs, "context", "error_code", "user_message", "recoverable"),
        )


class DownloaderAuthError(DownloaderError):
    """Authentication against the download manager failed."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.DOWNLOADER_AUTHENTICATION)
        super().__init__(message, **kwargs)


class DownloaderDeviceError(DownloaderError):
    """Device listing or selection failed."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.DOWNLOADER_NO_DEVICES)
        super().__init__(message, **kwargs)


class SchedulerError(MaggrabError):
    """Scheduler lifecycle errors."""

    def __init__(self, message: str, feed_id: Optional[str] = None, **kwargs):
        context = kwargs.get("context", {})
        if feed_id:
            context["feed_id"] = feed_id

        super().__init__(
            message=message,
            error_code=kwargs.get("error_code", ErrorCode.SCHEDULER_FEED_NOT_FOUND),
            context=context,
            user_message=kwargs.get("user_message", "Scheduler operation failed"),
            **_split_kwargs(kwargs, "context", "error_code", "user_message"),
        )


# Exception handling utilities


def is_retryable_error(exception: Exception) -> bool:
    """Check if an error is worth retrying.

    Args:
        exception: Exception to check

    Returns:
        True if the error is transient (timeout, network, rate limit, 5xx)
    """
    if not isinstance(exception, MaggrabError):
        return False

    if not exception.recoverable:
        return False

    retryable_codes = {
        ErrorCode.FEED_NETWORK_ERROR,
        ErrorCode.FEED_FETCH_TIMEOUT,
        ErrorCode.FEED_RATE_LIMITED,
        ErrorCode.FEED_SERVER_ERROR,
        ErrorCode.PAGE_TIMEOUT,
        ErrorCode.PAGE_NETWORK_ERROR,
        ErrorCode.PAGE_RATE_LIMITED,
        ErrorCode.PAGE_SERVER_ERROR,
    }

    return exception.error_code in retryable_codes


def get_user_friendly_message(exception: Exception) -> str:
    """Get user-friendly error message for any exception.

    Args:
        exception: Exception to get message for

    Returns:
        User-friendly error message
    """
    if isinstance(exception, MaggrabError):
        return exception.user_message

    return "An unexpected error occurred. Please try again later."
