"""
Maggrab Configuration System
============================

Configuration management with environment variables and Pydantic models.
Environment variables override Field defaults with clear precedence.

Downloader credentials live in a separate settings class (``MYJD_*``
variables) that is constructed on every access, so secrets are never held
by the daemon longer than a single connection attempt.
"""

from pathlib import Path
from typing import List, Optional
from enum import Enum

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..utils.exceptions import ConfigurationError, ErrorCode


class LogLevel(str, Enum):
    """Available log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


DEFAULT_FILE_HOSTS = [
    "nfile.cc",
    "novafile.org",
    "turbobit.net",
    "trbt.cc",
    "rapidgator.net",
    "nitroflare.com",
    "mega.nz",
    "mediafire.com",
    "katfile.com",
    "uploadgig.com",
    "filefox.cc",
]


class StorageSettings(BaseModel):
    """Durable store configuration."""
    data_dir: str = Field(default="./data", description="Directory holding the JSON collections")
    backup_count: int = Field(default=5, ge=1, le=50, description="Backups kept per collection")
    processed_limit: int = Field(default=1000, ge=10, description="Processed urls kept for deduplication")
    item_limit: int = Field(default=500, ge=10, description="Extracted/grabbed items kept")
    log_limit: int = Field(default=100, ge=10, description="Activity log entries kept")
    retention_days: int = Field(default=60, ge=1, le=3650, description="Age cutoff for maintenance cleanup")


class SchedulerSettings(BaseModel):
    """Daemon scheduling configuration."""
    tick_seconds: float = Field(default=60.0, gt=0, description="Period of the per-feed tick job")
    heartbeat_seconds: float = Field(default=30.0, gt=0, description="Heartbeat period")
    health_threshold_seconds: float = Field(default=90.0, gt=0, description="Max heartbeat age to report healthy")
    max_concurrent_runs: int = Field(default=3, ge=1, le=50, description="Feeds allowed to run at once")
    maintenance_interval_hours: float = Field(default=24.0, gt=0, description="Hours between cleanup runs")


class ProcessingSettings(BaseModel):
    """Ingestion pipeline configuration."""
    max_items_per_run: int = Field(default=10, ge=1, le=100, description="New items processed per run")
    feed_timeout: int = Field(default=30, ge=5, le=300, description="Feed request timeout in seconds")
    page_timeout: int = Field(default=15, ge=5, le=300, description="Article page timeout in seconds")
    retry_attempts: int = Field(default=3, ge=1, le=10, description="Attempts for transient fetch errors")
    retry_base_delay: float = Field(default=2.0, ge=0.0, le=60.0, description="First backoff delay in seconds")
    retry_max_delay: float = Field(default=30.0, ge=0.0, description="Backoff delay cap in seconds")
    retry_jitter: bool = Field(default=True, description="Randomize backoff delays by 25%")
    preferred_hosts: List[str] = Field(
        default_factory=lambda: ["novafile", "nfile"],
        description="Host substrings in submission priority order",
    )
    file_hosting_domains: List[str] = Field(
        default_factory=lambda: list(DEFAULT_FILE_HOSTS),
        description="Domains recognised as direct download links",
    )
    redirect_pattern: str = Field(
        default="engine/go.php?url=",
        description="Href fragment of redirect anchors carrying a base64 target",
    )

    @field_validator("preferred_hosts", "file_hosting_domains")
    @classmethod
    def normalize_hosts(cls, v):
        """Lower-case and drop empty host entries."""
        return [h.strip().lower() for h in v if h and h.strip()]


class DownloaderSettings(BaseModel):
    """Remote download-manager behaviour (credentials are separate)."""
    app_key: str = Field(default="maggrab", description="Application key reported to MyJDownloader")
    failure_backoff_seconds: float = Field(default=30.0, ge=0.0, description="Fail-fast window after a failure")
    max_backoff_seconds: float = Field(default=900.0, ge=0.0, description="Upper bound for the fail-fast window")


class LoggingSettings(BaseModel):
    """Logging configuration."""
    level: LogLevel = Field(default=LogLevel.INFO, description="Global log level")
    file_path: Optional[str] = Field(default="logs/maggrab.log", description="Log file path")
    max_file_size_mb: int = Field(default=10, ge=1, le=100, description="Max log file size in MB")
    backup_count: int = Field(default=5, ge=1, le=20, description="Number of log backup files")
    structured_logging: bool = Field(default=False, description="Use structured JSON logging")
    console_logging: bool = Field(default=True, description="Enable console logging")


class DownloaderCredentials(BaseSettings):
    """MyJDownloader account, read from MYJD_EMAIL / MYJD_PASSWORD / MYJD_DEVICE."""
    email: str = Field(default="", description="MyJDownloader account email")
    password: str = Field(default="", description="MyJDownloader account password")
    device: str = Field(default="", description="Preferred device name or id")

    model_config = SettingsConfigDict(
        env_prefix="MYJD_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def configured(self) -> bool:
        return bool(self.email and self.password)

    def masked_email(self) -> Optional[str]:
        """Email with everything between the first two characters and '@' hidden."""
        if not self.email:
            return None
        local, sep, domain = self.email.partition("@")
        if not sep:
            return self.email[:2] + "***"
        return f"{local[:2]}***@{domain}"


class MaggrabSettings(BaseSettings):
    """Main application settings."""

    storage: StorageSettings = Field(default_factory=StorageSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    processing: ProcessingSettings = Field(default_factory=ProcessingSettings)
    downloader: DownloaderSettings = Field(default_factory=DownloaderSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    app_name: str = Field(default="Maggrab", description="Application name")
    version: str = Field(default="0.1.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        env_prefix="MAGGRAB_",
        extra="ignore",
    )

    def validate_configuration(self) -> None:
        """Validate complete configuration."""
        errors = []

        if self.scheduler.health_threshold_seconds <= self.scheduler.heartbeat_seconds:
            errors.append("health_threshold_seconds must exceed heartbeat_seconds")

        if self.processing.retry_max_delay < self.processing.retry_base_delay:
            errors.append("retry_max_delay must not be lower than retry_base_delay")

        if self.logging.file_path:
            try:
                log_path = Path(self.logging.file_path)
                log_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                errors.append(f"Invalid log file path: {e}")

        if errors:
            raise ConfigurationError(
                f"Configuration validation failed: {'; '.join(errors)}",
                error_code=ErrorCode.CONFIG_INVALID
            )

    def get_effective_log_level(self) -> str:
        """Get effective log level considering debug mode."""
        if self.debug:
            return "DEBUG"
        return self.logging.level.value


def load_settings() -> MaggrabSettings:
    """Load settings from environment variables and defaults.

    Returns:
        Loaded and validated settings

    Raises:
        ConfigurationError: If configuration is invalid
    """
    from dotenv import load_dotenv
    load_dotenv()

    try:
        settings = MaggrabSettings()
        settings.validate_configuration()
        return settings

    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(
            f"Failed to initialize settings: {e}",
            error_code=ErrorCode.CONFIG_INVALID
        )


_settings: Optional[MaggrabSettings] = None


def get_settings(reload: bool = False) -> MaggrabSettings:
    """Get global settings instance (singleton pattern).

    Args:
        reload: Force reload of settings

    Returns:
        Global settings instance
    """
    global _settings

    if _settings is None or reload:
        _settings = load_settings()

    return _settings
