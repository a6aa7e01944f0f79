"""
Downloader Connection Manager
=============================

Owns the single logical session to the remote download manager. The session
is created lazily on the first submission, reused while it works and torn
down completely on any failure. After a failure further attempts fail fast
until a backoff window (doubling per consecutive failure) has passed.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..config.settings import DownloaderCredentials, DownloaderSettings
from ..events import DaemonEvent, EventPublisher, EventType, NullPublisher
from ..storage.models import LogLevel, LogSource, StatKey
from ..storage.repository import GrabberRepository
from ..utils.exceptions import DownloaderDeviceError
from ..utils.logging import get_logger_for_component
from ..utils.timeutils import Clock, now_ms
from .client import DeviceInfo, DownloaderClient, MyJDownloaderClient


CredentialsProvider = Callable[[], DownloaderCredentials]


@dataclass
class ConnectionState:
    """In-memory session state. No device id means disconnected."""
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    attempts: int = 0
    last_failure: Optional[int] = None
    last_error: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self.device_id is not None


class ConnectionManager:
    """Lazily connects to MyJDownloader and submits download links."""

    def __init__(
        self,
        repository: GrabberRepository,
        client: Optional[DownloaderClient] = None,
        credentials_provider: CredentialsProvider = DownloaderCredentials,
        publisher: Optional[EventPublisher] = None,
        settings: Optional[DownloaderSettings] = None,
        clock: Clock = now_ms,
    ):
        """Initialize connection manager.

        Args:
            repository: Store operations for logs, stats and extracted items
            client: Download-manager client (MyJDownloader when omitted)
            credentials_provider: Called on every attempt for fresh credentials
            publisher: Live-update publisher
            settings: Backoff configuration
            clock: Epoch-millisecond clock
        """
        self.repository = repository
        self.settings = settings or DownloaderSettings()
        self.client = client or MyJDownloaderClient(app_key=self.settings.app_key)
        self.credentials_provider = credentials_provider
        self.publisher = publisher or NullPublisher()
        self.clock = clock
        self.state = ConnectionState()
        self.logger = get_logger_for_component("downloader")

    def backoff_remaining_ms(self) -> int:
        """Milliseconds left in the fail-fast window (0 when not backing off)."""
        if self.state.last_failure is None or self.state.attempts == 0:
            return 0
        window = self.settings.failure_backoff_seconds * (2 ** (self.state.attempts - 1))
        window_ms = int(min(window, self.settings.max_backoff_seconds) * 1000)
        elapsed = self.clock() - self.state.last_failure
        return max(0, window_ms - elapsed)

    async def ensure_connection(
        self,
        credentials: Optional[DownloaderCredentials] = None,
        force: bool = False,
    ) -> bool:
        """Make sure a device session exists.

        Args:
            credentials: Credentials to use (read fresh when omitted)
            force: Ignore the failure backoff window

        Returns:
            True when connected to a device
        """
        credentials = credentials or self.credentials_provider()
        if not credentials.configured:
            return False

        if not force and self.backoff_remaining_ms() > 0:
            self.logger.debug(
                f"Connection attempt suppressed, backing off for {self.backoff_remaining_ms()}ms"
            )
            return False

        if self.state.connected:
            return True

        try:
            await self.client.connect(credentials.email, credentials.password)
            await self._log(LogLevel.SUCCESS, "Connected to MyJDownloader")

            devices = await self.client.list_devices()
            if not devices:
                raise DownloaderDeviceError(
                    "No JDownloader devices found. Make sure JDownloader is running "
                    "and connected to MyJDownloader."
                )

            device = await self._select_device(devices, credentials.device)

        except Exception as e:
            await self._fail(f"Failed to connect to MyJDownloader: {e}")
            return False

        self.state.device_id = device.id
        self.state.device_name = device.name
        self.state.attempts = 0
        self.state.last_failure = None
        self.state.last_error = None
        self.logger.info(f"Using JDownloader device {device.name} ({device.id})")
        return True

    async def _select_device(self, devices: List[DeviceInfo], wanted: str) -> DeviceInfo:
        if wanted:
            for device in devices:
                if device.name.lower() == wanted.lower() or device.id == wanted:
                    await self._log(LogLevel.INFO, f"Using JDownloader device: {device.name}")
                    return device
            await self._log(
                LogLevel.WARN,
                f"Device '{wanted}' not found, using first available: {devices[0].name}",
            )
            return devices[0]

        await self._log(LogLevel.INFO, f"Using JDownloader device: {devices[0].name}")
        return devices[0]

    async def submit(self, url: str, title: str, extracted_item_id: Optional[str] = None) -> bool:
        """Send one link to the download manager with autostart.

        A failure resets the session and abandons this submission.

        Returns:
            True if the link was accepted
        """
        credentials = self.credentials_provider()
        if not credentials.configured:
            await self._log(
                LogLevel.WARN,
                "MyJDownloader not configured - set MYJD_EMAIL and MYJD_PASSWORD",
            )
            return False

        if not await self.ensure_connection(credentials):
            await self._log(LogLevel.ERROR, f"Cannot submit {title}: not connected to MyJDownloader")
            return False

        try:
            await self.client.add_links([url], self.state.device_id, autostart=True)
        except Exception as e:
            await self._fail(f"Failed to submit to JDownloader: {e}")
            return False

        await self._log(LogLevel.SUCCESS, f"Submitted to JDownloader: {title}")
        stats = await self.repository.increment_stat(StatKey.SUBMITTED)
        if extracted_item_id:
            await self.repository.mark_extracted_item_submitted(extracted_item_id)
        self.publisher.publish(
            DaemonEvent(type=EventType.STATS, data=stats.model_dump(), timestamp=self.clock())
        )
        return True

    async def reset(self) -> None:
        """Drop the session. Disconnect errors are logged and ignored."""
        self.state.device_id = None
        self.state.device_name = None
        try:
            await self.client.disconnect()
        except Exception as e:
            self.logger.debug(f"Ignoring disconnect error: {e}")

    async def _fail(self, message: str) -> None:
        await self.reset()
        self.state.attempts += 1
        self.state.last_failure = self.clock()
        self.state.last_error = message
        self.logger.error(message)
        await self._log(LogLevel.ERROR, message)

    def get_connection_status(self) -> Dict[str, Any]:
        """Configured/connected flags, masked account email and device name."""
        credentials = self.credentials_provider()
        return {
            "configured": credentials.configured,
            "connected": self.state.connected,
            "masked_email": credentials.masked_email(),
            "device_name": self.state.device_name or credentials.device or None,
        }

    async def test_connection(self) -> Dict[str, Any]:
        """Connect ignoring the backoff window and count packages on the device."""
        credentials = self.credentials_provider()
        if not credentials.configured:
            return {"success": False, "error": "MyJDownloader credentials not configured"}

        if not await self.ensure_connection(credentials, force=True):
            return {"success": False, "error": self.state.last_error or "Connection failed"}

        try:
            packages = await self.client.query_packages(self.state.device_id)
            package_count = len(packages)
        except Exception as e:
            self.logger.warning(f"Package query failed: {e}")
            package_count = 0

        return {
            "success": True,
            "device_name": self.state.device_name,
            "package_count": package_count,
        }

    async def _log(self, level: LogLevel, message: str) -> None:
        await self.repository.add_log(level, message, LogSource.DOWNLOADER)
