"""
Downloader Client
=================

Async contract for the remote download manager and its MyJDownloader
implementation. ``myjdapi`` is a blocking library, so every call runs in a
worker thread.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Protocol

import myjdapi
from myjdapi.exception import MYJDException

from ..utils.exceptions import DownloaderAuthError, DownloaderDeviceError, DownloaderError, ErrorCode


@dataclass(frozen=True)
class DeviceInfo:
    """Download-manager device registered on the account."""
    id: str
    name: str


class DownloaderClient(Protocol):
    """Operations the connection manager needs from a download manager."""

    async def connect(self, email: str, password: str) -> None:
        ...

    async def list_devices(self) -> List[DeviceInfo]:
        ...

    async def add_links(self, urls: List[str], device_id: str, autostart: bool = True) -> None:
        ...

    async def query_packages(self, device_id: str) -> List[Dict[str, Any]]:
        ...

    async def disconnect(self) -> None:
        ...


class MyJDownloaderClient:
    """DownloaderClient backed by the MyJDownloader cloud API."""

    def __init__(self, app_key: str = "maggrab"):
        self.app_key = app_key
        self._api = None

    async def connect(self, email: str, password: str) -> None:
        def _connect():
            api = myjdapi.Myjdapi()
            api.set_app_key(self.app_key)
            api.connect(email, password)
            return api

        try:
            self._api = await asyncio.to_thread(_connect)
        except MYJDException as e:
            self._api = None
            raise DownloaderAuthError(f"MyJDownloader login failed: {e}") from e

    async def list_devices(self) -> List[DeviceInfo]:
        api = self._require_api()

        def _list():
            api.update_devices()
            return api.list_devices()

        try:
            devices = await asyncio.to_thread(_list)
        except MYJDException as e:
            raise DownloaderDeviceError(f"Could not list devices: {e}") from e

        return [DeviceInfo(id=str(d.get("id")), name=str(d.get("name"))) for d in devices or []]

    async def add_links(self, urls: List[str], device_id: str, autostart: bool = True) -> None:
        api = self._require_api()

        def _add():
            device = api.get_device(device_id=device_id)
            device.linkgrabber.add_links([{"autostart": autostart, "links": ",".join(urls)}])

        try:
            await asyncio.to_thread(_add)
        except MYJDException as e:
            raise DownloaderError(f"Adding links failed: {e}", device=device_id) from e

    async def query_packages(self, device_id: str) -> List[Dict[str, Any]]:
        api = self._require_api()

        def _query():
            device = api.get_device(device_id=device_id)
            return device.downloads.query_packages()

        try:
            return list(await asyncio.to_thread(_query) or [])
        except MYJDException as e:
            raise DownloaderError(f"Package query failed: {e}", device=device_id) from e

    async def disconnect(self) -> None:
        api, self._api = self._api, None
        if api is None:
            return
        try:
            await asyncio.to_thread(api.disconnect)
        except MYJDException as e:
            raise DownloaderError(f"Disconnect failed: {e}") from e

    def _require_api(self):
        if self._api is None:
            raise DownloaderError(
                "Not connected to MyJDownloader",
                error_code=ErrorCode.DOWNLOADER_NOT_CONFIGURED,
            )
        return self._api
