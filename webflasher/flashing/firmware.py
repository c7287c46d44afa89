"""
Firmware retrieval for a flash session.

Firmware images live under <base>/firmware/<path>, where <base> is either an
HTTP(S) URL or a local directory. Files are fetched once per session and
handed to the write stage.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

import httpx

from webflasher.flashing.catalog import FirmwareEntry, Project
from webflasher.flashing.errors import DownloadFailed

logger = logging.getLogger(__name__)

FIRMWARE_DIR = "firmware"


@dataclass
class FirmwareFile:
    path: str
    offset_address: int
    raw_bytes: bytes

    @property
    def size(self) -> int:
        return len(self.raw_bytes)


class FirmwareDownloader:
    """
    Fetches the images of a project.

    Args:
        base: Base URL (http/https) or local directory containing firmware/
        client: Optional shared httpx.AsyncClient (tests inject a MockTransport)
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        base: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
    ):
        self.base = base
        self.client = client
        self.timeout = timeout

    @property
    def is_remote(self) -> bool:
        return self.base.startswith(("http://", "https://"))

    def url_for(self, entry: FirmwareEntry) -> str:
        return f"{self.base.rstrip('/')}/{FIRMWARE_DIR}/{entry.path.lstrip('/')}"

    async def _fetch_remote(self, client: httpx.AsyncClient, entry: FirmwareEntry) -> bytes:
        response = await client.get(self.url_for(entry), follow_redirects=True)
        if response.status_code != 200:
            raise DownloadFailed(f"HTTP {response.status_code}: {response.reason_phrase}")
        return response.content

    def _read_local(self, entry: FirmwareEntry) -> bytes:
        path = Path(self.base).expanduser() / FIRMWARE_DIR / entry.path
        return path.read_bytes()

    async def fetch(
        self,
        project: Project,
        on_progress: Optional[Callable[[int, int, FirmwareFile], None]] = None,
    ) -> List[FirmwareFile]:
        """
        Download every image of the project, in catalog order.

        Args:
            project: Project to fetch
            on_progress: Called as (files_done, files_total, file) after each file

        Raises:
            DownloadFailed: On the first file that cannot be retrieved
        """
        entries = project.firmware_entries
        logger.info(f"Downloading {len(entries)} file(s) for {project.name}")

        files: List[FirmwareFile] = []
        client = self.client
        owns_client = client is None and self.is_remote
        if owns_client:
            client = httpx.AsyncClient(timeout=self.timeout)

        try:
            for entry in entries:
                try:
                    if self.is_remote:
                        data = await self._fetch_remote(client, entry)
                    else:
                        data = self._read_local(entry)
                except (httpx.HTTPError, OSError, DownloadFailed) as e:
                    logger.error(f"Failed to download {entry.path}: {e}")
                    raise DownloadFailed(f"Failed to download firmware file: {entry.path}") from e

                fw = FirmwareFile(path=entry.path, offset_address=entry.offset_address, raw_bytes=data)
                files.append(fw)
                logger.info(f"Downloaded {entry.path} ({fw.size / 1024:.1f} KB) at {entry.offset}")
                if on_progress:
                    on_progress(len(files), len(entries), fw)
        finally:
            if owns_client:
                await client.aclose()

        return files
