"""Fire-and-forget flash telemetry reporter.

Reports are sent once per session, at its terminal state. Failures are logged
and swallowed so they never interrupt flashing.
"""

import asyncio
import logging
import platform
import sys
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set

import httpx

from webflasher.flashing.classifier import ErrorCategory, classify

logger = logging.getLogger(__name__)

COUNTS_PATH = "/counts"
LOG_PATH = "/log"


def host_info(serial_supported: bool) -> Dict[str, Any]:
    """Describe the flashing host for error context"""
    return {
        "name": platform.python_implementation(),
        "version": platform.python_version(),
        "os": platform.system() or "Unknown",
        "serial": serial_supported,
    }


class TelemetryClient:
    """
    Posts flash outcomes to the telemetry API.

    Args:
        base_url: Telemetry API root, e.g. http://host/api/v1/flash
        enabled: Analytics switch; when off nothing is sent
        client: Optional shared httpx.AsyncClient
        on_counts: Called with the refreshed aggregate counts
    """

    def __init__(
        self,
        base_url: str,
        enabled: bool = True,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        on_counts: Optional[Callable[[Dict[str, Dict[str, int]]], None]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.enabled = enabled
        self.client = client
        self.timeout = timeout
        self.on_counts = on_counts
        self.counts: Dict[str, Dict[str, int]] = {}
        self._pending: Set[asyncio.Task] = set()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        if self.client is not None:
            return await self.client.request(method, self.base_url + path, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(method, self.base_url + path, **kwargs)

    async def report(
        self,
        project: str,
        action: str,
        success: bool,
        error: Optional[str] = None,
        error_category: Optional[ErrorCategory] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Send one flash outcome. Returns True if the server accepted it."""
        if not self.enabled:
            return False

        payload: Dict[str, Any] = {
            "project": project,
            "action": action,
            "success": success,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if error:
            payload["error"] = error
            payload["errorCategory"] = (error_category or classify(error)).value
            if context:
                payload["context"] = context

        try:
            logger.info(f"Logging flash event for \"{project}\"...")
            response = await self._request("POST", LOG_PATH, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"Could not log flash event: {e}")
            return False

        if response.status_code != 200:
            logger.warning(f"Failed to log flash event: HTTP {response.status_code}")
            return False

        logger.info(f"Flash event logged successfully for \"{project}\"")
        await self.refresh_counts()
        return True

    async def refresh_counts(self) -> Dict[str, Dict[str, int]]:
        if not self.enabled:
            return self.counts
        try:
            response = await self._request("GET", COUNTS_PATH)
            if response.status_code == 200:
                self.counts = response.json()
                if self.on_counts:
                    self.on_counts(self.counts)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Could not load flash counts: {e}")
        return self.counts

    def submit(self, **kwargs) -> None:
        """Schedule report() without waiting for it"""
        if not self.enabled:
            return
        task = asyncio.get_running_loop().create_task(self.report(**kwargs))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def flush(self) -> None:
        """Wait for scheduled reports to finish"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def report_unsupported_host(self, serial_supported: bool = False) -> None:
        """Record a host that cannot flash at all"""
        info = host_info(serial_supported)
        self.submit(
            project="NA",
            action="browser_check",
            success=False,
            error=f"Unsupported host: {info['name']} {info['version']} on {info['os']} (serial not supported)",
            error_category=ErrorCategory.WRONG_BROWSER,
            context={"browser": info, "stage": "idle", "userAgent": f"python/{sys.version.split()[0]}"},
        )
