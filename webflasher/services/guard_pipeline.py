"""Guard pipeline for the flash telemetry write endpoint

Ordered, short-circuiting checks. The first failing check decides the
response; a request that passes every check updates the counters and, for a
failed flash with a message, the error log.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from webflasher.config import Settings
from webflasher.core.security import (
    escape_text,
    extract_host,
    host_is_allowed,
    restrict_chars,
    sanitize_ip_address,
)
from webflasher.core.storage import StorageError
from webflasher.flashing.classifier import classify, coerce_category
from webflasher.services.flash_stats import FlashStatsStore
from webflasher.services.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

_PROJECT_DISALLOWED = r"[^A-Za-z0-9 _.\-]"
_ACTION_DISALLOWED = r"[^a-z_]"
_CONTEXT_KEY_DISALLOWED = r"[^A-Za-z0-9_]"
_CONTEXT_KEY_LENGTH = 50


@dataclass
class RawRequest:
    """Transport-independent view of an incoming request"""
    method: str
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)  # lower-cased names
    client_ip: str = "unknown"

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


@dataclass
class GuardResult:
    status: int
    body: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class FlashReport:
    """A telemetry payload after validation and sanitization"""
    project: str
    action: str
    success: bool
    error: Optional[str] = None
    category: Optional[str] = None
    context: Optional[Dict[str, Any]] = None


def _error(status: int, message: str, **headers: str) -> GuardResult:
    return GuardResult(status=status, body={"error": message}, headers=dict(headers))


class GuardPipeline:
    """
    Validates telemetry posts and applies them to the store.

    Args:
        settings: Toggles, limits and file locations
        store: Counter/log store
        rate_limiter: Per-client limiter
    """

    def __init__(self, settings: Settings, store: FlashStatsStore, rate_limiter: RateLimiter):
        self.settings = settings
        self.store = store
        self.rate_limiter = rate_limiter

    def handle(self, request: RawRequest) -> GuardResult:
        s = self.settings
        client = sanitize_ip_address(request.client_ip)

        # 1. Method
        method = request.method.upper()
        if method == "OPTIONS":
            return GuardResult(status=200)
        if method != "POST":
            return _error(405, "Method not allowed", Allow="POST, OPTIONS")

        # 2. Deployment marker
        if s.CHECK_MARKER_FILE and not self._marker_present():
            logger.error("Marker file missing or empty, refusing telemetry writes")
            return _error(503, "Service unavailable")

        # 3. Rate limit
        if s.CHECK_RATE_LIMIT:
            try:
                decision = self.rate_limiter.check(request.client_ip)
            except StorageError as e:
                logger.error(f"Rate limit table unavailable: {e}")
                return _error(500, "Failed to save")
            if not decision.allowed:
                return _error(429, "Too many requests", **{"Retry-After": str(decision.retry_after)})

        # 4. Payload size, before parsing
        if s.CHECK_PAYLOAD_SIZE and len(request.body) > s.MAX_PAYLOAD_BYTES:
            logger.warning(f"Oversized telemetry payload ({len(request.body)} bytes) from {client}")
            return _error(413, "Payload too large")

        # 5. JSON
        try:
            data = json.loads(request.body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return _error(400, "Invalid JSON")
        if not isinstance(data, dict):
            return _error(400, "Invalid data")

        # 6. Honeypot
        if s.CHECK_HONEYPOT and self._honeypot_filled(data):
            logger.warning(f"Honeypot field filled by {client}, discarding report")
            return GuardResult(status=200, body={"success": True})

        # 7. Origin / Referer
        if s.CHECK_ORIGIN:
            rejected = self._check_origin(request, client)
            if rejected:
                return rejected

        # 8. Validation and sanitization
        report = self.sanitize(data)
        if report is None:
            return _error(400, "Invalid data")

        # 9. Storage ceilings
        write_error_log = report.error is not None
        if s.CHECK_STORAGE_LIMITS:
            if self.store.counts_over_cap():
                logger.error("Counters file exceeds its size limit")
                return _error(507, "Storage limit reached")
            if write_error_log and self.store.errors_over_cap():
                logger.warning("Error log exceeds its size limit, skipping error entry")
                write_error_log = False

        try:
            counts = self.store.record_flash(report.project, report.success)
            if write_error_log:
                self.store.record_error(
                    project=report.project,
                    action=report.action,
                    error=report.error,
                    category=report.category,
                    context=report.context,
                )
        except StorageError as e:
            logger.error(f"Failed to persist flash report: {e}")
            return _error(500, "Failed to save")

        logger.info(
            "Flash report recorded",
            extra={"project": report.project, "success": report.success, "category": report.category},
        )
        return GuardResult(status=200, body={"success": True, "counts": counts})

    def _marker_present(self) -> bool:
        path = self.settings.marker_path
        try:
            return path.is_file() and path.stat().st_size > 0
        except OSError:
            return False

    def _honeypot_filled(self, data: Dict[str, Any]) -> bool:
        for name in self.settings.honeypot_fields_list:
            value = data.get(name)
            if value not in (None, "", [], {}):
                return True
        return False

    def _check_origin(self, request: RawRequest, client: str) -> Optional[GuardResult]:
        header = request.header("origin") or request.header("referer")
        if not header:
            logger.info(f"No Origin/Referer header from {client}, allowing")
            return None

        host = extract_host(header)
        if host and host_is_allowed(host, self.settings.allowed_origin_hosts_list):
            return None

        logger.warning(f"Rejected telemetry from origin {host or header!r}")
        return _error(403, "Forbidden")

    def sanitize(self, data: Dict[str, Any]) -> Optional[FlashReport]:
        """Validate a parsed payload. Returns None if the project is unusable."""
        s = self.settings

        raw_project = data.get("project")
        if not isinstance(raw_project, str):
            return None
        project = restrict_chars(raw_project, _PROJECT_DISALLOWED, s.MAX_PROJECT_LENGTH)
        if not project:
            return None

        raw_action = data.get("action")
        action = ""
        if isinstance(raw_action, str):
            action = restrict_chars(raw_action.lower(), _ACTION_DISALLOWED, s.MAX_ACTION_LENGTH)
        action = action or "flash"

        success = bool(data.get("success", True))

        report = FlashReport(project=project, action=action, success=success)

        raw_error = data.get("error")
        if not success and isinstance(raw_error, str) and raw_error.strip():
            report.error = escape_text(raw_error.strip(), s.MAX_ERROR_LENGTH)
            if data.get("errorCategory") is None:
                report.category = classify(raw_error).value
            else:
                report.category = coerce_category(data.get("errorCategory")).value
            report.context = self._sanitize_context(data.get("context"))

        return report

    def _sanitize_context(self, context: Any, depth: int = 0) -> Optional[Dict[str, Any]]:
        if not isinstance(context, dict):
            return None

        clean: Dict[str, Any] = {}
        for key, value in list(context.items())[: self.settings.MAX_CONTEXT_KEYS]:
            key = restrict_chars(str(key), _CONTEXT_KEY_DISALLOWED, _CONTEXT_KEY_LENGTH)
            if not key:
                continue
            if isinstance(value, dict):
                # one level of nesting, e.g. {"browser": {...}}
                if depth == 0:
                    nested = self._sanitize_context(value, depth + 1)
                    if nested:
                        clean[key] = nested
                continue
            if value is None or isinstance(value, (bool, int, float)):
                clean[key] = value
            else:
                clean[key] = escape_text(str(value), self.settings.MAX_CONTEXT_VALUE_LENGTH)

        return clean or None
