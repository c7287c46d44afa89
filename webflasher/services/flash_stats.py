"""Flash counters and error log persisted as flat JSON documents.

Counters:  {project: {total, success, failed}}
Error log: {lastUpdated, totalErrors, categoryCounts, entries[newest first]}
"""

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from webflasher.core.storage import file_size, locked_json_update, read_json
from webflasher.flashing.classifier import CATEGORY_DESCRIPTIONS

logger = logging.getLogger(__name__)


def _empty_error_log() -> Dict[str, Any]:
    return {
        "lastUpdated": None,
        "totalErrors": 0,
        "categoryCounts": {},
        "entries": [],
    }


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class FlashStatsStore:
    """
    Counter/log store.

    Args:
        counts_path: Per-project counters document
        errors_path: Capped error log document
        max_entries: Error log ring size
        max_counts_bytes: Counters file ceiling
        max_errors_bytes: Error log file ceiling
    """

    def __init__(
        self,
        counts_path: Path,
        errors_path: Path,
        max_entries: int = 500,
        max_counts_bytes: int = 1024 * 1024,
        max_errors_bytes: int = 5 * 1024 * 1024,
    ):
        self.counts_path = counts_path
        self.errors_path = errors_path
        self.max_entries = max_entries
        self.max_counts_bytes = max_counts_bytes
        self.max_errors_bytes = max_errors_bytes

    def counts_over_cap(self) -> bool:
        return file_size(self.counts_path) > self.max_counts_bytes

    def errors_over_cap(self) -> bool:
        return file_size(self.errors_path) > self.max_errors_bytes

    def record_flash(self, project: str, success: bool) -> Dict[str, int]:
        """Increment the project's counters; returns the updated triple"""

        def mutate(counts: Dict[str, Any]) -> Dict[str, int]:
            entry = counts.get(project)
            if not isinstance(entry, dict):
                entry = {"total": 0, "success": 0, "failed": 0}
            if success:
                entry["success"] = int(entry.get("success", 0)) + 1
            else:
                entry["failed"] = int(entry.get("failed", 0)) + 1
            entry["total"] = entry["success"] + entry["failed"]
            counts[project] = entry
            return dict(entry)

        return locked_json_update(self.counts_path, {}, mutate)

    def record_error(
        self,
        project: str,
        action: str,
        error: str,
        category: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Prepend an entry to the capped ring; returns the stored entry"""
        now = _utcnow()
        entry: Dict[str, Any] = {
            "id": uuid.uuid4().hex,
            "timestamp": now,
            "project": project,
            "action": action,
            "error": error,
            "category": category,
        }
        if context:
            entry["context"] = context

        def mutate(log: Dict[str, Any]) -> None:
            for key, value in _empty_error_log().items():
                log.setdefault(key, value)
            log["entries"].insert(0, entry)
            del log["entries"][self.max_entries:]
            log["totalErrors"] = int(log.get("totalErrors", 0)) + 1
            log["categoryCounts"][category] = int(log["categoryCounts"].get(category, 0)) + 1
            log["lastUpdated"] = now

        locked_json_update(self.errors_path, _empty_error_log(), mutate)
        return entry

    def counts(self) -> Dict[str, Any]:
        return read_json(self.counts_path, {})

    def error_log(self) -> Dict[str, Any]:
        log = read_json(self.errors_path, _empty_error_log())
        for key, value in _empty_error_log().items():
            log.setdefault(key, value)
        return log

    def query_errors(
        self,
        category: Optional[str] = None,
        project: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """Filter (category, then project), then paginate"""
        entries: List[Dict[str, Any]] = self.error_log()["entries"]

        if category:
            entries = [e for e in entries if e.get("category") == category]
        if project:
            entries = [e for e in entries if e.get("project") == project]

        total = len(entries)
        return {
            "total": total,
            "limit": limit,
            "offset": offset,
            "hasMore": (offset + limit) < total,
            "filters": {"category": category, "project": project},
            "entries": entries[offset:offset + limit],
        }

    def summarize(self) -> Dict[str, Any]:
        """Category totals plus per-project tallies over every stored entry"""
        log = self.error_log()

        project_stats: Dict[str, Dict[str, int]] = {}
        for entry in log["entries"]:
            stats = project_stats.setdefault(entry.get("project", "unknown"), {})
            cat = entry.get("category", "unknown")
            stats[cat] = stats.get(cat, 0) + 1

        return {
            "lastUpdated": log["lastUpdated"],
            "totalErrors": log["totalErrors"],
            "categoryCounts": log["categoryCounts"],
            "categoryDescriptions": CATEGORY_DESCRIPTIONS,
            "projectStats": project_stats,
        }
