"""Per-client rate limiting backed by a JSON table.

Records are keyed by a salted hash of the client IP:
    {firstRequestTime, minuteCount, minuteWindowStart, hourCount}
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from webflasher.core.security import hash_client_ip, sanitize_ip_address
from webflasher.core.storage import locked_json_update

logger = logging.getLogger(__name__)

MINUTE_WINDOW = 60
HOUR_WINDOW = 3600


@dataclass
class RateDecision:
    allowed: bool
    scope: Optional[str] = None  # "minute" or "hour" when rejected
    retry_after: int = 0


class RateLimiter:
    """
    Minute and hour ceilings per client.

    Args:
        path: Rate limit table file
        salt: Salt for the IP hash
        per_minute: Requests allowed in a 60 second window
        per_hour: Requests allowed in a 3600 second window
        clock: Time source, seconds since epoch
    """

    def __init__(
        self,
        path: Path,
        salt: str,
        per_minute: int = 10,
        per_hour: int = 50,
        clock: Callable[[], float] = time.time,
    ):
        self.path = path
        self.salt = salt
        self.per_minute = per_minute
        self.per_hour = per_hour
        self.clock = clock

    @staticmethod
    def _prune(table: Dict[str, Any], now: float) -> None:
        """Drop records idle for more than an hour"""
        stale = [
            key for key, record in table.items()
            if not isinstance(record, dict)
            or now - max(record.get("firstRequestTime", 0), record.get("minuteWindowStart", 0)) > HOUR_WINDOW
        ]
        for key in stale:
            del table[key]

    def check(self, client_ip: str) -> RateDecision:
        """Count a request from client_ip if it is within both ceilings"""
        key = hash_client_ip(client_ip, self.salt)
        now = self.clock()

        def mutate(table: Dict[str, Any]) -> RateDecision:
            self._prune(table, now)

            record = table.get(key) or {}
            record.setdefault("firstRequestTime", now)
            record.setdefault("minuteCount", 0)
            record.setdefault("minuteWindowStart", now)
            record.setdefault("hourCount", 0)

            # Windows reset once fully elapsed
            if now - record["minuteWindowStart"] > MINUTE_WINDOW:
                record["minuteCount"] = 0
                record["minuteWindowStart"] = now
            if now - record["firstRequestTime"] > HOUR_WINDOW:
                record["hourCount"] = 0
                record["firstRequestTime"] = now

            if record["minuteCount"] >= self.per_minute:
                table[key] = record
                retry = int(MINUTE_WINDOW - (now - record["minuteWindowStart"])) + 1
                return RateDecision(False, "minute", max(retry, 1))
            if record["hourCount"] >= self.per_hour:
                table[key] = record
                retry = int(HOUR_WINDOW - (now - record["firstRequestTime"])) + 1
                return RateDecision(False, "hour", max(retry, 1))

            record["minuteCount"] += 1
            record["hourCount"] += 1
            table[key] = record
            return RateDecision(True)

        decision = locked_json_update(self.path, {}, mutate)
        if not decision.allowed:
            logger.warning(
                f"Rate limit exceeded ({decision.scope}) for client {sanitize_ip_address(client_ip)}"
            )
        return decision
