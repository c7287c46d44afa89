"""Security helpers

- Client IP hashing for rate limit keys
- IP / token masking for logs
- Origin host matching
- Input sanitization for telemetry fields
"""

import hashlib
import html
import re
from typing import Iterable, Optional
from urllib.parse import urlsplit

_IPV4_PATTERN = re.compile(r"\b(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})\b")
_TOKEN_PATTERN = re.compile(r"\b[A-Za-z0-9_-]{32,}\b")


def sanitize_log_data(data: Optional[str]) -> Optional[str]:
    """
    Sanitize data before it is logged.

    Masks:
    - IPv4 addresses (last octet kept)
    - Tokens and hashes (base64/hex-like strings of 32+ chars)
    """
    if not data:
        return data

    data = _IPV4_PATTERN.sub(lambda m: f"***.***.***.{m.group(4)}", data)
    data = _TOKEN_PATTERN.sub(lambda m: m.group(0)[:8] + "***", data)
    return data


def sanitize_ip_address(ip: Optional[str]) -> Optional[str]:
    """Sanitize IP address for logging (keep last octet only)"""
    if not ip:
        return ip

    # Handle IPv4
    if "." in ip:
        parts = ip.split(".")
        if len(parts) == 4:
            return f"***.***.***.{parts[-1]}"

    # Handle IPv6 (mask all but the last 2 groups)
    if ":" in ip:
        parts = ip.split(":")
        if len(parts) >= 3:
            return ":".join(["***"] * (len(parts) - 2) + parts[-2:])

    return "***"


def hash_client_ip(ip: str, salt: str) -> str:
    """Stable, non-reversible key for a client address"""
    return hashlib.sha256(f"{salt}:{ip}".encode("utf-8")).hexdigest()


def extract_host(header_value: Optional[str]) -> Optional[str]:
    """Return the lower-cased host of an Origin/Referer value, or None"""
    if not header_value:
        return None
    try:
        host = urlsplit(header_value.strip()).hostname
    except ValueError:
        return None
    return host.lower() if host else None


def host_is_allowed(host: str, allowed_hosts: Iterable[str]) -> bool:
    """True if host equals an allowed host or is one of its subdomains"""
    host = host.lower().rstrip(".")
    for allowed in allowed_hosts:
        allowed = allowed.lower().rstrip(".")
        if host == allowed or host.endswith("." + allowed):
            return True
    return False


def restrict_chars(value: str, pattern: str, max_length: int) -> str:
    """Truncate, then drop every character not matched by the pattern class"""
    return re.sub(pattern, "", value[:max_length]).strip()


def escape_text(value: str, max_length: int) -> str:
    """Cap length and HTML-escape free text"""
    return html.escape(value[:max_length], quote=True)
