"""Error categorization for flash failures.

Maps free-text error messages onto a closed set of categories using ordered
substring rules. The first matching rule wins.
"""

from enum import Enum
from typing import Dict, List, Optional, Tuple


class ErrorCategory(str, Enum):
    """Closed set of flash failure categories"""
    USER_CANCEL = "user_cancel"
    PORT_BUSY = "port_busy"
    CONNECTION_TIMEOUT = "connection_timeout"
    DOWNLOAD_FAILED = "download_failed"
    HARDWARE_ERROR = "hardware_error"
    WRONG_BROWSER = "wrong_browser"
    FLASH_ERROR = "flash_error"
    UNKNOWN = "unknown"


# Evaluated top to bottom
_RULES: List[Tuple[ErrorCategory, Tuple[str, ...]]] = [
    (ErrorCategory.USER_CANCEL, ("no port selected", "user cancelled")),
    (ErrorCategory.PORT_BUSY, (
        "failed to execute 'open'",
        "port is already open",
        "access denied",
        "port may be in use",
    )),
    (ErrorCategory.CONNECTION_TIMEOUT, ("timeout", "timed out", "failed to connect", "no response")),
    (ErrorCategory.DOWNLOAD_FAILED, ("failed to download", "network", "fetch", "http")),
    (ErrorCategory.HARDWARE_ERROR, ("chip", "flash", "memory", "stub", "bootloader")),
]

CATEGORY_DESCRIPTIONS: Dict[str, str] = {
    ErrorCategory.USER_CANCEL.value: "User cancelled or did not select port",
    ErrorCategory.PORT_BUSY.value: "Serial port in use by another application",
    ErrorCategory.CONNECTION_TIMEOUT.value: "Timeout connecting to ESP32 (BOOT button not pressed)",
    ErrorCategory.DOWNLOAD_FAILED.value: "Failed to download firmware files",
    ErrorCategory.HARDWARE_ERROR.value: "Hardware or chip-related error",
    ErrorCategory.WRONG_BROWSER.value: "Unsupported host (no serial transport available)",
    ErrorCategory.FLASH_ERROR.value: "Generic flash error",
    ErrorCategory.UNKNOWN.value: "Uncategorized error",
}

REMEDIATION_HINTS: Dict[ErrorCategory, List[str]] = {
    ErrorCategory.USER_CANCEL: [
        "Tip: You need to select a serial port to continue",
    ],
    ErrorCategory.PORT_BUSY: [
        "Tip: Port may be in use by another application",
        "Close Arduino IDE, PlatformIO, or other serial monitors",
    ],
    ErrorCategory.CONNECTION_TIMEOUT: [
        "Tip: Make sure you held the BOOT button before the connection started",
        "Try again and hold BOOT earlier",
    ],
    ErrorCategory.DOWNLOAD_FAILED: [
        "Tip: Check your network connection and try again",
    ],
    ErrorCategory.HARDWARE_ERROR: [
        "Tip: Check the USB cable and the board, then try again",
    ],
    ErrorCategory.WRONG_BROWSER: [
        "Tip: Serial flashing is not available here; install esptool and pyserial",
    ],
}


def classify(message: Optional[str]) -> ErrorCategory:
    """Categorize an error message. Total: never raises."""
    if not message:
        return ErrorCategory.UNKNOWN

    msg = message.lower()

    for category, needles in _RULES:
        if any(needle in msg for needle in needles):
            return category

    if ("serial" in msg and "not supported" in msg) or "navigator.serial" in msg or "undefined" in msg:
        return ErrorCategory.WRONG_BROWSER

    return ErrorCategory.FLASH_ERROR


def coerce_category(value: object) -> ErrorCategory:
    """Restrict an untrusted category value to the enumeration"""
    if isinstance(value, str):
        try:
            return ErrorCategory(value)
        except ValueError:
            pass
    return ErrorCategory.UNKNOWN


def remediation_hints(category: ErrorCategory) -> List[str]:
    return list(REMEDIATION_HINTS.get(category, []))
