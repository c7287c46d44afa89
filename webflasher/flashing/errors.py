"""Flash failure taxonomy"""

from webflasher.flashing.classifier import ErrorCategory


class FlashError(Exception):
    """Base class for failures raised inside a flash session"""
    category = ErrorCategory.FLASH_ERROR
    recoverable = True


class NoCapability(FlashError):
    """Host lacks the serial transport. The user must switch hosts."""
    category = ErrorCategory.WRONG_BROWSER
    recoverable = False


class UserCancelled(FlashError):
    """No port chosen"""
    category = ErrorCategory.USER_CANCEL


class PortBusy(FlashError):
    """Port held by another application"""
    category = ErrorCategory.PORT_BUSY


class ConnectionTimeout(FlashError):
    """Handshake window missed"""
    category = ErrorCategory.CONNECTION_TIMEOUT


class DownloadFailed(FlashError):
    """Firmware fetch failed"""
    category = ErrorCategory.DOWNLOAD_FAILED


class HardwareError(FlashError):
    """Chip or flash fault; may not be recoverable"""
    category = ErrorCategory.HARDWARE_ERROR
    recoverable = False


class TransportError(Exception):
    """Raw failure reported by the flashing tool or serial layer"""

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output


class SessionBusy(Exception):
    """A flash session is already running"""
    pass


class ProjectNotSelectable(Exception):
    """No project selected, or the selected project is disabled"""
    pass
