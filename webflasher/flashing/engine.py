"""
Firmware Flashing Engine - Flash Session FSM

This module drives one flash attempt through the device handshake stages:

States:
- IDLE → CONNECTING → CONNECTED → DOWNLOADING → ERASING → WRITING → DONE
- ERROR is reachable from every non-idle state

Rules:
- Only one session at a time
- The serial port is owned by the session and released on every exit path
- Telemetry is reported exactly once, at DONE or ERROR, never mid-flight
- Failures never escape execute_flash; they end the session in ERROR

The engine knows nothing about UI elements. Presentation layers subscribe to
progress, log and prompt callbacks.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from webflasher.flashing.audio import AudioSequencer
from webflasher.flashing.classifier import ErrorCategory, classify, remediation_hints
from webflasher.flashing.catalog import Project
from webflasher.flashing.errors import (
    FlashError,
    NoCapability,
    ProjectNotSelectable,
    SessionBusy,
)
from webflasher.flashing.firmware import FirmwareDownloader, FirmwareFile
from webflasher.flashing.progress import MilestoneWatermark, ProgressTracker, StageWeights
from webflasher.flashing.telemetry import TelemetryClient, host_info
from webflasher.flashing.transport import FlasherTransport, SerialHandle, WriteOptions

logger = logging.getLogger(__name__)


class FlashStage(Enum):
    """FSM states of a flash session"""
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DOWNLOADING = "downloading"
    ERASING = "erasing"
    WRITING = "writing"
    DONE = "done"
    ERROR = "error"


TERMINAL_STAGES = (FlashStage.DONE, FlashStage.ERROR)


@dataclass
class FlashProgress:
    """Progress snapshot handed to presentation layers"""
    stage: FlashStage
    percent: float
    label: str = ""
    status: str = ""


@dataclass
class FlashSession:
    """State of one flash attempt"""
    selected_project: Project
    stage: FlashStage = FlashStage.IDLE
    total_bytes: int = 0
    written_bytes: int = 0
    port: Optional[SerialHandle] = None
    chip: Optional[str] = None
    files: List[FirmwareFile] = field(default_factory=list)
    reported: bool = False
    port_close_attempted: bool = False


class FirmwareFlashEngine:
    """
    Flash session state machine.

    Usage:
        engine = FirmwareFlashEngine(transport, downloader, audio, telemetry)
        engine.set_callbacks(on_progress=show_progress, on_log=print_log)

        result = await engine.execute_flash(project)
        if result["success"]:
            print(f"Flashed {result['chip']}")
        else:
            print(f"Flash failed ({result['category']}): {result['error']}")
    """

    def __init__(
        self,
        transport: FlasherTransport,
        downloader: FirmwareDownloader,
        audio: AudioSequencer,
        telemetry: TelemetryClient,
        baud: int = 115200,
        weights: Optional[StageWeights] = None,
    ):
        """
        Initialize flashing engine.

        Args:
            transport: Flashing capability (port, handshake, write, reset)
            downloader: Firmware retrieval for the selected project
            audio: Process-long audio cue queue
            telemetry: Outcome reporter
            baud: Baud rate used for the handshake and the write
            weights: Stage sub-ranges of the global progress bar
        """
        self.transport = transport
        self.downloader = downloader
        self.audio = audio
        self.telemetry = telemetry
        self.baud = baud
        self.weights = weights or StageWeights()

        self.session: Optional[FlashSession] = None
        self._tracker = ProgressTracker(self.weights)
        self._milestones = MilestoneWatermark()
        self._high_water = 0.0
        self._write_started = False
        self._last_logged: Dict[int, int] = {}  # file index -> last logged 10% step

        # Callbacks
        self.on_progress: Optional[Callable[[FlashProgress], None]] = None
        self.on_log: Optional[Callable[[str, str], None]] = None  # (message, level)
        self.on_prompt: Optional[Callable[[bool], None]] = None  # "hold BOOT" prompt

    @property
    def is_flashing(self) -> bool:
        return self.session is not None

    def set_callbacks(
        self,
        on_progress: Optional[Callable[[FlashProgress], None]] = None,
        on_log: Optional[Callable[[str, str], None]] = None,
        on_prompt: Optional[Callable[[bool], None]] = None,
    ):
        """Set callbacks for progress updates, log lines and the boot prompt"""
        self.on_progress = on_progress
        self.on_log = on_log
        self.on_prompt = on_prompt

    def _log(self, message: str, level: str = "info"):
        if self.on_log:
            self.on_log(message, level)
        logger.log(getattr(logging, level.upper(), logging.INFO), message)

    def _prompt(self, visible: bool):
        if self.on_prompt:
            self.on_prompt(visible)

    def _emit(self, label: str, status: str = "", percent: Optional[float] = None):
        """Notify progress; the reported percentage never goes backwards"""
        if percent is None:
            percent = self._tracker.global_percent()
        self._high_water = max(self._high_water, percent)
        if self.on_progress:
            self.on_progress(FlashProgress(self.session.stage, self._high_water, label, status))

    def _transition(self, new_stage: FlashStage, label: str, status: str = ""):
        old_stage = self.session.stage
        self.session.stage = new_stage
        self._tracker.stage = new_stage.value
        logger.debug(f"[STATE: {old_stage.value} → {new_stage.value}] {label}")
        if new_stage is not FlashStage.ERROR:
            self._emit(label, status)

    async def execute_flash(self, project: Optional[Project], erase_all: bool = False) -> Dict[str, Any]:
        """
        Run one flash session to a terminal state.

        Args:
            project: Selected catalog project
            erase_all: Erase the whole flash before writing

        Returns:
            Dict with 'success', 'final_state', 'chip', and 'error'/'category' on failure

        Raises:
            ProjectNotSelectable: No project, or a disabled one (no session is started)
            SessionBusy: Another session is running
        """
        if project is None or not project.enabled:
            raise ProjectNotSelectable("No project selected")
        if self.is_flashing:
            raise SessionBusy("A flash session is already running")

        self.session = FlashSession(selected_project=project)
        self._tracker = ProgressTracker(self.weights)
        self._milestones.reset()
        self._high_water = 0.0
        self._write_started = False
        self._last_logged = {}

        try:
            return await self._run_session(erase_all)
        finally:
            self.session = None

    async def _run_session(self, erase_all: bool) -> Dict[str, Any]:
        session = self.session
        self.audio.enqueue("start")

        try:
            # CONNECTING
            self._transition(FlashStage.CONNECTING, "Preparing...", "Ready to start")
            if not self.transport.is_supported():
                raise NoCapability("Serial flashing not supported on this host")

            self._log("Requesting serial port access...")
            self.audio.enqueue("dialog_open")
            session.port = await self.transport.request_transport()
            self._log(f"Port selected: {session.port.device}", "success")
            self.audio.enqueue("port_selected")

            self._prompt(True)
            self.audio.enqueue("boot_prompt")
            self._log("Connecting to ESP32...")
            self._log("HOLD the BOOT button NOW until you see \"Connected\"!", "warning")
            self.audio.enqueue("connecting")
            self._emit("Connecting...", "Hold BOOT button now!")
            session.chip = await self.transport.connect(session.port, self.baud)

            # CONNECTED
            self._prompt(False)
            self._transition(FlashStage.CONNECTED, "Connected!", f"{session.chip} detected successfully")
            self._log(f"Connected to {session.chip}!", "success")
            self._log("You can release the BOOT button now", "success")
            self.audio.enqueue("connected")

            # DOWNLOADING
            self._transition(FlashStage.DOWNLOADING, "Downloading...", "Fetching firmware files")
            session.files = await self.downloader.fetch(session.selected_project, on_progress=self._on_download)
            self._emit("Ready to flash", "All files downloaded")

            # ERASING
            self._transition(FlashStage.ERASING, "Erasing flash...", "This may take a few seconds")
            self._log("Starting flash process...")
            if erase_all:
                self._log("Erasing entire flash memory (this will take longer)...", "warning")
            else:
                self._log("Erasing flash memory...")
            self.audio.enqueue("erasing")

            # WRITING
            sizes = [f.size for f in session.files]
            self._tracker.start_writing(sizes)
            session.total_bytes = self._tracker.total_bytes
            session.written_bytes = 0
            session.stage = FlashStage.WRITING
            await self.transport.write_image(
                session.port,
                session.files,
                WriteOptions(erase_all=erase_all),
                lambda index, written, total: self._on_write(index, written, total, sizes),
            )

            # DONE
            self._transition(FlashStage.DONE, "Flash complete!", "Firmware written successfully")
            self.audio.enqueue("writing_complete")
            self._log("Flash completed successfully!", "success")
            self._log("Rebooting ESP32...", "success")
            self.audio.enqueue("rebooting")
            await self.transport.hard_reset(session.port)
            self._log("Your device is ready to use!", "success")
            self.audio.enqueue("success")
            self._log("You can disconnect the USB cable")

            await self._close_port(retry=True)
            self._report(success=True)
            return {
                "success": True,
                "final_state": FlashStage.DONE,
                "chip": session.chip,
                "project": session.selected_project.name,
            }

        except Exception as e:
            return await self._fail(e)

        finally:
            # Cancellation skips both paths above
            if not session.port_close_attempted:
                await self._close_port(retry=False)

    def _on_download(self, done: int, total: int, fw: FirmwareFile):
        self._tracker.download_fraction = done / total if total else 1.0
        self._log(f"Downloaded {fw.path} ({fw.size / 1024:.1f} KB) at {hex(fw.offset_address)}", "success")
        self._emit("Downloading...", f"File {done}/{total}")

    def _on_write(self, file_index: int, written: int, total: int, sizes: List[int]):
        """Progress callback from the transport during WRITING"""
        session = self.session
        if not self._write_started and file_index == 0 and written > 0:
            self._write_started = True
            self.audio.enqueue("erase_complete")
            self.audio.enqueue("flashing_start")

        self._tracker.update_write(file_index, written, sizes)
        session.written_bytes = self._tracker.written_bytes
        global_percent = self._tracker.global_percent()

        file_percent = int(written * 100 / total) if total else 100
        self._emit("Writing firmware...", f"File {file_index + 1}/{len(sizes)} - {file_percent}%", global_percent)

        if self._milestones.crossed(self._high_water) is not None:
            self.audio.enqueue("flashing_progress")

        # One log line per 10% step of each file
        step = file_percent // 10 * 10
        if written > 0 and step > self._last_logged.get(file_index, -1):
            self._last_logged[file_index] = step
            name = session.files[file_index].path if file_index < len(session.files) else f"file {file_index}"
            self._log(f"Writing {name}... {step}%")

    async def _close_port(self, retry: bool) -> None:
        """Release the port. After success a close failure is only logged."""
        port = self.session.port
        if port is None:
            return
        self.session.port_close_attempted = True
        attempts = 2 if retry else 1
        for attempt in range(1, attempts + 1):
            try:
                await self.transport.close(port)
                self._log("Serial port closed")
                return
            except Exception as e:
                logger.warning(f"Port close attempt {attempt}/{attempts} failed: {e}")

    async def _fail(self, exc: Exception) -> Dict[str, Any]:
        session = self.session
        failed_stage = session.stage
        message = str(exc) or exc.__class__.__name__
        category = exc.category if isinstance(exc, FlashError) else classify(message)

        self._prompt(False)
        self._transition(FlashStage.ERROR, "Error occurred", message)
        self._log(f"Error: {message}", "error")
        logger.error(f"Flash failed in stage {failed_stage.value}: {message}", exc_info=exc)
        self.audio.enqueue(f"error_{category.value}")

        if self.on_progress:
            self.on_progress(FlashProgress(FlashStage.ERROR, 0, "Error occurred", message))

        for hint in remediation_hints(category):
            self._log(hint, "warning")

        # Best effort, regardless of earlier close attempts
        await self._close_port(retry=False)

        if isinstance(exc, NoCapability):
            self.telemetry.report_unsupported_host(serial_supported=False)
            session.reported = True
        else:
            self._report(success=False, error=message, category=category, stage=failed_stage)

        return {
            "success": False,
            "error": message,
            "category": category,
            "final_state": FlashStage.ERROR,
            "failed_stage": failed_stage,
            "chip": session.chip,
            "project": session.selected_project.name,
        }

    def _report(
        self,
        success: bool,
        error: Optional[str] = None,
        category: Optional[ErrorCategory] = None,
        stage: Optional[FlashStage] = None,
    ):
        session = self.session
        if session.reported:
            return
        session.reported = True

        context = None
        if error:
            context = {
                "browser": host_info(serial_supported=True),
                "stage": (stage or session.stage).value,
                "chip": session.chip or "unknown",
            }
        self.telemetry.submit(
            project=session.selected_project.name,
            action="flash",
            success=success,
            error=error,
            error_category=category,
            context=context,
        )


__all__ = [
    "FlashStage",
    "FlashProgress",
    "FlashSession",
    "FirmwareFlashEngine",
]
