"""
Transport implementation for the flashing engine

The engine treats the flashing capability as a black box with five calls:
request_transport, connect, write_image, hard_reset and close. This module
provides the protocol and a reference implementation that drives esptool as a
subprocess and uses pyserial for port discovery and reset.

Other transports (a fake for tests, a WebSerial bridge) follow the same
FlasherTransport interface.
"""

import asyncio
import importlib.util
import logging
import re
import shlex
import shutil
import sys
import tempfile
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, List, Optional, Protocol, Sequence

import serial
from serial.tools import list_ports

from webflasher.flashing.errors import PortBusy, TransportError, UserCancelled
from webflasher.flashing.firmware import FirmwareFile

logger = logging.getLogger(__name__)

# USB vendor IDs of common ESP32 USB-serial bridges
ESP_USB_VIDS = {
    0x303A: "Espressif USB-JTAG/serial",
    0x10C4: "Silicon Labs CP210x",
    0x1A86: "WCH CH34x",
    0x0403: "FTDI",
}

# (file_index, bytes_written_of_file, file_size)
ProgressCallback = Callable[[int, int, int], None]

_CHIP_PATTERNS = [
    re.compile(r"Chip is (ESP[\w-]+)"),
    re.compile(r"Chip type:\s+(ESP[\w-]+)"),
    re.compile(r"Detecting chip type\.*\s*(ESP[\w-]+)"),
    re.compile(r"Connected to (ESP[\w-]+)"),
]
_WRITE_PROGRESS = re.compile(r"Writing at 0x[0-9a-fA-F]+.*?(\d+(?:\.\d+)?)\s*%")
_WROTE = re.compile(r"^Wrote \d+ bytes")
_BUSY_MARKERS = ("port is busy", "resource busy", "permissionerror", "access is denied", "permission denied")


@dataclass
class SerialHandle:
    """A claimed serial port"""
    device: str
    description: str = ""
    baud: int = 115200
    chip: Optional[str] = None
    is_open: bool = True


@dataclass
class WriteOptions:
    erase_all: bool = False
    compress: bool = True
    flash_mode: str = "keep"
    flash_freq: str = "keep"
    flash_size: str = "keep"


class FlasherTransport(Protocol):
    """
    Flashing capability consumed by the engine.

    Implementations raise exceptions whose messages the engine classifies.
    """

    def is_supported(self) -> bool:
        """Whether the host can drive a serial flashing session at all"""
        ...

    async def request_transport(self) -> SerialHandle:
        """Pick the port to flash. Raises UserCancelled if none is chosen."""
        ...

    async def connect(self, handle: SerialHandle, baud: int) -> str:
        """Handshake with the ROM bootloader, return the chip name"""
        ...

    async def write_image(
        self,
        handle: SerialHandle,
        files: Sequence[FirmwareFile],
        options: WriteOptions,
        on_progress: ProgressCallback,
    ) -> None:
        """Erase and write every file at its offset, reporting progress"""
        ...

    async def hard_reset(self, handle: SerialHandle) -> None:
        ...

    async def close(self, handle: SerialHandle) -> None:
        """Release the port. Must be safe to call more than once."""
        ...


def parse_chip_name(output: str) -> Optional[str]:
    for pattern in _CHIP_PATTERNS:
        match = pattern.search(output)
        if match:
            return match.group(1)
    return None


class WriteProgressParser:
    """
    Turns esptool write_flash output into per-file byte progress.

    "Writing at 0x... (42 %)" lines update the current file, "Wrote N bytes"
    completes it and advances to the next one.
    """

    def __init__(self, file_sizes: Sequence[int], on_progress: ProgressCallback):
        self.file_sizes = list(file_sizes)
        self.on_progress = on_progress
        self.file_index = 0

    def feed(self, line: str) -> None:
        if not self.file_sizes:
            return
        index = min(self.file_index, len(self.file_sizes) - 1)
        size = self.file_sizes[index]

        match = _WRITE_PROGRESS.search(line)
        if match:
            percent = min(float(match.group(1)), 100.0)
            self.on_progress(index, int(size * percent / 100), size)
            return

        if _WROTE.match(line.strip()):
            self.on_progress(index, size, size)
            self.file_index += 1


def _failure_from_output(lines: Sequence[str], returncode: int) -> Exception:
    """Pick the most telling line of a failed esptool run"""
    message = ""
    for line in reversed(lines):
        if "fatal error" in line.lower() or line.lower().startswith("error"):
            message = line.split(":", 1)[-1].strip() if "fatal error" in line.lower() else line.strip()
            break
    if not message:
        message = lines[-1].strip() if lines else f"esptool exited with code {returncode}"

    output = "\n".join(lines)
    if any(marker in output.lower() for marker in _BUSY_MARKERS):
        return PortBusy(f"Port may be in use: {message}")
    return TransportError(message, output=output)


class EsptoolTransport:
    """
    esptool-backed transport.

    This implementation:
    - Discovers ESP32 USB-serial bridges with pyserial (or uses a fixed port)
    - Runs esptool chip_id / write_flash as subprocesses and parses output
    - Hard-resets the chip by pulsing RTS through pyserial
    """

    def __init__(self, port: str = "", esptool_command: str = ""):
        """
        Args:
            port: Fixed serial device; empty means auto-detect
            esptool_command: Command used to run esptool; empty means
                             "<python> -m esptool" from the current environment
        """
        self.port = port
        self.esptool_command = esptool_command

    def _base_command(self) -> List[str]:
        if self.esptool_command:
            return shlex.split(self.esptool_command)
        return [sys.executable, "-m", "esptool"]

    def is_supported(self) -> bool:
        if self.esptool_command:
            return shutil.which(self._base_command()[0]) is not None
        return importlib.util.find_spec("esptool") is not None

    async def request_transport(self) -> SerialHandle:
        if self.port:
            logger.info(f"Using configured serial port {self.port}")
            return SerialHandle(device=self.port)

        ports = await asyncio.to_thread(list_ports.comports)
        candidates = [p for p in ports if p.vid in ESP_USB_VIDS]
        if not candidates:
            raise UserCancelled("No port selected: no USB serial device found")

        chosen = candidates[0]
        if len(candidates) > 1:
            others = ", ".join(p.device for p in candidates[1:])
            logger.warning(f"Several serial devices found, using {chosen.device} (also: {others})")
        return SerialHandle(device=chosen.device, description=chosen.description or ESP_USB_VIDS[chosen.vid])

    async def _run(self, args: List[str], on_line: Optional[Callable[[str], None]] = None) -> List[str]:
        """
        Run esptool, streaming output lines.

        Returns:
            Last output lines

        Raises:
            TransportError / PortBusy: If esptool exits non-zero
        """
        cmd = self._base_command() + args
        logger.debug(f"Executing esptool: {' '.join(cmd)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise TransportError(f"Could not start esptool: {e}") from e

        tail: Deque[str] = deque(maxlen=40)
        buffer = ""
        try:
            while True:
                chunk = await proc.stdout.read(1024)
                if not chunk:
                    break
                buffer += chunk.decode(errors="replace")
                # esptool redraws progress with \r on terminals
                parts = re.split(r"[\r\n]", buffer)
                buffer = parts.pop()
                for line in parts:
                    if line.strip():
                        tail.append(line)
                        if on_line:
                            on_line(line)
            if buffer.strip():
                tail.append(buffer)
                if on_line:
                    on_line(buffer)

            returncode = await proc.wait()
        finally:
            # esptool must not outlive the session holding the port
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
        if returncode != 0:
            raise _failure_from_output(list(tail), returncode)
        return list(tail)

    async def connect(self, handle: SerialHandle, baud: int) -> str:
        handle.baud = baud
        lines = await self._run([
            "--port", handle.device,
            "--baud", str(baud),
            "--before", "default_reset",
            "--after", "no_reset",
            "chip_id",
        ])
        handle.chip = parse_chip_name("\n".join(lines)) or "ESP32"
        return handle.chip

    async def write_image(
        self,
        handle: SerialHandle,
        files: Sequence[FirmwareFile],
        options: WriteOptions,
        on_progress: ProgressCallback,
    ) -> None:
        parser = WriteProgressParser([f.size for f in files], on_progress)

        with tempfile.TemporaryDirectory(prefix="webflasher-") as tmp:
            pairs: List[str] = []
            for index, fw in enumerate(files):
                image = Path(tmp) / f"{index:02d}-{Path(fw.path).name}"
                image.write_bytes(fw.raw_bytes)
                pairs.extend([hex(fw.offset_address), str(image)])

            args = [
                "--port", handle.device,
                "--baud", str(handle.baud),
                "--before", "default_reset",
                "--after", "no_reset",
                "write_flash",
                "--flash_mode", options.flash_mode,
                "--flash_freq", options.flash_freq,
                "--flash_size", options.flash_size,
                "-z" if options.compress else "-u",
            ]
            if options.erase_all:
                args.append("--erase-all")

            await self._run(args + pairs, on_line=parser.feed)

    def _pulse_reset(self, device: str) -> None:
        try:
            with serial.Serial(device) as ser:
                ser.dtr = False
                ser.rts = True  # EN low
                time.sleep(0.1)
                ser.rts = False
        except serial.SerialException as e:
            raise TransportError(f"Hard reset failed on {device}: {e}") from e

    async def hard_reset(self, handle: SerialHandle) -> None:
        await asyncio.to_thread(self._pulse_reset, handle.device)

    async def close(self, handle: SerialHandle) -> None:
        if handle.is_open:
            handle.is_open = False
            logger.info(f"Serial port {handle.device} released")


__all__ = [
    "FlasherTransport",
    "EsptoolTransport",
    "SerialHandle",
    "WriteOptions",
    "WriteProgressParser",
    "parse_chip_name",
]
