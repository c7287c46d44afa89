import asyncio
import json

import httpx
import pytest

from webflasher.flashing.audio import AudioSequencer
from webflasher.flashing.catalog import AudioFeedbackConfig, Project
from webflasher.flashing.classifier import ErrorCategory
from webflasher.flashing.engine import FirmwareFlashEngine, FlashStage
from webflasher.flashing.errors import (
    DownloadFailed,
    ProjectNotSelectable,
    SessionBusy,
    TransportError,
    UserCancelled,
)
from webflasher.flashing.firmware import FirmwareFile
from webflasher.flashing.telemetry import TelemetryClient
from webflasher.flashing.transport import SerialHandle

CUES = [
    "start", "dialog_open", "port_selected", "boot_prompt", "connecting", "connected",
    "erasing", "erase_complete", "flashing_start", "flashing_progress", "writing_complete",
    "rebooting", "success", "error",
]

PROJECT = Project(
    name="Weather Station",
    firmware=[
        {"path": "bootloader.bin", "offset": "0x1000"},
        {"path": "app.bin", "offset": "0x10000"},
    ],
)


class FakeTransport:
    """In-memory flashing capability"""

    def __init__(self, supported=True, fail=None, close_error=None, sizes_steps=(0, 25, 50, 75, 100)):
        self.supported = supported
        self.fail = fail or {}  # call name -> exception
        self.close_error = close_error
        self.steps = sizes_steps
        self.calls = []
        self.connect_gate = None

    def is_supported(self):
        return self.supported

    async def request_transport(self):
        self.calls.append("request_transport")
        if "request_transport" in self.fail:
            raise self.fail["request_transport"]
        return SerialHandle(device="/dev/ttyFAKE0")

    async def connect(self, handle, baud):
        self.calls.append("connect")
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if "connect" in self.fail:
            raise self.fail["connect"]
        return "ESP32-S3"

    async def write_image(self, handle, files, options, on_progress):
        self.calls.append("write_image")
        for index, fw in enumerate(files):
            for pct in self.steps:
                on_progress(index, fw.size * pct // 100, fw.size)
                await asyncio.sleep(0)
        if "write_image" in self.fail:
            raise self.fail["write_image"]

    async def hard_reset(self, handle):
        self.calls.append("hard_reset")

    async def close(self, handle):
        self.calls.append("close")
        if self.close_error is not None:
            raise self.close_error
        handle.is_open = False


class FakeDownloader:
    def __init__(self, error=None):
        self.error = error

    async def fetch(self, project, on_progress=None):
        if self.error:
            raise self.error
        files = [
            FirmwareFile(path="bootloader.bin", offset_address=0x1000, raw_bytes=b"\x00" * 1000),
            FirmwareFile(path="app.bin", offset_address=0x10000, raw_bytes=b"\x01" * 3000),
        ]
        for done, fw in enumerate(files, start=1):
            if on_progress:
                on_progress(done, len(files), fw)
        return files


class RecordingPlayer:
    def __init__(self):
        self.played = []

    async def play(self, event):
        self.played.append(event.event_name)


class Harness:
    def __init__(self, transport, downloader=None):
        self.player = RecordingPlayer()
        self.posts = []
        self.progress = []
        self.logs = []
        self.prompts = []
        self.transport = transport
        self.downloader = downloader or FakeDownloader()

    def _server(self, request):
        if request.url.path.endswith("/log"):
            self.posts.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True})
        return httpx.Response(200, json={})

    def run(self, project=PROJECT, **kwargs):
        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(self._server)) as client:
                audio = AudioSequencer(
                    self.player,
                    config=AudioFeedbackConfig(
                        enabled=True, verbosity="verbose", events={c: f"{c}.mp3" for c in CUES}
                    ),
                )
                telemetry = TelemetryClient("https://flasher.example.com/api/v1/flash", client=client)
                engine = FirmwareFlashEngine(self.transport, self.downloader, audio, telemetry)
                engine.set_callbacks(
                    on_progress=self.progress.append,
                    on_log=lambda msg, level: self.logs.append((level, msg)),
                    on_prompt=self.prompts.append,
                )
                result = await engine.execute_flash(project, **kwargs)
                await audio.join()
                await telemetry.flush()
                assert not engine.is_flashing
                return result

        return asyncio.run(scenario())


def test_successful_session():
    h = Harness(FakeTransport())
    result = h.run()

    assert result["success"] is True
    assert result["final_state"] is FlashStage.DONE
    assert result["chip"] == "ESP32-S3"
    assert h.transport.calls == ["request_transport", "connect", "write_image", "hard_reset", "close"]
    assert h.prompts == [True, False]

    percents = [p.percent for p in h.progress]
    assert percents == sorted(percents)
    assert percents[-1] == 100.0
    assert h.progress[-1].stage is FlashStage.DONE

    assert len(h.posts) == 1
    assert h.posts[0]["project"] == "Weather Station"
    assert h.posts[0]["success"] is True


def test_audio_cue_sequence():
    h = Harness(FakeTransport())
    h.run()

    played = h.player.played
    assert played[:6] == ["start", "dialog_open", "port_selected", "boot_prompt", "connecting", "connected"]
    assert played[-3:] == ["writing_complete", "rebooting", "success"]
    assert played.count("erase_complete") == 1
    assert played.count("flashing_start") == 1
    assert played.count("flashing_progress") == 3


def test_milestones_once_despite_per_file_resets():
    # Each file restarts its own percentage from zero
    h = Harness(FakeTransport(sizes_steps=(0, 10, 30, 60, 90, 100)))
    h.run()

    assert h.player.played.count("flashing_progress") == 3
    percents = [p.percent for p in h.progress]
    assert percents == sorted(percents)


def test_connect_timeout_fails_session():
    error = TransportError("Failed to connect to ESP32: Timed out waiting for packet header")
    h = Harness(FakeTransport(fail={"connect": error}))
    result = h.run()

    assert result["success"] is False
    assert result["final_state"] is FlashStage.ERROR
    assert result["failed_stage"] is FlashStage.CONNECTING
    assert result["category"] is ErrorCategory.CONNECTION_TIMEOUT
    assert h.transport.calls == ["request_transport", "connect", "close"]
    assert h.prompts == [True, False]

    assert any("hold BOOT earlier" in msg for level, msg in h.logs if level == "warning")
    # No dedicated sound configured, the generic error sound plays under this cue
    assert h.player.played[-1] == "error_connection_timeout"

    assert len(h.posts) == 1
    post = h.posts[0]
    assert post["success"] is False
    assert post["errorCategory"] == "connection_timeout"
    assert post["context"]["stage"] == "connecting"


def test_no_port_selected_is_user_cancel():
    h = Harness(FakeTransport(fail={"request_transport": UserCancelled("No port selected")}))
    result = h.run()

    assert result["category"] is ErrorCategory.USER_CANCEL
    # Nothing to release
    assert "close" not in h.transport.calls
    assert h.posts[0]["errorCategory"] == "user_cancel"


def test_missing_capability_reports_host():
    h = Harness(FakeTransport(supported=False))
    result = h.run()

    assert result["category"] is ErrorCategory.WRONG_BROWSER
    assert h.transport.calls == []
    assert len(h.posts) == 1
    assert h.posts[0]["project"] == "NA"
    assert h.posts[0]["action"] == "browser_check"


def test_download_failure_releases_port():
    h = Harness(FakeTransport(), FakeDownloader(error=DownloadFailed("Failed to download firmware file: app.bin")))
    result = h.run()

    assert result["category"] is ErrorCategory.DOWNLOAD_FAILED
    assert result["failed_stage"] is FlashStage.DOWNLOADING
    assert h.transport.calls[-1] == "close"
    assert len(h.posts) == 1


def test_write_failure_classified_from_message():
    error = TransportError("Invalid head of packet: flash read err, 1000")
    h = Harness(FakeTransport(fail={"write_image": error}))
    result = h.run()

    assert result["category"] is ErrorCategory.HARDWARE_ERROR
    assert h.progress[-1].stage is FlashStage.ERROR
    assert h.progress[-1].percent == 0
    assert len(h.posts) == 1


def test_close_failure_after_success_is_not_a_failure():
    h = Harness(FakeTransport(close_error=OSError("device vanished")))
    result = h.run()

    assert result["success"] is True
    assert h.transport.calls.count("close") == 2
    assert len(h.posts) == 1
    assert h.posts[0]["success"] is True


def test_project_must_be_selectable():
    h = Harness(FakeTransport())
    with pytest.raises(ProjectNotSelectable):
        h.run(project=None)

    disabled = PROJECT.model_copy(update={"enabled": False})
    with pytest.raises(ProjectNotSelectable):
        h.run(project=disabled)

    assert h.transport.calls == []
    assert h.posts == []


def test_second_session_rejected_while_running():
    transport = FakeTransport()

    async def scenario():
        transport.connect_gate = asyncio.Event()
        audio = AudioSequencer(RecordingPlayer())
        telemetry = TelemetryClient("http://unused", enabled=False)
        engine = FirmwareFlashEngine(transport, FakeDownloader(), audio, telemetry)

        first = asyncio.create_task(engine.execute_flash(PROJECT))
        while not engine.is_flashing:
            await asyncio.sleep(0)

        with pytest.raises(SessionBusy):
            await engine.execute_flash(PROJECT)

        transport.connect_gate.set()
        result = await first
        await audio.join()
        return result, engine.is_flashing

    result, still_flashing = asyncio.run(scenario())
    assert result["success"] is True
    assert still_flashing is False


def test_cancelled_session_releases_port():
    transport = FakeTransport()

    async def scenario():
        transport.connect_gate = asyncio.Event()
        audio = AudioSequencer(RecordingPlayer())
        telemetry = TelemetryClient("http://unused", enabled=False)
        engine = FirmwareFlashEngine(transport, FakeDownloader(), audio, telemetry)

        task = asyncio.create_task(engine.execute_flash(PROJECT))
        while "connect" not in transport.calls:
            await asyncio.sleep(0)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return engine.is_flashing

    still_flashing = asyncio.run(scenario())
    assert transport.calls == ["request_transport", "connect", "close"]
    assert still_flashing is False
