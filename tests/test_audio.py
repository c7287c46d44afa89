import asyncio
from pathlib import Path

from webflasher.flashing.audio import (
    AudioEvent,
    AudioPlaybackError,
    AudioSequencer,
    CommandAudioPlayer,
)
from webflasher.flashing.catalog import AudioFeedbackConfig

EVENTS = {
    "start": "sounds/[lang]/start.mp3",
    "connected": "sounds/[lang]/connected.mp3",
    "dialog_open": "sounds/[lang]/dialog.mp3",
    "flashing_progress": "sounds/progress.mp3",
    "error": "sounds/[lang]/error.mp3",
    "error_port_busy": "sounds/[lang]/port_busy.mp3",
    "success": "  ",
}


class RecordingPlayer:
    """Records play order and flags overlapping playback"""

    def __init__(self, fail_on=()):
        self.played = []
        self.active = 0
        self.overlapped = False
        self.fail_on = set(fail_on)

    async def play(self, event: AudioEvent) -> None:
        self.active += 1
        if self.active > 1:
            self.overlapped = True
        try:
            await asyncio.sleep(0.01)
            self.played.append(event.event_name)
            if event.event_name in self.fail_on:
                raise AudioPlaybackError("decode error")
        finally:
            self.active -= 1


def make_config(**overrides):
    values = {"enabled": True, "verbosity": "verbose", "volume": 0.5, "events": EVENTS}
    values.update(overrides)
    return AudioFeedbackConfig(**values)


def test_disabled_config_is_silent():
    seq = AudioSequencer(RecordingPlayer(), config=make_config(enabled=False))
    assert seq.resolve("start") is None


def test_language_placeholder_substituted():
    seq = AudioSequencer(RecordingPlayer(), config=make_config(), language="de")
    cue = seq.resolve("start")
    assert cue.sound_path == "sounds/de/start.mp3"
    assert cue.volume == 0.5
    assert cue.event_name == "start"


def test_verbosity_filters_events():
    seq = AudioSequencer(RecordingPlayer(), config=make_config(verbosity="minimal"))
    assert seq.resolve("start") is not None
    assert seq.resolve("connected") is None
    assert seq.resolve("dialog_open") is None

    seq = AudioSequencer(RecordingPlayer(), config=make_config(verbosity="normal"))
    assert seq.resolve("connected") is not None
    assert seq.resolve("dialog_open") is None


def test_error_cue_falls_back_to_generic_error():
    seq = AudioSequencer(RecordingPlayer(), config=make_config(verbosity="minimal"), language="en")
    assert seq.resolve("error_port_busy").sound_path == "sounds/en/port_busy.mp3"
    assert seq.resolve("error_connection_timeout").sound_path == "sounds/en/error.mp3"


def test_blank_or_missing_sound_is_silent():
    seq = AudioSequencer(RecordingPlayer(), config=make_config())
    assert seq.resolve("success") is None
    assert seq.resolve("rebooting") is None


def test_cues_play_in_order_without_overlap():
    player = RecordingPlayer()

    async def scenario():
        seq = AudioSequencer(player, config=make_config())
        for name in ("start", "dialog_open", "connected", "flashing_progress"):
            seq.enqueue(name)
        assert seq.is_playing
        await seq.join()
        assert seq.pending == 0
        assert not seq.is_playing

    asyncio.run(scenario())
    assert player.played == ["start", "dialog_open", "connected", "flashing_progress"]
    assert player.overlapped is False


def test_failed_cue_does_not_stall_queue():
    player = RecordingPlayer(fail_on={"dialog_open"})

    async def scenario():
        seq = AudioSequencer(player, config=make_config())
        seq.enqueue("start")
        seq.enqueue("dialog_open")
        seq.enqueue("connected")
        await seq.join()

    asyncio.run(scenario())
    assert player.played == ["start", "dialog_open", "connected"]


def test_enqueue_while_playing_joins_same_queue():
    player = RecordingPlayer()

    async def scenario():
        seq = AudioSequencer(player, config=make_config())
        seq.enqueue("start")
        await asyncio.sleep(0.005)
        seq.enqueue("connected")
        await seq.join()

    asyncio.run(scenario())
    assert player.played == ["start", "connected"]
    assert player.overlapped is False


def test_command_player_builds_command(tmp_path):
    player = CommandAudioPlayer("ffplay -nodisp -volume {volume} {path}", sounds_root=tmp_path)
    cmd = player.build_command(Path("/x/start.mp3"), 0.7)
    assert cmd == ["ffplay", "-nodisp", "-volume", "70", "/x/start.mp3"]


def test_command_player_missing_file(tmp_path):
    player = CommandAudioPlayer("ffplay {path}", sounds_root=tmp_path)
    event = AudioEvent(sound_path="missing.mp3", volume=1.0, event_name="start")

    async def scenario():
        try:
            await player.play(event)
        except AudioPlaybackError as e:
            return str(e)
        return None

    assert "not found" in asyncio.run(scenario())
