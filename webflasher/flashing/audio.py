"""
Audio feedback sequencer

Cues are keyed by flash lifecycle event and played strictly one at a time,
in FIFO order. A cue that fails to play counts as finished so the queue
always drains.

Usage:
    sequencer = AudioSequencer(player, config=page_config.audio_feedback, language="de")
    sequencer.enqueue("start")
    ...
    await sequencer.join()
"""

import asyncio
import logging
import shlex
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Dict, FrozenSet, List, Optional, Protocol

from webflasher.flashing.catalog import AudioFeedbackConfig

logger = logging.getLogger(__name__)

LANG_PLACEHOLDER = "[lang]"

_MINIMAL = frozenset({"start", "success", "error"})
_NORMAL = _MINIMAL | {"boot_prompt", "connected", "erasing", "flashing_start"}
_VERBOSE = _NORMAL | {
    "dialog_open",
    "port_selected",
    "connecting",
    "erase_complete",
    "flashing_progress",
    "writing_complete",
    "rebooting",
}

VERBOSITY_LEVELS: Dict[str, FrozenSet[str]] = {
    "minimal": _MINIMAL,
    "normal": _NORMAL,
    "verbose": _VERBOSE,
}


@dataclass(frozen=True)
class AudioEvent:
    sound_path: str
    volume: float
    event_name: str


class AudioPlaybackError(Exception):
    """A cue could not be played"""
    pass


class AudioPlayer(Protocol):
    async def play(self, event: AudioEvent) -> None:
        """Play the cue and return once playback has finished"""
        ...


class NullAudioPlayer:
    """Player that only logs; used when no audio backend is configured"""

    async def play(self, event: AudioEvent) -> None:
        logger.debug(f"Audio cue {event.event_name}: {event.sound_path} (volume {event.volume})")


class CommandAudioPlayer:
    """
    Plays cues through an external command such as ffplay or paplay.

    The command template may contain {path} and {volume} (0-100) placeholders.
    """

    def __init__(self, command: str, sounds_root: Optional[Path] = None):
        self.command = shlex.split(command)
        self.sounds_root = sounds_root

    def _resolve(self, sound_path: str) -> Path:
        path = Path(sound_path)
        if not path.is_absolute() and self.sounds_root is not None:
            path = self.sounds_root / path
        return path

    def build_command(self, path: Path, volume: float) -> List[str]:
        return [
            part.replace("{path}", str(path)).replace("{volume}", str(int(volume * 100)))
            for part in self.command
        ]

    async def play(self, event: AudioEvent) -> None:
        path = self._resolve(event.sound_path)
        if not path.exists():
            raise AudioPlaybackError(f"Sound file not found: {path}")

        proc = await asyncio.create_subprocess_exec(
            *self.build_command(path, event.volume),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip()
            raise AudioPlaybackError(f"Player exited with {proc.returncode}: {detail}")


class AudioSequencer:
    """Process-long FIFO of audio cues, drained by a single task"""

    def __init__(
        self,
        player: AudioPlayer,
        config: Optional[AudioFeedbackConfig] = None,
        language: str = "en",
    ):
        self.player = player
        self.config = config or AudioFeedbackConfig()
        self.language = language
        self._queue: Deque[AudioEvent] = deque()
        self._drain_task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def is_playing(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    def resolve(self, event: str, config: Optional[AudioFeedbackConfig] = None) -> Optional[AudioEvent]:
        """Apply the verbosity policy and sound lookup; None means stay silent"""
        cfg = config or self.config
        if not cfg.enabled:
            return None

        is_error_cue = event.startswith("error_")
        allowed = VERBOSITY_LEVELS.get(cfg.verbosity, VERBOSITY_LEVELS["normal"])
        if event not in allowed and not is_error_cue:
            return None

        if is_error_cue:
            sound_path = cfg.events.get(event) or cfg.events.get("error")
        else:
            sound_path = cfg.events.get(event)

        sound_path = sound_path.strip() if isinstance(sound_path, str) else ""
        if not sound_path:
            return None

        if LANG_PLACEHOLDER in sound_path:
            sound_path = sound_path.replace(LANG_PLACEHOLDER, self.language or "en")

        return AudioEvent(sound_path=sound_path, volume=cfg.volume, event_name=event)

    def enqueue(self, event: str, config: Optional[AudioFeedbackConfig] = None) -> None:
        """Queue a lifecycle cue. Must be called from a running event loop."""
        cue = self.resolve(event, config)
        if cue is None:
            return

        self._queue.append(cue)
        if not self.is_playing:
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while self._queue:
            cue = self._queue.popleft()
            logger.debug(f"Playing audio: {cue.event_name} | {cue.sound_path} | queue remaining: {len(self._queue)}")
            try:
                await self.player.play(cue)
            except Exception as e:
                logger.warning(f"Could not play audio for {cue.event_name}: {e}")

    async def join(self) -> None:
        """Wait until every queued cue has been played"""
        while self.is_playing:
            await asyncio.shield(self._drain_task)
