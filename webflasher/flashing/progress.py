"""Global progress composition for a flash session.

Stage ranges reflect expected relative stage duration; they are a tunable
heuristic, not measured timing.
"""

from dataclasses import dataclass, field
from typing import Optional, Sequence, Set, Tuple


@dataclass(frozen=True)
class StageWeights:
    downloading: Tuple[float, float] = (0.0, 10.0)
    connecting: float = 10.0
    erasing: float = 15.0
    writing: Tuple[float, float] = (20.0, 100.0)


@dataclass
class ProgressTracker:
    weights: StageWeights = field(default_factory=StageWeights)
    stage: str = "idle"
    total_bytes: int = 0
    written_bytes: int = 0
    download_fraction: float = 0.0

    def start_writing(self, file_sizes: Sequence[int]) -> None:
        self.stage = "writing"
        self.total_bytes = sum(file_sizes)
        self.written_bytes = 0

    def update_write(self, file_index: int, written: int, file_sizes: Sequence[int]) -> None:
        """Bytes of earlier files plus bytes written of the current one"""
        self.written_bytes = min(sum(file_sizes[:file_index]) + written, self.total_bytes)

    def global_percent(self) -> float:
        w = self.weights
        if self.stage == "downloading":
            low, high = w.downloading
            percent = low + (high - low) * self.download_fraction
        elif self.stage in ("connecting", "connected"):
            percent = w.connecting
        elif self.stage == "erasing":
            percent = w.erasing
        elif self.stage == "writing":
            low, high = w.writing
            fraction = self.written_bytes / self.total_bytes if self.total_bytes else 0.0
            percent = low + (high - low) * fraction
        elif self.stage == "done":
            percent = 100.0
        else:
            percent = 0.0
        return min(100.0, max(0.0, percent))


class MilestoneWatermark:
    """One-shot thresholds; a crossed threshold never fires again"""

    def __init__(self, thresholds: Sequence[int] = (25, 50, 75)):
        self.thresholds = tuple(sorted(thresholds))
        self._fired: Set[int] = set()

    def crossed(self, percent: float) -> Optional[int]:
        """
        Return the highest threshold newly reached by percent, or None.

        Lower thresholds skipped over by a jump are marked as fired too, so a
        single callback produces at most one cue.
        """
        reached = [t for t in self.thresholds if percent >= t and t not in self._fired]
        if not reached:
            return None
        # Everything up to the highest reached threshold counts as crossed
        top = reached[-1]
        self._fired.update(t for t in self.thresholds if t <= top)
        return top

    def reset(self) -> None:
        self._fired.clear()
