from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from common.time import date_partition

# Local and remote filename of the n-th archived frame.
EVENT_FILENAME_TEMPLATE = "image_{sequence}.{ext}"

DEFAULT_DATE_FORMAT = "%d%B%Y"  # e.g. 07October2024


@dataclass(frozen=True)
class MotionEvent:
    """
    One detected motion occurrence.

    ``sequence`` is assigned by the monitor loop, strictly increasing and
    never reused within a process. ``key`` is the archival key relative to
    the sink's namespace: ``<partition>/<filename>``.
    """

    sequence: int
    frame_path: Path
    filename: str
    partition: str
    created_ms: float
    score: float = 0.0

    @property
    def key(self) -> str:
        return f"{self.partition}/{self.filename}"


def event_filename(sequence: int, extension: str = "jpg") -> str:
    if sequence < 1:
        raise ValueError(f"Motion event sequence numbers start at 1, got {sequence}")
    return EVENT_FILENAME_TEMPLATE.format(sequence=int(sequence), ext=extension.lstrip("."))


def build_motion_event(
    sequence: int,
    frame_path: Path,
    created_ms: float,
    score: float = 0.0,
    date_format: str = DEFAULT_DATE_FORMAT,
) -> MotionEvent:
    """Build the event record for an already-persisted motion frame."""
    frame_path = Path(frame_path)
    return MotionEvent(
        sequence=int(sequence),
        frame_path=frame_path,
        filename=frame_path.name,
        partition=date_partition(created_ms, date_format),
        created_ms=float(created_ms),
        score=float(score),
    )
