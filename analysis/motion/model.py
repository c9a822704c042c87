from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from archive.s3_sink import ArchivalReceipt
from common.frame import Frame

from .events import DEFAULT_DATE_FORMAT, MotionEvent


class MonitorStatus(enum.Enum):
    IDLE = "idle"
    BOOTSTRAPPING = "bootstrapping"
    TICKING = "ticking"
    STOPPED = "stopped"


@dataclass
class MonitorConfig:
    """
    Configuration for the monitor loop.

    The working directory holds ``previous_image.<ext>`` (last captured
    frame), ``current_image.<ext>`` (scratch for the latest capture) and
    ``image_<sequence>.<ext>`` for every archived motion frame.
    """

    work_dir: Path = field(default_factory=lambda: Path("saved_images"))
    tick_period_s: float = 1.0
    extension: str = "jpg"
    date_format: str = DEFAULT_DATE_FORMAT

    def __post_init__(self) -> None:
        self.work_dir = Path(self.work_dir)
        self.extension = self.extension.lstrip(".")
        if self.tick_period_s <= 0:
            raise ValueError(f"tick_period_s must be > 0, got {self.tick_period_s}")

    @property
    def previous_path(self) -> Path:
        return self.work_dir / f"previous_image.{self.extension}"

    @property
    def current_path(self) -> Path:
        return self.work_dir / f"current_image.{self.extension}"

    def event_path(self, filename: str) -> Path:
        return self.work_dir / filename


@dataclass
class LoopState:
    """
    Mutable state owned by one monitor loop instance.

    ``previous_frame`` is set by the bootstrap capture and replaced on every
    tick that captures a frame. ``sequence`` is the last sequence number
    handed out to a MotionEvent (0 before the first event).
    """

    previous_frame: Frame
    sequence: int = 0
    ticks: int = 0
    events: int = 0
    archival_failures: int = 0
    skipped_comparisons: int = 0


@dataclass
class TickResult:
    """Per-tick outcome, returned by ``MonitorLoop.tick`` for callers and tests."""

    tick: int
    frame: Optional[Frame] = None
    score: Optional[float] = None
    motion: bool = False
    event: Optional[MotionEvent] = None
    receipt: Optional[ArchivalReceipt] = None
    archival_error: Optional[Exception] = None
    skipped: Optional[str] = None  # "capture", "missing_previous", "compare"
