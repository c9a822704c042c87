"""Public exports for the motion analysis package."""

from __future__ import annotations

from .diff import (
    DecodeError,
    DiffStats,
    FrameDiffConfig,
    FrameDiffer,
    FrameDiffError,
    ShapeMismatch,
)
from .events import MotionEvent, build_motion_event, event_filename
from .model import LoopState, MonitorConfig, MonitorStatus, TickResult
from .monitor import MonitorLoop
from .policy import DEFAULT_MOTION_THRESHOLD, MAX_SENSITIVITY_THRESHOLD, MotionPolicy, decide
from .sidecar import MotionSidecarWriter

__all__ = [
    "DEFAULT_MOTION_THRESHOLD",
    "MAX_SENSITIVITY_THRESHOLD",
    "DecodeError",
    "DiffStats",
    "FrameDiffConfig",
    "FrameDiffError",
    "FrameDiffer",
    "LoopState",
    "MonitorConfig",
    "MonitorLoop",
    "MonitorStatus",
    "MotionEvent",
    "MotionPolicy",
    "MotionSidecarWriter",
    "ShapeMismatch",
    "TickResult",
    "build_motion_event",
    "decide",
    "event_filename",
]
