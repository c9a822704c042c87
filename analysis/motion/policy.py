from __future__ import annotations

from dataclasses import dataclass

# Fraction of changed pixels (see FrameDiffer) above which a tick counts as motion.
DEFAULT_MOTION_THRESHOLD = 0.01

# Any nonzero difference is motion. Must be requested explicitly.
MAX_SENSITIVITY_THRESHOLD = 0.0


def decide(score: float, threshold: float) -> bool:
    """Return True when ``score`` strictly exceeds ``threshold``."""
    return float(score) > float(threshold)


@dataclass(frozen=True)
class MotionPolicy:
    """
    Single fixed-threshold motion verdict.

    The threshold is set once at startup; the dataclass is frozen so it
    cannot drift between ticks.
    """

    threshold: float = DEFAULT_MOTION_THRESHOLD

    def __post_init__(self) -> None:
        if not 0.0 <= float(self.threshold) <= 1.0:
            raise ValueError(f"Motion threshold must be within [0, 1], got {self.threshold}")

    @property
    def max_sensitivity(self) -> bool:
        return float(self.threshold) == MAX_SENSITIVITY_THRESHOLD

    def decide(self, score: float) -> bool:
        return decide(score, self.threshold)
