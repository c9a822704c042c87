"""Frame differencing for the snapshot monitor.

The differencer compares two frames pixel by pixel and reports the fraction
of pixels whose intensity changed by more than a fixed tolerance. It keeps no
state between calls, so ``diff(a, b)`` depends only on the two frames and is
symmetric in its arguments.

Frames normally carry their raster in memory (``Frame.img``); when they do
not, the image is decoded from ``Frame.path``. A frame that cannot be decoded
raises :class:`DecodeError` rather than being reported as "no motion".
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from common.frame import Frame


class FrameDiffError(Exception):
    """Base class for frames that cannot be compared."""


class DecodeError(FrameDiffError):
    """A frame's raster is missing, unreadable, or not an image."""


class ShapeMismatch(FrameDiffError):
    """The two frames do not share the same dimensions."""


@dataclass
class FrameDiffConfig:
    """
    Knobs for the pixel-wise comparison.

    ``pixel_tolerance`` is on the 0-255 intensity scale: a pixel only counts
    as changed when its absolute difference is strictly greater.
    """

    pixel_tolerance: int = 25
    grayscale: bool = True  # compare luma only; suppresses chromatic noise
    blur_kernel: int = 0  # odd Gaussian kernel size; 0/1 disables

    def __post_init__(self) -> None:
        if not 0 <= int(self.pixel_tolerance) <= 255:
            raise ValueError(
                f"pixel_tolerance must be within [0, 255], got {self.pixel_tolerance}"
            )
        if self.blur_kernel < 0:
            raise ValueError(f"blur_kernel must be >= 0, got {self.blur_kernel}")


@dataclass(frozen=True)
class DiffStats:
    changed_px: int
    total_px: int

    @property
    def score(self) -> float:
        if self.total_px <= 0:
            return 0.0
        return float(self.changed_px) / float(self.total_px)


def _raster(frame: Frame) -> np.ndarray:
    img = frame.img
    if img is None:
        try:
            img = cv2.imread(str(frame.path), cv2.IMREAD_COLOR)
        except cv2.error as exc:
            raise DecodeError(f"Failed to decode {frame.path}: {exc}") from exc
        if img is None:
            raise DecodeError(f"Failed to decode {frame.path}")

    arr = np.asarray(img)
    if arr.dtype != np.uint8 or arr.ndim not in (2, 3) or arr.size == 0:
        raise DecodeError(
            f"Frame {frame.path} is not an 8-bit image (dtype={arr.dtype}, shape={arr.shape})"
        )
    return arr


class FrameDiffer:
    """Stateless pixel-difference scorer returning a score in [0, 1]."""

    def __init__(self, config: Optional[FrameDiffConfig] = None) -> None:
        self._cfg = config or FrameDiffConfig()

    @property
    def config(self) -> FrameDiffConfig:
        return self._cfg

    def _normalise(self, arr: np.ndarray) -> np.ndarray:
        if self._cfg.grayscale and arr.ndim == 3:
            if arr.shape[2] == 4:
                arr = cv2.cvtColor(arr, cv2.COLOR_BGRA2GRAY)
            else:
                arr = cv2.cvtColor(arr, cv2.COLOR_BGR2GRAY)
        k = int(self._cfg.blur_kernel)
        if k > 1:
            arr = cv2.GaussianBlur(arr, (k | 1, k | 1), 0)
        return arr

    def measure(self, a: Frame, b: Frame) -> DiffStats:
        img_a = _raster(a)
        img_b = _raster(b)
        if img_a.shape != img_b.shape:
            raise ShapeMismatch(
                f"Cannot compare {a.path} {img_a.shape} with {b.path} {img_b.shape}"
            )

        delta = cv2.absdiff(self._normalise(img_a), self._normalise(img_b))
        if delta.ndim == 3:
            # A pixel changed if any of its channels moved past the tolerance.
            changed = (delta > self._cfg.pixel_tolerance).any(axis=2)
        else:
            changed = delta > self._cfg.pixel_tolerance

        return DiffStats(changed_px=int(changed.sum()), total_px=int(changed.size))

    def diff(self, a: Frame, b: Frame) -> float:
        return self.measure(a, b).score
