from __future__ import annotations

import contextlib
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Union

import cv2
import numpy as np

from common.frame import Frame
from common.time import now_ms

_LOG = logging.getLogger(__name__)

_FORMATS = {
    "jpeg": ("jpg", "image/jpeg"),
    "png": ("png", "image/png"),
}


class CaptureError(Exception):
    """Camera unavailable, busy, or the captured image could not be written."""


class FrameSource(Protocol):
    def capture(self, destination: Union[str, Path]) -> Frame: ...


@dataclass
class CameraConfig:
    """Capture settings for a single camera device.

    Parameters
    ----------
    device:
        OpenCV device index (``/dev/video<N>`` on Linux).
    width, height:
        Requested capture resolution. Frames the driver returns at a
        different size are resized so every frame has these dimensions.
    quality:
        JPEG quality (0-100). Ignored for PNG output.
    output:
        Image format written to disk, ``"jpeg"`` or ``"png"``.
    warmup_reads:
        Frames discarded right after opening the device while exposure settles.
    """

    device: int = 0
    width: int = 640
    height: int = 480
    quality: int = 100
    output: str = "jpeg"
    warmup_reads: int = 10

    def __post_init__(self) -> None:
        if self.output not in _FORMATS:
            raise ValueError(
                f"Unsupported output format {self.output!r}; expected one of {sorted(_FORMATS)}"
            )
        if not 0 <= int(self.quality) <= 100:
            raise ValueError(f"quality must be within [0, 100], got {self.quality}")
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Invalid capture resolution {self.width}x{self.height}")

    @property
    def extension(self) -> str:
        return _FORMATS[self.output][0]

    @property
    def content_type(self) -> str:
        return _FORMATS[self.output][1]


def _open_device(index: int) -> Any:
    if os.name == "nt":
        return cv2.VideoCapture(index, cv2.CAP_DSHOW)
    return cv2.VideoCapture(index, cv2.CAP_V4L2)


class OpenCvCamera:
    """Capture adapter around ``cv2.VideoCapture``.

    Each :meth:`capture` call grabs one frame, writes it to the requested
    destination and returns a :class:`Frame` pointing at that file. Failures
    are raised as :class:`CaptureError` and never retried here.
    """

    def __init__(
        self,
        config: Optional[CameraConfig] = None,
        opener: Optional[Callable[[int], Any]] = None,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        self._cfg = config or CameraConfig()
        self._opener = opener or _open_device
        self._clock = clock
        self._cap: Any = None
        self._lock = threading.Lock()

    @property
    def config(self) -> CameraConfig:
        return self._cfg

    def _open(self) -> None:
        if self._cap is not None:
            return

        cfg = self._cfg
        try:
            cap = self._opener(cfg.device)
        except Exception as exc:
            raise CaptureError(f"Camera open failed (device={cfg.device}): {exc}") from exc

        if cap is None or not cap.isOpened():
            if cap is not None:
                cap.release()
            raise CaptureError(f"Camera open failed (device={cfg.device})")

        cap.set(cv2.CAP_PROP_FRAME_WIDTH, cfg.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, cfg.height)

        for _ in range(cfg.warmup_reads):
            cap.read()
            time.sleep(0.03)

        _LOG.info("Opened camera device=%d at %dx%d", cfg.device, cfg.width, cfg.height)
        self._cap = cap

    def _write_params(self) -> list[int]:
        if self._cfg.output == "jpeg":
            return [int(cv2.IMWRITE_JPEG_QUALITY), int(self._cfg.quality)]
        return []

    def capture(self, destination: Union[str, Path]) -> Frame:
        dest = Path(destination)
        cfg = self._cfg

        with self._lock:
            self._open()

            try:
                ok, img = self._cap.read()
            except cv2.error as exc:
                self._release()
                raise CaptureError(
                    f"Camera frame capture failed (device={cfg.device}): {exc}"
                ) from exc
            if not ok or img is None:
                # Drop the handle so the next capture reopens the device.
                self._release()
                raise CaptureError(f"Camera frame capture failed (device={cfg.device})")
            captured_ms = float(self._clock())

            try:
                img = np.ascontiguousarray(img)
                h, w = img.shape[:2]
                if (w, h) != (cfg.width, cfg.height):
                    img = cv2.resize(img, (cfg.width, cfg.height), interpolation=cv2.INTER_AREA)
            except (ValueError, cv2.error) as exc:
                raise CaptureError(f"Invalid frame from device={cfg.device}: {exc}") from exc

            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                written = cv2.imwrite(str(dest), img, self._write_params())
            except (OSError, cv2.error) as exc:
                raise CaptureError(f"Failed to write capture to {dest}: {exc}") from exc
            if not written:
                raise CaptureError(f"Failed to write capture to {dest}")

        return Frame(img=img, path=dest, captured_ms=captured_ms)

    def _release(self) -> None:
        if self._cap is not None:
            with contextlib.suppress(Exception):
                self._cap.release()
            self._cap = None

    def close(self) -> None:
        with self._lock:
            self._release()
