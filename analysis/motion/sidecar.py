from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from archive.s3_sink import ArchivalReceipt
from common.time import to_iso_utc
from sidecar.writer import SidecarWriter

from .events import MotionEvent


class MotionSidecarWriter:
    """
    Thin wrapper around SidecarWriter for motion events.

    Appends one JSON object per archived (or failed) motion event, so frames
    whose upload failed can be located later from their local path.
    """

    def __init__(self, path: str | Path, append: bool = True):
        self._writer = SidecarWriter(path, append=append)

    def __enter__(self) -> MotionSidecarWriter:
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._writer.__exit__(exc_type, exc, tb)

    def open(self) -> None:
        self._writer.open()

    def write_event(
        self,
        ev: MotionEvent,
        receipt: Optional[ArchivalReceipt] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        payload: dict[str, Any] = {
            "type": "motion_event",
            "sequence": int(ev.sequence),
            "filename": ev.filename,
            "key": ev.key,
            "frame_path": str(ev.frame_path),
            "created_ms": float(ev.created_ms),
            "created_iso": to_iso_utc(ev.created_ms),
            "score": float(ev.score),
            "archived": receipt is not None,
        }
        if receipt is not None:
            payload["bucket"] = receipt.bucket
            payload["object_key"] = receipt.key
            payload["location"] = receipt.location
        if error is not None:
            payload["error"] = str(error)
        self._writer.append_raw(payload)
        self._writer.flush()

    def flush(self) -> None:
        self._writer.flush()

    def close(self) -> None:
        self._writer.close()
