from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import List, Optional, Union

import cv2
import numpy as np
import pytest

from analysis.motion.diff import FrameDiffer
from analysis.motion.model import MonitorConfig, MonitorStatus
from analysis.motion.monitor import MonitorLoop
from analysis.motion.policy import MotionPolicy
from analysis.motion.sidecar import MotionSidecarWriter
from archive.s3_sink import ArchivalError, ArchivalReceipt
from capture.camera import CaptureError
from common.frame import Frame
from common.time import date_partition
from sidecar.reader import SidecarReader

_NOW_MS = 1_728_295_200_000.0  # fixed wall clock for key derivation

Step = Union[np.ndarray, Exception]


class _FakeCamera:
    """Plays back a script of images (or exceptions), one per capture call."""

    def __init__(self, script: List[Step], start_ms: float = 1_000.0) -> None:
        self._script = list(script)
        self._t = start_ms
        self.destinations: List[Path] = []

    def capture(self, destination) -> Frame:
        dest = Path(destination)
        self.destinations.append(dest)
        if not self._script:
            raise CaptureError("script exhausted")
        step = self._script.pop(0)
        if isinstance(step, Exception):
            raise step
        dest.parent.mkdir(parents=True, exist_ok=True)
        assert cv2.imwrite(str(dest), step)
        self._t += 1_000.0
        return Frame(img=step, path=dest, captured_ms=self._t)


class _FakeSink:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: List[tuple[Frame, str]] = []

    def archive(self, frame: Frame, key: str) -> ArchivalReceipt:
        self.calls.append((frame, key))
        if self.fail:
            raise ArchivalError("service unavailable")
        return ArchivalReceipt(
            bucket="cams",
            key=f"motion-snapshots/{key}",
            location=f"s3://cams/motion-snapshots/{key}",
        )


class _SpyDiffer(FrameDiffer):
    def __init__(self) -> None:
        super().__init__()
        self.pairs: List[tuple[Frame, Frame]] = []

    def diff(self, a: Frame, b: Frame) -> float:
        self.pairs.append((a, b))
        return super().diff(a, b)


def _still() -> np.ndarray:
    return np.full((48, 64, 3), 40, dtype=np.uint8)


def _moved() -> np.ndarray:
    img = _still()
    img[8:28, 8:28] = 250  # ~13% of the frame
    return img


def _monitor(
    tmp_path: Path,
    script: List[Step],
    sink: Optional[_FakeSink] = None,
    **kw,
) -> tuple[MonitorLoop, _FakeCamera, _FakeSink]:
    camera = _FakeCamera(script)
    sink = sink or _FakeSink()
    kw.setdefault("config", MonitorConfig(work_dir=tmp_path / "saved_images", tick_period_s=0.01))
    kw.setdefault("policy", MotionPolicy(threshold=0.01))
    monitor = MonitorLoop(camera, sink, clock=lambda: _NOW_MS, **kw)
    return monitor, camera, sink


def test_bootstrap_capture_failure_is_fatal(tmp_path: Path):
    monitor, _, _ = _monitor(tmp_path, [CaptureError("no device")])

    with pytest.raises(CaptureError):
        monitor.bootstrap()
    assert monitor.status is MonitorStatus.STOPPED


def test_bootstrap_seeds_previous_frame(tmp_path: Path):
    monitor, camera, _ = _monitor(tmp_path, [_still()])

    state = monitor.bootstrap()

    assert monitor.status is MonitorStatus.BOOTSTRAPPING
    assert camera.destinations == [monitor.config.previous_path]
    assert state.previous_frame.path == monitor.config.previous_path
    assert monitor.config.previous_path.exists()
    assert state.sequence == 0


def test_end_to_end_single_motion_event(tmp_path: Path):
    monitor, _, sink = _monitor(tmp_path, [_still(), _still(), _moved(), _moved()])
    monitor.bootstrap()

    r1 = monitor.tick()
    assert r1.score == 0.0
    assert r1.motion is False
    assert sink.calls == []

    r2 = monitor.tick()
    assert r2.motion is True
    assert len(sink.calls) == 1
    frame, key = sink.calls[0]
    assert key == f"{date_partition(_NOW_MS)}/image_1.jpg"
    assert "image_1" in key
    assert frame.path == tmp_path / "saved_images" / "image_1.jpg"
    assert frame.path.exists()
    assert r2.event is not None and r2.event.sequence == 1
    assert r2.receipt is not None
    assert monitor.state.sequence == 1

    r3 = monitor.tick()
    assert r3.score == 0.0
    assert r3.motion is False
    assert len(sink.calls) == 1
    assert monitor.state.sequence == 1
    assert monitor.state.ticks == 3


def test_previous_frame_refreshed_after_every_tick(tmp_path: Path):
    differ = _SpyDiffer()
    monitor, _, _ = _monitor(
        tmp_path, [_still(), _still(), _moved(), _moved()], differ=differ
    )
    monitor.bootstrap()

    r1 = monitor.tick()  # no motion
    r2 = monitor.tick()  # motion
    r3 = monitor.tick()  # no motion

    assert [r.motion for r in (r1, r2, r3)] == [False, True, False]
    # Tick 3 compared against tick 2's capture, not tick 1's.
    prev_at_tick3, cur_at_tick3 = differ.pairs[2]
    assert prev_at_tick3.captured_ms == r2.frame.captured_ms
    assert prev_at_tick3.captured_ms != r1.frame.captured_ms
    assert cur_at_tick3.captured_ms == r3.frame.captured_ms
    assert monitor.state.previous_frame.captured_ms == r3.frame.captured_ms

    cfg = monitor.config
    assert cfg.previous_path.read_bytes() == cfg.current_path.read_bytes()


def test_missing_previous_file_skips_one_comparison(tmp_path: Path, caplog):
    monitor, _, sink = _monitor(tmp_path, [_still(), _moved(), _moved()])
    monitor.bootstrap()
    monitor.config.previous_path.unlink()

    with caplog.at_level(logging.WARNING, logger="analysis.motion.monitor"):
        r1 = monitor.tick()

    assert r1.skipped == "missing_previous"
    assert r1.score is None
    assert sink.calls == []
    assert "does not exist" in caplog.text
    assert monitor.config.previous_path.exists()
    assert monitor.state.previous_frame.captured_ms == r1.frame.captured_ms

    r2 = monitor.tick()
    assert r2.skipped is None
    assert r2.score == 0.0


def test_archival_failure_is_contained_and_sequence_not_reused(tmp_path: Path):
    monitor, _, sink = _monitor(
        tmp_path, [_still(), _moved(), _still(), _moved()], sink=_FakeSink(fail=True)
    )
    monitor.bootstrap()

    results = [monitor.tick() for _ in range(3)]

    assert all(r.motion for r in results)
    assert all(isinstance(r.archival_error, ArchivalError) for r in results)
    assert [r.event.sequence for r in results] == [1, 2, 3]
    assert [key.rsplit("/", 1)[1] for _, key in sink.calls] == [
        "image_1.jpg",
        "image_2.jpg",
        "image_3.jpg",
    ]
    assert monitor.state.sequence == 3
    assert monitor.state.archival_failures == 3
    for n in (1, 2, 3):
        assert (tmp_path / "saved_images" / f"image_{n}.jpg").exists()


def test_uncomparable_frame_still_refreshes_previous(tmp_path: Path):
    small = np.full((32, 32, 3), 40, dtype=np.uint8)
    monitor, _, sink = _monitor(tmp_path, [_still(), small, small])
    monitor.bootstrap()

    r1 = monitor.tick()
    assert r1.skipped == "compare"
    assert r1.motion is False
    assert sink.calls == []
    assert monitor.state.previous_frame.img.shape == (32, 32, 3)

    r2 = monitor.tick()
    assert r2.skipped is None
    assert r2.score == 0.0


def test_capture_failure_mid_loop_keeps_previous(tmp_path: Path):
    monitor, _, _ = _monitor(tmp_path, [_still(), CaptureError("busy"), _moved()])
    seed = monitor.bootstrap().previous_frame

    r1 = monitor.tick()
    assert r1.skipped == "capture"
    assert monitor.state.previous_frame is seed

    r2 = monitor.tick()
    assert r2.motion is True
    assert monitor.state.ticks == 2


def test_zero_threshold_is_maximum_sensitivity(tmp_path: Path, caplog):
    nudged = _still()
    nudged[0, 0] = 200
    monitor, _, sink = _monitor(
        tmp_path, [_still(), nudged], policy=MotionPolicy(threshold=0.0)
    )

    with caplog.at_level(logging.WARNING, logger="analysis.motion.monitor"):
        monitor.bootstrap()
    assert "maximum sensitivity" in caplog.text

    r1 = monitor.tick()
    assert r1.motion is True
    assert len(sink.calls) == 1


def test_event_log_records_archival_outcome(tmp_path: Path):
    ledger_path = tmp_path / "events.jsonl"
    with MotionSidecarWriter(ledger_path) as ledger:
        monitor, _, _ = _monitor(
            tmp_path, [_still(), _moved()], sink=_FakeSink(fail=True), event_log=ledger
        )
        monitor.bootstrap()
        monitor.tick()

    rows = list(SidecarReader(ledger_path))
    assert len(rows) == 1
    row = rows[0]
    assert row["type"] == "motion_event"
    assert row["sequence"] == 1
    assert row["archived"] is False
    assert "service unavailable" in row["error"]
    assert row["frame_path"].endswith("image_1.jpg")


def test_run_stops_after_max_ticks(tmp_path: Path):
    monitor, _, sink = _monitor(tmp_path, [_still(), _still(), _moved(), _moved()])

    monitor.run(threading.Event(), max_ticks=3)

    assert monitor.status is MonitorStatus.STOPPED
    assert monitor.state.ticks == 3
    assert monitor.state.sequence == 1
    assert len(sink.calls) == 1


def test_run_with_stop_already_set_schedules_no_ticks(tmp_path: Path):
    monitor, _, _ = _monitor(tmp_path, [_still()])
    stop = threading.Event()
    stop.set()

    monitor.run(stop)

    assert monitor.state.ticks == 0
    assert monitor.status is MonitorStatus.STOPPED


def test_stop_during_archival_drains_current_tick(tmp_path: Path):
    stop = threading.Event()

    class _StoppingSink(_FakeSink):
        def archive(self, frame: Frame, key: str) -> ArchivalReceipt:
            stop.set()
            return super().archive(frame, key)

    monitor, _, sink = _monitor(
        tmp_path, [_still(), _moved(), _moved()], sink=_StoppingSink()
    )

    monitor.run(stop)

    assert monitor.status is MonitorStatus.STOPPED
    assert monitor.state.ticks == 1
    assert len(sink.calls) == 1
    assert monitor.state.sequence == 1
    # The in-flight tick still refreshed the previous frame before exiting.
    assert monitor.config.previous_path.read_bytes() == monitor.config.current_path.read_bytes()
    assert monitor.config.event_path("image_1.jpg").exists()


def test_run_survives_unexpected_tick_errors(tmp_path: Path):
    class _ExplodingDiffer(FrameDiffer):
        def diff(self, a, b):
            raise RuntimeError("boom")

    monitor, _, _ = _monitor(
        tmp_path, [_still(), _still(), _still()], differ=_ExplodingDiffer()
    )

    monitor.run(threading.Event(), max_ticks=2)

    assert monitor.state.ticks == 2
    # Refresh still happened despite the unexpected error.
    assert monitor.config.previous_path.read_bytes() == monitor.config.current_path.read_bytes()


def test_state_requires_bootstrap(tmp_path: Path):
    monitor, _, _ = _monitor(tmp_path, [])

    assert monitor.status is MonitorStatus.IDLE
    with pytest.raises(RuntimeError):
        _ = monitor.state
