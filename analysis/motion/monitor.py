"""Motion-triggered snapshot loop.

One :class:`MonitorLoop` drives one camera on a single timeline:

    bootstrap capture -> [capture -> diff -> decide -> (save + archive)] per tick

The loop owns the only reference to the previous frame and the motion
sequence counter. Ticks never overlap, so neither needs a lock; running
several cameras means running several independent loops.

Failure policy:

- a capture failure during bootstrap is fatal and propagates to the caller;
- inside a tick, capture, compare and archival failures are logged and the
  loop carries on with the next tick;
- the previous frame is refreshed after every tick that captured a frame,
  whether or not it could be compared or archived. A missing
  ``previous_image`` file therefore costs one comparison, never more.
"""

from __future__ import annotations

import logging
import shutil
import threading
import time
from typing import Callable, Optional, Protocol

from archive.s3_sink import ArchivalError, ArchivalReceipt
from capture.camera import CaptureError, FrameSource
from common.frame import Frame
from common.time import now_ms

from .diff import FrameDiffer, FrameDiffError
from .events import MotionEvent, build_motion_event, event_filename
from .model import LoopState, MonitorConfig, MonitorStatus, TickResult
from .policy import MotionPolicy
from .sidecar import MotionSidecarWriter

_LOG = logging.getLogger(__name__)


class ArchivalSink(Protocol):
    def archive(self, frame: Frame, key: str) -> ArchivalReceipt: ...


class MonitorLoop:
    """Fixed-period capture/diff/archive orchestrator for a single camera."""

    def __init__(
        self,
        source: FrameSource,
        sink: ArchivalSink,
        config: Optional[MonitorConfig] = None,
        differ: Optional[FrameDiffer] = None,
        policy: Optional[MotionPolicy] = None,
        event_log: Optional[MotionSidecarWriter] = None,
        clock: Callable[[], float] = now_ms,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._source = source
        self._sink = sink
        self._cfg = config or MonitorConfig()
        self._differ = differ or FrameDiffer()
        self._policy = policy or MotionPolicy()
        self._event_log = event_log
        self._clock = clock
        self._log = logger or _LOG

        self._state: Optional[LoopState] = None
        self._status = MonitorStatus.IDLE

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def config(self) -> MonitorConfig:
        return self._cfg

    @property
    def status(self) -> MonitorStatus:
        return self._status

    @property
    def state(self) -> LoopState:
        if self._state is None:
            raise RuntimeError("MonitorLoop has not been bootstrapped")
        return self._state

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def bootstrap(self) -> LoopState:
        """Capture the first frame and initialise the loop state.

        Raises
        ------
        CaptureError
            If the seed capture fails. The monitor cannot start without it.
        """
        self._status = MonitorStatus.BOOTSTRAPPING
        self._cfg.work_dir.mkdir(parents=True, exist_ok=True)

        if self._policy.max_sensitivity:
            self._log.warning(
                "Motion threshold is %.4f (maximum sensitivity): any pixel drift "
                "above the tolerance archives a frame",
                self._policy.threshold,
            )

        try:
            seed = self._source.capture(self._cfg.previous_path)
        except CaptureError:
            self._status = MonitorStatus.STOPPED
            raise

        self._state = LoopState(previous_frame=seed)
        self._log.info(
            "Starting motion detection (threshold=%.4f, period=%.2fs, work_dir=%s)",
            self._policy.threshold,
            self._cfg.tick_period_s,
            self._cfg.work_dir,
        )
        return self._state

    def run(self, stop: threading.Event, max_ticks: Optional[int] = None) -> None:
        """Tick on a fixed period until ``stop`` is set.

        A tick that is already running when ``stop`` is set completes before
        this method returns. Bootstraps first if :meth:`bootstrap` has not
        been called.
        """
        if self._state is None:
            self.bootstrap()

        self._status = MonitorStatus.TICKING
        period = float(self._cfg.tick_period_s)
        next_at = time.monotonic()
        done = 0
        try:
            while not stop.is_set():
                try:
                    self.tick()
                except Exception:
                    self._log.exception(
                        "Unhandled error in tick %d; continuing", self.state.ticks
                    )
                done += 1
                if max_ticks is not None and done >= max_ticks:
                    break

                next_at += period
                delay = next_at - time.monotonic()
                if delay < 0.0:
                    # Overran the period; schedule from now instead of bursting.
                    next_at = time.monotonic()
                    delay = 0.0
                if stop.wait(delay):
                    break
        finally:
            self._status = MonitorStatus.STOPPED
            self._log.info(
                "Motion detection stopped after %d ticks (%d events, %d archival failures)",
                self._state.ticks,
                self._state.events,
                self._state.archival_failures,
            )

    # ------------------------------------------------------------------ #
    # Tick
    # ------------------------------------------------------------------ #

    def tick(self) -> TickResult:
        state = self.state
        state.ticks += 1
        result = TickResult(tick=state.ticks)

        try:
            current = self._source.capture(self._cfg.current_path)
        except CaptureError as exc:
            self._log.warning("Tick %d: capture failed, skipping: %s", state.ticks, exc)
            result.skipped = "capture"
            return result
        result.frame = current

        previous = state.previous_frame
        try:
            if not previous.path.exists():
                self._log.warning(
                    "Tick %d: previous image %s does not exist, skipping comparison.",
                    state.ticks,
                    previous.path,
                )
                state.skipped_comparisons += 1
                result.skipped = "missing_previous"
            else:
                self._compare(state, previous, current, result)
        finally:
            self._refresh_previous(state, current)

        return result

    def _compare(
        self, state: LoopState, previous: Frame, current: Frame, result: TickResult
    ) -> None:
        try:
            score = self._differ.diff(previous, current)
        except FrameDiffError as exc:
            self._log.warning(
                "Tick %d: cannot compare %s with %s: %s",
                state.ticks,
                previous.path,
                current.path,
                exc,
            )
            state.skipped_comparisons += 1
            result.skipped = "compare"
            return

        result.score = score
        if score > 0.0:
            self._log.debug("Tick %d: difference %.2f%%", state.ticks, score * 100.0)

        if not self._policy.decide(score):
            return
        result.motion = True
        self._handle_motion(state, current, score, result)

    def _handle_motion(
        self, state: LoopState, current: Frame, score: float, result: TickResult
    ) -> None:
        # Claim the sequence number before any I/O so a failed save or upload
        # never causes it to be handed out again.
        state.sequence += 1
        state.events += 1
        seq = state.sequence

        filename = event_filename(seq, self._cfg.extension)
        saved_path = self._cfg.event_path(filename)
        event = build_motion_event(
            sequence=seq,
            frame_path=saved_path,
            created_ms=float(self._clock()),
            score=score,
            date_format=self._cfg.date_format,
        )
        result.event = event
        self._log.info(
            "Motion detected (%.2f%% changed)! Saving image: %s", score * 100.0, filename
        )

        try:
            shutil.copyfile(current.path, saved_path)
        except OSError as exc:
            self._log.error("Tick %d: failed to save %s: %s", state.ticks, saved_path, exc)
            state.archival_failures += 1
            result.archival_error = exc
            self._record(event, None, exc)
            return

        saved = Frame(img=current.img, path=saved_path, captured_ms=current.captured_ms)
        try:
            receipt = self._sink.archive(saved, event.key)
        except ArchivalError as exc:
            self._log.warning(
                "Tick %d: archival of %s (key=%s) failed; local copy kept: %s",
                state.ticks,
                saved_path,
                event.key,
                exc,
            )
            state.archival_failures += 1
            result.archival_error = exc
            self._record(event, None, exc)
            return

        result.receipt = receipt
        self._record(event, receipt, None)

    def _record(
        self,
        event: MotionEvent,
        receipt: Optional[ArchivalReceipt],
        error: Optional[BaseException],
    ) -> None:
        if self._event_log is None:
            return
        try:
            self._event_log.write_event(event, receipt=receipt, error=error)
        except (OSError, RuntimeError) as exc:
            self._log.warning(
                "Failed to append motion event %d to ledger: %s", event.sequence, exc
            )

    def _refresh_previous(self, state: LoopState, current: Frame) -> None:
        prev_path = self._cfg.previous_path
        try:
            shutil.copyfile(current.path, prev_path)
        except OSError as exc:
            # The in-memory raster below stays current even if the file is stale.
            self._log.warning("Failed to refresh previous image %s: %s", prev_path, exc)
        state.previous_frame = Frame(
            img=current.img, path=prev_path, captured_ms=current.captured_ms
        )
