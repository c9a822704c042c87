from __future__ import annotations

import argparse
import contextlib
import logging
import os
import sys
import threading
from pathlib import Path
from typing import Optional

from analysis.motion.diff import FrameDiffConfig, FrameDiffer
from analysis.motion.model import MonitorConfig
from analysis.motion.monitor import MonitorLoop
from analysis.motion.policy import DEFAULT_MOTION_THRESHOLD, MotionPolicy
from analysis.motion.sidecar import MotionSidecarWriter
from archive.s3_sink import ArchivalConfig, ConfigurationError, S3ArchivalSink
from capture.camera import CameraConfig, CaptureError, OpenCvCamera

_LOG = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_BOOTSTRAP_FAILED = 1
EXIT_CONFIG_ERROR = 2


def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description=(
            "Capture a frame every tick period and archive frames that show "
            "motion to S3. AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY and "
            "AWS_REGION must be set."
        ),
    )

    # Capture
    ap.add_argument("--device", type=int, default=0, help="OpenCV camera index.")
    ap.add_argument("--width", type=int, default=640, help="Capture width in pixels.")
    ap.add_argument("--height", type=int, default=480, help="Capture height in pixels.")
    ap.add_argument(
        "--quality",
        type=int,
        default=100,
        help="JPEG quality (0-100); ignored for PNG output.",
    )
    ap.add_argument(
        "--output",
        type=str,
        choices=["jpeg", "png"],
        default="jpeg",
        help="Image format written to disk and uploaded.",
    )

    # Detection
    ap.add_argument(
        "--threshold",
        type=float,
        default=DEFAULT_MOTION_THRESHOLD,
        help=(
            "Fraction of changed pixels (0-1) above which a frame counts as motion. "
            "0 archives on any changed pixel (maximum sensitivity)."
        ),
    )
    ap.add_argument(
        "--pixel-tolerance",
        type=int,
        default=25,
        help="Per-pixel intensity difference (0-255) that counts as a change.",
    )
    ap.add_argument(
        "--no-grayscale",
        action="store_true",
        help="Compare colour channels instead of grayscale intensity.",
    )

    # Loop
    ap.add_argument(
        "--tick-period",
        type=float,
        default=1.0,
        help="Seconds between captures.",
    )
    ap.add_argument(
        "--startup-delay",
        type=float,
        default=60.0,
        help="Seconds to wait before the bootstrap capture.",
    )
    ap.add_argument(
        "--work-dir",
        type=str,
        default="saved_images",
        help="Directory holding previous/current frames and saved motion frames.",
    )
    ap.add_argument(
        "--max-ticks",
        type=int,
        default=0,
        help="If > 0, stop after this many ticks; otherwise run until Enter/Ctrl+C.",
    )

    # Archival
    ap.add_argument(
        "--bucket",
        type=str,
        default=os.environ.get("SNAPSHOT_BUCKET"),
        help="Destination S3 bucket (default: $SNAPSHOT_BUCKET).",
    )
    ap.add_argument(
        "--prefix",
        type=str,
        default=os.environ.get("SNAPSHOT_PREFIX", "motion-snapshots"),
        help="Key prefix inside the bucket (default: $SNAPSHOT_PREFIX or motion-snapshots).",
    )
    ap.add_argument(
        "--event-log",
        type=str,
        default=None,
        help="Optional JSONL file recording every motion event and its upload outcome.",
    )

    ap.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    return ap


def _wait_for_enter(stop: threading.Event) -> None:
    """Set ``stop`` when a line is read from stdin. EOF leaves the monitor running."""
    try:
        line = sys.stdin.readline()
    except (OSError, ValueError):
        return
    if line:
        print("Stopping the process...")
        stop.set()


def _run_monitor(
    monitor: MonitorLoop,
    stop: threading.Event,
    startup_delay_s: float,
    max_ticks: Optional[int],
    failures: list[BaseException],
) -> None:
    try:
        if startup_delay_s > 0:
            _LOG.info("Waiting %.1fs before starting motion detection", startup_delay_s)
            if stop.wait(startup_delay_s):
                return
        monitor.bootstrap()
        monitor.run(stop, max_ticks=max_ticks)
    except CaptureError as exc:
        _LOG.error("Error starting motion detection: %s", exc)
        failures.append(exc)
    except Exception as exc:
        _LOG.exception("Motion monitor crashed")
        failures.append(exc)
    finally:
        stop.set()


def main(argv: Optional[list[str]] = None) -> int:
    ap = build_arg_parser()
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    # ------------------------------------------------------------------ config

    try:
        camera_cfg = CameraConfig(
            device=args.device,
            width=args.width,
            height=args.height,
            quality=args.quality,
            output=args.output,
        )
        policy = MotionPolicy(threshold=args.threshold)
        diff_cfg = FrameDiffConfig(
            pixel_tolerance=args.pixel_tolerance,
            grayscale=not args.no_grayscale,
        )
        monitor_cfg = MonitorConfig(
            work_dir=Path(args.work_dir),
            tick_period_s=args.tick_period,
            extension=camera_cfg.extension,
        )
        if args.max_ticks < 0:
            raise ValueError(f"--max-ticks must be >= 0, got {args.max_ticks}")
        if args.startup_delay < 0:
            raise ValueError(f"--startup-delay must be >= 0, got {args.startup_delay}")
    except ValueError as exc:
        _LOG.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG_ERROR

    try:
        sink = S3ArchivalSink.from_env(
            ArchivalConfig(
                bucket=args.bucket,
                prefix=args.prefix,
                content_type=camera_cfg.content_type,
            )
        )
    except ConfigurationError as exc:
        _LOG.error("Configuration error: %s", exc)
        return EXIT_CONFIG_ERROR

    # ------------------------------------------------------------------ monitor

    camera = OpenCvCamera(camera_cfg)
    event_log = MotionSidecarWriter(Path(args.event_log)) if args.event_log else None
    if event_log is not None:
        event_log.open()
        _LOG.info("Writing motion events to %s", args.event_log)

    monitor = MonitorLoop(
        source=camera,
        sink=sink,
        config=monitor_cfg,
        differ=FrameDiffer(diff_cfg),
        policy=policy,
        event_log=event_log,
    )

    stop = threading.Event()
    failures: list[BaseException] = []
    worker = threading.Thread(
        target=_run_monitor,
        args=(monitor, stop, args.startup_delay, args.max_ticks or None, failures),
        name="motion-monitor",
    )
    worker.start()

    print("Press Enter to stop the process...")
    threading.Thread(target=_wait_for_enter, args=(stop,), name="stdin-stop", daemon=True).start()

    try:
        # Timed waits keep the main thread responsive to Ctrl+C.
        while not stop.wait(0.5):
            pass
    except KeyboardInterrupt:
        _LOG.info("KeyboardInterrupt received, stopping after the current tick.")
        stop.set()
    finally:
        worker.join()
        with contextlib.suppress(Exception):
            camera.close()
        if event_log is not None:
            event_log.close()

    return EXIT_BOOTSTRAP_FAILED if failures else EXIT_OK


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
