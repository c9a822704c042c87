#!/usr/bin/env python3
"""Score two image files with the monitor's differencer and print the verdict."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional

from analysis.motion.diff import FrameDiffConfig, FrameDiffer, FrameDiffError
from analysis.motion.policy import DEFAULT_MOTION_THRESHOLD, MotionPolicy
from common.frame import Frame


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="diff_frames",
        description="Compute the difference score between two frames.",
    )
    parser.add_argument("previous", help="Path to the earlier frame.")
    parser.add_argument("current", help="Path to the later frame.")
    parser.add_argument("--threshold", type=float, default=DEFAULT_MOTION_THRESHOLD)
    parser.add_argument("--pixel-tolerance", type=int, default=25)
    parser.add_argument("--no-grayscale", action="store_true")
    args = parser.parse_args(argv)

    differ = FrameDiffer(
        FrameDiffConfig(pixel_tolerance=args.pixel_tolerance, grayscale=not args.no_grayscale)
    )
    policy = MotionPolicy(threshold=args.threshold)

    a = Frame(img=None, path=Path(args.previous), captured_ms=0.0)
    b = Frame(img=None, path=Path(args.current), captured_ms=0.0)
    try:
        stats = differ.measure(a, b)
    except FrameDiffError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    verdict = "motion" if policy.decide(stats.score) else "no motion"
    sys.stdout.write(
        f"Difference percentage: {stats.score * 100.0:.2f}% "
        f"({stats.changed_px}/{stats.total_px} px) -> {verdict}\n"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
