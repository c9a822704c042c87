# capture/__init__.py
"""Capture package: OpenCV camera adapter writing frames to disk."""

from .camera import CameraConfig, CaptureError, FrameSource, OpenCvCamera

__all__ = [
    "CameraConfig",
    "CaptureError",
    "FrameSource",
    "OpenCvCamera",
]

__version__ = "0.1.0"
