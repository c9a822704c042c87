from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np


@dataclass
class Frame:
    img: Optional[np.ndarray]  # BGR (H,W,3), uint8; None -> decode from path
    path: Path  # where the capture adapter wrote the image
    captured_ms: float  # epoch ms (float)
