# -*- coding: utf-8 -*-
"""
Cheap per-checkpoint signals built with OpenCV + NumPy primitives.

Every checkpoint is downscaled into a small square RGBA ``PixelSampleBuffer``
that is never shown to anyone; it only feeds two pure scores:

    - color_deviation / is_low_complexity: is this a near-solid "boring" frame
      (blank loading screen, lone spinner)?
    - similarity: what fraction of pixels stayed within the compression noise
      floor compared to another buffer?

Public API:
    - PixelSampleBuffer (dataclass)
    - SignalSettings (dataclass)
    - color_deviation(buffer, stride) -> float
    - is_low_complexity(buffer, threshold, stride) -> bool
    - similarity(a, b, noise_floor=..., stride=..., max_changed_fraction=...) -> float
    - FrameSignalAnalyzer
"""

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Any, Mapping, Optional

import cv2
import numpy as np


# ---------------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PixelSampleBuffer:
    """Fixed-size RGBA bitmap of one video instant, used only for comparison."""
    pixels: np.ndarray  # (S, S, 4) uint8, RGBA

    @property
    def size(self) -> int:
        return int(self.pixels.shape[0])

    @classmethod
    def from_frame(cls, frame_bgr: np.ndarray, size: int) -> "PixelSampleBuffer":
        """Downscale a decoded OpenCV frame (BGR, BGRA or gray) to ``size x size`` RGBA."""
        frame = np.asarray(frame_bgr)
        if frame.size == 0:
            raise ValueError("cannot sample an empty frame")
        side = max(1, int(size))
        small = cv2.resize(frame, (side, side), interpolation=cv2.INTER_AREA)
        if small.ndim == 2:
            rgba = cv2.cvtColor(small, cv2.COLOR_GRAY2RGBA)
        elif small.shape[2] == 4:
            rgba = cv2.cvtColor(small, cv2.COLOR_BGRA2RGBA)
        else:
            rgba = cv2.cvtColor(small, cv2.COLOR_BGR2RGBA)
        rgba = np.ascontiguousarray(rgba, dtype=np.uint8)
        rgba.setflags(write=False)
        return cls(pixels=rgba)


@dataclass(frozen=True)
class SignalSettings:
    """Tunables for the boring/duplicate decisions (see ``signals`` config block)."""
    sample_size: int = 100
    complexity_threshold: float = 2.0
    complexity_stride: int = 5
    duplicate_threshold: float = 0.995
    noise_floor: int = 40
    pixel_stride: int = 1
    early_exit: bool = True

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "SignalSettings":
        signals = cfg.get("signals") or {}
        return cls(
            sample_size=int(signals.get("sample_size", cls.sample_size)),
            complexity_threshold=float(signals.get("complexity_threshold", cls.complexity_threshold)),
            complexity_stride=int(signals.get("complexity_stride", cls.complexity_stride)),
            duplicate_threshold=float(signals.get("duplicate_threshold", cls.duplicate_threshold)),
            noise_floor=int(signals.get("noise_floor", cls.noise_floor)),
            pixel_stride=int(signals.get("pixel_stride", cls.pixel_stride)),
            early_exit=bool(signals.get("early_exit", cls.early_exit)),
        )


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------

def _sampled_rgb(pixels: np.ndarray, stride: int) -> np.ndarray:
    """Every ``stride``-th pixel in row-major order, RGB channels only."""
    flat = np.asarray(pixels).reshape(-1, pixels.shape[-1])
    return flat[:: max(1, int(stride)), :3]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def color_deviation(buffer: PixelSampleBuffer, stride: int = 5) -> float:
    """
    Standard deviation of color intensity over a uniform pixel sub-sample:
    sqrt(mean(dr^2 + dg^2 + db^2)) around the sample's mean color.
    """
    rgb = _sampled_rgb(buffer.pixels, stride).astype(np.float64)
    if rgb.shape[0] == 0:
        return 0.0
    mean = rgb.mean(axis=0)
    variance = float(np.mean(np.sum((rgb - mean) ** 2, axis=1)))
    return math.sqrt(max(0.0, variance))


def is_low_complexity(buffer: PixelSampleBuffer, threshold: float = 2.0, stride: int = 5) -> bool:
    """True for near-solid frames whose color deviation is below *threshold*."""
    return color_deviation(buffer, stride) < float(threshold)


def similarity(
    a: PixelSampleBuffer,
    b: PixelSampleBuffer,
    *,
    noise_floor: int = 40,
    stride: int = 1,
    max_changed_fraction: Optional[float] = None,
) -> float:
    """
    Fraction of sampled pixels whose summed |dR|+|dG|+|dB| stays within *noise_floor*.

    1.0 means identical.  Buffers of different shapes score 0.0.  When
    *max_changed_fraction* is given and more pixels than that budget changed,
    0.0 is returned directly: the exact value below the decision threshold is
    never needed.
    """
    if a.pixels.shape != b.pixels.shape:
        return 0.0
    pa = _sampled_rgb(a.pixels, stride).astype(np.int16)
    pb = _sampled_rgb(b.pixels, stride).astype(np.int16)
    total = int(pa.shape[0])
    if total == 0:
        return 1.0
    diff = np.abs(pa - pb).sum(axis=1)
    changed = int(np.count_nonzero(diff > int(noise_floor)))
    if max_changed_fraction is not None and changed > float(max_changed_fraction) * total:
        return 0.0
    return 1.0 - (changed / total)


class FrameSignalAnalyzer:
    """Binds :class:`SignalSettings` to the pure scoring functions above."""

    def __init__(self, settings: Optional[SignalSettings] = None) -> None:
        self.settings = settings or SignalSettings()

    def sample(self, frame_bgr: np.ndarray) -> PixelSampleBuffer:
        return PixelSampleBuffer.from_frame(frame_bgr, self.settings.sample_size)

    def is_boring(self, buffer: PixelSampleBuffer) -> bool:
        s = self.settings
        return is_low_complexity(buffer, s.complexity_threshold, s.complexity_stride)

    def similarity(
        self, a: PixelSampleBuffer, b: PixelSampleBuffer, threshold: Optional[float] = None
    ) -> float:
        """Similarity of *a* to *b*; early exit is budgeted from *threshold* when enabled."""
        s = self.settings
        limit = s.duplicate_threshold if threshold is None else float(threshold)
        budget = (1.0 - limit) if s.early_exit else None
        return similarity(a, b, noise_floor=s.noise_floor, stride=s.pixel_stride, max_changed_fraction=budget)

    def is_duplicate(
        self, a: PixelSampleBuffer, b: PixelSampleBuffer, threshold: Optional[float] = None
    ) -> bool:
        limit = self.settings.duplicate_threshold if threshold is None else float(threshold)
        return self.similarity(a, b, limit) > limit


__all__ = [
    "PixelSampleBuffer",
    "SignalSettings",
    "color_deviation",
    "is_low_complexity",
    "similarity",
    "FrameSignalAnalyzer",
]
