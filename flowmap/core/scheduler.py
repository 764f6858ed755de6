# -*- coding: utf-8 -*-
from __future__ import annotations
# flowmap: checkpoint scheduling (regular scan interval + forced start/end instants)
import math
from typing import List, Optional

import numpy as np

from flowmap.core.errors import InvalidMedia

DEFAULT_END_MARGIN = 0.05
DEFAULT_END_TOLERANCE = 0.1


# ---------- helpers ----------
def _require_positive(name: str, value: float) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise InvalidMedia(f"{name} is not a number: {value!r}") from None
    if not math.isfinite(v) or v <= 0.0:
        raise InvalidMedia(f"{name} must be a finite positive number, got {value!r}")
    return v


def _thin_evenly(points: List[float], budget: int) -> List[float]:
    """
    Down-sample to `budget` entries by evenly spaced index selection.
    First and last entries always survive.
    """
    if budget <= 0 or len(points) <= budget:
        return points
    if budget == 1:
        return points[:1]
    idx = np.linspace(0, len(points) - 1, num=budget).round().astype(int)
    return [points[i] for i in sorted(set(int(i) for i in idx))]


# ---------- public ----------
def build_checkpoints(
    duration: float,
    scan_interval: float,
    max_checkpoints: Optional[int] = None,
    *,
    end_margin: float = DEFAULT_END_MARGIN,
    end_tolerance: float = DEFAULT_END_TOLERANCE,
) -> List[float]:
    """
    Return strictly increasing timestamps (seconds) to sample.

    0, scan_interval, 2*scan_interval, ... while < duration, then a forced final
    checkpoint at max(0, duration - end_margin).
    The final checkpoint is skipped when the last regular one already lies within
    `end_tolerance` of it.
    """
    duration = _require_positive("duration", duration)
    interval = _require_positive("scan_interval", scan_interval)
    end_time = max(0.0, duration - max(0.0, float(end_margin)))

    points: List[float] = [0.0]
    i = 1
    while True:
        t = i * interval  # multiply, not accumulate: no float drift over long videos
        if t >= duration:
            break
        if t <= end_time:
            points.append(t)
        i += 1

    if end_time - points[-1] > max(0.0, float(end_tolerance)):
        points.append(end_time)

    if max_checkpoints is not None:
        points = _thin_evenly(points, int(max_checkpoints))
    return points
# end
