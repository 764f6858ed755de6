"""Shared helpers: synthetic frames and an in-memory frame source."""

from typing import Callable, List, Optional

import numpy as np
import pytest

from flowmap.core.errors import MediaDecodeError


def solid_frame(value: int = 255, size: int = 64) -> np.ndarray:
    return np.full((size, size, 3), value, dtype=np.uint8)


def checkerboard_frame(size: int = 64, tile: int = 8, inverted: bool = False) -> np.ndarray:
    yy, xx = np.indices((size, size))
    board = ((yy // tile + xx // tile) % 2).astype(bool)
    if inverted:
        board = ~board
    frame = np.where(board[..., None], 255, 0).astype(np.uint8)
    return np.repeat(frame, 3, axis=2)


class FakeSource:
    """Stands in for an open VideoSource; frames come from ``frame_at(t)``."""

    def __init__(
        self,
        duration: float,
        frame_at: Callable[[float], np.ndarray],
        fail_at: Optional[float] = None,
    ) -> None:
        self.duration = duration
        self._frame_at = frame_at
        self._fail_at = fail_at
        self.reads: List[float] = []

    def read_at(self, t: float) -> np.ndarray:
        self.reads.append(t)
        if self._fail_at is not None and abs(t - self._fail_at) < 1e-9:
            raise MediaDecodeError(f"corrupt frame at {t:.3f}s", timestamp=t)
        return self._frame_at(t)


@pytest.fixture
def screen_a() -> np.ndarray:
    return checkerboard_frame()


@pytest.fixture
def screen_b() -> np.ndarray:
    return checkerboard_frame(inverted=True)
