"""Seekable video handle built on ``cv2.VideoCapture``.

The decoder behind a capture exposes a single playback position, so the handle
is used strictly one seek at a time.  :class:`VideoSource` is a context manager
and releases the capture on every exit path (normal completion, frame cap,
cancellation, or a decode error raised from inside the ``with`` block).
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import subprocess
from typing import Any, Dict, Optional

import cv2
import numpy as np

from flowmap.core.errors import MediaDecodeError


LOG = logging.getLogger("flowmap.media")


@dataclass(frozen=True)
class VideoMetadata:
    """Describe the video capture so checkpoint timestamps map onto real frames."""

    fps: float
    frame_count: int
    width: int
    height: int
    duration: float


def _run_ffprobe(path: str, ffprobe_bin: Optional[str]) -> Optional[Dict[str, Any]]:
    if not ffprobe_bin:
        return None
    try:
        out = subprocess.check_output(
            [ffprobe_bin, "-v", "error", "-print_format", "json", "-show_format", "-show_streams", path],
            stderr=subprocess.STDOUT,
        )
        return json.loads(out.decode("utf-8"))
    except (OSError, subprocess.CalledProcessError, ValueError) as exc:
        LOG.info("ffprobe unavailable for %s (%s); using OpenCV metadata", path, exc)
        return None


def _ffprobe_duration(meta: Optional[Dict[str, Any]]) -> Optional[float]:
    if not meta:
        return None
    raw = (meta.get("format") or {}).get("duration")
    try:
        return float(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


class VideoSource:
    """One open video, seekable by timestamp."""

    def __init__(self, source: str, *, ffprobe_bin: Optional[str] = None) -> None:
        self.source = source
        self.ffprobe_bin = ffprobe_bin
        self.meta: Optional[VideoMetadata] = None
        self._cap: Optional[cv2.VideoCapture] = None

    # Lifecycle ------------------------------------------------------------

    def open(self) -> "VideoSource":
        if self._cap is not None:
            return self
        cap = cv2.VideoCapture(self.source)
        if not cap.isOpened():
            cap.release()
            raise MediaDecodeError(f"could not open video source: {self.source}")

        fps = float(cap.get(cv2.CAP_PROP_FPS) or 0.0)
        frame_count = int(cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
        width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)
        height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)
        duration = (frame_count / fps) if fps > 0 and frame_count > 0 else 0.0

        probed = _ffprobe_duration(_run_ffprobe(self.source, self.ffprobe_bin))
        if probed is not None:
            duration = probed

        self._cap = cap
        self.meta = VideoMetadata(
            fps=fps,
            frame_count=frame_count,
            width=width,
            height=height,
            duration=duration,
        )
        LOG.info(
            "opened %s: %.2fs, %d frames @ %.2f fps, %dx%d",
            self.source, duration, frame_count, fps, width, height,
        )
        return self

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None
            LOG.debug("released %s", self.source)

    def __enter__(self) -> "VideoSource":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    @property
    def is_open(self) -> bool:
        return self._cap is not None

    # Metadata -------------------------------------------------------------

    @property
    def duration(self) -> float:
        return self.meta.duration if self.meta else 0.0

    @property
    def width(self) -> int:
        return self.meta.width if self.meta else 0

    @property
    def height(self) -> int:
        return self.meta.height if self.meta else 0

    @property
    def fps(self) -> float:
        return self.meta.fps if self.meta else 0.0

    # Seeking --------------------------------------------------------------

    def frame_index_at(self, time_sec: float) -> int:
        """Nearest decodable frame for *time_sec*, clamped to the stream."""

        if self.meta is None or self.meta.fps <= 0:
            return 0
        index = int(round(max(0.0, float(time_sec)) * self.meta.fps))
        if self.meta.frame_count > 0:
            index = min(index, self.meta.frame_count - 1)
        return max(0, index)

    def time_at(self, time_sec: float) -> float:
        """Presentation time of the frame :meth:`read_at` decodes for *time_sec*."""

        if self.meta is None or self.meta.fps <= 0:
            return float(time_sec)
        return self.frame_index_at(time_sec) / self.meta.fps

    def read_at(self, time_sec: float) -> np.ndarray:
        """Seek to *time_sec* and return the decoded BGR frame."""

        if self._cap is None:
            raise MediaDecodeError("video source is not open", timestamp=time_sec)
        index = self.frame_index_at(time_sec)
        if not self._cap.set(cv2.CAP_PROP_POS_FRAMES, index):
            LOG.debug("seek to frame %d reported failure; attempting read anyway", index)
        ok, frame = self._cap.read()
        if not ok or frame is None:
            raise MediaDecodeError(
                f"could not decode frame {index} at {time_sec:.3f}s from {self.source}",
                timestamp=time_sec,
            )
        return frame


__all__ = ["VideoMetadata", "VideoSource"]
