"""Keyframe extraction: walk the checkpoints, keep distinct UI states.

Each checkpoint goes through the same short cycle::

    PENDING_SEEK -> ANALYZING -> (KEPT | DISCARDED) -> next checkpoint or TERMINATED

The scheduling state (position, last kept buffer, captured frames) is carried by
an explicit :class:`ExtractionCursor` owned by a single extraction run.
:func:`extract_keyframes` accepts anything exposing ``duration`` and
``read_at(t)``.

Duplicates are judged against the last *kept* buffer, not the last sampled one,
so a slow fade back to an already captured screen collapses into that screen.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import cv2
import numpy as np

from flowmap.core.errors import ExtractionCancelled, MediaDecodeError
from flowmap.core.scheduler import build_checkpoints
from flowmap.core.signals import FrameSignalAnalyzer, PixelSampleBuffer, SignalSettings


LOG = logging.getLogger("flowmap.extraction")

ProgressCb = Optional[Callable[[float, str], None]]
CancelFn = Optional[Callable[[], bool]]

PENDING_SEEK = "pending_seek"
ANALYZING = "analyzing"
KEPT = "kept"
DISCARDED = "discarded"
TERMINATED = "terminated"


# ---------------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CapturedFrame:
    """An accepted checkpoint: timestamp plus the JPEG-encoded full-size image.

    ``time`` is the checkpoint that was requested and orders the captures.
    ``source_time`` is the timestamp of the frame the decoder actually returned,
    when the source can report it.
    """

    time: float
    image: bytes
    width: int
    height: int
    checkpoint: int
    source_time: Optional[float] = None

    def to_base64(self) -> str:
        return base64.b64encode(self.image).decode("ascii")

    def to_data_url(self) -> str:
        return f"data:image/jpeg;base64,{self.to_base64()}"


@dataclass(frozen=True)
class ExtractionSettings:
    """Scheduling and capture tunables (``extract`` config block)."""

    scan_interval: float = 0.2
    max_frames: int = 600
    max_checkpoints: Optional[int] = None
    end_margin: float = 0.05
    end_tolerance: float = 0.1
    final_frame_policy: str = "always"
    final_duplicate_threshold: float = 0.998
    capture_max_dimension: int = 1500
    jpeg_quality: int = 80

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "ExtractionSettings":
        extract = cfg.get("extract") or {}
        max_checkpoints = extract.get("max_checkpoints")
        return cls(
            scan_interval=float(extract.get("scan_interval", cls.scan_interval)),
            max_frames=int(extract.get("max_frames", cls.max_frames)),
            max_checkpoints=int(max_checkpoints) if max_checkpoints else None,
            end_margin=float(extract.get("end_margin", cls.end_margin)),
            end_tolerance=float(extract.get("end_tolerance", cls.end_tolerance)),
            final_frame_policy=str(extract.get("final_frame_policy", cls.final_frame_policy)),
            final_duplicate_threshold=float(
                extract.get("final_duplicate_threshold", cls.final_duplicate_threshold)
            ),
            capture_max_dimension=int(extract.get("capture_max_dimension", cls.capture_max_dimension)),
            jpeg_quality=int(extract.get("jpeg_quality", cls.jpeg_quality)),
        )


@dataclass(frozen=True)
class Decision:
    keep: bool
    reason: str  # first | last | unique | boring | duplicate | final-duplicate
    similarity: Optional[float] = None


@dataclass
class ExtractionCursor:
    """Single-owner scheduling state threaded through every checkpoint step."""

    checkpoints: List[float]
    max_frames: int
    position: int = 0
    state: str = PENDING_SEEK
    baseline: Optional[PixelSampleBuffer] = None
    frames: List[CapturedFrame] = field(default_factory=list)
    decisions: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.finished:
            self.state = TERMINATED

    @property
    def finished(self) -> bool:
        return self.position >= len(self.checkpoints) or len(self.frames) >= self.max_frames

    @property
    def current_time(self) -> float:
        return self.checkpoints[self.position]

    @property
    def is_first(self) -> bool:
        return self.position == 0

    @property
    def is_last(self) -> bool:
        return self.position == len(self.checkpoints) - 1

    def begin_analysis(self) -> None:
        self.state = ANALYZING

    def _record(self, decision: Decision) -> None:
        self.decisions.append(
            {
                "checkpoint": self.position,
                "time": self.current_time,
                "state": self.state,
                "reason": decision.reason,
                "similarity": decision.similarity,
            }
        )

    def keep(self, buffer: PixelSampleBuffer, frame: CapturedFrame, decision: Decision) -> None:
        self.state = KEPT
        self.baseline = buffer
        self.frames.append(frame)
        self._record(decision)

    def discard(self, decision: Decision) -> None:
        self.state = DISCARDED
        self._record(decision)

    def advance(self) -> None:
        self.position += 1
        self.state = TERMINATED if self.finished else PENDING_SEEK


@dataclass
class ExtractionResult:
    frames: List[CapturedFrame]
    checkpoints: List[float]
    decisions: List[Dict[str, Any]]
    cap_reached: bool = False

    def summary(self) -> Dict[str, Any]:
        reasons: Dict[str, int] = {}
        for entry in self.decisions:
            reasons[entry["reason"]] = reasons.get(entry["reason"], 0) + 1
        return {
            "checkpoints": len(self.checkpoints),
            "analyzed": len(self.decisions),
            "kept": len(self.frames),
            "cap_reached": self.cap_reached,
            "reasons": reasons,
        }


# ---------------------------------------------------------------------------
# Decision policy
# ---------------------------------------------------------------------------


def decide_checkpoint(
    cursor: ExtractionCursor,
    buffer: PixelSampleBuffer,
    analyzer: FrameSignalAnalyzer,
    settings: ExtractionSettings,
) -> Decision:
    """Apply the keep/discard rules, in order, to the checkpoint under the cursor."""

    if cursor.is_first or cursor.baseline is None:
        return Decision(True, "first")

    if cursor.is_last:
        if settings.final_frame_policy == "dedupe":
            threshold = settings.final_duplicate_threshold
            sim = analyzer.similarity(cursor.baseline, buffer, threshold)
            if sim > threshold:
                return Decision(False, "final-duplicate", sim)
            return Decision(True, "last", sim)
        return Decision(True, "last")

    if analyzer.is_boring(buffer):
        return Decision(False, "boring")

    sim = analyzer.similarity(cursor.baseline, buffer)
    if sim > analyzer.settings.duplicate_threshold:
        return Decision(False, "duplicate", sim)
    return Decision(True, "unique", sim)


# ---------------------------------------------------------------------------
# Capture rendering
# ---------------------------------------------------------------------------


def _resize_to_max_dimension(frame: np.ndarray, max_dimension: Optional[int]) -> np.ndarray:
    if not max_dimension or max_dimension <= 0:
        return frame
    h, w = frame.shape[:2]
    longest = max(h, w)
    if longest <= max_dimension:
        return frame
    scale = max_dimension / float(longest)
    new_size = (max(1, int(w * scale)), max(1, int(h * scale)))
    return cv2.resize(frame, new_size, interpolation=cv2.INTER_AREA)


def encode_capture(frame: np.ndarray, max_dimension: int, quality: int) -> Tuple[bytes, int, int]:
    """JPEG-encode *frame* with its longest side capped; returns ``(bytes, w, h)``."""

    out = _resize_to_max_dimension(frame, max_dimension)
    ok, buf = cv2.imencode(".jpg", out, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise MediaDecodeError("could not encode captured frame as JPEG")
    h, w = out.shape[:2]
    return buf.tobytes(), int(w), int(h)


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------


def extract_keyframes(
    source: Any,
    settings: Optional[ExtractionSettings] = None,
    signals: Optional[SignalSettings] = None,
    *,
    progress_cb: ProgressCb = None,
    cancel_fn: CancelFn = None,
) -> ExtractionResult:
    """Sample *source* at every checkpoint and return the kept frames in order.

    *source* must already be open and expose ``duration`` and ``read_at(t)``.
    An optional ``time_at(t)`` fills :attr:`CapturedFrame.source_time`.
    Decode errors propagate as :class:`MediaDecodeError`; no partial result is
    returned in that case.
    """

    settings = settings or ExtractionSettings()
    analyzer = FrameSignalAnalyzer(signals)
    progress_cb = progress_cb or (lambda frac, msg: None)
    cancel_fn = cancel_fn or (lambda: False)

    checkpoints = build_checkpoints(
        source.duration,
        settings.scan_interval,
        settings.max_checkpoints,
        end_margin=settings.end_margin,
        end_tolerance=settings.end_tolerance,
    )
    LOG.info(
        "scanning %d checkpoints (interval=%.3fs, max_frames=%d, final=%s)",
        len(checkpoints), settings.scan_interval, settings.max_frames, settings.final_frame_policy,
    )

    cursor = ExtractionCursor(checkpoints=checkpoints, max_frames=max(1, settings.max_frames))
    total = len(checkpoints)
    while not cursor.finished:
        if cancel_fn():
            raise ExtractionCancelled(f"extraction cancelled at checkpoint {cursor.position}/{total}")

        t = cursor.current_time
        frame = source.read_at(t)
        cursor.begin_analysis()
        buffer = analyzer.sample(frame)
        decision = decide_checkpoint(cursor, buffer, analyzer, settings)

        if decision.keep:
            image, width, height = encode_capture(
                frame, settings.capture_max_dimension, settings.jpeg_quality
            )
            time_at = getattr(source, "time_at", None)
            captured = CapturedFrame(
                time=float(t),
                image=image,
                width=width,
                height=height,
                checkpoint=cursor.position,
                source_time=float(time_at(t)) if time_at else None,
            )
            cursor.keep(buffer, captured, decision)
            LOG.debug("checkpoint %d @ %.2fs kept (%s)", cursor.position, t, decision.reason)
        else:
            cursor.discard(decision)

        progress_cb((cursor.position + 1) / total, f"checkpoint {cursor.position + 1}/{total}")
        cursor.advance()

    cap_reached = len(cursor.frames) >= cursor.max_frames and cursor.position < total
    if cap_reached:
        LOG.info("frame cap %d reached after %d/%d checkpoints", cursor.max_frames, cursor.position, total)

    result = ExtractionResult(
        frames=list(cursor.frames),
        checkpoints=checkpoints,
        decisions=list(cursor.decisions),
        cap_reached=cap_reached,
    )
    LOG.info("kept %d of %d checkpoints", len(result.frames), total)
    return result


__all__ = [
    "CapturedFrame",
    "ExtractionSettings",
    "ExtractionCursor",
    "ExtractionResult",
    "Decision",
    "decide_checkpoint",
    "encode_capture",
    "extract_keyframes",
]
