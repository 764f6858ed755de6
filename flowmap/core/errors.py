"""Exception types raised across the flowmap pipeline."""

from __future__ import annotations

from typing import Optional


class InvalidMedia(RuntimeError):
    """Raised when a video's duration is missing, non-positive, or non-finite."""


class MediaDecodeError(RuntimeError):
    """Raised when the video cannot be opened, seeked, or read at a checkpoint."""

    def __init__(self, message: str, timestamp: Optional[float] = None) -> None:
        super().__init__(message)
        self.timestamp = timestamp


class ExtractionCancelled(RuntimeError):
    """Raised when the caller's cancel signal is observed between checkpoints."""


class AnalysisServiceError(RuntimeError):
    """Raised when the screen/edge inference call fails or returns malformed data."""


class GraphInconsistency(RuntimeError):
    """Raised when a sitemap graph cannot be laid out as given."""


__all__ = [
    "InvalidMedia",
    "MediaDecodeError",
    "ExtractionCancelled",
    "AnalysisServiceError",
    "GraphInconsistency",
]
