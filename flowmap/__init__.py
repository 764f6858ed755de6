"""Screen-recording keyframe extraction and user-flow sitemap layout."""

from .core.errors import (
    AnalysisServiceError,
    ExtractionCancelled,
    GraphInconsistency,
    InvalidMedia,
    MediaDecodeError,
)
from .sitemap.models import FlowEdge, LayoutNode, LayoutResult, ScreenNode, SitemapGraph

__version__ = "0.1.0"

__all__ = [
    "AnalysisServiceError",
    "ExtractionCancelled",
    "GraphInconsistency",
    "InvalidMedia",
    "MediaDecodeError",
    "FlowEdge",
    "LayoutNode",
    "LayoutResult",
    "ScreenNode",
    "SitemapGraph",
]
