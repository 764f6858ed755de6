"""Sitemap graph model, analysis client and layout engine."""

from .layout import LayoutSettings, assign_levels, compute_layout, order_levels
from .models import FlowEdge, LayoutNode, LayoutResult, ScreenNode, SitemapGraph

__all__ = [
    "FlowEdge",
    "LayoutNode",
    "LayoutResult",
    "LayoutSettings",
    "ScreenNode",
    "SitemapGraph",
    "assign_levels",
    "compute_layout",
    "order_levels",
]
