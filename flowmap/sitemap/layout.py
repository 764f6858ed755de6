"""Hierarchical sitemap layout: BFS levels, barycenter ordering, grid coordinates."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from functools import cmp_to_key
import logging
import math
from typing import Any, Dict, List, Mapping, Tuple

from flowmap.core.errors import GraphInconsistency
from .models import FlowEdge, LayoutNode, LayoutResult, ScreenNode, SitemapGraph


LOG = logging.getLogger("flowmap.sitemap.layout")

UNPLACED_WEIGHT = math.inf


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LayoutSettings:
    node_width: float = 240.0
    node_height: float = 460.0
    gap_x: float = 100.0
    gap_y: float = 120.0
    margin_x: float = 100.0
    margin_y: float = 80.0
    canvas_pad_x: float = 400.0
    canvas_pad_y: float = 300.0
    tie_epsilon: float = 0.01

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "LayoutSettings":
        layout = cfg.get("layout") or {}
        return cls(**{
            name: float(layout.get(name, getattr(cls, name)))
            for name in cls.__dataclass_fields__
        })


# ---------------------------------------------------------------------------
# Graph sanitising
# ---------------------------------------------------------------------------


def _sanitize(graph: SitemapGraph) -> Tuple[List[ScreenNode], List[FlowEdge]]:
    """Reject duplicate screen ids; drop edges that reference unknown screens."""

    seen: set[str] = set()
    for screen in graph.screens:
        if screen.id in seen:
            raise GraphInconsistency(f"duplicate screen id {screen.id!r}")
        seen.add(screen.id)

    edges: List[FlowEdge] = []
    for edge in graph.edges:
        if edge.from_id in seen and edge.to_id in seen:
            edges.append(edge)
        else:
            LOG.warning(
                "dropping edge %r -> %r (%s): unknown screen id",
                edge.from_id, edge.to_id, edge.label,
            )
    return list(graph.screens), edges


# ---------------------------------------------------------------------------
# Levels
# ---------------------------------------------------------------------------


def _assign_levels(screens: List[ScreenNode], edges: List[FlowEdge]) -> Dict[str, int]:
    if not screens:
        return {}
    incoming = {e.to_id for e in edges}
    roots = [s.id for s in screens if s.id not in incoming] or [screens[0].id]

    children: Dict[str, List[str]] = {}
    for e in edges:
        children.setdefault(e.from_id, []).append(e.to_id)

    levels: Dict[str, int] = {}
    queue = deque((root, 0) for root in roots)
    while queue:
        node_id, level = queue.popleft()
        if node_id in levels:
            continue
        levels[node_id] = level
        for child in children.get(node_id, ()):
            if child not in levels:
                queue.append((child, level + 1))

    for s in screens:
        levels.setdefault(s.id, 0)
    return levels


def assign_levels(graph: SitemapGraph) -> Dict[str, int]:
    """BFS depth of every screen from the root set (screens without incoming edges).

    A fully cyclic graph uses its first screen as the only root.  Screens are
    labelled on first discovery and never relabelled, so back-edges and cycles
    terminate; screens the traversal never reaches sit on level 0.
    """

    screens, edges = _sanitize(graph)
    return _assign_levels(screens, edges)


# ---------------------------------------------------------------------------
# Ordering within levels
# ---------------------------------------------------------------------------


def _order_levels(
    screens: List[ScreenNode],
    edges: List[FlowEdge],
    levels: Mapping[str, int],
    tie_epsilon: float,
) -> Dict[str, int]:
    by_level: Dict[int, List[ScreenNode]] = {}
    for s in screens:
        by_level.setdefault(levels[s.id], []).append(s)

    parents: Dict[str, List[str]] = {}
    for e in edges:
        parents.setdefault(e.to_id, []).append(e.from_id)

    def compare(a: Tuple[ScreenNode, float], b: Tuple[ScreenNode, float]) -> int:
        (sa, wa), (sb, wb) = a, b
        if not (math.isinf(wa) and math.isinf(wb)) and abs(wa - wb) > tie_epsilon:
            return -1 if wa < wb else 1
        return (sa.frame_index > sb.frame_index) - (sa.frame_index < sb.frame_index)

    positions: Dict[str, int] = {}
    for level in sorted(by_level):
        members = by_level[level]
        if level == 0:
            for rank, s in enumerate(members):
                positions[s.id] = rank
            continue
        weighted: List[Tuple[ScreenNode, float]] = []
        for s in members:
            placed = [
                positions[p]
                for p in parents.get(s.id, ())
                if p in positions and levels[p] < level
            ]
            weight = sum(placed) / len(placed) if placed else UNPLACED_WEIGHT
            weighted.append((s, weight))
        weighted.sort(key=cmp_to_key(compare))
        for rank, (s, _) in enumerate(weighted):
            positions[s.id] = rank
    return positions


def order_levels(
    graph: SitemapGraph,
    levels: Mapping[str, int],
    tie_epsilon: float = LayoutSettings.tie_epsilon,
) -> Dict[str, int]:
    """Rank screens inside each level.

    Level 0 keeps input order.  Deeper screens sort by the mean position of
    their already-placed parents (barycenter); a screen with no placed parent
    sorts last.  Weights within *tie_epsilon* are broken by ``frame_index``,
    i.e. by first appearance in the recording.
    """

    screens, edges = _sanitize(graph)
    missing = [s.id for s in screens if s.id not in levels]
    if missing:
        raise GraphInconsistency(f"screens without a level: {missing}")
    return _order_levels(screens, edges, levels, tie_epsilon)


# ---------------------------------------------------------------------------
# Coordinates
# ---------------------------------------------------------------------------


def compute_layout(graph: SitemapGraph, settings: LayoutSettings = LayoutSettings()) -> LayoutResult:
    """Place every screen on a centered, non-overlapping level grid.

    Pure: the input graph is never modified and repeated calls return equal
    coordinates.  Nodes come back in the graph's screen order.
    """

    screens, edges = _sanitize(graph)
    levels = _assign_levels(screens, edges)
    orders = _order_levels(screens, edges, levels, settings.tie_epsilon)

    slot_w = settings.node_width + settings.gap_x
    slot_h = settings.node_height + settings.gap_y

    counts: Dict[int, int] = {}
    for level in levels.values():
        counts[level] = counts.get(level, 0) + 1
    row_widths = {level: count * slot_w - settings.gap_x for level, count in counts.items()}
    max_row_width = max([0.0, *row_widths.values()])
    max_level = max(levels.values(), default=-1)

    nodes: List[LayoutNode] = []
    for s in screens:
        level = levels[s.id]
        order = orders[s.id]
        center_offset = (max_row_width - row_widths[level]) / 2.0
        nodes.append(
            LayoutNode(
                id=s.id,
                label=s.label,
                description=s.description,
                frame_index=s.frame_index,
                x=center_offset + order * slot_w + settings.margin_x,
                y=level * slot_h + settings.margin_y,
                level=level,
                order_in_level=order,
            )
        )

    result = LayoutResult(
        nodes=nodes,
        width=max_row_width + settings.canvas_pad_x,
        height=(max_level + 1) * slot_h + settings.canvas_pad_y,
    )
    LOG.info(
        "laid out %d screens on %d levels (%.0fx%.0f), %d edges",
        len(nodes), max_level + 1, result.width, result.height, len(edges),
    )
    return result


__all__ = [
    "LayoutSettings",
    "UNPLACED_WEIGHT",
    "assign_levels",
    "order_levels",
    "compute_layout",
]
