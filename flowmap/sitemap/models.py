"""Domain models for the screen sitemap and its laid-out diagram."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List


@dataclass(frozen=True)
class ScreenNode:
    """A distinct UI screen inferred from the keyframes."""

    id: str
    label: str
    description: str
    frame_index: int  # index into the captured frame sequence


@dataclass(frozen=True)
class FlowEdge:
    """A directed transition between two screens, labelled with the user action."""

    from_id: str
    to_id: str
    label: str


@dataclass(frozen=True)
class SitemapGraph:
    """Screens plus observed transitions; edges may repeat, loop, or point backwards."""

    screens: List[ScreenNode] = field(default_factory=list)
    edges: List[FlowEdge] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        """Serialise in the analysis-service wire shape (camelCase keys)."""

        return {
            "screens": [
                {
                    "id": s.id,
                    "label": s.label,
                    "description": s.description,
                    "frameIndex": s.frame_index,
                }
                for s in self.screens
            ],
            "edges": [
                {"fromId": e.from_id, "toId": e.to_id, "label": e.label}
                for e in self.edges
            ],
        }


@dataclass
class LayoutNode:
    """A screen with its computed position; x/y stay editable after layout."""

    id: str
    label: str
    description: str
    frame_index: int
    x: float
    y: float
    level: int
    order_in_level: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LayoutResult:
    """Positioned nodes (in input order) and the overall canvas extent."""

    nodes: List[LayoutNode]
    width: float
    height: float

    def by_id(self) -> Dict[str, LayoutNode]:
        return {node.id: node for node in self.nodes}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "width": self.width,
            "height": self.height,
            "nodes": [node.to_dict() for node in self.nodes],
        }
