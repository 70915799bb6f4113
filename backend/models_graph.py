"""
In-memory graph model used by the explorer session.

Nodes carry UI-only state (loading/expanded flags, layout) next to the
canonical fields mirrored from the cache store.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class NodeType(str, Enum):
    PERSON = "Person"
    THING = "Thing"

    @classmethod
    def parse(cls, raw: Any) -> "NodeType":
        """Anything not explicitly a person is a thing (events, works, organisations...)."""
        if isinstance(raw, NodeType):
            return raw
        return cls.PERSON if str(raw or "").strip().lower() == "person" else cls.THING


class LayoutMode(str, Enum):
    NETWORK = "network"
    TIMELINE = "timeline"


@dataclass
class LayoutState:
    x: float = 0.0
    y: float = 0.0
    vx: float = 0.0
    vy: float = 0.0
    has_position: bool = False
    pinned: Optional[Tuple[float, float]] = None

    def copy(self) -> "LayoutState":
        return replace(self)

    @classmethod
    def at(cls, x: float, y: float) -> "LayoutState":
        return cls(x=x, y=y, has_position=True)


@dataclass
class GraphNode:
    id: int
    title: str
    type: NodeType = NodeType.THING
    description: Optional[str] = None
    year: Optional[int] = None
    external_ref: Optional[str] = None
    image_url: Optional[str] = None
    summary: Optional[str] = None
    expanded: bool = False
    is_loading: bool = False
    image_checked: bool = False
    layout: LayoutState = field(default_factory=LayoutState)

    @property
    def is_committed(self) -> bool:
        """Committed nodes carry an id assigned by the cache store; placeholders are negative."""
        return self.id > 0

    @property
    def is_person(self) -> bool:
        return self.type is NodeType.PERSON

    @classmethod
    def from_canonical(cls, record: Dict[str, Any]) -> "GraphNode":
        return cls(
            id=int(record["id"]),
            title=record["title"],
            type=NodeType.parse(record.get("type")),
            description=record.get("description"),
            year=record.get("year"),
            external_ref=record.get("external_ref"),
            image_url=record.get("image_url"),
            summary=record.get("summary"),
        )


def link_id(a: int, b: int) -> str:
    """Undirected link identity: the same for (a, b) and (b, a)."""
    lo, hi = (a, b) if a <= b else (b, a)
    return f"{lo}-{hi}"


@dataclass(frozen=True)
class GraphLink:
    source_id: int
    target_id: int
    id: str
    label: Optional[str] = None

    @classmethod
    def between(cls, source_id: int, target_id: int, label: Optional[str] = None) -> "GraphLink":
        return cls(source_id=source_id, target_id=target_id, id=link_id(source_id, target_id), label=label)

    def touches(self, node_id: int) -> bool:
        return self.source_id == node_id or self.target_id == node_id

    def other(self, node_id: int) -> int:
        return self.target_id if self.source_id == node_id else self.source_id


@dataclass(frozen=True)
class GraphSnapshot:
    nodes: Tuple[GraphNode, ...] = ()
    links: Tuple[GraphLink, ...] = ()


@dataclass(frozen=True)
class Candidate:
    """An entity proposed by the provider, before it has a canonical id."""
    title: str
    type: NodeType
    description: Optional[str] = None
    year: Optional[int] = None
    role: Optional[str] = None
    external_ref: Optional[str] = None
    image_url: Optional[str] = None
    summary: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        """camelCase body accepted by the cache store's /node and /expansion routes."""
        payload: Dict[str, Any] = {"title": self.title, "type": self.type.value}
        for key, value in (
            ("description", self.description),
            ("year", self.year),
            ("externalRef", self.external_ref),
            ("imageUrl", self.image_url),
            ("summary", self.summary),
            ("label", self.role),
        ):
            if value is not None:
                payload[key] = value
        return payload


@dataclass(frozen=True)
class Enrichment:
    summary: Optional[str] = None
    image_url: Optional[str] = None
    external_ref: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.summary or self.image_url or self.external_ref)
