"""
Graph store: the in-memory node/link set shown to the user.

Holds the display copy of canonical entities plus UI-only state, and offers
the merge primitive every expansion result goes through. Listeners are told
after each mutation whether the structure (node or link set) changed, which
is what the layout engine needs to decide how hard to re-settle.
"""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from models_graph import GraphLink, GraphNode, GraphSnapshot, LayoutState, NodeType, link_id
from services_context_fingerprint import normalize_title

logger = logging.getLogger("constellations")

Listener = Callable[[bool], None]

JITTER_PX = 100.0


@dataclass
class MergeResult:
    added_ids: List[int] = field(default_factory=list)
    updated_ids: List[int] = field(default_factory=list)
    added_link_ids: List[str] = field(default_factory=list)
    rekeyed: Dict[int, int] = field(default_factory=dict)

    @property
    def changed_structure(self) -> bool:
        return bool(self.added_ids or self.added_link_ids or self.rekeyed)


class GraphStore:
    def __init__(self, rng: Optional[random.Random] = None):
        self._nodes: Dict[int, GraphNode] = {}
        self._links: Dict[str, GraphLink] = {}
        self._listeners: List[Listener] = []
        self._next_placeholder = -1
        self._rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def __contains__(self, node_id: int) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, node_id: int) -> Optional[GraphNode]:
        return self._nodes.get(node_id)

    @property
    def nodes(self) -> List[GraphNode]:
        return list(self._nodes.values())

    @property
    def links(self) -> List[GraphLink]:
        return list(self._links.values())

    def has_link(self, a: int, b: int) -> bool:
        return link_id(a, b) in self._links

    def neighbors(self, node_id: int) -> List[GraphNode]:
        ids = [l.other(node_id) for l in self._links.values() if l.touches(node_id)]
        return [self._nodes[i] for i in ids if i in self._nodes]

    def neighbor_titles(self, node_id: int) -> List[str]:
        return sorted(n.title for n in self.neighbors(node_id))

    def find_by_title(self, title: str, node_type: Optional[NodeType] = None) -> Optional[GraphNode]:
        key = normalize_title(title)
        for node in self._nodes.values():
            if normalize_title(node.title) == key and (node_type is None or node.type is node_type):
                return node
        return None

    def snapshot(self) -> GraphSnapshot:
        return GraphSnapshot(nodes=tuple(self._nodes.values()), links=tuple(self._links.values()))

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _notify(self, structural: bool) -> None:
        for listener in list(self._listeners):
            listener(structural)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def next_placeholder_id(self) -> int:
        """Negative ids for nodes the cache store has not assigned an id to yet."""
        placeholder = self._next_placeholder
        self._next_placeholder -= 1
        return placeholder

    def add_node(self, node: GraphNode) -> GraphNode:
        if node.id in self._nodes:
            raise ValueError(f"Node {node.id} already exists")
        self._nodes[node.id] = node
        self._notify(True)
        return node

    def add_link(self, source_id: int, target_id: int, label: Optional[str] = None) -> bool:
        """Add an undirected link unless one already joins the pair. Returns True when added."""
        if source_id == target_id or source_id not in self._nodes or target_id not in self._nodes:
            return False
        lid = link_id(source_id, target_id)
        if lid in self._links:
            return False
        self._links[lid] = GraphLink(source_id=source_id, target_id=target_id, id=lid, label=label)
        self._notify(True)
        return True

    def update_node(self, node_id: int, **fields) -> Optional[GraphNode]:
        """Set fields on a node in place; content-only, so listeners get a gentle re-settle."""
        node = self._nodes.get(node_id)
        if node is None:
            return None
        for key, value in fields.items():
            if not hasattr(node, key):
                raise AttributeError(f"GraphNode has no field {key!r}")
            setattr(node, key, value)
        self._notify(False)
        return node

    def replace(self, nodes: Iterable[GraphNode], links: Iterable[GraphLink]) -> None:
        """Swap in a new node/link set; links with a missing endpoint are dropped."""
        new_nodes = {n.id: n for n in nodes}
        new_links = {
            l.id: l for l in links
            if l.source_id in new_nodes and l.target_id in new_nodes
        }
        self._nodes = new_nodes
        self._links = new_links
        if new_nodes:
            self._next_placeholder = min(self._next_placeholder, min(new_nodes) - 1)
        self._notify(True)

    def remove_nodes(self, node_ids: Iterable[int]) -> Set[int]:
        doomed = {i for i in node_ids if i in self._nodes}
        if not doomed:
            return set()
        for node_id in doomed:
            del self._nodes[node_id]
        self._links = {
            lid: l for lid, l in self._links.items()
            if l.source_id not in doomed and l.target_id not in doomed
        }
        self._notify(True)
        return doomed

    def clear(self) -> None:
        self._nodes = {}
        self._links = {}
        self._notify(True)

    def merge_canonical(
        self,
        source_id: int,
        incoming: Sequence[GraphNode],
        labels: Optional[Dict[int, Optional[str]]] = None,
    ) -> MergeResult:
        """
        Merge canonical neighbors of `source_id` into the graph.

        Existing nodes keep locally known image/summary/external ref and take the
        incoming title, type, description and year. New nodes are placed near
        the source. One link per incoming node joins it to the source. Merging
        the same set again changes nothing. All-or-nothing: nothing is touched
        if the source node is missing.

        A committed id that is not in the graph yet takes over a placeholder
        node with the same title and type (created while the cache store was
        unreachable), so one entity never shows up twice.
        """
        source = self._nodes.get(source_id)
        if source is None:
            raise KeyError(f"Source node {source_id} is not in the graph")
        labels = labels or {}
        result = MergeResult()

        for record in incoming:
            existing = self._nodes.get(record.id)
            if existing is None and record.is_committed:
                existing = self._adopt_placeholder(record, source_id, result)
            if existing is not None:
                existing.title = record.title
                existing.type = record.type
                if record.description:
                    existing.description = record.description
                if record.year is not None:
                    existing.year = record.year
                existing.image_url = existing.image_url or record.image_url
                existing.summary = existing.summary or record.summary
                existing.external_ref = existing.external_ref or record.external_ref
                result.updated_ids.append(record.id)
            else:
                node = GraphNode(
                    id=record.id,
                    title=record.title,
                    type=record.type,
                    description=record.description,
                    year=record.year,
                    external_ref=record.external_ref,
                    image_url=record.image_url,
                    summary=record.summary,
                    image_checked=bool(record.image_url),
                    layout=self._jitter_near(source),
                )
                self._nodes[node.id] = node
                result.added_ids.append(node.id)

            if record.id == source_id:
                continue
            lid = link_id(source_id, record.id)
            if lid not in self._links:
                self._links[lid] = GraphLink(
                    source_id=source_id, target_id=record.id, id=lid, label=labels.get(record.id)
                )
                result.added_link_ids.append(lid)

        if result.added_ids or result.added_link_ids or result.updated_ids:
            self._notify(result.changed_structure)
        return result

    def _adopt_placeholder(self, record: GraphNode, source_id: int, result: MergeResult) -> Optional[GraphNode]:
        """Move a same-title/type placeholder node to the committed id of `record`, links included."""
        key = normalize_title(record.title)
        placeholder = next(
            (
                n for n in self._nodes.values()
                if not n.is_committed
                and n.id != source_id
                and n.type is record.type
                and normalize_title(n.title) == key
            ),
            None,
        )
        if placeholder is None:
            return None

        old_id = placeholder.id
        del self._nodes[old_id]
        placeholder.id = record.id
        self._nodes[record.id] = placeholder

        links: Dict[str, GraphLink] = {}
        for l in self._links.values():
            if l.touches(old_id):
                s = record.id if l.source_id == old_id else l.source_id
                t = record.id if l.target_id == old_id else l.target_id
                if s == t:
                    continue
                l = GraphLink.between(s, t, l.label)
            links.setdefault(l.id, l)
        self._links = links

        result.rekeyed[old_id] = record.id
        logger.info(f"[graph_store] Placeholder {old_id} ({record.title!r}) is now {record.id}")
        return placeholder

    def _jitter_near(self, source: GraphNode) -> LayoutState:
        if not source.layout.has_position:
            return LayoutState()
        return LayoutState.at(
            source.layout.x + (self._rng.random() - 0.5) * JITTER_PX,
            source.layout.y + (self._rng.random() - 0.5) * JITTER_PX,
        )
