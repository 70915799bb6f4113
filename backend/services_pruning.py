"""
Connectivity helpers: pruning leaves and deleting a node without leaving
disconnected islands behind.

Everything except `apply_delete` is pure and works on plain node/link
sequences, so a deletion can be previewed before it is applied.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Set, Tuple

import networkx as nx

from models_graph import GraphLink, GraphNode
from services_graph_store import GraphStore


@dataclass(frozen=True)
class DeleteOutcome:
    kept_nodes: Tuple[GraphNode, ...]
    kept_links: Tuple[GraphLink, ...]
    dropped_ids: frozenset


def build_graph(node_ids: Iterable[int], links: Iterable[GraphLink]) -> nx.Graph:
    """Undirected graph over `node_ids`; links with an unknown endpoint are skipped."""
    graph = nx.Graph()
    graph.add_nodes_from(node_ids)
    graph.add_edges_from(
        (link.source_id, link.target_id)
        for link in links
        if link.source_id in graph and link.target_id in graph
    )
    return graph


def degree_map(nodes: Sequence[GraphNode], links: Iterable[GraphLink]) -> Dict[int, int]:
    return dict(build_graph((n.id for n in nodes), links).degree)


def prune(
    nodes: Sequence[GraphNode],
    links: Sequence[GraphLink],
    keep_ids: Iterable[int] = (),
) -> Tuple[List[GraphNode], List[GraphLink]]:
    """Drop every node with at most one link, except those in `keep_ids`."""
    keep = set(keep_ids)
    degrees = degree_map(nodes, links)
    survivors = [n for n in nodes if n.id in keep or degrees[n.id] > 1]
    alive = {n.id for n in survivors}
    return survivors, [l for l in links if l.source_id in alive and l.target_id in alive]


def connected_components(node_ids: Sequence[int], links: Iterable[GraphLink]) -> List[List[int]]:
    """Components in discovery order, members listed in `node_ids` order."""
    order = {node_id: index for index, node_id in enumerate(node_ids)}
    graph = build_graph(order, links)
    return [sorted(component, key=order.__getitem__) for component in nx.connected_components(graph)]


def compute_delete_outcome(
    nodes: Sequence[GraphNode],
    links: Sequence[GraphLink],
    root_id: int,
) -> DeleteOutcome:
    """
    Preview deleting `root_id`.

    The root and its links go, then only the largest remaining connected
    component survives (the first one found wins a tie). Every other node is
    reported in `dropped_ids` together with the root.
    """
    remaining = [n for n in nodes if n.id != root_id]
    remaining_links = [l for l in links if not l.touches(root_id)]
    components = connected_components([n.id for n in remaining], remaining_links)

    largest: List[int] = []
    for component in components:
        if len(component) > len(largest):
            largest = component
    kept = set(largest)

    return DeleteOutcome(
        kept_nodes=tuple(n for n in remaining if n.id in kept),
        kept_links=tuple(l for l in remaining_links if l.source_id in kept and l.target_id in kept),
        dropped_ids=frozenset(n.id for n in nodes if n.id not in kept),
    )


def apply_delete(store: GraphStore, root_id: int) -> DeleteOutcome:
    outcome = compute_delete_outcome(store.nodes, store.links, root_id)
    store.replace(outcome.kept_nodes, outcome.kept_links)
    return outcome


def apply_prune(store: GraphStore, keep_ids: Iterable[int] = ()) -> Set[int]:
    before = {n.id for n in store.nodes}
    survivors, links = prune(store.nodes, store.links, keep_ids)
    store.replace(survivors, links)
    return before - {n.id for n in survivors}
