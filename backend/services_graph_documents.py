"""
Save/load of the explorer graph as a JSON document.

The document is camelCase: {nodes, links, layoutMode, compactFlag, textOnlyFlag}.
Node ids must be integers; older title-keyed documents are refused.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from pydantic import ValidationError

from models import DocumentLink, DocumentNode, GraphDocument
from models_graph import GraphLink, GraphNode, LayoutMode, LayoutState, NodeType
from services_graph_store import GraphStore

logger = logging.getLogger("constellations")


class IncompatibleGraphDocumentError(ValueError):
    """Raised when a saved graph can't be loaded (legacy format or malformed)."""


@dataclass
class LoadedGraph:
    nodes: List[GraphNode] = field(default_factory=list)
    links: List[GraphLink] = field(default_factory=list)
    layout_mode: LayoutMode = LayoutMode.NETWORK
    compact: bool = False
    text_only: bool = False


def dump_graph_document(
    store: GraphStore,
    layout_mode: LayoutMode = LayoutMode.NETWORK,
    compact: bool = False,
    text_only: bool = False,
) -> Dict[str, Any]:
    document = GraphDocument(
        nodes=[
            DocumentNode(
                id=n.id,
                title=n.title,
                type=n.type.value,
                description=n.description,
                year=n.year,
                external_ref=n.external_ref,
                image_url=n.image_url,
                summary=n.summary,
                expanded=n.expanded,
                image_checked=n.image_checked,
                x=n.layout.x if n.layout.has_position else None,
                y=n.layout.y if n.layout.has_position else None,
            )
            for n in store.nodes
        ],
        links=[DocumentLink(source=l.source_id, target=l.target_id, label=l.label) for l in store.links],
        layout_mode=layout_mode.value,
        compact_flag=compact,
        text_only_flag=text_only,
    )
    return document.model_dump(by_alias=True)


def load_graph_document(data: Any) -> LoadedGraph:
    """
    Parse a saved document into fresh graph objects.

    Validation happens up front, so a refused document leaves the caller's
    graph untouched.
    """
    if not isinstance(data, dict):
        raise IncompatibleGraphDocumentError("Graph document must be a JSON object")
    try:
        document = GraphDocument.model_validate(data)
    except ValidationError as e:
        logger.warning(f"[documents] Refusing graph document: {e.error_count()} validation error(s)")
        raise IncompatibleGraphDocumentError(
            "Graph document is not compatible (node ids must be integers)"
        ) from e

    ids = [n.id for n in document.nodes]
    if len(ids) != len(set(ids)):
        raise IncompatibleGraphDocumentError("Graph document contains duplicate node ids")

    nodes = []
    for n in document.nodes:
        layout = LayoutState.at(n.x, n.y) if n.x is not None and n.y is not None else LayoutState()
        nodes.append(
            GraphNode(
                id=n.id,
                title=n.title,
                type=NodeType.parse(n.type),
                description=n.description,
                year=n.year,
                external_ref=n.external_ref,
                image_url=n.image_url,
                summary=n.summary,
                expanded=n.expanded,
                image_checked=n.image_checked or bool(n.image_url),
                layout=layout,
            )
        )

    known = set(ids)
    links: Dict[str, GraphLink] = {}
    for l in document.links:
        if l.source == l.target or l.source not in known or l.target not in known:
            continue
        link = GraphLink.between(l.source, l.target, l.label)
        links.setdefault(link.id, link)

    return LoadedGraph(
        nodes=nodes,
        links=list(links.values()),
        layout_mode=LayoutMode(document.layout_mode),
        compact=document.compact_flag,
        text_only=document.text_only_flag,
    )
