"""
Explorer session: one graph, its layout and the services acting on it.

This is the object a front end (or the headless `scripts/explore.py`) drives:
search, select, expand, delete/prune, switch layout and report the viewport.
Every graph mutation re-reconciles the layout; newly discovered nodes that
land on screen are handed to the enrichment scheduler.
"""
from __future__ import annotations

import logging
import random
from typing import Any, Dict, List, Optional

from models_graph import GraphNode, LayoutMode
from services_cache_client import CacheStoreClient
from services_enrichment_scheduler import EnrichmentScheduler
from services_expansion import ExpansionOrchestrator, ExpansionOutcome, PathOutcome
from services_graph_documents import dump_graph_document, load_graph_document
from services_graph_store import GraphStore
from services_layout import LayoutEngine, Viewport
from services_provider_gateway import ProviderGateway
from services_pruning import DeleteOutcome, apply_delete, apply_prune, compute_delete_outcome

logger = logging.getLogger("constellations")


class GraphExplorer:
    def __init__(
        self,
        provider: ProviderGateway,
        cache: Optional[CacheStoreClient] = None,
        *,
        width: float = 1200.0,
        height: float = 800.0,
        seed: Optional[int] = None,
        scheduler: Optional[EnrichmentScheduler] = None,
        **orchestrator_options: Any,
    ):
        self.store = GraphStore(rng=random.Random(seed))
        self.layout = LayoutEngine(width=width, height=height, seed=seed)
        self.store.subscribe(self._on_graph_change)
        self.scheduler = scheduler or EnrichmentScheduler(self.store, provider, cache)
        self.orchestrator = ExpansionOrchestrator(
            self.store,
            provider,
            cache,
            on_new_nodes=self._on_new_nodes,
            **orchestrator_options,
        )
        self.viewport: Optional[Viewport] = None
        self._selected: Optional[GraphNode] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def origin_id(self) -> Optional[int]:
        return self.orchestrator.origin_id

    @property
    def selected_id(self) -> Optional[int]:
        node = self._selected
        if node is None or self.store.get(node.id) is not node:
            return None
        return node.id

    @selected_id.setter
    def selected_id(self, node_id: Optional[int]) -> None:
        self._selected = self.store.get(node_id) if node_id is not None else None

    @property
    def last_error(self) -> Optional[str]:
        return self.orchestrator.last_error

    @property
    def mode(self) -> LayoutMode:
        return self.layout.mode

    @property
    def compact(self) -> bool:
        return self.layout.compact

    @property
    def text_only(self) -> bool:
        return self.layout.text_only

    def _on_graph_change(self, structural: bool) -> None:
        snapshot = self.store.snapshot()
        self.layout.reconcile(snapshot.nodes, snapshot.links)

    def _on_new_nodes(self, node_ids: List[int]) -> None:
        if self.viewport is None:
            return
        self.viewport_changed(self.viewport)

    # ------------------------------------------------------------------
    # Exploration
    # ------------------------------------------------------------------

    async def search(self, title: str) -> ExpansionOutcome:
        self.selected_id = None
        outcome = await self.orchestrator.start_search(title)
        self.selected_id = self.origin_id
        return outcome

    async def discover_path(self, start_title: str, end_title: str) -> PathOutcome:
        self.selected_id = None
        outcome = await self.orchestrator.discover_path(start_title, end_title)
        self.selected_id = self.origin_id
        return outcome

    async def select(self, node_id: int) -> Optional[ExpansionOutcome]:
        """Focus a node: expand it if it never was, and retry its summary/image lookup."""
        node = self.store.get(node_id)
        if node is None:
            return None
        self.selected_id = node_id
        outcome = None
        if not node.expanded:
            outcome = await self.orchestrator.expand(node_id)
        if not self.text_only and self.store.get(node_id) is not None:
            await self.scheduler.enrich_selected(node_id)
        return outcome

    async def expand_more(self, node_id: int) -> ExpansionOutcome:
        return await self.orchestrator.expand_more(node_id)

    async def expand_leaves(self, node_id: int) -> List[ExpansionOutcome]:
        return await self.orchestrator.expand_leaves(node_id)

    # ------------------------------------------------------------------
    # Trimming
    # ------------------------------------------------------------------

    def preview_delete(self, node_id: int) -> DeleteOutcome:
        return compute_delete_outcome(self.store.nodes, self.store.links, node_id)

    def delete(self, node_id: int) -> DeleteOutcome:
        outcome = apply_delete(self.store, node_id)
        # origin_id/selected_id read None once their node is dropped
        logger.info(f"[explorer] Deleted {node_id}; dropped {len(outcome.dropped_ids)} node(s)")
        return outcome

    def prune(self) -> List[int]:
        """Drop leaves, keeping the selected node and the origin."""
        keep = {i for i in (self.selected_id, self.origin_id) if i is not None}
        return sorted(apply_prune(self.store, keep))

    # ------------------------------------------------------------------
    # Layout and viewport
    # ------------------------------------------------------------------

    def set_layout_mode(self, mode: LayoutMode) -> None:
        self.layout.configure(LayoutMode(mode), self.compact)

    def set_compact(self, compact: bool) -> None:
        self.layout.configure(self.mode, compact)

    def set_text_only(self, text_only: bool) -> None:
        self.layout.configure(self.mode, self.compact, text_only=text_only)
        self.scheduler.text_only = text_only

    def settle(self, max_ticks: int = 300) -> int:
        return self.layout.run(max_ticks)

    def viewport_changed(self, viewport: Viewport) -> List[int]:
        """Record the viewport and queue enrichment for what it shows. Needs a running event loop."""
        self.viewport = viewport
        return self.scheduler.on_viewport_change(self.layout.visible_nodes(viewport), self.text_only)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def to_document(self) -> Dict[str, Any]:
        return dump_graph_document(self.store, self.mode, self.compact, self.text_only)

    def load_document(self, data: Any) -> None:
        """Replace the session graph with a saved one; a refused document changes nothing."""
        loaded = load_graph_document(data)
        self.orchestrator.origin_id = None
        self.orchestrator.last_error = None
        self.selected_id = None
        # Saved positions win over whatever the current session had for the same ids
        self.layout.reconcile([], [])
        self.store.replace(loaded.nodes, loaded.links)
        self.layout.configure(loaded.layout_mode, loaded.compact, text_only=loaded.text_only)
        self.scheduler.text_only = loaded.text_only

    async def aclose(self) -> None:
        await self.scheduler.aclose()
