"""
Viewport-driven enrichment.

When only a handful of nodes are on screen, fetch summaries and images for
the ones never checked before. Requests go through a small pool of asyncio
workers with a minimum spacing between request starts, so panning across a
dense area doesn't fire a burst at the providers.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Set

from config import (
    ENRICHMENT_MAX_CONCURRENCY,
    ENRICHMENT_MAX_VISIBLE,
    ENRICHMENT_MIN_INTERVAL_SECONDS,
)
from models_graph import GraphNode
from services_cache_client import CacheStoreClient
from services_external_calls import ExternalCallError
from services_graph_store import GraphStore
from services_provider_gateway import ProviderGateway
from services_rate_limit import MinIntervalGate

logger = logging.getLogger("constellations")


class EnrichmentScheduler:
    def __init__(
        self,
        store: GraphStore,
        provider: ProviderGateway,
        cache: Optional[CacheStoreClient] = None,
        *,
        max_concurrency: int = ENRICHMENT_MAX_CONCURRENCY,
        min_interval_s: float = ENRICHMENT_MIN_INTERVAL_SECONDS,
        max_visible: int = ENRICHMENT_MAX_VISIBLE,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.provider = provider
        self.cache = cache
        self.max_concurrency = max(1, int(max_concurrency))
        self.max_visible = max_visible
        self.text_only = False
        self._gate = MinIntervalGate(min_interval_s, clock=clock, sleep=sleep)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued: Set[int] = set()
        self._workers: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def on_viewport_change(self, visible: Sequence[GraphNode], text_only: Optional[bool] = None) -> List[int]:
        """
        Queue enrichment for the visible nodes that were never checked.

        Nothing is queued in text-only mode (images aren't shown) or when more
        than `max_visible` nodes are on screen. Returns the queued ids.
        """
        if text_only is not None:
            self.text_only = text_only
        if self.text_only or len(visible) > self.max_visible:
            return []
        return self.enqueue(n.id for n in visible)

    def enqueue(self, node_ids: Iterable[int], force: bool = False) -> List[int]:
        """Queue nodes for enrichment; `force` re-checks nodes that were already checked."""
        accepted: List[int] = []
        for node_id in node_ids:
            node = self.store.get(node_id)
            if node is None or node_id in self._queued:
                continue
            if not force and (node.image_checked or node.image_url):
                continue
            self._queued.add(node_id)
            self._queue.put_nowait(node_id)
            accepted.append(node_id)
        if accepted:
            self._ensure_workers()
        return accepted

    async def enrich_selected(self, node_id: int) -> None:
        """Explicit selection: re-check the node even if it was checked before, and wait for it."""
        if node_id in self._queued or self.enqueue([node_id], force=True):
            await self.drain()

    async def drain(self) -> None:
        """Wait until every queued node has been processed."""
        await self._queue.join()

    async def aclose(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _ensure_workers(self) -> None:
        self._workers = [t for t in self._workers if not t.done()]
        while len(self._workers) < self.max_concurrency:
            self._workers.append(asyncio.create_task(self._worker()))

    async def _worker(self) -> None:
        while True:
            node_id = await self._queue.get()
            try:
                await self._process(node_id)
            except Exception:
                logger.exception(f"[enrichment] Unexpected failure enriching node {node_id}")
            finally:
                self._queued.discard(node_id)
                self._queue.task_done()

    async def _process(self, node_id: int) -> None:
        if self.store.get(node_id) is None:
            return
        await self._gate.wait()
        node = self.store.get(node_id)
        if node is None:
            return

        found = None
        try:
            found = await self.provider.fetch_summary_and_image(node.title)
        except ExternalCallError as e:
            logger.info(f"[enrichment] Lookup failed for {node.title!r}: {e}")

        if self.store.get(node_id) is not node:
            logger.debug(f"[enrichment] Node {node_id} left the graph; discarding result")
            return

        updates = {"image_checked": True}
        if found is not None:
            if found.image_url:
                updates["image_url"] = found.image_url
            if found.summary:
                updates["summary"] = found.summary
            if found.external_ref and not node.external_ref:
                updates["external_ref"] = found.external_ref
        self.store.update_node(node_id, **updates)

        if found is not None and not found.is_empty and self.cache is not None and node.is_committed:
            await self._write_back(node)

    async def _write_back(self, node: GraphNode) -> None:
        payload = {"title": node.title, "type": node.type.value}
        for key, value in (
            ("externalRef", node.external_ref),
            ("imageUrl", node.image_url),
            ("summary", node.summary),
        ):
            if value:
                payload[key] = value
        try:
            await self.cache.upsert_node(payload)
        except ExternalCallError as e:
            logger.warning(f"[enrichment] Could not write enrichment for {node.id} back to the cache: {e}")
