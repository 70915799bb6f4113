"""
Expansion orchestrator.

Turns "expand this node" into new nodes and links, at most once per node:

1. Unless more results were explicitly requested, ask the cache store for a
   previous expansion of the node under the same neighbor context (exact
   fingerprint, or a similar enough context). A hit is merged without
   touching the provider.
2. Otherwise ask the provider for neighbors, resolve each candidate against
   the summary provider (external ref, summary, image), write the set to the
   cache store and re-read it to learn the canonical ids.
3. Merge the canonical nodes into the graph store in one step.

Provider and cache failures never escape: they are logged, turned into a
user-facing message on `last_error`, and leave the node retriable. A cache
that is down only costs caching; nodes then get placeholder ids.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from config import CACHE_ACCEPT_PARTIAL
from models_graph import Candidate, GraphNode, NodeType
from services_cache_client import CacheLookup, CacheStoreClient
from services_context_fingerprint import normalize_title
from services_external_calls import ExternalCallError, ExternalCallTimeout
from services_graph_store import GraphStore
from services_logging import log_expansion_event
from services_provider_gateway import ProviderGateway

logger = logging.getLogger("constellations")

MSG_TIMEOUT = "The provider is taking too long to respond. Please try again."
MSG_FAILED = "Failed to fetch connections. The provider might be busy."
MSG_NO_RESULTS = "No connections found for \"{title}\"."
MSG_NO_PATH = "No path found between \"{start}\" and \"{end}\"."

CANDIDATE_ENRICHMENT_CONCURRENCY = 4


class ExpansionStatus(str, Enum):
    SKIPPED = "skipped"
    CACHE_HIT = "cache_hit"
    EXPANDED = "expanded"
    EMPTY = "empty"
    FAILED = "failed"
    DISCARDED = "discarded"


@dataclass
class ExpansionOutcome:
    node_id: int
    status: ExpansionStatus
    added_ids: List[int] = field(default_factory=list)
    cache_hit: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PathOutcome:
    status: ExpansionStatus
    chain_ids: List[int] = field(default_factory=list)
    error: Optional[str] = None


def _error_message(exc: ExternalCallError) -> str:
    return MSG_TIMEOUT if isinstance(exc, ExternalCallTimeout) else MSG_FAILED


class ExpansionOrchestrator:
    def __init__(
        self,
        store: GraphStore,
        provider: ProviderGateway,
        cache: Optional[CacheStoreClient] = None,
        *,
        accept_partial_hits: bool = CACHE_ACCEPT_PARTIAL,
        min_similarity: Optional[float] = None,
        on_new_nodes: Optional[Callable[[List[int]], None]] = None,
    ):
        self.store = store
        self.provider = provider
        self.cache = cache
        self.accept_partial_hits = accept_partial_hits
        self.min_similarity = min_similarity
        self.on_new_nodes = on_new_nodes
        self._origin: Optional[GraphNode] = None
        self.last_error: Optional[str] = None

    @property
    def origin_id(self) -> Optional[int]:
        """Id of the node the session started from; follows it if a placeholder id gets committed."""
        origin = self._origin
        if origin is None or self.store.get(origin.id) is not origin:
            return None
        return origin.id

    @origin_id.setter
    def origin_id(self, node_id: Optional[int]) -> None:
        self._origin = self.store.get(node_id) if node_id is not None else None

    # ------------------------------------------------------------------
    # Single node expansion
    # ------------------------------------------------------------------

    async def expand(self, node_id: int, is_initial: bool = False, force_more: bool = False) -> ExpansionOutcome:
        node = self.store.get(node_id)
        if node is None or node.is_loading or (node.expanded and not force_more):
            return ExpansionOutcome(node_id, ExpansionStatus.SKIPPED)

        started = time.perf_counter()
        self.store.update_node(node_id, is_loading=True)
        context_titles = self.store.neighbor_titles(node_id)
        cache_hit: Optional[str] = None
        outcome: Optional[ExpansionOutcome] = None

        try:
            if not force_more and self.cache is not None and node.is_committed:
                lookup = await self._cache_lookup(node, context_titles)
                if lookup is not None:
                    cache_hit = lookup.hit
                    if lookup.is_hit and (lookup.hit == "exact" or self.accept_partial_hits):
                        outcome = self._merge(node, lookup.nodes, lookup.labels, ExpansionStatus.CACHE_HIT)
                        outcome.cache_hit = cache_hit
                        return outcome

            candidates = await self.provider.fetch_neighbors(
                node.title,
                node.type,
                context_titles,
                known_summary=node.summary,
                exclude_known=force_more,
            )
            candidates = self._dedupe_candidates(candidates, node, exclude_titles=context_titles if force_more else ())

            if self.store.get(node.id) is not node:
                outcome = ExpansionOutcome(node_id, ExpansionStatus.DISCARDED)
                return outcome

            if not candidates:
                outcome = self._handle_empty(node, is_initial)
                return outcome

            candidates = await self._enrich_candidates(candidates, context_hint=node.title)
            canonical, labels = await self._commit_candidates(node, context_titles, candidates)
            outcome = self._merge(node, canonical, labels, ExpansionStatus.EXPANDED)
            outcome.cache_hit = cache_hit
            return outcome

        except ExternalCallError as e:
            logger.warning(f"[expansion] Expanding {node.title!r} (id={node_id}) failed: {e}")
            self.last_error = _error_message(e)
            if is_initial:
                self.store.clear()
                self.origin_id = None
            outcome = ExpansionOutcome(node_id, ExpansionStatus.FAILED, error=self.last_error)
            return outcome

        finally:
            current = self.store.get(node.id)
            if current is node and current.is_loading:
                self.store.update_node(node.id, is_loading=False)
            if outcome is not None:
                log_expansion_event(
                    source_id=node_id,
                    source_title=node.title,
                    outcome=outcome.status.value,
                    added_count=len(outcome.added_ids),
                    latency_ms=int((time.perf_counter() - started) * 1000),
                    cache_hit=cache_hit,
                    metadata={"force_more": force_more} if force_more else None,
                )

    async def expand_more(self, node_id: int) -> ExpansionOutcome:
        """Ask for additional neighbors of an already expanded node, bypassing the cache."""
        return await self.expand(node_id, force_more=True)

    async def expand_leaves(self, node_id: int) -> List[ExpansionOutcome]:
        """Expand every not-yet-expanded neighbor of `node_id` concurrently."""
        leaf_ids = [n.id for n in self.store.neighbors(node_id) if not n.expanded and not n.is_loading]
        if not leaf_ids:
            return []
        return list(await asyncio.gather(*(self.expand(i) for i in leaf_ids)))

    def _handle_empty(self, node: GraphNode, is_initial: bool) -> ExpansionOutcome:
        if is_initial:
            self.last_error = MSG_NO_RESULTS.format(title=node.title)
            self.store.clear()
            self.origin_id = None
            return ExpansionOutcome(node.id, ExpansionStatus.FAILED, error=self.last_error)
        # Terminal: nothing more to discover from here
        self.store.update_node(node.id, expanded=True, is_loading=False)
        return ExpansionOutcome(node.id, ExpansionStatus.EMPTY)

    def _merge(
        self,
        node: GraphNode,
        canonical: Sequence[GraphNode],
        labels: Dict[int, Optional[str]],
        status: ExpansionStatus,
    ) -> ExpansionOutcome:
        if self.store.get(node.id) is not node:
            logger.info(f"[expansion] Discarding result for removed node {node.id}")
            return ExpansionOutcome(node.id, ExpansionStatus.DISCARDED)

        result = self.store.merge_canonical(node.id, canonical, labels)
        self.store.update_node(node.id, expanded=True, is_loading=False)
        self.last_error = None
        if result.added_ids and self.on_new_nodes is not None:
            self.on_new_nodes(list(result.added_ids))
        return ExpansionOutcome(node.id, status, added_ids=list(result.added_ids))

    # ------------------------------------------------------------------
    # Cache interaction
    # ------------------------------------------------------------------

    async def _cache_lookup(self, node: GraphNode, context_titles: Sequence[str]) -> Optional[CacheLookup]:
        try:
            return await self.cache.lookup_expansion(node.id, context_titles, self.min_similarity)
        except ExternalCallError as e:
            logger.warning(f"[expansion] Cache lookup failed for {node.id}; continuing without cache: {e}")
            return None

    async def _commit_candidates(
        self,
        source: GraphNode,
        context_titles: Sequence[str],
        candidates: Sequence[Candidate],
    ) -> Tuple[List[GraphNode], Dict[int, Optional[str]]]:
        """Canonical nodes for `candidates`; placeholders when the cache can't provide ids."""
        if self.cache is not None and source.is_committed:
            try:
                await self.cache.write_expansion(source.id, context_titles, candidates)
                reread = await self.cache.lookup_expansion(source.id, context_titles, min_similarity=1.0)
                if reread.hit == "exact" and reread.nodes:
                    return reread.nodes, reread.labels
                logger.warning(f"[expansion] Cache re-read for {source.id} came back {reread.hit!r}")
            except ExternalCallError as e:
                logger.warning(f"[expansion] Cache write failed for {source.id}; continuing without cache: {e}")
        return self._placeholder_nodes(candidates)

    def _placeholder_nodes(
        self, candidates: Sequence[Candidate]
    ) -> Tuple[List[GraphNode], Dict[int, Optional[str]]]:
        nodes: List[GraphNode] = []
        labels: Dict[int, Optional[str]] = {}
        for c in candidates:
            existing = self.store.find_by_title(c.title, c.type)
            node_id = existing.id if existing is not None else self.store.next_placeholder_id()
            nodes.append(
                GraphNode(
                    id=node_id,
                    title=c.title,
                    type=c.type,
                    description=c.description,
                    year=c.year,
                    external_ref=c.external_ref,
                    image_url=c.image_url,
                    summary=c.summary,
                )
            )
            labels[node_id] = c.role
        return nodes, labels

    async def _commit_origin(self, candidate: Candidate) -> GraphNode:
        node_id: Optional[int] = None
        if self.cache is not None:
            try:
                node_id = await self.cache.upsert_node(candidate.to_payload())
            except ExternalCallError as e:
                logger.warning(f"[expansion] Could not commit {candidate.title!r}; using a placeholder id: {e}")
        if node_id is None:
            node_id = self.store.next_placeholder_id()
        node = GraphNode(
            id=node_id,
            title=candidate.title,
            type=candidate.type,
            description=candidate.description,
            year=candidate.year,
        )
        return self.store.add_node(node)

    # ------------------------------------------------------------------
    # Candidate handling
    # ------------------------------------------------------------------

    @staticmethod
    def _dedupe_candidates(
        candidates: Sequence[Candidate],
        source: GraphNode,
        exclude_titles: Sequence[str] = (),
    ) -> List[Candidate]:
        seen = {normalize_title(source.title)} | {normalize_title(t) for t in exclude_titles}
        unique: List[Candidate] = []
        for c in candidates:
            key = normalize_title(c.title)
            if not key or key in seen:
                continue
            seen.add(key)
            unique.append(c)
        return unique

    async def _enrich_candidates(self, candidates: Sequence[Candidate], context_hint: str) -> List[Candidate]:
        """Resolve external refs/summaries/images; a failed lookup leaves the candidate as it was."""
        semaphore = asyncio.Semaphore(CANDIDATE_ENRICHMENT_CONCURRENCY)

        async def enrich(candidate: Candidate) -> Candidate:
            async with semaphore:
                try:
                    found = await self.provider.fetch_summary_and_image(candidate.title, context_hint)
                except ExternalCallError as e:
                    logger.info(f"[expansion] Enrichment skipped for {candidate.title!r}: {e}")
                    return candidate
            if found.is_empty:
                return candidate
            return dataclasses.replace(
                candidate,
                external_ref=found.external_ref or candidate.external_ref,
                summary=found.summary or candidate.summary,
                image_url=found.image_url or candidate.image_url,
            )

        return list(await asyncio.gather(*(enrich(c) for c in candidates)))

    # ------------------------------------------------------------------
    # Session-level operations
    # ------------------------------------------------------------------

    async def _classify(self, title: str) -> NodeType:
        try:
            return await self.provider.classify(title)
        except ExternalCallError as e:
            logger.warning(f"[expansion] Could not classify {title!r}; assuming Thing: {e}")
            return NodeType.THING

    async def start_search(self, title: str) -> ExpansionOutcome:
        """Start a fresh graph from a free-text title and expand it."""
        title = title.strip()
        self.store.clear()
        self.origin_id = None
        self.last_error = None

        node_type = await self._classify(title)
        origin = await self._commit_origin(Candidate(title=title, type=node_type))
        self.origin_id = origin.id
        return await self.expand(origin.id, is_initial=True)

    async def discover_path(self, start_title: str, end_title: str) -> PathOutcome:
        """
        Build a chain of entities linking two titles.

        Hops are attached strictly in order, each one expanded before the next
        is attached; the two endpoints are expanded together at the end.
        """
        start_title, end_title = start_title.strip(), end_title.strip()
        self.store.clear()
        self.origin_id = None
        self.last_error = None

        try:
            hops = await self.provider.find_path(start_title, end_title)
        except ExternalCallError as e:
            logger.warning(f"[expansion] Path search {start_title!r} -> {end_title!r} failed: {e}")
            self.last_error = _error_message(e)
            return PathOutcome(ExpansionStatus.FAILED, error=self.last_error)
        if not hops:
            self.last_error = MSG_NO_PATH.format(start=start_title, end=end_title)
            return PathOutcome(ExpansionStatus.EMPTY, error=self.last_error)
        # An empty chain after this means the endpoints are directly connected
        endpoints = {normalize_title(start_title), normalize_title(end_title)}
        hops = [h for h in hops if normalize_title(h.title) not in endpoints]

        start_type, end_type = await asyncio.gather(self._classify(start_title), self._classify(end_title))
        start = await self._commit_origin(Candidate(title=start_title, type=start_type))
        self.origin_id = start.id
        path_context = [f"path:{normalize_title(start_title)}->{normalize_title(end_title)}"]

        chain = [start.id]
        previous = start
        steps = list(hops) + [Candidate(title=end_title, type=end_type)]
        for index, hop in enumerate(steps):
            if self.store.get(previous.id) is not previous:
                return PathOutcome(ExpansionStatus.DISCARDED, chain_ids=chain)
            canonical, labels = await self._commit_candidates(previous, path_context, [hop])
            canonical = [n for n in canonical if n.id != previous.id]
            if not canonical:
                continue
            self.store.merge_canonical(previous.id, canonical, labels)
            current = self.store.get(canonical[0].id)
            chain.append(current.id)
            if index < len(steps) - 1:
                await self.expand(current.id)
            previous = current

        await asyncio.gather(self.expand(chain[0]), self.expand(chain[-1]))
        return PathOutcome(ExpansionStatus.EXPANDED, chain_ids=chain)
