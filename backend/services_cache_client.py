"""
Async client for the cache store HTTP service.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx

from config import CACHE_API_BASE, CACHE_TIMEOUT_SECONDS
from models_graph import Candidate, GraphNode
from services_context_fingerprint import context_fingerprint, context_keys
from services_external_calls import request_json, with_timeout

logger = logging.getLogger("constellations")

SERVICE = "cache_store"


@dataclass
class CacheLookup:
    hit: str  # "exact" | "partial" | "miss"
    nodes: List[GraphNode] = field(default_factory=list)
    labels: Dict[int, Optional[str]] = field(default_factory=dict)
    score: Optional[float] = None

    @property
    def is_hit(self) -> bool:
        return self.hit in ("exact", "partial") and bool(self.nodes)


class CacheStoreClient:
    def __init__(
        self,
        base_url: str = CACHE_API_BASE,
        timeout_s: float = CACHE_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
        max_attempts: int = 2,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_attempts = max_attempts
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout_s)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, path: str, **kwargs) -> Any:
        return await with_timeout(
            request_json(
                self._client,
                method,
                path,
                service=SERVICE,
                max_attempts=self.max_attempts,
                **kwargs,
            ),
            self.timeout_s,
            SERVICE,
        )

    async def health(self) -> bool:
        data = await self._call("GET", "/health")
        return bool(data.get("ok"))

    async def upsert_node(self, payload: Dict[str, Any]) -> int:
        """Resolve a node (camelCase payload, see Candidate.to_payload) to its canonical id."""
        data = await self._call("POST", "/node", json_body=payload)
        return int(data["id"])

    async def lookup_expansion(
        self,
        source_id: int,
        context_titles: Sequence[str],
        min_similarity: Optional[float] = None,
    ) -> CacheLookup:
        keys = context_keys(context_titles)
        params: Dict[str, Any] = {
            "sourceId": source_id,
            "contextHash": context_fingerprint(keys),
        }
        if keys:
            params["context"] = keys
        if min_similarity is not None:
            params["minSimilarity"] = min_similarity

        data = await self._call("GET", "/expansion", params=params)
        records = data.get("nodes") or []
        return CacheLookup(
            hit=data.get("hit", "miss"),
            nodes=[
                GraphNode.from_canonical(
                    {
                        "id": r["id"],
                        "title": r["title"],
                        "type": r.get("type"),
                        "description": r.get("description"),
                        "year": r.get("year"),
                        "external_ref": r.get("externalRef"),
                        "image_url": r.get("imageUrl"),
                        "summary": r.get("summary"),
                    }
                )
                for r in records
            ],
            labels={int(r["id"]): r.get("label") for r in records},
            score=data.get("score"),
        )

    async def write_expansion(
        self,
        source_id: int,
        context_titles: Sequence[str],
        candidates: Sequence[Candidate],
    ) -> List[int]:
        data = await self._call(
            "POST",
            "/expansion",
            json_body={
                "sourceId": source_id,
                "context": context_keys(context_titles),
                "nodes": [c.to_payload() for c in candidates],
            },
        )
        return [int(i) for i in data.get("targetIds") or []]
