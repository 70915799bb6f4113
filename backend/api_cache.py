"""
Cache store endpoints: canonical node upserts and expansion records.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from config import CACHE_ACCEPT_PARTIAL
from models import (
    CanonicalNode,
    ExpansionLookupResponse,
    ExpansionWrite,
    ExpansionWriteResponse,
    NodeUpsert,
    NodeUpsertResponse,
)
from services_cache_store import CacheStore, UnknownNodeError, get_cache_store

logger = logging.getLogger("constellations")

router = APIRouter(tags=["cache"])


@router.post("/node", response_model=NodeUpsertResponse)
def upsert_node(payload: NodeUpsert, store: CacheStore = Depends(get_cache_store)):
    """Resolve a node to its canonical id, creating it on first sight."""
    node_id = store.upsert_node(payload)
    return NodeUpsertResponse(id=node_id)


@router.get("/node/{node_id}", response_model=CanonicalNode)
def get_node(node_id: int, store: CacheStore = Depends(get_cache_store)):
    node = store.get_node(node_id)
    if node is None:
        raise HTTPException(status_code=404, detail=f"Node {node_id} not found")
    return CanonicalNode(**node)


@router.get("/expansion", response_model=ExpansionLookupResponse)
def lookup_expansion(
    source_id: int = Query(..., alias="sourceId"),
    context: Optional[List[str]] = Query(None, description="Neighbor titles; repeat the parameter per title"),
    context_hash: Optional[str] = Query(None, alias="contextHash"),
    min_similarity: Optional[float] = Query(None, alias="minSimilarity", ge=0.0, le=1.0),
    store: CacheStore = Depends(get_cache_store),
):
    """
    Look up a previous expansion of `sourceId`.

    `hit` is "exact" when an entry with the same context fingerprint exists,
    "partial" when a stored context is similar enough, and "miss" otherwise.
    """
    titles = [t for t in (context or []) if t.strip()]
    result = store.lookup_expansion(
        source_id,
        context=titles,
        context_hash=context_hash,
        min_similarity=min_similarity,
        allow_partial=CACHE_ACCEPT_PARTIAL,
    )
    return ExpansionLookupResponse(
        hit=result.hit,
        nodes=[CanonicalNode(**n) for n in result.nodes],
        score=result.score,
        matched_context=result.matched_context,
    )


@router.post("/expansion", response_model=ExpansionWriteResponse)
def write_expansion(payload: ExpansionWrite, store: CacheStore = Depends(get_cache_store)):
    """Record the neighbors produced by expanding `sourceId` under the given context."""
    try:
        target_ids = store.write_expansion(payload.source_id, payload.context, payload.nodes)
    except UnknownNodeError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return ExpansionWriteResponse(ok=True, target_ids=target_ids)
