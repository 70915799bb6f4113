from fastapi import APIRouter, Depends, Query

from models import DuplicateGroup, DuplicateMergeResponse
from services_cache_store import CacheStore, get_cache_store

router = APIRouter(prefix="/admin", tags=["admin"])


def _to_response(groups, dry_run: bool) -> DuplicateMergeResponse:
    return DuplicateMergeResponse(
        dry_run=dry_run,
        groups=[
            DuplicateGroup(
                type=g.type,
                external_ref=g.external_ref,
                keep_id=g.keep_id,
                keep_title=g.keep_title,
                merge_ids=g.merge_ids,
            )
            for g in groups
        ],
        merged_node_count=0 if dry_run else sum(len(g.merge_ids) for g in groups),
    )


@router.get("/duplicates", response_model=DuplicateMergeResponse)
def list_duplicates(store: CacheStore = Depends(get_cache_store)):
    """Preview nodes that share an external reference and would be merged."""
    return _to_response(store.find_duplicate_groups(), dry_run=True)


@router.post("/duplicates/merge", response_model=DuplicateMergeResponse)
def merge_duplicates(
    dry_run: bool = Query(True, alias="dryRun"),
    store: CacheStore = Depends(get_cache_store),
):
    """
    Merge duplicate nodes into one canonical row per external reference.

    Defaults to a dry run; pass dryRun=false to apply.
    WARNING: This rewrites edges. In a real deployment, protect this with auth.
    """
    return _to_response(store.merge_duplicates(dry_run=dry_run), dry_run=dry_run)
