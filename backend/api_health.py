"""
Health and schema bootstrap endpoints for the cache store.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException

from services_cache_store import CacheStore, get_cache_store

logger = logging.getLogger("constellations")

router = APIRouter(tags=["health"])


@router.get("/health")
def health_check(store: CacheStore = Depends(get_cache_store)):
    """Report whether the cache database answers queries."""
    try:
        ok = store.ping()
    except Exception as e:
        logger.error(f"Cache database health check failed: {e}")
        return {"ok": False, "database": store.backend, "error": str(e)}
    return {"ok": ok, "database": store.backend}


@router.post("/init")
def init_schema(store: CacheStore = Depends(get_cache_store)):
    """Create the cache tables. Safe to call repeatedly."""
    try:
        store.init_schema()
    except Exception as e:
        logger.error(f"Cache schema initialisation failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Schema initialisation failed")
    return {"ok": True}
