#!/usr/bin/env python3
"""
Create the cache store tables (nodes, edges) on the configured backend.

Usage:
    python scripts/init_cache_db.py
    CACHE_DB_BACKEND=sqlite SQLITE_PATH=/tmp/cache.db python scripts/init_cache_db.py
"""
import logging
import os
import sys

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services_cache_store import get_cache_store  # noqa: E402

logger = logging.getLogger("constellations")


def init_cache_db() -> bool:
    try:
        store = get_cache_store()
        print(f"Connecting to {store.backend}...")
        store.init_schema()
        store.ping()
    except Exception as e:
        logger.exception("Cache store initialization failed")
        print(f"❌ Error: {e}")
        return False
    print(f"✓ Cache store tables ready ({store.backend})")
    return True


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    sys.exit(0 if init_cache_db() else 1)
