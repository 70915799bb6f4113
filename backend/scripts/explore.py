#!/usr/bin/env python3
"""
Headless exploration: search a title (or a path between two titles), expand
a few rounds, settle the layout and print the graph document as JSON.

Examples:
    python scripts/explore.py "Apollo 11" --rounds 1
    python scripts/explore.py "Marie Curie" --path-to "Albert Einstein"
    python scripts/explore.py "Inception" --no-cache --output graph.json
"""
import argparse
import asyncio
import json
import logging
import os
import sys

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import CACHE_API_BASE  # noqa: E402
from services_cache_client import CacheStoreClient  # noqa: E402
from services_explorer import GraphExplorer  # noqa: E402
from services_provider_gateway import DefaultProviderGateway  # noqa: E402

logger = logging.getLogger("constellations")


async def explore(args) -> dict:
    provider = DefaultProviderGateway()
    cache = None if args.no_cache else CacheStoreClient(base_url=args.cache_url)
    explorer = GraphExplorer(provider, cache, seed=args.seed)
    try:
        if args.path_to:
            outcome = await explorer.discover_path(args.title, args.path_to)
        else:
            outcome = await explorer.search(args.title)
        logger.info(f"Initial step: {outcome.status.value}")

        for round_no in range(args.rounds):
            frontier = [n.id for n in explorer.store.nodes if not n.expanded]
            if not frontier:
                break
            results = await asyncio.gather(*(explorer.orchestrator.expand(i) for i in frontier))
            logger.info(f"Round {round_no + 1}: expanded {len(results)} node(s), {len(explorer.store)} in graph")

        if explorer.last_error:
            print(f"⚠️  {explorer.last_error}", file=sys.stderr)
        explorer.settle()
        return explorer.to_document()
    finally:
        await explorer.aclose()
        await provider.aclose()
        if cache is not None:
            await cache.aclose()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Explore an entity graph without a UI")
    parser.add_argument("title", help="Title to start from")
    parser.add_argument("--path-to", help="Discover a path from TITLE to this title instead")
    parser.add_argument("--rounds", type=int, default=0, help="Extra expansion rounds over unexpanded nodes")
    parser.add_argument("--cache-url", default=CACHE_API_BASE, help="Cache store base URL")
    parser.add_argument("--no-cache", action="store_true", help="Run provider-only")
    parser.add_argument("--seed", type=int, default=None, help="Seed for layout placement")
    parser.add_argument("--output", help="Write the document here instead of stdout")
    args = parser.parse_args(argv)

    document = asyncio.run(explore(args))
    text = json.dumps(document, indent=2)
    if args.output:
        with open(args.output, "w") as f:
            f.write(text)
        print(f"✓ Wrote {len(document['nodes'])} nodes to {args.output}")
    else:
        print(text)
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    sys.exit(main())
