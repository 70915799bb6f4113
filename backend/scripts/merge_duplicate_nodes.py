#!/usr/bin/env python3
"""
Fold duplicate cache store nodes (same type and external ref, different
titles) into one canonical row.

Dry run by default; pass --apply to write.
"""
import argparse
import logging
import os
import sys

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services_cache_store import get_cache_store  # noqa: E402


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Merge duplicate cache store nodes")
    parser.add_argument("--apply", action="store_true", help="Write the merge (default is a dry run)")
    args = parser.parse_args(argv)

    store = get_cache_store()
    store.init_schema()
    groups = store.merge_duplicates(dry_run=not args.apply)

    if not groups:
        print("✓ No duplicate nodes found")
        return 0

    verb = "Merged" if args.apply else "Would merge"
    for group in groups:
        print(
            f"  {verb} {group.merge_ids} -> {group.keep_id} "
            f"({group.keep_title!r}, {group.type}, ref={group.external_ref})"
        )
    print(f"\n{verb} {sum(len(g.merge_ids) for g in groups)} node(s) in {len(groups)} group(s)")
    if not args.apply:
        print("Re-run with --apply to write these changes.")
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    sys.exit(main())
