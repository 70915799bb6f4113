"""
Tests for the cache store's SQL logic and the context fingerprint helpers.
"""
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from models import NodeUpsert
from services_cache_store import UnknownNodeError
from services_context_fingerprint import (
    context_fingerprint,
    context_keys,
    jaccard_similarity,
    normalize_title,
)


def _upsert(store, title, type_="Thing", **kwargs):
    return store.upsert_node(NodeUpsert(title=title, type=type_, **kwargs))


class TestContextFingerprint:
    def test_normalize_title(self):
        assert normalize_title("  The   Matrix ") == "the matrix"

    def test_fingerprint_ignores_order_case_and_duplicates(self):
        a = context_fingerprint(["Keanu Reeves", "Carrie-Anne Moss"])
        b = context_fingerprint(["carrie-anne moss", "KEANU  REEVES", "Keanu Reeves"])
        assert a == b

    def test_empty_context_has_stable_fingerprint(self):
        assert context_fingerprint([]) == context_fingerprint(["", "  "])
        assert context_keys(["", "  "]) == []

    def test_jaccard_properties(self):
        a, b = {"x", "y"}, {"y", "z"}
        assert jaccard_similarity(a, a) == 1.0
        assert jaccard_similarity(a, set()) == 0.0
        assert jaccard_similarity(set(), set()) == 0.0
        assert jaccard_similarity(a, b) == jaccard_similarity(b, a) == pytest.approx(1 / 3)


class TestNodeIdentity:
    def test_ref_less_record_reuses_existing_row(self, cache_store):
        with_ref = _upsert(cache_store, "Inception", external_ref="27205")
        assert _upsert(cache_store, "inception") == with_ref

    def test_ref_adopts_ref_less_row(self, cache_store):
        bare = _upsert(cache_store, "Inception")
        assert _upsert(cache_store, "Inception", external_ref="27205") == bare
        assert cache_store.get_node(bare)["external_ref"] == "27205"

    def test_different_refs_are_different_nodes(self, cache_store):
        a = _upsert(cache_store, "Heat", external_ref="1")
        b = _upsert(cache_store, "Heat", external_ref="2")
        assert a != b

    def test_nulls_do_not_overwrite(self, cache_store):
        node_id = _upsert(cache_store, "Heat", year=1995, summary="Crime film")
        _upsert(cache_store, "Heat", image_url="https://img/heat.jpg")
        node = cache_store.get_node(node_id)
        assert node["year"] == 1995
        assert node["summary"] == "Crime film"
        assert node["image_url"] == "https://img/heat.jpg"


class TestExpansions:
    def test_write_replaces_edge_set_for_same_context(self, cache_store):
        source = _upsert(cache_store, "Heat")
        cache_store.write_expansion(source, [], [NodeUpsert(title="Al Pacino", type="Person")])
        cache_store.write_expansion(source, [], [NodeUpsert(title="Robert De Niro", type="Person")])
        lookup = cache_store.lookup_expansion(source, [])
        assert lookup.hit == "exact"
        assert [n["title"] for n in lookup.nodes] == ["Robert De Niro"]

    def test_duplicate_candidates_and_self_are_collapsed(self, cache_store):
        source = _upsert(cache_store, "Heat")
        ids = cache_store.write_expansion(
            source,
            [],
            [
                NodeUpsert(title="Al Pacino", type="Person"),
                NodeUpsert(title="al pacino", type="Person"),
                NodeUpsert(title="Heat"),
            ],
        )
        assert len(ids) == 1

    def test_concurrent_writes_assign_one_id_per_entity(self, cache_store):
        """Overlapping expansions from parallel writers must converge on the same canonical ids."""
        sources = [_upsert(cache_store, f"Film {i}") for i in range(8)]
        candidates = [
            NodeUpsert(title="Al Pacino", type="Person"),
            NodeUpsert(title="Robert De Niro", type="Person", external_ref="rdn"),
            NodeUpsert(title="Michael Mann", type="Person"),
        ]
        barrier = threading.Barrier(len(sources))

        def write(index):
            barrier.wait()
            ordered = candidates[index % 3:] + candidates[:index % 3]
            return cache_store.write_expansion(sources[index], [], ordered)

        with ThreadPoolExecutor(max_workers=len(sources)) as pool:
            results = list(pool.map(write, range(len(sources))))

        rows = cache_store.db.execute_query(
            "SELECT title, COUNT(*) AS c FROM nodes WHERE type = %s GROUP BY title ORDER BY title",
            ("Person",),
        )
        assert rows == [
            {"title": "Al Pacino", "c": 1},
            {"title": "Michael Mann", "c": 1},
            {"title": "Robert De Niro", "c": 1},
        ]
        assert len({frozenset(ids) for ids in results}) == 1

    def test_failed_batch_rolls_back(self, cache_store):
        with pytest.raises(UnknownNodeError):
            cache_store.write_expansion(9999, [], [NodeUpsert(title="Orphan")])
        assert cache_store.db.execute_query("SELECT COUNT(*) AS n FROM nodes")[0]["n"] == 0

    def test_error_mid_batch_leaves_nothing_behind(self, cache_store):
        source = _upsert(cache_store, "Heat")
        bad = NodeUpsert(title="Val Kilmer", type="Person")
        bad.title = None  # violates NOT NULL inside the transaction

        with pytest.raises(Exception):
            cache_store.write_expansion(source, [], [NodeUpsert(title="Al Pacino", type="Person"), bad])

        count = cache_store.db.execute_query("SELECT COUNT(*) AS n FROM nodes")[0]["n"]
        assert count == 1
        assert cache_store.lookup_expansion(source, []).hit == "miss"

    def test_partial_tie_goes_to_first_written(self, cache_store):
        source = _upsert(cache_store, "Heat")
        cache_store.write_expansion(source, ["a", "b"], [NodeUpsert(title="First")])
        cache_store.write_expansion(source, ["a", "c"], [NodeUpsert(title="Second")])

        lookup = cache_store.lookup_expansion(source, ["a"], min_similarity=0.5)
        assert lookup.hit == "partial"
        assert lookup.score == pytest.approx(0.5)
        assert [n["title"] for n in lookup.nodes] == ["First"]

    def test_partial_can_be_disabled(self, cache_store):
        source = _upsert(cache_store, "Heat")
        cache_store.write_expansion(source, ["a", "b"], [NodeUpsert(title="First")])
        assert cache_store.lookup_expansion(source, ["a", "b", "c"], allow_partial=False).hit == "miss"
        assert cache_store.lookup_expansion(source, ["a", "b", "c"]).hit == "partial"

    def test_below_threshold_is_miss(self, cache_store):
        source = _upsert(cache_store, "Heat")
        cache_store.write_expansion(source, ["a", "b", "c", "d"], [NodeUpsert(title="First")])
        assert cache_store.lookup_expansion(source, ["a"], min_similarity=0.5).hit == "miss"


class TestDuplicateMerge:
    def test_merge_repoints_edges(self, cache_store):
        keep = _upsert(cache_store, "Star Wars", external_ref="sw")
        dup = _upsert(cache_store, "Star Wars: Episode IV", external_ref="sw")
        source = _upsert(cache_store, "Mark Hamill", type_="Person")
        cache_store.write_expansion(source, [], [NodeUpsert(title="Star Wars: Episode IV", external_ref="sw")])

        groups = cache_store.merge_duplicates(dry_run=False)
        assert [g.keep_id for g in groups] == [keep]
        assert cache_store.get_node(dup) is None
        lookup = cache_store.lookup_expansion(source, [])
        assert [n["id"] for n in lookup.nodes] == [keep]
