"""
Canonical node/edge cache.

Assigns stable integer ids to entities, records which neighbors an expansion
produced for a given context fingerprint, and answers exact or fuzzy
(Jaccard) lookups for previously seen expansions. Every batch write runs in a
single transaction so a failed expansion leaves no partial state behind.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from config import (
    CACHE_DB_BACKEND,
    CACHE_MIN_SIMILARITY,
    ENABLE_SQLITE_FALLBACK,
)
from models import NodeUpsert
from services_context_fingerprint import (
    context_fingerprint,
    context_keys,
    jaccard_similarity,
    normalize_title,
)

logger = logging.getLogger("constellations")

_NODE_COLUMNS = "n.id, n.title, n.type, n.description, n.year, n.external_ref, n.image_url, n.summary"


class UnknownNodeError(LookupError):
    """Raised when an expansion references a source node the cache has never seen."""

    def __init__(self, node_id: int):
        super().__init__(f"Unknown node id {node_id}")
        self.node_id = node_id


@dataclass
class ExpansionLookup:
    hit: str  # "exact" | "partial" | "miss"
    nodes: List[Dict[str, Any]] = field(default_factory=list)
    score: Optional[float] = None
    matched_context: Optional[List[str]] = None


@dataclass
class DuplicateGroup:
    type: str
    external_ref: str
    keep_id: int
    keep_title: str
    merge_ids: List[int]


def _node_row_to_dict(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": int(row["id"]),
        "title": row["title"],
        "type": row["type"],
        "description": row.get("description"),
        "year": row.get("year"),
        "external_ref": row.get("external_ref") or None,
        "image_url": row.get("image_url"),
        "summary": row.get("summary"),
        "label": row.get("label"),
    }


def _prefer_title(a: str, b: str) -> bool:
    """True when title `a` is a better display form than `b` (title-cased beats other casings)."""
    return a == a.title() and b != b.title()


class CacheStore:
    """SQL logic for the cache; the database object supplies transactions for its dialect."""

    def __init__(self, db):
        self.db = db

    @property
    def backend(self) -> str:
        return self.db.backend

    def init_schema(self) -> None:
        self.db.init_schema()

    def ping(self) -> bool:
        return self.db.ping()

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def upsert_node(self, node: NodeUpsert) -> int:
        with self.db.transaction() as cur:
            return self._upsert_node(cur, node)

    def _upsert_node(self, cur, node: NodeUpsert) -> int:
        """
        Resolve a node to its canonical id, inserting it if needed.

        Identity is (lower(title), type, external_ref). A record without an
        external ref reuses any row with the same title and type; a record with
        one adopts a same-title row that has none yet. Optional fields only
        ever fill in or refresh values, never blank them out.
        """
        title_key = normalize_title(node.title)
        ref = (node.external_ref or "").strip()
        meta = json.dumps(node.meta) if node.meta else None

        cur.execute(
            "SELECT id, external_ref FROM nodes WHERE title_key = %s AND type = %s ORDER BY id",
            (title_key, node.type),
        )
        existing = cur.fetchall()

        target_id: Optional[int] = None
        if existing:
            by_ref = {row["external_ref"]: int(row["id"]) for row in existing}
            if ref:
                target_id = by_ref.get(ref) or by_ref.get("")
            else:
                target_id = by_ref.get("", int(existing[0]["id"]))

        if target_id is not None:
            cur.execute(
                """
                UPDATE nodes SET
                    title = %s,
                    external_ref = CASE WHEN %s <> '' THEN %s ELSE external_ref END,
                    description = COALESCE(%s, description),
                    year = COALESCE(%s, year),
                    image_url = COALESCE(%s, image_url),
                    summary = COALESCE(%s, summary),
                    meta = COALESCE(%s, meta),
                    updated_at = NOW()
                WHERE id = %s
                """,
                (
                    node.title, ref, ref, node.description, node.year,
                    node.image_url, node.summary, meta, target_id,
                ),
            )
            return target_id

        cur.execute(
            """
            INSERT INTO nodes (title, title_key, type, external_ref, description, year, image_url, summary, meta)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (title_key, type, external_ref) DO UPDATE SET
                description = COALESCE(excluded.description, nodes.description),
                year = COALESCE(excluded.year, nodes.year),
                image_url = COALESCE(excluded.image_url, nodes.image_url),
                summary = COALESCE(excluded.summary, nodes.summary),
                updated_at = NOW()
            RETURNING id
            """,
            (
                node.title, title_key, node.type, ref, node.description,
                node.year, node.image_url, node.summary, meta,
            ),
        )
        return int(cur.fetchone()["id"])

    def get_node(self, node_id: int) -> Optional[Dict[str, Any]]:
        rows = self.db.execute_query(
            f"SELECT {_NODE_COLUMNS} FROM nodes n WHERE n.id = %s",
            (node_id,),
        )
        return _node_row_to_dict(rows[0]) if rows else None

    # ------------------------------------------------------------------
    # Expansions
    # ------------------------------------------------------------------

    def write_expansion(
        self,
        source_id: int,
        context: Iterable[str],
        nodes: Sequence[NodeUpsert],
    ) -> List[int]:
        """
        Record the neighbors an expansion of `source_id` produced under `context`.

        Candidates are upserted to canonical ids and the edge set for
        (source_id, fingerprint) is replaced, all in one transaction.
        Returns the target ids in candidate order (duplicates collapsed).
        """
        keys = context_keys(context)
        fingerprint = context_fingerprint(keys)
        context_json = json.dumps(keys)

        with self.db.transaction() as cur:
            cur.execute("SELECT id FROM nodes WHERE id = %s", (source_id,))
            if cur.fetchone() is None:
                raise UnknownNodeError(source_id)

            target_ids: List[int] = []
            labels: Dict[int, Optional[str]] = {}
            for node in nodes:
                target_id = self._upsert_node(cur, node)
                if target_id == source_id or target_id in labels:
                    continue
                target_ids.append(target_id)
                labels[target_id] = node.label

            cur.execute(
                "DELETE FROM edges WHERE source_id = %s AND context_fingerprint = %s",
                (source_id, fingerprint),
            )
            for target_id in target_ids:
                cur.execute(
                    """
                    INSERT INTO edges (source_id, target_id, label, context_fingerprint, context_ids)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (source_id, target_id, labels[target_id], fingerprint, context_json),
                )

        logger.info(
            f"[cache_store] Wrote expansion source={source_id} fingerprint={fingerprint[:10]} "
            f"targets={len(target_ids)}"
        )
        return target_ids

    def lookup_expansion(
        self,
        source_id: int,
        context: Optional[Iterable[str]] = None,
        context_hash: Optional[str] = None,
        min_similarity: Optional[float] = None,
        allow_partial: bool = True,
    ) -> ExpansionLookup:
        """
        Find a previous expansion of `source_id`.

        Exact: an entry with the same context fingerprint. Partial: otherwise,
        the entry whose stored context has the highest Jaccard similarity to
        `context`, provided it reaches `min_similarity`; on ties the entry
        written first wins.
        """
        keys = context_keys(context or [])
        fingerprint = context_hash or context_fingerprint(keys)
        threshold = CACHE_MIN_SIMILARITY if min_similarity is None else min_similarity

        rows = self.db.execute_query(
            f"""
            SELECT e.context_fingerprint, e.context_ids, e.label, {_NODE_COLUMNS}
            FROM edges e
            JOIN nodes n ON n.id = e.target_id
            WHERE e.source_id = %s
            ORDER BY e.id
            """,
            (source_id,),
        )

        groups: Dict[str, List[Dict[str, Any]]] = {}
        for row in rows:
            groups.setdefault(row["context_fingerprint"], []).append(row)

        if fingerprint in groups:
            return ExpansionLookup(
                hit="exact",
                nodes=[_node_row_to_dict(r) for r in groups[fingerprint]],
                score=1.0,
                matched_context=json.loads(groups[fingerprint][0]["context_ids"]),
            )

        if not allow_partial:
            return ExpansionLookup(hit="miss")

        wanted = set(keys)
        best_rows: Optional[List[Dict[str, Any]]] = None
        best_context: List[str] = []
        best_score = -1.0
        for group_rows in groups.values():
            stored = json.loads(group_rows[0]["context_ids"])
            score = jaccard_similarity(wanted, set(stored))
            if score > best_score:
                best_score, best_rows, best_context = score, group_rows, stored

        if best_rows and best_score >= threshold:
            return ExpansionLookup(
                hit="partial",
                nodes=[_node_row_to_dict(r) for r in best_rows],
                score=best_score,
                matched_context=best_context,
            )
        return ExpansionLookup(hit="miss")

    # ------------------------------------------------------------------
    # Duplicate maintenance
    # ------------------------------------------------------------------

    def find_duplicate_groups(self) -> List[DuplicateGroup]:
        """Nodes of the same type that share a non-empty external ref under different titles."""
        rows = self.db.execute_query(
            "SELECT id, title, type, external_ref FROM nodes WHERE external_ref <> '' ORDER BY id"
        )
        buckets: Dict[tuple, List[Dict[str, Any]]] = {}
        for row in rows:
            buckets.setdefault((row["type"], row["external_ref"]), []).append(row)

        groups: List[DuplicateGroup] = []
        for (node_type, ref), members in buckets.items():
            if len(members) < 2:
                continue
            keep = members[0]
            for candidate in members[1:]:
                if _prefer_title(candidate["title"], keep["title"]):
                    keep = candidate
            groups.append(
                DuplicateGroup(
                    type=node_type,
                    external_ref=ref,
                    keep_id=int(keep["id"]),
                    keep_title=keep["title"],
                    merge_ids=[int(m["id"]) for m in members if m["id"] != keep["id"]],
                )
            )
        return groups

    def merge_duplicates(self, dry_run: bool = True) -> List[DuplicateGroup]:
        """
        Fold each duplicate group into its kept node.

        Edges are repointed to the kept id (dropping those that would collide
        or become self-loops), missing optional fields are copied over, and the
        duplicates are deleted. The whole pass is one transaction.
        """
        groups = self.find_duplicate_groups()
        if dry_run or not groups:
            return groups

        with self.db.transaction() as cur:
            for group in groups:
                keep = group.keep_id
                for dup in group.merge_ids:
                    cur.execute(
                        """
                        DELETE FROM edges WHERE source_id = %s AND EXISTS (
                            SELECT 1 FROM edges e2
                            WHERE e2.source_id = %s
                              AND e2.target_id = edges.target_id
                              AND e2.context_fingerprint = edges.context_fingerprint
                        )
                        """,
                        (dup, keep),
                    )
                    cur.execute("UPDATE edges SET source_id = %s WHERE source_id = %s", (keep, dup))
                    cur.execute(
                        """
                        DELETE FROM edges WHERE target_id = %s AND EXISTS (
                            SELECT 1 FROM edges e2
                            WHERE e2.target_id = %s
                              AND e2.source_id = edges.source_id
                              AND e2.context_fingerprint = edges.context_fingerprint
                        )
                        """,
                        (dup, keep),
                    )
                    cur.execute("UPDATE edges SET target_id = %s WHERE target_id = %s", (keep, dup))
                    cur.execute("DELETE FROM edges WHERE source_id = target_id")
                    cur.execute(
                        "SELECT description, year, image_url, summary FROM nodes WHERE id = %s",
                        (dup,),
                    )
                    donor = cur.fetchone() or {}
                    cur.execute(
                        """
                        UPDATE nodes SET
                            description = COALESCE(description, %s),
                            year = COALESCE(year, %s),
                            image_url = COALESCE(image_url, %s),
                            summary = COALESCE(summary, %s),
                            updated_at = NOW()
                        WHERE id = %s
                        """,
                        (
                            donor.get("description"), donor.get("year"),
                            donor.get("image_url"), donor.get("summary"), keep,
                        ),
                    )
                    cur.execute("DELETE FROM nodes WHERE id = %s", (dup,))
                logger.info(
                    f"[cache_store] Merged duplicates {group.merge_ids} into {keep} ({group.keep_title!r})"
                )
        return groups


# ---------------------------------------------------------------------------
# Backend selection
# ---------------------------------------------------------------------------

_store: Optional[CacheStore] = None


def _build_store() -> CacheStore:
    if CACHE_DB_BACKEND == "postgres":
        try:
            from db_postgres import PostgresDatabase

            db = PostgresDatabase()
            db.ping()
            logger.info("[cache_store] Using Postgres backend")
            return CacheStore(db)
        except Exception as e:
            if not ENABLE_SQLITE_FALLBACK:
                raise RuntimeError(
                    "Postgres is unavailable and ENABLE_SQLITE_FALLBACK is disabled"
                ) from e
            logger.warning(f"[cache_store] Postgres unavailable ({e}); falling back to SQLite")

    from db_sqlite import SqliteDatabase

    logger.info("[cache_store] Using SQLite backend")
    return CacheStore(SqliteDatabase())


def get_cache_store() -> CacheStore:
    """FastAPI dependency returning the process-wide cache store."""
    global _store
    if _store is None:
        _store = _build_store()
    return _store
