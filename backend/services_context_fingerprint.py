import hashlib
import re
from typing import AbstractSet, Iterable, List


def normalize_title(title: str) -> str:
    """Collapse whitespace and lowercase a title so it can be compared as an identity key."""
    return re.sub(r"\s+", " ", (title or "").strip()).lower()


def context_keys(titles: Iterable[str]) -> List[str]:
    """Sorted, de-duplicated, normalized context identifiers."""
    return sorted({normalize_title(t) for t in titles if normalize_title(t)})


def context_fingerprint(titles: Iterable[str]) -> str:
    """
    Deterministic hash of a node's neighbor set.

    Order and case of the inputs do not matter: the normalized keys are sorted
    and joined with "|" before hashing, so the empty context has a stable
    fingerprint too.
    """
    joined = "|".join(context_keys(titles))
    return hashlib.sha1(joined.encode("utf-8")).hexdigest()


def jaccard_similarity(a: AbstractSet[str], b: AbstractSet[str]) -> float:
    """|A ∩ B| / |A ∪ B|, defined as 0.0 when either side is empty."""
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)
