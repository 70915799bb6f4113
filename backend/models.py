"""
Pydantic models for the cache store HTTP surface and the persisted graph document.

Wire format is camelCase JSON; Python attributes stay snake_case.
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _coerce_node_type(value: Any) -> str:
    # Anything that is not explicitly a person is treated as a thing
    return "Person" if str(value or "").strip().lower() == "person" else "Thing"


# ---------- Cache store: nodes ----------

class NodeUpsert(CamelModel):
    """Payload for POST /node and for each candidate inside POST /expansion."""
    title: str = Field(min_length=1)
    type: str = "Thing"
    description: Optional[str] = None
    year: Optional[int] = None
    external_ref: Optional[str] = None
    image_url: Optional[str] = None
    summary: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None
    # Edge label when the node is a candidate in an expansion
    label: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> str:
        return _coerce_node_type(value)

    @field_validator("title")
    @classmethod
    def strip_title(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title must not be blank")
        return value


class NodeUpsertResponse(CamelModel):
    id: int


class CanonicalNode(CamelModel):
    id: int
    title: str
    type: Literal["Person", "Thing"]
    description: Optional[str] = None
    year: Optional[int] = None
    external_ref: Optional[str] = None
    image_url: Optional[str] = None
    summary: Optional[str] = None
    label: Optional[str] = None


# ---------- Cache store: expansions ----------

class ExpansionWrite(CamelModel):
    source_id: int
    context: List[str] = []
    nodes: List[NodeUpsert] = []


class ExpansionWriteResponse(CamelModel):
    ok: bool = True
    target_ids: List[int] = []


class ExpansionLookupResponse(CamelModel):
    hit: Literal["exact", "partial", "miss"]
    nodes: List[CanonicalNode] = []
    score: Optional[float] = None
    matched_context: Optional[List[str]] = None


# ---------- Cache store: admin ----------

class DuplicateGroup(CamelModel):
    type: str
    external_ref: str
    keep_id: int
    keep_title: str
    merge_ids: List[int]


class DuplicateMergeResponse(CamelModel):
    dry_run: bool
    groups: List[DuplicateGroup] = []
    merged_node_count: int = 0


# ---------- Persisted graph document ----------

class DocumentNode(CamelModel):
    # StrictInt: legacy documents keyed nodes by title, which must be refused, not coerced
    id: StrictInt
    title: str
    type: str = "Thing"
    description: Optional[str] = None
    year: Optional[int] = None
    external_ref: Optional[str] = None
    image_url: Optional[str] = None
    summary: Optional[str] = None
    expanded: bool = False
    image_checked: bool = False
    x: Optional[float] = None
    y: Optional[float] = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> str:
        return _coerce_node_type(value)


class DocumentLink(CamelModel):
    source: StrictInt
    target: StrictInt
    label: Optional[str] = None


class GraphDocument(CamelModel):
    nodes: List[DocumentNode] = []
    links: List[DocumentLink] = []
    layout_mode: Literal["network", "timeline"] = "network"
    compact_flag: bool = False
    text_only_flag: bool = False
