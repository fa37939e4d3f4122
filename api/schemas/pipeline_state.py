"""Pipeline state, stage outputs and run results.

Stage output models double as the recovery schemas for generated text: their
required fields are the keys a response must carry, list fields default to
empty, and ``AliasChoices`` absorb the key spellings the generation service
is known to vary between (camelCase, snake_case, older field names).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Generic, List, Optional, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from libs.common.errors import PipelineError
from libs.models.graph import KnowledgeGraph, normalize_name

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_text(item: Any) -> Optional[str]:
    """Coerce a generated list item into a string, or None to drop it."""
    if isinstance(item, str):
        return item.strip() or None
    if isinstance(item, dict):
        for key in ("name", "title", "term", "keyword", "label", "text"):
            value = item.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None
    if isinstance(item, (int, float)):
        return str(item)
    return None


def _text_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (str, dict)):
        value = [value]
    if not isinstance(value, list):
        return []
    return [text for text in (_as_text(v) for v in value) if text]


def _named_items(value: Any) -> Any:
    """Allow plain strings where an object with a ``name`` is expected.

    Items whose name is blank are dropped rather than failing the whole list.
    """
    if not isinstance(value, list):
        return value
    items = []
    for v in value:
        if isinstance(v, str):
            v = {"name": v}
        if isinstance(v, dict) and isinstance(v.get("name"), str) and not v["name"].strip():
            continue
        items.append(v)
    return items


def _has_text(item: Dict[str, Any], *keys: str) -> bool:
    return any(isinstance(item.get(key), str) and item[key].strip() for key in keys)


class _StageModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True, str_strip_whitespace=True)


# ---------------------------------------------------------------------------
# Request and session
# ---------------------------------------------------------------------------


class PipelineRequest(BaseModel):
    """Input of one pipeline run."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    role_name: str = Field(..., min_length=1, max_length=200, validation_alias=AliasChoices("role_name", "roleName"), description="Role the graph describes")
    description: str = Field(default="", max_length=4000, description="Free-text role description")
    industries: List[str] = Field(default_factory=list, description="Industries the role works in")
    seed_terms: List[str] = Field(default_factory=list, validation_alias=AliasChoices("seed_terms", "seedTerms"), description="Seed keywords")
    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex, validation_alias=AliasChoices("session_id", "sessionId"), description="Session identifier")

    @field_validator("role_name")
    @classmethod
    def role_name_must_not_be_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Role name must not be empty")
        return v.strip()

    @field_validator("industries", "seed_terms")
    @classmethod
    def drop_blank_and_duplicate(cls, v: List[str]) -> List[str]:
        seen = set()
        cleaned = []
        for item in v:
            item = item.strip()
            if item and normalize_name(item) not in seen:
                seen.add(normalize_name(item))
                cleaned.append(item)
        return cleaned


class PipelineState(str, Enum):
    IDLE = "idle"
    STAGE1_RUNNING = "stage1_running"
    STAGE2_RUNNING = "stage2_running"
    STAGE3_RUNNING = "stage3_running"
    STAGE4_RUNNING = "stage4_running"
    REDUCING = "reducing"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.COMPLETED, PipelineState.FAILED, PipelineState.CANCELLED)


class CancellationToken:
    """Session-scoped flag, set by any observer and read at stage boundaries."""

    def __init__(self) -> None:
        self._cancelled = False
        self.requested_at: Optional[datetime] = None

    def cancel(self) -> None:
        if not self._cancelled:
            self._cancelled = True
            self.requested_at = _utcnow()

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class Session:
    """One pipeline run for one request."""

    request: PipelineRequest
    state: PipelineState = PipelineState.IDLE
    token: CancellationToken = field(default_factory=CancellationToken)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    stage_kinds: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def session_id(self) -> str:
        return self.request.session_id

    def advance(self, state: PipelineState) -> None:
        self.state = state
        self.updated_at = _utcnow()


# ---------------------------------------------------------------------------
# Stage results
# ---------------------------------------------------------------------------


class ResultKind(str, Enum):
    OK = "ok"
    FALLBACK = "fallback"
    ERR = "err"


@dataclass(frozen=True)
class StageResult(Generic[T]):
    """Outcome of one stage: Ok(value), Fallback(value, reason) or Err(error)."""

    kind: ResultKind
    value: Optional[T] = None
    reason: Optional[str] = None
    error: Optional[PipelineError] = None

    @classmethod
    def ok(cls, value: T) -> "StageResult[T]":
        return cls(ResultKind.OK, value=value)

    @classmethod
    def fallback(cls, value: T, reason: str) -> "StageResult[T]":
        return cls(ResultKind.FALLBACK, value=value, reason=reason)

    @classmethod
    def err(cls, error: PipelineError) -> "StageResult[T]":
        return cls(ResultKind.ERR, reason=str(error), error=error)


# ---------------------------------------------------------------------------
# Stage 1: domain analysis
# ---------------------------------------------------------------------------


class Industry(_StageModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    sub_industries: List[str] = Field(default_factory=list, validation_alias=AliasChoices("sub_industries", "subIndustries", "subindustries"))

    @field_validator("sub_industries", mode="before")
    @classmethod
    def coerce_sub_industries(cls, v):
        return _text_list(v)

    @field_validator("description", mode="before")
    @classmethod
    def coerce_description(cls, v):
        return v if isinstance(v, str) else ""


class DomainAnalysis(_StageModel):
    industries: List[Industry] = Field(...)
    trends: List[str] = Field(default_factory=list, validation_alias=AliasChoices("trends", "industryTrends", "industry_trends"))
    challenges: List[str] = Field(default_factory=list)
    opportunities: List[str] = Field(default_factory=list)
    key_players: List[str] = Field(default_factory=list, validation_alias=AliasChoices("key_players", "keyPlayers"))
    technologies: List[str] = Field(default_factory=list)

    @field_validator("industries", mode="before")
    @classmethod
    def coerce_industries(cls, v):
        return _named_items(v)

    @field_validator("trends", "challenges", "opportunities", "key_players", "technologies", mode="before")
    @classmethod
    def coerce_lists(cls, v):
        return _text_list(v)


# ---------------------------------------------------------------------------
# Stage 2: term expansion and broad context
# ---------------------------------------------------------------------------


class TermExpansionPayload(_StageModel):
    """Raw shape returned by the term expansion call."""

    expanded_terms: List[str] = Field(..., validation_alias=AliasChoices("expanded_terms", "expandedKeywords", "expanded_keywords", "keywords", "terms"))
    relevance: Dict[str, float] = Field(default_factory=dict, validation_alias=AliasChoices("relevance", "relevanceScores", "scores"))

    @field_validator("expanded_terms", mode="before")
    @classmethod
    def coerce_terms(cls, v):
        if not isinstance(v, list):
            return v
        return _text_list(v)

    @field_validator("relevance", mode="before")
    @classmethod
    def coerce_relevance(cls, v):
        if not isinstance(v, dict):
            return {}
        scores = {}
        for key, value in v.items():
            try:
                scores[str(key)] = float(value)
            except (TypeError, ValueError):
                continue
        return scores


class ExpandedTerm(_StageModel):
    term: str = Field(..., min_length=1)
    relevance: float = Field(..., ge=0.0, le=1.0)


class TermExpansion(_StageModel):
    terms: List[ExpandedTerm] = Field(default_factory=list)

    def top(self, limit: int) -> List[ExpandedTerm]:
        """Highest relevance first, ties kept in original order."""
        return sorted(self.terms, key=lambda t: -t.relevance)[:limit]


class ContextSource(_StageModel):
    title: str = ""
    url: str = ""
    snippet: str = ""


class BroadContext(_StageModel):
    summary: str = Field(..., validation_alias=AliasChoices("summary", "overview", "context"))
    themes: List[str] = Field(default_factory=list, validation_alias=AliasChoices("themes", "keyThemes", "key_themes"))
    sources: List[ContextSource] = Field(default_factory=list)

    @field_validator("themes", mode="before")
    @classmethod
    def coerce_themes(cls, v):
        return _text_list(v)


# ---------------------------------------------------------------------------
# Stage 3: structuring
# ---------------------------------------------------------------------------


class SkillItem(_StageModel):
    name: str = Field(..., min_length=1)
    description: str = ""


class SubcategoryItem(_StageModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    skills: List[SkillItem] = Field(default_factory=list, validation_alias=AliasChoices("skills", "keySkills", "key_skills", "children", "items"))

    @field_validator("skills", mode="before")
    @classmethod
    def coerce_skills(cls, v):
        return _named_items(v)


class CategoryItem(_StageModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    subcategories: List[SubcategoryItem] = Field(
        default_factory=list,
        validation_alias=AliasChoices("subcategories", "subCategories", "sub_categories", "children"),
    )

    @field_validator("subcategories", mode="before")
    @classmethod
    def coerce_subcategories(cls, v):
        return _named_items(v)


def _fold_flat_nodes(nodes: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Fold a flat ``{id, name, level, parentId}`` list into nested categories."""
    by_id: Dict[str, Dict[str, Any]] = {}
    categories: List[Dict[str, Any]] = []
    pending = []

    for raw in nodes:
        if not isinstance(raw, dict) or not _as_text(raw):
            continue
        try:
            level = int(raw.get("level", 1))
        except (TypeError, ValueError):
            level = 1
        node_id = str(raw.get("id") or _as_text(raw))
        parent = raw.get("parentId", raw.get("parent_id"))
        entry = {"name": _as_text(raw), "description": raw.get("description") or "", "level": level}
        by_id[node_id] = entry
        if level <= 1:
            entry["subcategories"] = []
            categories.append(entry)
        else:
            pending.append((entry, str(parent) if parent is not None else None))

    pending.sort(key=lambda item: item[0]["level"])
    for entry, parent_id in pending:
        parent = by_id.get(parent_id) if parent_id else None
        if entry["level"] == 2:
            entry["skills"] = []
            if parent is not None and "subcategories" in parent:
                parent["subcategories"].append(entry)
            elif categories:
                categories[0]["subcategories"].append(entry)
        else:
            if parent is not None and "skills" in parent:
                parent["skills"].append({"name": entry["name"], "description": entry["description"]})
            elif parent is not None and "subcategories" in parent:
                bucket_name = f"{parent['name']} Fundamentals"
                bucket = next((s for s in parent["subcategories"] if s["name"] == bucket_name), None)
                if bucket is None:
                    bucket = {"name": bucket_name, "description": "", "skills": []}
                    parent["subcategories"].append(bucket)
                bucket["skills"].append({"name": entry["name"], "description": entry["description"]})
    return categories


class Structure(_StageModel):
    categories: List[CategoryItem] = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("categories", "hierarchicalCategories", "hierarchical_categories", "hierarchy"),
    )

    @model_validator(mode="before")
    @classmethod
    def accept_flat_variant(cls, data):
        if isinstance(data, dict) and isinstance(data.get("nodes"), list):
            present = {"categories", "hierarchicalCategories", "hierarchical_categories", "hierarchy"}
            if not present.intersection(data):
                return {"categories": _fold_flat_nodes(data["nodes"])}
        return data

    @field_validator("categories", mode="before")
    @classmethod
    def coerce_categories(cls, v):
        return _named_items(v)


# ---------------------------------------------------------------------------
# Stage 4: cross-links, and single-node expansion
# ---------------------------------------------------------------------------


class CrossLink(_StageModel):
    source: str = Field(..., min_length=1, validation_alias=AliasChoices("source", "from", "sourceName"))
    target: str = Field(..., min_length=1, validation_alias=AliasChoices("target", "to", "targetName"))
    label: Optional[str] = Field(default=None, validation_alias=AliasChoices("label", "relationship", "type"))
    strength: float = 0.5

    @field_validator("strength", mode="before")
    @classmethod
    def coerce_strength(cls, v):
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.5
        if value > 1.0:
            value = value / 10.0
        return min(max(value, 0.0), 1.0)


class CrossLinks(_StageModel):
    connections: List[CrossLink] = Field(..., validation_alias=AliasChoices("connections", "links", "crossLinks", "cross_links", "relationships"))

    @field_validator("connections", mode="before")
    @classmethod
    def drop_malformed(cls, v):
        if not isinstance(v, list):
            return v
        return [
            item
            for item in v
            if isinstance(item, dict)
            and _has_text(item, "source", "from", "sourceName")
            and _has_text(item, "target", "to", "targetName")
        ]


class ExpansionChild(_StageModel):
    name: str = Field(..., min_length=1)
    description: str = ""


class NodeExpansion(_StageModel):
    children: List[ExpansionChild] = Field(..., min_length=1, validation_alias=AliasChoices("children", "subNodes", "sub_nodes", "nodes"))

    @field_validator("children", mode="before")
    @classmethod
    def coerce_children(cls, v):
        return _named_items(v)


# ---------------------------------------------------------------------------
# Orchestrator run state and outcome
# ---------------------------------------------------------------------------


def merge_dicts(left: Dict[str, Any], right: Dict[str, Any]) -> Dict[str, Any]:
    return {**(left or {}), **(right or {})}


class PipelineRunState(BaseModel):
    """State object flowing through the orchestrator graph."""

    request: PipelineRequest
    domain_analysis: Optional[DomainAnalysis] = None
    term_expansion: Optional[TermExpansion] = None
    broad_context: Optional[BroadContext] = None
    structure: Optional[Structure] = None
    graph: Optional[KnowledgeGraph] = None
    stage_kinds: Annotated[Dict[str, str], merge_dicts] = Field(default_factory=dict)
    cancelled: bool = False
    node_timings: Annotated[Dict[str, float], merge_dicts] = Field(default_factory=dict)


class PipelineOutcome(BaseModel):
    """Terminal result of ``run``."""

    session_id: str
    status: PipelineState
    graph: Optional[KnowledgeGraph] = None
    error: Optional[str] = None
    stage_kinds: Dict[str, str] = Field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return any(kind != ResultKind.OK.value for kind in self.stage_kinds.values())
