"""
Memory record shapes shared by ingestion, retrieval and the graph backends.

Inbound payloads (turns, extracted events, retrieval queries) are pydantic models so
malformed input is rejected on construction. Records read back from storage are
plain dataclasses.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .affect import VAD, Mode
from .config import (
    RETRIEVAL_CHARACTER_LIMIT,
    RETRIEVAL_FACT_LIMIT,
    RETRIEVAL_RELATIONSHIP_LIMIT,
    RETRIEVAL_TOKEN_BUDGET,
)

CHARACTER_PREFIX = "character:"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def new_id(prefix: str) -> str:
    return f"{prefix}:{uuid.uuid4().hex}"


def character_name(character_id: str) -> str:
    """Display name derived from an id such as "character:alice"."""
    raw = str(character_id or "")
    if raw.startswith(CHARACTER_PREFIX):
        raw = raw[len(CHARACTER_PREFIX):]
    return raw


# ------------------------------------------------------------------------------
# Inbound payloads
# ------------------------------------------------------------------------------
class EventType(str, Enum):
    FACT_ASSERTION = "fact_assertion"
    RELATIONSHIP_CHANGE = "relationship_change"
    EMOTIONAL_PEAK = "emotional_peak"
    CONFLICT = "conflict"
    RESOLUTION = "resolution"


class WorkingMemoryTurn(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("turn"))
    session_id: str = Field(..., min_length=1)
    speaker_id: str = Field(..., min_length=1)
    text: str
    timestamp: str = Field(default_factory=utcnow_iso)
    significance_score: float = Field(0.0, ge=0.0)
    tokens: int | None = Field(None, ge=0)
    character_id: str | None = None


class ExtractedEvent(BaseModel):
    type: EventType = EventType.FACT_ASSERTION
    entities_involved: list[str] = Field(default_factory=list)
    description: str = ""
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    attribute: str | None = None
    value: str | None = None
    relationship_type: str | None = None


class RetrievalLimits(BaseModel):
    characters: int = Field(RETRIEVAL_CHARACTER_LIMIT, gt=0)
    facts: int = Field(RETRIEVAL_FACT_LIMIT, gt=0)
    relationships: int = Field(RETRIEVAL_RELATIONSHIP_LIMIT, gt=0)


class MemoryRetrievalQuery(BaseModel):
    session_id: str
    character_id: str | None = None
    query_text: str | None = None
    embedding: list[float] | None = None
    limits: RetrievalLimits = Field(default_factory=RetrievalLimits)
    max_tokens: int = Field(RETRIEVAL_TOKEN_BUDGET, gt=0)
    min_relevance: float | None = Field(None, ge=0.0, le=1.0)

    @field_validator("session_id")
    @classmethod
    def _session_required(cls, value: str) -> str:
        value = str(value or "").strip()
        if not value:
            raise ValueError("session_id is required")
        return value

    @field_validator("embedding")
    @classmethod
    def _embedding_not_empty(cls, value: list[float] | None) -> list[float] | None:
        if value is not None and len(value) == 0:
            raise ValueError("embedding must not be empty when provided")
        return value


# ------------------------------------------------------------------------------
# Stored records
# ------------------------------------------------------------------------------
@dataclass
class Character:
    id: str
    name: str
    emotional_state: VAD
    created_at: str
    last_updated: str
    mode: Mode | None = None
    score: float = field(default=0.0, compare=False)


@dataclass
class FactNode:
    id: str
    entity: str
    attribute: str
    current_value: str
    confidence: float
    importance_score: float
    created_at: str
    last_updated: str
    assertion_count: int = 1
    session_id: str | None = None
    score: float = field(default=0.0, compare=False)


@dataclass(frozen=True)
class FactVersion:
    fact_id: str
    value: str
    confidence: float
    recorded_at: str
    turn_id: str | None = None


@dataclass
class RelationshipEdge:
    id: str
    from_entity: str
    to_entity: str
    relationship_type: str
    strength: float
    created_at: str
    last_updated: str
    session_id: str | None = None
    score: float = field(default=0.0, compare=False)


@dataclass(frozen=True)
class MemoryOperation:
    id: str
    type: str
    layer: str
    operation: str
    timestamp: str
    duration_ms: float
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class FactWriteResult:
    fact_ids: list[str] = field(default_factory=list)
    operations: list[MemoryOperation] = field(default_factory=list)


@dataclass
class RelationshipWriteResult:
    relationship_ids: list[str] = field(default_factory=list)
    operations: list[MemoryOperation] = field(default_factory=list)


@dataclass
class RetrievalBatch:
    characters: list[Character] = field(default_factory=list)
    facts: list[FactNode] = field(default_factory=list)
    relationships: list[RelationshipEdge] = field(default_factory=list)
    relevance_score: float = 0.0
    token_count: int = 0
    dropped: int = 0
    degraded: bool = False
    below_floor: bool = False

    @property
    def is_empty(self) -> bool:
        return not (self.characters or self.facts or self.relationships)
