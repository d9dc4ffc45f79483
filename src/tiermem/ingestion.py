"""
Transactional ingestion of conversational turns into long-term memory.

Every write runs inside a caller-supplied ``GraphTransaction``:
- characters are upserted with their current VAD (and full affect state)
- facts are merged by (entity, attribute) so one live fact exists per pair
- relationships are merged by (from, to, type)
- the turn itself is stored with its caller-supplied significance score

Nothing here opens, commits or retries a transaction; storage errors propagate.
"""
from __future__ import annotations

import math
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Mapping

from .affect import VAD, AffectUpdate, EmotionState
from .config import (
    FACT_CONFIDENCE_RECENCY_WEIGHT,
    FACT_FREQUENCY_SATURATION,
    FACT_IMPORTANCE_CONFIDENCE_WEIGHT,
    FACT_IMPORTANCE_FREQUENCY_WEIGHT,
    FACT_IMPORTANCE_RECENCY_WEIGHT,
    FACT_RECENCY_HALF_LIFE_HOURS,
    RELATIONSHIP_REINFORCEMENT,
)
from .graph_store import GraphTransaction
from .models import (
    EventType,
    ExtractedEvent,
    FactNode,
    FactVersion,
    FactWriteResult,
    MemoryOperation,
    RelationshipEdge,
    RelationshipWriteResult,
    WorkingMemoryTurn,
    character_name,
    new_id,
)
from .modes import ModeTransitionResult
from .observability import get_logger
from .tokenization import count_phrase_hits, estimate_text_tokens, tokenize_for_matching

logger = get_logger(__name__)

UNKNOWN_ENTITY = "unknown"
MAX_DESCRIPTION_CHARS = 2048

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(moment: datetime) -> str:
    return moment.isoformat(timespec="milliseconds")


def _parse_iso(raw: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(str(raw))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class ImportanceWeights:
    confidence: float = FACT_IMPORTANCE_CONFIDENCE_WEIGHT
    frequency: float = FACT_IMPORTANCE_FREQUENCY_WEIGHT
    recency: float = FACT_IMPORTANCE_RECENCY_WEIGHT
    frequency_saturation: int = FACT_FREQUENCY_SATURATION
    half_life_hours: float = FACT_RECENCY_HALF_LIFE_HOURS
    # Share of a reassertion's confidence kept when blending with the stored value.
    confidence_recency_weight: float = FACT_CONFIDENCE_RECENCY_WEIGHT
    relationship_reinforcement: float = RELATIONSHIP_REINFORCEMENT


def blend_confidence(previous: float, asserted: float, recency_weight: float) -> float:
    alpha = min(1.0, max(0.0, recency_weight))
    return min(1.0, max(0.0, (1.0 - alpha) * previous + alpha * asserted))


def compute_importance(
    confidence: float,
    assertion_count: int,
    hours_since_previous: float,
    weights: ImportanceWeights,
) -> float:
    """
    Importance on a 0-10 scale.
    Rises with confidence and reassertion frequency; the recency term halves every
    ``half_life_hours`` between assertions.
    """
    saturation = max(1, int(weights.frequency_saturation))
    frequency = min(1.0, math.log1p(max(1, assertion_count)) / math.log1p(saturation))
    recency = 0.5 ** (max(0.0, hours_since_previous) / max(1e-6, weights.half_life_hours))
    raw = weights.confidence * confidence + weights.frequency * frequency + weights.recency * recency
    return round(10.0 * min(1.0, max(0.0, raw)), 6)


# ------------------------------------------------------------------------------
# Attribute inference
# ------------------------------------------------------------------------------
_POSSESSIVE_RE = re.compile(r"^\s*(?P<entity>[\w .'-]+?)'s\s+(?P<attr>[\w -]{1,40}?)\s+(?:is|are|was)\s+(?P<value>.+?)\s*[.!]*$", re.IGNORECASE)
_ATTRIBUTE_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("mood", re.compile(r"\b(?:feels|is feeling|felt)\s+(?P<value>.+?)\s*[.!]*$", re.IGNORECASE)),
    ("location", re.compile(r"\b(?:lives in|is from|moved to)\s+(?P<value>.+?)\s*[.!]*$", re.IGNORECASE)),
    ("occupation", re.compile(r"\bworks as\s+(?:an?\s+)?(?P<value>.+?)\s*[.!]*$", re.IGNORECASE)),
    ("likes", re.compile(r"\b(?:likes|loves|enjoys)\s+(?P<value>.+?)\s*[.!]*$", re.IGNORECASE)),
    ("dislikes", re.compile(r"\b(?:dislikes|hates)\s+(?P<value>.+?)\s*[.!]*$", re.IGNORECASE)),
    ("trait", re.compile(r"\bis\s+(?:an?\s+)?(?P<value>.+?)\s*[.!]*$", re.IGNORECASE)),
)

RELATIONSHIP_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("enemy", ("enemy", "rival", "betrayed", "hates")),
    ("romantic", ("partner", "dating", "married", "in love")),
    ("family", ("mother", "father", "sister", "brother", "family", "parent", "daughter", "son")),
    ("colleague", ("colleague", "coworker", "works with", "boss")),
    ("friend", ("friend", "ally", "trusts", "helped")),
)
DEFAULT_RELATIONSHIP_TYPE = "related_to"


def infer_attribute(event: ExtractedEvent) -> tuple[str, str]:
    """Returns (attribute, value) for a fact-bearing event."""
    description = str(event.description or "").strip()[:MAX_DESCRIPTION_CHARS]
    if event.attribute:
        return event.attribute.strip(), (event.value or description).strip()

    match = _POSSESSIVE_RE.match(description)
    if match:
        return match.group("attr").strip().lower(), match.group("value").strip()
    for attribute, pattern in _ATTRIBUTE_PATTERNS:
        match = pattern.search(description)
        if match:
            return attribute, (event.value or match.group("value")).strip()
    return "description", (event.value or description)


def infer_relationship_type(event: ExtractedEvent) -> str:
    if event.relationship_type:
        return event.relationship_type.strip().lower().replace(" ", "_")
    tokens = tokenize_for_matching(event.description)
    for relationship_type, keywords in RELATIONSHIP_KEYWORDS:
        if count_phrase_hits(tokens, keywords):
            return relationship_type
    return DEFAULT_RELATIONSHIP_TYPE


# ------------------------------------------------------------------------------
# Pipeline
# ------------------------------------------------------------------------------
@dataclass
class IngestionResult:
    turn_id: str
    fact_ids: list[str] = field(default_factory=list)
    relationship_ids: list[str] = field(default_factory=list)
    operations: list[MemoryOperation] = field(default_factory=list)
    affect_updates: dict[str, AffectUpdate] = field(default_factory=dict)
    transitions: dict[str, ModeTransitionResult] = field(default_factory=dict)


class IngestionPipeline:
    """Writes one turn's memory through a caller-owned transaction."""

    def __init__(self, weights: ImportanceWeights | None = None, clock: Clock | None = None):
        self.weights = weights or ImportanceWeights()
        self._clock = clock or _utcnow

    def _operation(
        self,
        op_type: str,
        layer: str,
        operation: str,
        started: float,
        details: dict,
    ) -> MemoryOperation:
        return MemoryOperation(
            id=uuid.uuid4().hex,
            type=op_type,
            layer=layer,
            operation=operation,
            timestamp=_iso(self._clock()),
            duration_ms=round((time.perf_counter() - started) * 1000, 3),
            details=details,
        )

    def upsert_character(
        self,
        tx: GraphTransaction,
        character_id: str,
        vad_state: VAD,
        *,
        emotion: EmotionState | None = None,
        session_id: str | None = None,
        name: str | None = None,
    ):
        now = _iso(self._clock())
        tx.upsert_character(
            character_id,
            name or character_name(character_id),
            vad_state,
            now,
            emotion=emotion,
        )
        if session_id:
            tx.merge_session(session_id, now)
            tx.link_character_session(character_id, session_id, now)
        logger.info(
            "character_upserted",
            character_id=character_id,
            valence=round(vad_state.valence, 4),
            arousal=round(vad_state.arousal, 4),
            dominance=round(vad_state.dominance, 4),
        )

    def process_fact(
        self,
        tx: GraphTransaction,
        event: ExtractedEvent,
        turn: WorkingMemoryTurn,
        session_id: str,
    ) -> FactWriteResult:
        result = FactWriteResult()
        attribute, value = infer_attribute(event)
        entities = [e.strip() for e in event.entities_involved if str(e or "").strip()] or [UNKNOWN_ENTITY]

        for entity in dict.fromkeys(entities):
            started = time.perf_counter()
            moment = self._clock()
            now = _iso(moment)
            existing = tx.find_fact(entity, attribute)

            if existing is None:
                fact = FactNode(
                    id=new_id("fact"),
                    entity=entity,
                    attribute=attribute,
                    current_value=value,
                    confidence=float(event.confidence),
                    importance_score=compute_importance(float(event.confidence), 1, 0.0, self.weights),
                    created_at=now,
                    last_updated=now,
                    assertion_count=1,
                    session_id=session_id,
                )
                tx.insert_fact(fact)
                op_type, op_name = "write", "createFact"
            else:
                previous_at = _parse_iso(existing.last_updated)
                hours = (moment - previous_at).total_seconds() / 3600.0 if previous_at else 0.0
                confidence = blend_confidence(
                    existing.confidence,
                    float(event.confidence),
                    self.weights.confidence_recency_weight,
                )
                count = existing.assertion_count + 1
                fact = FactNode(
                    id=existing.id,
                    entity=existing.entity,
                    attribute=existing.attribute,
                    current_value=value,
                    confidence=confidence,
                    importance_score=compute_importance(confidence, count, hours, self.weights),
                    created_at=existing.created_at,
                    last_updated=now,
                    assertion_count=count,
                    session_id=session_id,
                )
                tx.update_fact(fact)
                op_type, op_name = "update", "updateFact"

            tx.append_fact_version(FactVersion(fact.id, value, float(event.confidence), now, turn.id))
            operation = self._operation(
                op_type,
                "L2",
                op_name,
                started,
                {
                    "fact_id": fact.id,
                    "entity": fact.entity,
                    "attribute": fact.attribute,
                    "value": fact.current_value,
                    "confidence": round(fact.confidence, 6),
                    "importance_score": fact.importance_score,
                    "session_id": session_id,
                    "turn_id": turn.id,
                },
            )
            tx.record_operation(operation)
            result.fact_ids.append(fact.id)
            result.operations.append(operation)
            logger.info(
                "fact_merged" if op_type == "update" else "fact_created",
                fact_id=fact.id,
                entity=fact.entity,
                attribute=fact.attribute,
                confidence=round(fact.confidence, 4),
                importance_score=fact.importance_score,
            )
        return result

    def process_relationship(
        self,
        tx: GraphTransaction,
        event: ExtractedEvent,
        turn: WorkingMemoryTurn,
        session_id: str,
    ) -> RelationshipWriteResult:
        result = RelationshipWriteResult()
        entities = [e.strip() for e in event.entities_involved if str(e or "").strip()]
        if len(entities) < 2:
            logger.info("relationship_skipped", reason="needs_two_entities", turn_id=turn.id)
            return result

        started = time.perf_counter()
        now = _iso(self._clock())
        from_entity, to_entity = entities[0], entities[1]
        relationship_type = infer_relationship_type(event)
        existing = tx.find_relationship(from_entity, to_entity, relationship_type)

        if existing is None:
            edge = RelationshipEdge(
                id=new_id("rel"),
                from_entity=from_entity,
                to_entity=to_entity,
                relationship_type=relationship_type,
                strength=float(event.confidence),
                created_at=now,
                last_updated=now,
                session_id=session_id,
            )
            tx.insert_relationship(edge)
            op_type, op_name = "write", "createRelationship"
        else:
            strength = blend_confidence(
                existing.strength,
                float(event.confidence),
                self.weights.confidence_recency_weight,
            )
            edge = RelationshipEdge(
                id=existing.id,
                from_entity=existing.from_entity,
                to_entity=existing.to_entity,
                relationship_type=existing.relationship_type,
                strength=min(1.0, strength + self.weights.relationship_reinforcement),
                created_at=existing.created_at,
                last_updated=now,
                session_id=session_id,
            )
            tx.update_relationship(edge)
            op_type, op_name = "update", "updateRelationship"

        operation = self._operation(
            op_type,
            "L2",
            op_name,
            started,
            {
                "relationship_id": edge.id,
                "from": edge.from_entity,
                "to": edge.to_entity,
                "relationship_type": edge.relationship_type,
                "strength": round(edge.strength, 6),
                "turn_id": turn.id,
            },
        )
        tx.record_operation(operation)
        result.relationship_ids.append(edge.id)
        result.operations.append(operation)
        return result

    def store_turn(
        self,
        tx: GraphTransaction,
        turn: WorkingMemoryTurn,
        session_id: str,
        significance_score: float,
    ) -> str:
        tx.merge_session(session_id, _iso(self._clock()))
        tokens = turn.tokens if turn.tokens is not None else estimate_text_tokens(turn.text)
        tx.insert_turn(turn, session_id, float(significance_score), tokens)
        logger.info(
            "turn_stored",
            turn_id=turn.id,
            session_id=session_id,
            tokens=tokens,
            significance_score=round(float(significance_score), 4),
        )
        return turn.id

    def ingest(
        self,
        tx: GraphTransaction,
        turn: WorkingMemoryTurn,
        session_id: str,
        *,
        events: Iterable[ExtractedEvent] = (),
        emotions: Mapping[str, EmotionState] | None = None,
        significance_score: float | None = None,
    ) -> IngestionResult:
        """Writes emotional state, facts, relationships and the turn through one transaction."""
        result = IngestionResult(turn_id=turn.id)
        score = turn.significance_score if significance_score is None else significance_score

        self.store_turn(tx, turn, session_id, score)

        for character_id, emotion in (emotions or {}).items():
            started = time.perf_counter()
            self.upsert_character(tx, character_id, emotion.current, emotion=emotion, session_id=session_id)
            operation = self._operation(
                "update",
                "L3",
                "upsertCharacter",
                started,
                {
                    "character_id": character_id,
                    "mode": emotion.mode.value,
                    "turns": emotion.meta.turns,
                },
            )
            tx.record_operation(operation)
            result.operations.append(operation)

        for event in events:
            if event.type is EventType.RELATIONSHIP_CHANGE:
                written = self.process_relationship(tx, event, turn, session_id)
                result.relationship_ids.extend(written.relationship_ids)
                result.operations.extend(written.operations)
            elif event.type is EventType.FACT_ASSERTION:
                facts = self.process_fact(tx, event, turn, session_id)
                result.fact_ids.extend(facts.fact_ids)
                result.operations.extend(facts.operations)
        return result
