"""
Relevance-ranked, token-budgeted retrieval over long-term memory.

Implements:
- bounded graph reads per category (characters, facts, relationships) scoped to the
  session or to one character
- semantic bias from the vector index when the query carries an embedding
- a composite relevance score for the retrieved batch
- a per-field token estimate and tail-first truncation to the query's budget

A failing vector index degrades the call to graph-only results.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from pydantic import ValidationError

from .config import (
    MEMORY_PERF_TRACE,
    RELEVANCE_CHARACTER_WEIGHT,
    RELEVANCE_FACT_WEIGHT,
    RELEVANCE_RELATIONSHIP_WEIGHT,
    RETRIEVAL_RECENT_TURNS,
    RETRIEVAL_RELEVANCE_FLOOR,
    RETRIEVAL_SCOPE_BONUS,
    RETRIEVAL_TEXT_MATCH_BONUS,
    RETRIEVAL_VECTOR_K,
    console,
)
from .errors import InvalidQueryError, VectorIndexError
from .graph_store import GraphTransaction
from .models import (
    Character,
    FactNode,
    MemoryRetrievalQuery,
    RelationshipEdge,
    RetrievalBatch,
    character_name,
)
from .observability import get_logger
from .tokenization import word_token_estimate
from .vector_index import VectorIndex

logger = get_logger(__name__)

# Per-entity field weights sum to 50 (character), 30 (fact) and 25 (relationship).
TOKEN_FIELD_WEIGHTS: dict[str, dict[str, int]] = {
    "character": {"id": 6, "name": 4, "emotional_state": 24, "created_at": 8, "last_updated": 8},
    "fact": {
        "id": 6,
        "entity": 3,
        "attribute": 3,
        "current_value": 8,
        "confidence": 2,
        "importance_score": 2,
        "last_updated": 6,
    },
    "relationship": {
        "id": 6,
        "from_entity": 3,
        "to_entity": 3,
        "relationship_type": 3,
        "strength": 2,
        "last_updated": 8,
    },
}
TEXT_FIELDS = frozenset({"name", "entity", "attribute", "current_value", "from_entity", "to_entity", "relationship_type"})

LABEL_SEPARATOR = "|"
# Tail-drop preference when scores tie: facts go first, characters last.
_DROP_PRIORITY = {"facts": 0, "relationships": 1, "characters": 2}


def vector_label(kind: str, record_id: str) -> str:
    return f"{kind}{LABEL_SEPARATOR}{record_id}"


def coerce_query(query: MemoryRetrievalQuery | Mapping[str, Any]) -> MemoryRetrievalQuery:
    if isinstance(query, MemoryRetrievalQuery):
        return query
    try:
        return MemoryRetrievalQuery.model_validate(dict(query))
    except (ValidationError, TypeError, ValueError) as exc:
        raise InvalidQueryError(f"invalid retrieval query: {exc}") from exc


@dataclass(frozen=True)
class RelevanceWeights:
    fact: float = RELEVANCE_FACT_WEIGHT
    relationship: float = RELEVANCE_RELATIONSHIP_WEIGHT
    character: float = RELEVANCE_CHARACTER_WEIGHT
    scope_bonus: float = RETRIEVAL_SCOPE_BONUS
    text_match_bonus: float = RETRIEVAL_TEXT_MATCH_BONUS
    floor: float = RETRIEVAL_RELEVANCE_FLOOR


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def fact_quality(fact: FactNode) -> float:
    return (min(10.0, max(0.0, fact.importance_score)) / 10.0 + fact.confidence) / 2.0


def _contains(haystack: str, needle: str | None) -> bool:
    return bool(needle) and needle.casefold() in str(haystack or "").casefold()


class RetrievalEngine:
    """Assembles the slice of long-term memory relevant to one query."""

    def __init__(
        self,
        vector_index: VectorIndex | None = None,
        weights: RelevanceWeights | None = None,
        *,
        vector_k: int = RETRIEVAL_VECTOR_K,
        token_weights: Mapping[str, Mapping[str, int]] = TOKEN_FIELD_WEIGHTS,
    ):
        self.vector_index = vector_index
        self.weights = weights or RelevanceWeights()
        self.vector_k = max(1, int(vector_k))
        self.token_weights = token_weights

    # ------------------------------------------------------------------
    # Semantic candidates
    # ------------------------------------------------------------------
    def _semantic_hits(self, query: MemoryRetrievalQuery) -> tuple[dict[str, dict[str, float]], bool]:
        """Maps kind -> {record id: similarity}; the flag reports a degraded index."""
        if not query.embedding or self.vector_index is None:
            return {}, False
        try:
            result = self.vector_index.search([query.embedding], self.vector_k)
        except VectorIndexError as exc:
            logger.warning("vector_search_degraded", session_id=query.session_id, error=str(exc))
            return {}, True

        hits: dict[str, dict[str, float]] = {}
        for distance, label in zip(result["distances"][0], result["labels"][0]):
            kind, _, record_id = str(label).partition(LABEL_SEPARATOR)
            if not record_id:
                continue
            similarity = max(0.0, 1.0 - float(distance) / 2.0)
            bucket = hits.setdefault(kind, {})
            bucket[record_id] = max(bucket.get(record_id, 0.0), similarity)
        return hits, False

    def _scope_entities(self, tx: GraphTransaction, query: MemoryRetrievalQuery) -> list[str]:
        if not query.character_id:
            return []
        entities = [query.character_id, character_name(query.character_id)]
        character = tx.get_character(query.character_id)
        if character is not None:
            entities.append(character.name)
        return list(dict.fromkeys(e for e in entities if e))

    # ------------------------------------------------------------------
    # Per-category retrieval
    # ------------------------------------------------------------------
    def _rank_characters(self, tx, query, hits) -> list[Character]:
        semantic = hits.get("character", {})
        candidates = tx.fetch_characters(
            session_id=query.session_id,
            character_id=query.character_id,
            text=query.query_text,
            limit=query.limits.characters,
        )
        if semantic:
            candidates += tx.fetch_characters(
                session_id=query.session_id,
                character_id=query.character_id,
                ids=list(semantic),
                limit=len(semantic),
            )
        unique = {c.id: c for c in candidates}
        for character in unique.values():
            score = semantic.get(character.id, 0.0)
            if query.character_id and character.id == query.character_id:
                score += self.weights.scope_bonus
            if _contains(character.name, query.query_text):
                score += self.weights.text_match_bonus
            character.score = score
        ranked = sorted(unique.values(), key=lambda c: (c.score, c.last_updated), reverse=True)
        return ranked[: query.limits.characters]

    def _rank_facts(self, tx, query, hits, entities) -> list[FactNode]:
        semantic = hits.get("fact", {})
        candidates = tx.fetch_facts(
            session_id=query.session_id,
            entities=entities,
            text=query.query_text,
            limit=query.limits.facts,
        )
        if semantic:
            candidates += tx.fetch_facts(
                session_id=query.session_id,
                entities=entities,
                ids=list(semantic),
                limit=len(semantic),
            )
        unique = {f.id: f for f in candidates}
        for fact in unique.values():
            score = semantic.get(fact.id, 0.0) + fact_quality(fact)
            if query.query_text and any(
                _contains(value, query.query_text) for value in (fact.entity, fact.attribute, fact.current_value)
            ):
                score += self.weights.text_match_bonus
            fact.score = score
        ranked = sorted(
            unique.values(),
            key=lambda f: (f.score, f.importance_score, f.confidence, f.last_updated),
            reverse=True,
        )
        return ranked[: query.limits.facts]

    def _rank_relationships(self, tx, query, hits, entities) -> list[RelationshipEdge]:
        semantic = hits.get("relationship", {})
        candidates = tx.fetch_relationships(
            session_id=query.session_id,
            entities=entities,
            text=query.query_text,
            limit=query.limits.relationships,
        )
        if semantic:
            candidates += tx.fetch_relationships(
                session_id=query.session_id,
                entities=entities,
                ids=list(semantic),
                limit=len(semantic),
            )
        unique = {r.id: r for r in candidates}
        for edge in unique.values():
            score = semantic.get(edge.id, 0.0) + edge.strength
            if query.query_text and any(
                _contains(value, query.query_text)
                for value in (edge.from_entity, edge.to_entity, edge.relationship_type)
            ):
                score += self.weights.text_match_bonus
            edge.score = score
        ranked = sorted(unique.values(), key=lambda r: (r.score, r.strength, r.last_updated), reverse=True)
        return ranked[: query.limits.relationships]

    def retrieve_relevant_characters(self, tx: GraphTransaction, query) -> list[Character]:
        query = coerce_query(query)
        hits, _ = self._semantic_hits(query)
        return self._rank_characters(tx, query, hits)

    def retrieve_relevant_facts(self, tx: GraphTransaction, query) -> list[FactNode]:
        query = coerce_query(query)
        hits, _ = self._semantic_hits(query)
        return self._rank_facts(tx, query, hits, self._scope_entities(tx, query))

    def retrieve_relevant_relationships(self, tx: GraphTransaction, query) -> list[RelationshipEdge]:
        query = coerce_query(query)
        hits, _ = self._semantic_hits(query)
        return self._rank_relationships(tx, query, hits, self._scope_entities(tx, query))

    def recent_turns(self, tx: GraphTransaction, session_id: str, limit: int = RETRIEVAL_RECENT_TURNS) -> list[dict]:
        return tx.recent_turns(session_id, max(1, int(limit)))

    # ------------------------------------------------------------------
    # Scoring and budget
    # ------------------------------------------------------------------
    def calculate_relevance_score(
        self,
        characters: Sequence[Character],
        facts: Sequence[FactNode],
        relationships: Sequence[RelationshipEdge],
        *,
        character_id: str | None = None,
    ) -> float:
        fact_term = _mean([fact_quality(f) for f in facts])
        relationship_term = _mean([min(1.0, max(0.0, r.strength)) for r in relationships])
        if character_id:
            presence = 1.0 if any(c.id == character_id for c in characters) else 0.0
        else:
            presence = 1.0 if characters else 0.0
        total = (
            self.weights.fact * fact_term
            + self.weights.relationship * relationship_term
            + self.weights.character * presence
        )
        return round(min(1.0, max(0.0, total)), 6)

    def _entry_tokens(self, kind: str, record: Any) -> int:
        total = 0
        for field_name, weight in self.token_weights[kind].items():
            if field_name in TEXT_FIELDS:
                total += max(int(weight), word_token_estimate(getattr(record, field_name, "")))
            else:
                total += int(weight)
        return total

    def estimate_token_count(
        self,
        characters: Sequence[Character],
        facts: Sequence[FactNode],
        relationships: Sequence[RelationshipEdge],
    ) -> int:
        return (
            sum(self._entry_tokens("character", c) for c in characters)
            + sum(self._entry_tokens("fact", f) for f in facts)
            + sum(self._entry_tokens("relationship", r) for r in relationships)
        )

    def truncate_to_budget(
        self,
        characters: Sequence[Character],
        facts: Sequence[FactNode],
        relationships: Sequence[RelationshipEdge],
        max_tokens: int,
    ) -> tuple[list[Character], list[FactNode], list[RelationshipEdge], int]:
        """
        Drops lowest-ranked entries until the estimate fits ``max_tokens``.
        Only list tails are removed, so survivors keep their relative order.
        """
        lists: dict[str, list[Any]] = {
            "characters": list(characters),
            "facts": list(facts),
            "relationships": list(relationships),
        }
        kinds = {"characters": "character", "facts": "fact", "relationships": "relationship"}
        total = self.estimate_token_count(lists["characters"], lists["facts"], lists["relationships"])
        dropped = 0
        budget = max(0, int(max_tokens))
        while total > budget:
            tails = [name for name, items in lists.items() if items]
            if not tails:
                break
            victim = min(tails, key=lambda name: (lists[name][-1].score, _DROP_PRIORITY[name]))
            record = lists[victim].pop()
            total -= self._entry_tokens(kinds[victim], record)
            dropped += 1
        return lists["characters"], lists["facts"], lists["relationships"], dropped

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------
    def retrieve(self, tx: GraphTransaction, query: MemoryRetrievalQuery | Mapping[str, Any]) -> RetrievalBatch:
        query = coerce_query(query)
        perf_start = time.perf_counter()

        hits, degraded = self._semantic_hits(query)
        entities = self._scope_entities(tx, query)
        characters = self._rank_characters(tx, query, hits)
        facts = self._rank_facts(tx, query, hits, entities)
        relationships = self._rank_relationships(tx, query, hits, entities)

        characters, facts, relationships, dropped = self.truncate_to_budget(
            characters, facts, relationships, query.max_tokens
        )
        relevance = self.calculate_relevance_score(
            characters, facts, relationships, character_id=query.character_id
        )
        floor = self.weights.floor if query.min_relevance is None else query.min_relevance
        batch = RetrievalBatch(
            characters=characters,
            facts=facts,
            relationships=relationships,
            relevance_score=relevance,
            token_count=self.estimate_token_count(characters, facts, relationships),
            dropped=dropped,
            degraded=degraded,
            below_floor=relevance < floor,
        )

        elapsed_ms = (time.perf_counter() - perf_start) * 1000
        logger.info(
            "memory_retrieved",
            session_id=query.session_id,
            character_id=query.character_id,
            characters=len(characters),
            facts=len(facts),
            relationships=len(relationships),
            tokens=batch.token_count,
            dropped=dropped,
            relevance=relevance,
            degraded=degraded,
            elapsed_ms=round(elapsed_ms, 3),
        )
        if MEMORY_PERF_TRACE:
            console.print(
                f"[dim][perf] retrieve: {elapsed_ms:.1f} ms "
                f"(characters={len(characters)}, facts={len(facts)}, relationships={len(relationships)}, "
                f"tokens={batch.token_count}, dropped={dropped})[/dim]"
            )
        return batch
