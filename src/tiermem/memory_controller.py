"""
Tiered memory controller facade.

Wires the affect engine, ingestion pipeline, retrieval engine and vector index
around an injected graph store:
- ``ingest_turn``: affect update + all graph writes in one store transaction,
  then embeddings are indexed (independently committed)
- ``retrieve_context``: validated, read-only retrieval against the last commit
- ``inspect``: node counts, vector totals and metrics for diagnostics
"""
from __future__ import annotations

import threading
import time
from typing import Any, Iterable, Mapping, Sequence

from .affect import VAD, AffectInput, EmotionState, PersonalityTraits, initialize_state
from .config import METRICS_LOG_DIR, VECTOR_SAVE_EVERY_N_TURNS
from .errors import VectorIndexError
from .graph_store import GraphStore
from .ingestion import IngestionPipeline, IngestionResult
from .metrics import MemoryMetrics
from .models import ExtractedEvent, FactVersion, MemoryOperation, MemoryRetrievalQuery, RetrievalBatch, WorkingMemoryTurn
from .modes import AffectEngine
from .observability import get_logger
from .retrieval import RetrievalEngine, coerce_query, vector_label
from .vector_index import VectorIndex

logger = get_logger(__name__)


class MemoryController:
    """Per-turn orchestration over explicitly injected collaborators."""

    def __init__(
        self,
        store: GraphStore,
        *,
        vector_index: VectorIndex | None = None,
        affect_engine: AffectEngine | None = None,
        ingestion: IngestionPipeline | None = None,
        retrieval: RetrievalEngine | None = None,
        metrics: MemoryMetrics | None = None,
        default_baseline: VAD | None = None,
        default_traits: PersonalityTraits | None = None,
        save_every_n_turns: int = VECTOR_SAVE_EVERY_N_TURNS,
    ):
        self.store = store
        self.vector_index = vector_index.initialize() if vector_index is not None else None
        self.affect_engine = affect_engine or AffectEngine()
        self.ingestion = ingestion or IngestionPipeline()
        self.retrieval = retrieval or RetrievalEngine(self.vector_index)
        self.metrics = metrics or MemoryMetrics(METRICS_LOG_DIR)
        self.default_baseline = default_baseline or VAD()
        self.default_traits = default_traits or PersonalityTraits()
        self.save_every_n_turns = max(1, int(save_every_n_turns))
        self._pending_index_turns = 0
        self._index_lock = threading.Lock()
        self._closed = False

    # ------------------------------------------------------------------
    # Characters
    # ------------------------------------------------------------------
    def create_character(
        self,
        character_id: str,
        *,
        baseline: VAD | Mapping[str, float] | None = None,
        traits: PersonalityTraits | Mapping[str, Any] | None = None,
        name: str | None = None,
        session_id: str | None = None,
    ) -> EmotionState:
        """Creates the character's affect state once; an existing state is returned unchanged."""
        state = initialize_state(
            baseline if baseline is not None else self.default_baseline,
            traits if traits is not None else self.default_traits,
            self.affect_engine.config,
        )
        with self.store.transaction() as tx:
            existing = tx.get_emotion_state(character_id)
            if existing is not None:
                return existing
            self.ingestion.upsert_character(
                tx,
                character_id,
                state.current,
                emotion=state,
                session_id=session_id,
                name=name,
            )
        logger.info("character_created", character_id=character_id, mode=state.mode.value)
        return state

    def get_emotion_state(self, character_id: str) -> EmotionState | None:
        with self.store.read() as tx:
            return tx.get_emotion_state(character_id)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------
    def ingest_turn(
        self,
        turn: WorkingMemoryTurn,
        *,
        events: Iterable[ExtractedEvent] = (),
        affect_input: AffectInput | None = None,
        character_ids: Sequence[str] | None = None,
        significance_score: float | None = None,
        embedding: Sequence[float] | None = None,
    ) -> IngestionResult:
        events = list(events)
        if character_ids is None:
            character_ids = [turn.character_id] if turn.character_id else []
        if affect_input is None:
            affect_input = AffectInput(
                text=turn.text,
                event_descriptions=tuple(e.description for e in events if e.description),
            )
        score = turn.significance_score if significance_score is None else float(significance_score)

        perf_start = time.perf_counter()
        try:
            with self.store.transaction() as tx:
                emotions: dict[str, EmotionState] = {}
                updates = {}
                transitions = {}
                for character_id in dict.fromkeys(character_ids):
                    state = tx.get_emotion_state(character_id) or initialize_state(
                        self.default_baseline,
                        self.default_traits,
                        self.affect_engine.config,
                    )
                    update, transition = self.affect_engine.step(
                        state,
                        affect_input,
                        extras={"significance_score": score, "turn_id": turn.id},
                    )
                    emotions[character_id] = update.state
                    updates[character_id] = update
                    transitions[character_id] = transition

                result = self.ingestion.ingest(
                    tx,
                    turn,
                    turn.session_id,
                    events=events,
                    emotions=emotions,
                    significance_score=score,
                )
                result.affect_updates = updates
                result.transitions = transitions
        except Exception as exc:
            elapsed_ms = (time.perf_counter() - perf_start) * 1000
            self.metrics.record_ingest(elapsed_ms, False)
            logger.error("turn_ingest_failed", turn_id=turn.id, session_id=turn.session_id, error=str(exc))
            raise

        elapsed_ms = (time.perf_counter() - perf_start) * 1000
        self.metrics.record_ingest(elapsed_ms, True, len(result.fact_ids))
        logger.info(
            "turn_ingested",
            turn_id=turn.id,
            session_id=turn.session_id,
            facts=len(result.fact_ids),
            relationships=len(result.relationship_ids),
            characters=len(result.affect_updates),
            elapsed_ms=round(elapsed_ms, 3),
        )

        if embedding is not None and self.vector_index is not None:
            self._index_embedding(embedding, result)
        return result

    def _index_embedding(self, embedding: Sequence[float], result: IngestionResult):
        labels = (
            [vector_label("fact", fact_id) for fact_id in result.fact_ids]
            + [vector_label("relationship", rel_id) for rel_id in result.relationship_ids]
            + [vector_label("character", character_id) for character_id in result.affect_updates]
        )
        if not labels:
            return
        try:
            self.vector_index.add([list(embedding)] * len(labels), labels)
        except VectorIndexError as exc:
            # Graph writes are already committed; the index is allowed to lag.
            logger.warning("vector_index_add_failed", turn_id=result.turn_id, error=str(exc))
            return

        with self._index_lock:
            self._pending_index_turns += 1
            due = self._pending_index_turns >= self.save_every_n_turns
            if due:
                self._pending_index_turns = 0
        if due:
            try:
                self.vector_index.save()
            except VectorIndexError as exc:
                logger.error("vector_index_periodic_save_failed", error=str(exc))

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------
    def retrieve_context(self, query: MemoryRetrievalQuery | Mapping[str, Any]) -> RetrievalBatch:
        query = coerce_query(query)
        perf_start = time.perf_counter()
        try:
            with self.store.read() as tx:
                batch = self.retrieval.retrieve(tx, query)
        except Exception:
            self.metrics.record_retrieve((time.perf_counter() - perf_start) * 1000, False)
            raise
        self.metrics.record_retrieve(
            (time.perf_counter() - perf_start) * 1000,
            True,
            tokens=batch.token_count,
            degraded=batch.degraded,
            below_floor=batch.below_floor,
        )
        return batch

    def recent_turns(self, session_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        with self.store.read() as tx:
            if limit is None:
                return self.retrieval.recent_turns(tx, session_id)
            return self.retrieval.recent_turns(tx, session_id, limit)

    def fact_history(self, entity: str, attribute: str) -> list[FactVersion]:
        with self.store.read() as tx:
            fact = tx.find_fact(entity, attribute)
            return tx.fact_history(fact.id) if fact is not None else []

    def recent_operations(self, limit: int = 50) -> list[MemoryOperation]:
        with self.store.read() as tx:
            return tx.recent_operations(limit)

    # ------------------------------------------------------------------
    # Diagnostics and lifecycle
    # ------------------------------------------------------------------
    def inspect(self) -> dict[str, Any]:
        with self.store.read() as tx:
            counts = tx.counts()
        return {
            "graph": counts,
            "vectors": self.vector_index.ntotal if self.vector_index is not None else 0,
            "metrics": self.metrics.get_summary(),
        }

    def save_index(self):
        if self.vector_index is not None:
            self.vector_index.save()
            with self._index_lock:
                self._pending_index_turns = 0

    def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            self.save_index()
        finally:
            self.store.close()
