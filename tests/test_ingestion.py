import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from tiermem.affect import VAD, PersonalityTraits, initialize_state
from tiermem.graph_store import SqliteGraphStore
from tiermem.ingestion import (
    ImportanceWeights,
    IngestionPipeline,
    blend_confidence,
    compute_importance,
    infer_attribute,
    infer_relationship_type,
)
from tiermem.models import EventType, ExtractedEvent, WorkingMemoryTurn


class _Clock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def _turn(text, session_id="s1", **kwargs):
    return WorkingMemoryTurn(session_id=session_id, speaker_id="narrator", text=text, **kwargs)


def _fact(description, entities=("Alice",), confidence=0.6, **kwargs):
    return ExtractedEvent(
        type=EventType.FACT_ASSERTION,
        entities_involved=list(entities),
        description=description,
        confidence=confidence,
        **kwargs,
    )


def _relationship(description, entities=("Alice", "Bob"), confidence=0.5, **kwargs):
    return ExtractedEvent(
        type=EventType.RELATIONSHIP_CHANGE,
        entities_involved=list(entities),
        description=description,
        confidence=confidence,
        **kwargs,
    )


class TestImportanceScoring(unittest.TestCase):
    def test_blend_favours_recent_assertion(self):
        self.assertAlmostEqual(blend_confidence(0.6, 0.9, 0.6), 0.78)
        self.assertEqual(blend_confidence(0.2, 0.2, 0.6), 0.2)

    def test_importance_rises_with_confidence_and_frequency(self):
        weights = ImportanceWeights()
        low = compute_importance(0.3, 1, 0.0, weights)
        confident = compute_importance(0.9, 1, 0.0, weights)
        repeated = compute_importance(0.3, 8, 0.0, weights)
        self.assertGreater(confident, low)
        self.assertGreater(repeated, low)
        self.assertLessEqual(compute_importance(1.0, 1000, 0.0, weights), 10.0)

    def test_recency_term_decays_with_gap(self):
        weights = ImportanceWeights(half_life_hours=24.0)
        fresh = compute_importance(0.5, 2, 0.0, weights)
        stale = compute_importance(0.5, 2, 240.0, weights)
        self.assertLess(stale, fresh)


class TestAttributeInference(unittest.TestCase):
    def test_possessive_attribute(self):
        self.assertEqual(infer_attribute(_fact("Alice's favorite color is blue.")), ("favorite color", "blue"))

    def test_pattern_attributes(self):
        self.assertEqual(infer_attribute(_fact("Bob lives in Paris.")), ("location", "Paris"))
        self.assertEqual(infer_attribute(_fact("Carol works as an engineer")), ("occupation", "engineer"))
        self.assertEqual(infer_attribute(_fact("Alice feels anxious")), ("mood", "anxious"))

    def test_explicit_attribute_wins(self):
        event = _fact("Alice mentioned her age", attribute="age", value="31")
        self.assertEqual(infer_attribute(event), ("age", "31"))

    def test_unmatched_description_is_kept_whole(self):
        self.assertEqual(infer_attribute(_fact("Dave waved")), ("description", "Dave waved"))

    def test_relationship_type_inference(self):
        self.assertEqual(infer_relationship_type(_relationship("Alice is Bob's sister")), "family")
        self.assertEqual(infer_relationship_type(_relationship("Alice betrayed Bob")), "enemy")
        self.assertEqual(infer_relationship_type(_relationship("They met", relationship_type="Old Flame")), "old_flame")
        self.assertEqual(infer_relationship_type(_relationship("They met")), "related_to")


class TestIngestionPipeline(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = SqliteGraphStore(Path(self.tmp.name) / "graph.sqlite")
        self.clock = _Clock()
        self.pipeline = IngestionPipeline(clock=self.clock)

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    def _ingest(self, turn, events=(), emotions=None):
        with self.store.transaction() as tx:
            return self.pipeline.ingest(
                tx,
                turn,
                turn.session_id,
                events=events,
                emotions=emotions,
                significance_score=5.0,
            )

    def test_reasserted_fact_merges_into_one_node(self):
        first = self._ingest(_turn("Alice feels anxious."), [_fact("Alice feels anxious", confidence=0.6)])
        with self.store.read() as tx:
            before = tx.find_fact("Alice", "mood")

        self.clock.advance(minutes=5)
        second = self._ingest(_turn("Alice feels calm now."), [_fact("Alice feels calm", confidence=0.9)])

        with self.store.read() as tx:
            after = tx.find_fact("alice", "MOOD")
            history = tx.fact_history(after.id)
            counts = tx.counts()

        self.assertEqual(first.fact_ids, second.fact_ids)
        self.assertEqual(counts["facts"], 1)
        self.assertEqual(after.current_value, "calm")
        self.assertAlmostEqual(after.confidence, 0.78)
        self.assertEqual(after.assertion_count, 2)
        self.assertGreater(after.importance_score, before.importance_score)
        self.assertEqual(after.created_at, before.created_at)
        self.assertEqual([v.value for v in history], ["anxious", "calm"])

    def test_fact_operations_are_recorded(self):
        self._ingest(_turn("Alice feels anxious."), [_fact("Alice feels anxious")])
        result = self._ingest(_turn("Alice feels calm."), [_fact("Alice feels calm")])
        op = result.operations[-1]
        self.assertEqual((op.type, op.layer, op.operation), ("update", "L2", "updateFact"))
        with self.store.read() as tx:
            names = [o.operation for o in tx.recent_operations(10)]
        self.assertIn("createFact", names)
        self.assertIn("updateFact", names)

    def test_one_fact_per_entity(self):
        result = self._ingest(
            _turn("Alice and Bob are tired."),
            [_fact("Alice and Bob feel tired", entities=("Alice", "Bob", "Alice"))],
        )
        self.assertEqual(len(result.fact_ids), 2)

    def test_relationship_merge_reinforces_strength(self):
        first = self._ingest(_turn("Alice and Bob became friends."), [_relationship("Alice is Bob's friend")])
        second = self._ingest(_turn("Alice helped Bob again."), [_relationship("Alice is Bob's friend")])
        self.assertEqual(first.relationship_ids, second.relationship_ids)
        with self.store.read() as tx:
            edge = tx.find_relationship("alice", "bob", "friend")
            counts = tx.counts()
        self.assertEqual(counts["relationships"], 1)
        self.assertAlmostEqual(edge.strength, 0.55)

    def test_relationship_needs_two_entities(self):
        result = self._ingest(_turn("Alice is lonely."), [_relationship("Alice is lonely", entities=("Alice",))])
        self.assertEqual(result.relationship_ids, [])

    def test_other_event_types_are_not_facts(self):
        peak = ExtractedEvent(type=EventType.EMOTIONAL_PEAK, entities_involved=["Alice"], description="Alice screams")
        result = self._ingest(_turn("Alice screams!"), [peak])
        self.assertEqual(result.fact_ids, [])
        self.assertEqual(result.relationship_ids, [])

    def test_turn_is_stored_with_tokens(self):
        self._ingest(_turn("It rained all night.", tokens=7))
        self._ingest(_turn("Morning came."))
        with self.store.read() as tx:
            turns = tx.recent_turns("s1", 10)
        self.assertEqual([t["text"] for t in turns], ["It rained all night.", "Morning came."])
        self.assertEqual(turns[0]["tokens"], 7)
        self.assertGreater(turns[1]["tokens"], 0)
        self.assertEqual(turns[0]["significance_score"], 5.0)

    def test_emotion_states_are_persisted_and_linked(self):
        state = initialize_state(VAD(0.2, 0.0, 0.0), PersonalityTraits(volatility=0.3))
        result = self._ingest(_turn("Alice smiles."), emotions={"character:alice": state})
        self.assertEqual(result.operations[0].operation, "upsertCharacter")
        self.assertEqual(result.operations[0].layer, "L3")
        with self.store.read() as tx:
            self.assertEqual(tx.get_emotion_state("character:alice"), state)
            character = tx.get_character("character:alice")
            linked = tx.fetch_characters(session_id="s1", limit=10)
        self.assertEqual(character.name, "alice")
        self.assertAlmostEqual(character.emotional_state.valence, 0.2)
        self.assertEqual([c.id for c in linked], ["character:alice"])

    def test_failed_transaction_leaves_no_partial_writes(self):
        with self.assertRaises(RuntimeError):
            with self.store.transaction() as tx:
                self.pipeline.ingest(
                    tx,
                    _turn("Alice feels anxious."),
                    "s1",
                    events=[_fact("Alice feels anxious"), _relationship("Alice is Bob's friend")],
                )
                raise RuntimeError("extractor crashed")
        with self.store.read() as tx:
            counts = tx.counts()
        self.assertEqual(counts["facts"], 0)
        self.assertEqual(counts["relationships"], 0)
        self.assertEqual(counts["turns"], 0)
        self.assertEqual(counts["memory_operations"], 0)


if __name__ == "__main__":
    unittest.main()
