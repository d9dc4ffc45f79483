import tempfile
import unittest
from pathlib import Path

from tiermem.affect import VAD, initialize_state
from tiermem.errors import InvalidQueryError, VectorIndexError
from tiermem.graph_store import SqliteGraphStore
from tiermem.ingestion import IngestionPipeline
from tiermem.models import (
    Character,
    EventType,
    ExtractedEvent,
    FactNode,
    MemoryRetrievalQuery,
    RelationshipEdge,
    WorkingMemoryTurn,
)
from tiermem.retrieval import RetrievalEngine, coerce_query, vector_label
from tiermem.vector_index import VectorIndex

NOW = "2024-05-01T12:00:00.000+00:00"


def _character(score, name="Alice"):
    c = Character(f"character:{name.lower()}", name, VAD(), NOW, NOW)
    c.score = score
    return c


def _fact_node(score, entity="Alice", importance=5.0, confidence=0.5):
    f = FactNode(f"fact:{entity}:{score}", entity, "mood", "calm", confidence, importance, NOW, NOW)
    f.score = score
    return f


def _edge(score, strength=0.5):
    r = RelationshipEdge(f"rel:{score}", "Alice", "Bob", "friend", strength, NOW, NOW)
    r.score = score
    return r


class _BrokenIndex:
    def search(self, embeddings, k):
        raise VectorIndexError("index file is corrupt")


class TestBudgetAndScoring(unittest.TestCase):
    def setUp(self):
        self.engine = RetrievalEngine()

    def test_token_estimate_uses_entry_weights(self):
        self.assertEqual(self.engine.estimate_token_count([_character(1)], [], []), 50)
        self.assertEqual(self.engine.estimate_token_count([], [_fact_node(1)], []), 30)
        self.assertEqual(self.engine.estimate_token_count([], [], [_edge(1)]), 25)

    def test_long_text_fields_cost_more(self):
        long_fact = _fact_node(1)
        long_fact.current_value = " ".join(["word"] * 40)
        self.assertGreater(self.engine.estimate_token_count([], [long_fact], []), 30)

    def test_truncation_drops_lowest_scored_tails(self):
        characters = [_character(5.0)]
        facts = [_fact_node(3.0), _fact_node(2.0), _fact_node(1.0)]
        relationships = [_edge(2.5), _edge(0.5)]

        c, f, r, dropped = self.engine.truncate_to_budget(characters, facts, relationships, 120)

        self.assertEqual(dropped, 3)
        self.assertEqual([x.score for x in c], [5.0])
        self.assertEqual([x.score for x in f], [3.0])
        self.assertEqual([x.score for x in r], [2.5])
        self.assertEqual(self.engine.estimate_token_count(c, f, r), 105)

    def test_truncation_prefers_dropping_facts_on_ties(self):
        c, f, r, dropped = self.engine.truncate_to_budget([], [_fact_node(1.0)], [_edge(1.0)], 40)
        self.assertEqual(dropped, 1)
        self.assertEqual(f, [])
        self.assertEqual(len(r), 1)

    def test_truncation_within_budget_is_noop(self):
        facts = [_fact_node(2.0), _fact_node(1.0)]
        c, f, r, dropped = self.engine.truncate_to_budget([], facts, [], 1000)
        self.assertEqual(dropped, 0)
        self.assertEqual(f, facts)

    def test_relevance_score_combines_categories(self):
        score = self.engine.calculate_relevance_score(
            [_character(1.0)],
            [_fact_node(1.0, importance=10.0, confidence=1.0)],
            [_edge(1.0, strength=0.5)],
            character_id="character:alice",
        )
        self.assertAlmostEqual(score, 0.85)

    def test_relevance_requires_requested_character(self):
        score = self.engine.calculate_relevance_score([_character(1.0, "Bob")], [], [], character_id="character:alice")
        self.assertEqual(score, 0.0)
        self.assertEqual(self.engine.calculate_relevance_score([], [], []), 0.0)


class TestQueryValidation(unittest.TestCase):
    def test_blank_session_is_rejected(self):
        with self.assertRaises(InvalidQueryError):
            coerce_query({"session_id": "   "})

    def test_non_positive_budget_is_rejected(self):
        with self.assertRaises(InvalidQueryError):
            coerce_query({"session_id": "s1", "max_tokens": 0})
        with self.assertRaises(ValueError):
            coerce_query({"session_id": "s1", "limits": {"facts": 0}})

    def test_empty_embedding_is_rejected(self):
        with self.assertRaises(InvalidQueryError):
            coerce_query({"session_id": "s1", "embedding": []})

    def test_valid_mapping_is_coerced(self):
        query = coerce_query({"session_id": " s1 ", "query_text": "paris"})
        self.assertIsInstance(query, MemoryRetrievalQuery)
        self.assertEqual(query.session_id, "s1")


class TestGraphRetrieval(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = SqliteGraphStore(Path(self.tmp.name) / "graph.sqlite")
        self.pipeline = IngestionPipeline()
        self.engine = RetrievalEngine()

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    def _write(self, session_id, events=(), emotions=None):
        turn = WorkingMemoryTurn(session_id=session_id, speaker_id="narrator", text="...")
        with self.store.transaction() as tx:
            return self.pipeline.ingest(tx, turn, session_id, events=events, emotions=emotions)

    def _fact(self, session_id, entity, attribute, value, confidence=0.6):
        event = ExtractedEvent(
            type=EventType.FACT_ASSERTION,
            entities_involved=[entity],
            description=f"{entity} {attribute}",
            confidence=confidence,
            attribute=attribute,
            value=value,
        )
        return self._write(session_id, [event]).fact_ids[0]

    def _retrieve(self, **query):
        query.setdefault("session_id", "s1")
        with self.store.read() as tx:
            return self.engine.retrieve(tx, query)

    def test_empty_memory_returns_empty_batch(self):
        batch = self._retrieve()
        self.assertTrue(batch.is_empty)
        self.assertEqual(batch.relevance_score, 0.0)
        self.assertTrue(batch.below_floor)
        self.assertFalse(batch.degraded)

    def test_facts_are_ranked_and_limited(self):
        self._fact("s1", "Alice", "mood", "calm", confidence=0.3)
        self._fact("s1", "Bob", "mood", "tense", confidence=0.95)
        self._fact("s1", "Carol", "mood", "tired", confidence=0.6)
        batch = self._retrieve(limits={"facts": 2})
        self.assertEqual([f.entity for f in batch.facts], ["Bob", "Carol"])

    def test_session_scope_excludes_other_sessions(self):
        self._fact("s1", "Alice", "location", "Paris")
        self._fact("s2", "Bob", "location", "Rome")
        batch = self._retrieve()
        self.assertEqual([f.entity for f in batch.facts], ["Alice"])

    def test_query_text_reaches_other_sessions(self):
        self._fact("s2", "Bob", "location", "Rome")
        batch = self._retrieve(query_text="rome")
        self.assertEqual([f.entity for f in batch.facts], ["Bob"])

    def test_character_scope_restricts_results(self):
        state = initialize_state(VAD())
        self._write("s1", emotions={"character:alice": state, "character:bob": state})
        self._fact("s1", "Alice", "mood", "calm")
        self._fact("s1", "Bob", "mood", "tense")
        rel = ExtractedEvent(
            type=EventType.RELATIONSHIP_CHANGE,
            entities_involved=["Bob", "Carol"],
            description="Bob is Carol's colleague",
            confidence=0.7,
        )
        self._write("s1", [rel])

        batch = self._retrieve(character_id="character:alice")
        self.assertEqual([c.id for c in batch.characters], ["character:alice"])
        self.assertEqual([f.entity for f in batch.facts], ["Alice"])
        self.assertEqual(batch.relationships, [])

        with self.store.read() as tx:
            rels = self.engine.retrieve_relevant_relationships(tx, {"session_id": "s1", "character_id": "character:bob"})
        self.assertEqual([r.to_entity for r in rels], ["Carol"])

    def test_budget_is_enforced(self):
        for i in range(10):
            self._fact("s1", f"Person{i}", "mood", "calm")
        batch = self._retrieve(max_tokens=100)
        self.assertLessEqual(batch.token_count, 100)
        self.assertEqual(len(batch.facts), 3)
        self.assertEqual(batch.dropped, 7)

    def test_recent_turns_are_chronological(self):
        for text in ("one", "two", "three"):
            turn = WorkingMemoryTurn(session_id="s1", speaker_id="narrator", text=text)
            with self.store.transaction() as tx:
                self.pipeline.store_turn(tx, turn, "s1", 1.0)
        with self.store.read() as tx:
            turns = self.engine.recent_turns(tx, "s1", 2)
        self.assertEqual([t["text"] for t in turns], ["two", "three"])

    def test_vector_hits_bias_ranking(self):
        index = VectorIndex(Path(self.tmp.name) / "vectors", dimension=3).initialize()
        engine = RetrievalEngine(index)
        weak = self._fact("s1", "Alice", "hobby", "chess", confidence=0.3)
        self._fact("s1", "Bob", "hobby", "rowing", confidence=0.95)
        remote = self._fact("s2", "Dana", "hobby", "sailing", confidence=0.5)
        index.add([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]], [vector_label("fact", weak), vector_label("fact", remote)])

        with self.store.read() as tx:
            batch = engine.retrieve(tx, {"session_id": "s1", "embedding": [1.0, 0.0, 0.0]})

        ids = [f.id for f in batch.facts]
        self.assertEqual(ids[0], weak)
        self.assertIn(remote, ids)
        self.assertFalse(batch.degraded)

    def test_broken_index_degrades_to_graph_only(self):
        self._fact("s1", "Alice", "mood", "calm")
        engine = RetrievalEngine(_BrokenIndex())
        with self.store.read() as tx:
            batch = engine.retrieve(tx, {"session_id": "s1", "embedding": [0.1, 0.2, 0.3]})
        self.assertTrue(batch.degraded)
        self.assertEqual([f.entity for f in batch.facts], ["Alice"])


if __name__ == "__main__":
    unittest.main()
