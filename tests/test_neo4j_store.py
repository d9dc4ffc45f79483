import json
import unittest

from neo4j import READ_ACCESS, WRITE_ACCESS

from tiermem.affect import VAD, PersonalityTraits, initialize_state
from tiermem.ingestion import IngestionPipeline
from tiermem.models import EventType, ExtractedEvent, RelationshipEdge, WorkingMemoryTurn
from tiermem.neo4j_store import Neo4jGraphStore, Neo4jGraphTransaction


class DuplicateKey(Exception):
    pass


class FakeRecord:
    def __init__(self, data):
        self._data = data

    def data(self):
        return dict(self._data)


class FakeTx:
    """Records Cypher calls; ``responses`` maps a query fragment to the rows it returns."""

    def __init__(self, responses=None, fail_on=None):
        self.responses = responses or {}
        self.fail_on = fail_on
        self.calls = []
        self.committed = False
        self.rolled_back = False
        self.closed = False

    def run(self, query, parameters=None):
        self.calls.append((" ".join(query.split()), dict(parameters or {})))
        if self.fail_on and self.fail_on in query:
            raise DuplicateKey(self.fail_on)
        for fragment, rows in self.responses.items():
            if fragment in query:
                return [FakeRecord(row) for row in rows]
        return []

    def commit(self):
        self.committed = True

    def rollback(self):
        self.rolled_back = True

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, tx):
        self.tx = tx
        self.closed = False

    def begin_transaction(self):
        return self.tx

    def close(self):
        self.closed = True


class FakeDriver:
    def __init__(self, tx=None):
        self.tx = tx or FakeTx()
        self.sessions = []
        self.closed = False

    def session(self, **kwargs):
        session = FakeSession(self.tx)
        self.sessions.append((kwargs, session))
        return session

    def close(self):
        self.closed = True


class TestNeo4jGraphStore(unittest.TestCase):
    def setUp(self):
        self.driver = FakeDriver()
        self.store = Neo4jGraphStore(database="memory", driver=self.driver)

    def test_transaction_commits_on_success(self):
        with self.store.transaction() as tx:
            tx.merge_session("s1", "2024-05-01T12:00:00+00:00")
        kwargs, session = self.driver.sessions[0]
        self.assertEqual(kwargs, {"database": "memory", "default_access_mode": WRITE_ACCESS})
        self.assertTrue(self.driver.tx.committed)
        self.assertFalse(self.driver.tx.rolled_back)
        self.assertTrue(session.closed)

    def test_transaction_rolls_back_on_error(self):
        with self.assertRaises(ValueError):
            with self.store.transaction() as tx:
                tx.merge_session("s1", "now")
                raise ValueError("boom")
        self.assertTrue(self.driver.tx.rolled_back)
        self.assertFalse(self.driver.tx.committed)
        self.assertTrue(self.driver.sessions[0][1].closed)

    def test_read_never_commits(self):
        with self.store.read() as tx:
            tx.counts()
        kwargs, session = self.driver.sessions[0]
        self.assertEqual(kwargs["default_access_mode"], READ_ACCESS)
        self.assertFalse(self.driver.tx.committed)
        self.assertTrue(self.driver.tx.closed)
        self.assertTrue(session.closed)

    def test_closed_store_refuses_work(self):
        self.store.close()
        self.assertTrue(self.driver.closed)
        with self.assertRaises(RuntimeError):
            with self.store.transaction():
                pass

    def test_ensure_schema_runs_constraints(self):
        self.store.ensure_schema()
        statements = [query for query, _ in self.driver.tx.calls]
        self.assertTrue(all(s.startswith("CREATE") for s in statements))
        self.assertTrue(self.driver.tx.committed)

    def test_schema_enforces_fact_and_relationship_identity(self):
        self.store.ensure_schema()
        statements = [query for query, _ in self.driver.tx.calls]
        self.assertIn(
            "CREATE CONSTRAINT fact_identity IF NOT EXISTS FOR (f:Fact) REQUIRE (f.entity_key, f.attribute_key) IS UNIQUE",
            statements,
        )
        self.assertTrue(any("[r:RELATES_TO]" in s and "r.identity_key IS UNIQUE" in s for s in statements))
        self.assertFalse(any(s.startswith("CREATE INDEX fact_identity") for s in statements))

    def test_duplicate_fact_rolls_back_whole_turn(self):
        driver = FakeDriver(FakeTx(fail_on="CREATE (f:Fact"))
        store = Neo4jGraphStore(driver=driver)
        turn = WorkingMemoryTurn(session_id="s1", speaker_id="narrator", text="Alice feels calm.")
        event = ExtractedEvent(
            type=EventType.FACT_ASSERTION,
            entities_involved=["Alice"],
            description="Alice feels calm",
            confidence=0.8,
        )
        with self.assertRaises(DuplicateKey):
            with store.transaction() as tx:
                IngestionPipeline().ingest(tx, turn, "s1", events=[event])
        self.assertTrue(driver.tx.rolled_back)
        self.assertFalse(driver.tx.committed)


class TestNeo4jGraphTransaction(unittest.TestCase):
    def test_find_fact_maps_record(self):
        tx = FakeTx(
            {
                "MATCH (f:Fact {entity_key": [
                    {
                        "f": {
                            "id": "fact:1",
                            "entity": "Alice",
                            "attribute": "mood",
                            "current_value": "calm",
                            "confidence": 0.7,
                            "importance_score": 6.1,
                            "created_at": "t0",
                            "last_updated": "t1",
                            "assertion_count": 3,
                            "session_id": "s1",
                        }
                    }
                ]
            }
        )
        fact = Neo4jGraphTransaction(tx).find_fact("  ALICE ", "Mood")
        self.assertEqual(fact.id, "fact:1")
        self.assertEqual(fact.assertion_count, 3)
        self.assertEqual(tx.calls[0][1], {"entity_key": "alice", "attribute_key": "mood"})

    def test_missing_records_map_to_none(self):
        graph = Neo4jGraphTransaction(FakeTx())
        self.assertIsNone(graph.find_fact("Alice", "mood"))
        self.assertIsNone(graph.get_character("character:alice"))
        self.assertIsNone(graph.get_emotion_state("character:alice"))

    def test_emotion_state_round_trips_through_properties(self):
        state = initialize_state(VAD(0.2, 0.1, 0.0), PersonalityTraits(reserved=True))
        writer = FakeTx()
        Neo4jGraphTransaction(writer).upsert_character("character:alice", "Alice", state.current, "now", emotion=state)
        params = writer.calls[0][1]
        self.assertEqual(params["mode"], state.mode.value)
        self.assertAlmostEqual(params["valence"], 0.2)

        reader = FakeTx({"affect_json": [{"affect_json": params["affect_json"]}]})
        self.assertEqual(Neo4jGraphTransaction(reader).get_emotion_state("character:alice"), state)

    def test_recent_turns_are_chronological(self):
        tx = FakeTx({"HAS_TURN": [{"t": {"id": "t2", "text": "later"}}, {"t": {"id": "t1", "text": "earlier"}}]})
        turns = Neo4jGraphTransaction(tx).recent_turns("s1", 5)
        self.assertEqual([t["id"] for t in turns], ["t1", "t2"])

    def test_fetch_facts_scopes_to_entities(self):
        tx = FakeTx()
        Neo4jGraphTransaction(tx).fetch_facts(session_id="s1", entities=["Alice"], limit=5)
        query, params = tx.calls[0]
        self.assertIn("f.entity_key IN $entity_keys", query)
        self.assertEqual(params["entity_keys"], ["alice"])
        self.assertEqual(params["limit"], 5)

    def test_relationship_carries_identity_key(self):
        tx = FakeTx()
        edge = RelationshipEdge("rel:1", " Alice ", "BOB", "friend", 0.5, "t0", "t0", "s1")
        Neo4jGraphTransaction(tx).insert_relationship(edge)
        query, params = tx.calls[0]
        self.assertIn("identity_key: $identity_key", query)
        self.assertEqual(params["identity_key"], "alice|bob|friend")

    def test_ingestion_pipeline_writes_cypher(self):
        tx = FakeTx()
        graph = Neo4jGraphTransaction(tx)
        turn = WorkingMemoryTurn(session_id="s1", speaker_id="narrator", text="Alice feels calm.")
        event = ExtractedEvent(
            type=EventType.FACT_ASSERTION,
            entities_involved=["Alice"],
            description="Alice feels calm",
            confidence=0.8,
        )
        result = IngestionPipeline().ingest(graph, turn, "s1", events=[event])

        queries = [query for query, _ in tx.calls]
        self.assertTrue(any(q.startswith("MERGE (s:Session") for q in queries))
        self.assertTrue(any("CREATE (t:Turn" in q for q in queries))
        self.assertTrue(any(q.startswith("CREATE (f:Fact") for q in queries))
        self.assertTrue(any("HAS_VERSION" in q for q in queries))
        operation = [p for q, p in tx.calls if "MemoryOperation" in q][0]
        self.assertEqual(operation["operation"], "createFact")
        self.assertEqual(json.loads(operation["details_json"])["fact_id"], result.fact_ids[0])


if __name__ == "__main__":
    unittest.main()
