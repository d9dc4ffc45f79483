"""Neo4j-backed graph store exposing the same transaction surface as SQLite."""
from __future__ import annotations

import json
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

from neo4j import READ_ACCESS, WRITE_ACCESS, GraphDatabase

from .affect import VAD, EmotionState, Mode
from .config import NEO4J_DATABASE, NEO4J_PASSWORD, NEO4J_URI, NEO4J_USER
from .models import (
    Character,
    FactNode,
    FactVersion,
    MemoryOperation,
    RelationshipEdge,
    WorkingMemoryTurn,
)
from .observability import get_logger

logger = get_logger(__name__)

SCHEMA_STATEMENTS = (
    "CREATE CONSTRAINT character_id IF NOT EXISTS FOR (c:Character) REQUIRE c.id IS UNIQUE",
    "CREATE CONSTRAINT session_id IF NOT EXISTS FOR (s:Session) REQUIRE s.id IS UNIQUE",
    "CREATE CONSTRAINT fact_id IF NOT EXISTS FOR (f:Fact) REQUIRE f.id IS UNIQUE",
    "CREATE CONSTRAINT entity_key IF NOT EXISTS FOR (e:Entity) REQUIRE e.key IS UNIQUE",
    "CREATE CONSTRAINT fact_identity IF NOT EXISTS FOR (f:Fact) REQUIRE (f.entity_key, f.attribute_key) IS UNIQUE",
    "CREATE CONSTRAINT relationship_identity IF NOT EXISTS FOR ()-[r:RELATES_TO]-() REQUIRE r.identity_key IS UNIQUE",
    "CREATE INDEX turn_timestamp IF NOT EXISTS FOR (t:Turn) ON (t.timestamp)",
)


def _key(value: str) -> str:
    return " ".join(str(value or "").split()).casefold()


def _relationship_identity(from_entity: str, to_entity: str, relationship_type: str) -> str:
    return "|".join((_key(from_entity), _key(to_entity), relationship_type))


def _character(props: dict[str, Any]) -> Character:
    mode = props.get("mode")
    return Character(
        id=props["id"],
        name=props.get("name") or props["id"],
        emotional_state=VAD(
            float(props.get("valence", 0.0)),
            float(props.get("arousal", 0.0)),
            float(props.get("dominance", 0.0)),
        ),
        created_at=props.get("created_at", ""),
        last_updated=props.get("last_updated", ""),
        mode=Mode(mode) if mode else None,
    )


def _fact(props: dict[str, Any]) -> FactNode:
    return FactNode(
        id=props["id"],
        entity=props["entity"],
        attribute=props["attribute"],
        current_value=props.get("current_value", ""),
        confidence=float(props.get("confidence", 0.0)),
        importance_score=float(props.get("importance_score", 0.0)),
        created_at=props.get("created_at", ""),
        last_updated=props.get("last_updated", ""),
        assertion_count=int(props.get("assertion_count", 1)),
        session_id=props.get("session_id"),
    )


def _relationship(props: dict[str, Any]) -> RelationshipEdge:
    return RelationshipEdge(
        id=props["id"],
        from_entity=props["from_entity"],
        to_entity=props["to_entity"],
        relationship_type=props["relationship_type"],
        strength=float(props.get("strength", 0.0)),
        created_at=props.get("created_at", ""),
        last_updated=props.get("last_updated", ""),
        session_id=props.get("session_id"),
    )


_RELATIONSHIP_PROJECTION = "r {.*, from_entity: a.name, to_entity: b.name} AS r"


class Neo4jGraphTransaction:
    """Record-level graph operations expressed as Cypher inside one driver transaction."""

    def __init__(self, tx: Any):
        self._tx = tx

    def _run(self, query: str, **parameters: Any) -> list[dict[str, Any]]:
        result = self._tx.run(query, parameters)
        return [record.data() for record in result]

    # --- writes ---
    def merge_session(self, session_id: str, now: str):
        self._run(
            """
            MERGE (s:Session {id: $session_id})
            ON CREATE SET s.started_at = $now
            SET s.last_active_at = $now
            """,
            session_id=session_id,
            now=now,
        )

    def upsert_character(
        self,
        character_id: str,
        name: str,
        vad: VAD,
        now: str,
        *,
        emotion: EmotionState | None = None,
    ):
        self._run(
            """
            MERGE (c:Character {id: $id})
            ON CREATE SET c.created_at = $now, c.name = $name
            SET c.valence = $valence,
                c.arousal = $arousal,
                c.dominance = $dominance,
                c.mode = coalesce($mode, c.mode),
                c.affect_json = coalesce($affect_json, c.affect_json),
                c.last_updated = $now
            """,
            id=character_id,
            name=name,
            now=now,
            valence=vad.valence,
            arousal=vad.arousal,
            dominance=vad.dominance,
            mode=emotion.mode.value if emotion is not None else None,
            affect_json=json.dumps(emotion.to_dict(), ensure_ascii=True) if emotion is not None else None,
        )

    def link_character_session(self, character_id: str, session_id: str, now: str):
        self._run(
            """
            MATCH (c:Character {id: $character_id})
            MATCH (s:Session {id: $session_id})
            MERGE (s)-[r:FEATURES]->(c)
            ON CREATE SET r.first_seen_at = $now
            """,
            character_id=character_id,
            session_id=session_id,
            now=now,
        )

    def insert_fact(self, fact: FactNode):
        self._run(
            """
            CREATE (f:Fact {
                id: $id, entity: $entity, entity_key: $entity_key,
                attribute: $attribute, attribute_key: $attribute_key,
                current_value: $current_value, confidence: $confidence,
                importance_score: $importance_score, assertion_count: $assertion_count,
                session_id: $session_id, created_at: $created_at, last_updated: $last_updated
            })
            """,
            id=fact.id,
            entity=fact.entity,
            entity_key=_key(fact.entity),
            attribute=fact.attribute,
            attribute_key=_key(fact.attribute),
            current_value=fact.current_value,
            confidence=fact.confidence,
            importance_score=fact.importance_score,
            assertion_count=fact.assertion_count,
            session_id=fact.session_id,
            created_at=fact.created_at,
            last_updated=fact.last_updated,
        )

    def update_fact(self, fact: FactNode):
        self._run(
            """
            MATCH (f:Fact {id: $id})
            SET f.current_value = $current_value,
                f.confidence = $confidence,
                f.importance_score = $importance_score,
                f.assertion_count = $assertion_count,
                f.session_id = $session_id,
                f.last_updated = $last_updated
            """,
            id=fact.id,
            current_value=fact.current_value,
            confidence=fact.confidence,
            importance_score=fact.importance_score,
            assertion_count=fact.assertion_count,
            session_id=fact.session_id,
            last_updated=fact.last_updated,
        )

    def append_fact_version(self, version: FactVersion):
        self._run(
            """
            MATCH (f:Fact {id: $fact_id})
            CREATE (f)-[:HAS_VERSION]->(:FactVersion {
                value: $value, confidence: $confidence, recorded_at: $recorded_at, turn_id: $turn_id
            })
            """,
            fact_id=version.fact_id,
            value=version.value,
            confidence=version.confidence,
            recorded_at=version.recorded_at,
            turn_id=version.turn_id,
        )

    def insert_turn(self, turn: WorkingMemoryTurn, session_id: str, significance_score: float, tokens: int):
        self._run(
            """
            MATCH (s:Session {id: $session_id})
            CREATE (t:Turn {
                id: $id, session_id: $session_id, speaker_id: $speaker_id, character_id: $character_id,
                text: $text, timestamp: $timestamp, tokens: $tokens, significance_score: $significance_score
            })
            CREATE (s)-[:HAS_TURN]->(t)
            """,
            id=turn.id,
            session_id=session_id,
            speaker_id=turn.speaker_id,
            character_id=turn.character_id,
            text=turn.text,
            timestamp=turn.timestamp,
            tokens=int(tokens),
            significance_score=float(significance_score),
        )

    def insert_relationship(self, edge: RelationshipEdge):
        self._run(
            """
            MERGE (a:Entity {key: $from_key}) ON CREATE SET a.name = $from_entity
            MERGE (b:Entity {key: $to_key}) ON CREATE SET b.name = $to_entity
            CREATE (a)-[:RELATES_TO {
                id: $id, identity_key: $identity_key, relationship_type: $relationship_type, strength: $strength,
                session_id: $session_id, created_at: $created_at, last_updated: $last_updated
            }]->(b)
            """,
            id=edge.id,
            identity_key=_relationship_identity(edge.from_entity, edge.to_entity, edge.relationship_type),
            from_key=_key(edge.from_entity),
            from_entity=edge.from_entity,
            to_key=_key(edge.to_entity),
            to_entity=edge.to_entity,
            relationship_type=edge.relationship_type,
            strength=edge.strength,
            session_id=edge.session_id,
            created_at=edge.created_at,
            last_updated=edge.last_updated,
        )

    def update_relationship(self, edge: RelationshipEdge):
        self._run(
            """
            MATCH ()-[r:RELATES_TO {id: $id}]->()
            SET r.strength = $strength, r.session_id = $session_id, r.last_updated = $last_updated
            """,
            id=edge.id,
            strength=edge.strength,
            session_id=edge.session_id,
            last_updated=edge.last_updated,
        )

    def record_operation(self, operation: MemoryOperation):
        self._run(
            """
            CREATE (:MemoryOperation {
                id: $id, type: $type, layer: $layer, operation: $operation,
                timestamp: $timestamp, duration_ms: $duration_ms, details_json: $details_json
            })
            """,
            id=operation.id,
            type=operation.type,
            layer=operation.layer,
            operation=operation.operation,
            timestamp=operation.timestamp,
            duration_ms=operation.duration_ms,
            details_json=json.dumps(operation.details, ensure_ascii=True, default=str),
        )

    # --- reads ---
    def get_character(self, character_id: str) -> Character | None:
        rows = self._run("MATCH (c:Character {id: $id}) RETURN c {.*} AS c", id=character_id)
        return _character(rows[0]["c"]) if rows else None

    def get_emotion_state(self, character_id: str) -> EmotionState | None:
        rows = self._run(
            "MATCH (c:Character {id: $id}) RETURN c.affect_json AS affect_json",
            id=character_id,
        )
        if not rows or not rows[0].get("affect_json"):
            return None
        return EmotionState.from_dict(json.loads(rows[0]["affect_json"]))

    def find_fact(self, entity: str, attribute: str) -> FactNode | None:
        rows = self._run(
            """
            MATCH (f:Fact {entity_key: $entity_key, attribute_key: $attribute_key})
            RETURN f {.*} AS f
            LIMIT 1
            """,
            entity_key=_key(entity),
            attribute_key=_key(attribute),
        )
        return _fact(rows[0]["f"]) if rows else None

    def find_relationship(self, from_entity: str, to_entity: str, relationship_type: str) -> RelationshipEdge | None:
        rows = self._run(
            f"""
            MATCH (a:Entity {{key: $from_key}})-[r:RELATES_TO {{relationship_type: $relationship_type}}]->(b:Entity {{key: $to_key}})
            RETURN {_RELATIONSHIP_PROJECTION}
            LIMIT 1
            """,
            from_key=_key(from_entity),
            to_key=_key(to_entity),
            relationship_type=relationship_type,
        )
        return _relationship(rows[0]["r"]) if rows else None

    def fetch_characters(
        self,
        *,
        session_id: str,
        character_id: str | None = None,
        text: str | None = None,
        ids: Sequence[str] = (),
        limit: int,
    ) -> list[Character]:
        if ids:
            where = "c.id IN $ids AND ($character_id IS NULL OR c.id = $character_id)"
        elif character_id:
            where = "c.id = $character_id"
        else:
            where = (
                "EXISTS { MATCH (:Session {id: $session_id})-[:FEATURES]->(c) }"
                " OR ($text IS NOT NULL AND toLower(c.name) CONTAINS $text)"
            )
        rows = self._run(
            f"""
            MATCH (c:Character)
            WHERE {where}
            RETURN c {{.*}} AS c
            ORDER BY c.last_updated DESC
            LIMIT $limit
            """,
            ids=list(ids),
            character_id=character_id,
            session_id=session_id,
            text=_key(text) if text else None,
            limit=max(1, int(limit)),
        )
        return [_character(row["c"]) for row in rows]

    def fetch_facts(
        self,
        *,
        session_id: str,
        entities: Sequence[str] = (),
        text: str | None = None,
        ids: Sequence[str] = (),
        limit: int,
    ) -> list[FactNode]:
        entity_keys = [_key(e) for e in entities]
        if ids:
            where = "f.id IN $ids"
        elif entity_keys:
            where = "true"
        else:
            where = (
                "(f.session_id = $session_id OR ($text IS NOT NULL AND ("
                "f.entity_key CONTAINS $text OR f.attribute_key CONTAINS $text"
                " OR toLower(f.current_value) CONTAINS $text)))"
            )
        if entity_keys:
            where += " AND f.entity_key IN $entity_keys"
        rows = self._run(
            f"""
            MATCH (f:Fact)
            WHERE {where}
            RETURN f {{.*}} AS f
            ORDER BY f.importance_score DESC, f.confidence DESC, f.last_updated DESC
            LIMIT $limit
            """,
            ids=list(ids),
            entity_keys=entity_keys,
            session_id=session_id,
            text=_key(text) if text else None,
            limit=max(1, int(limit)),
        )
        return [_fact(row["f"]) for row in rows]

    def fetch_relationships(
        self,
        *,
        session_id: str,
        entities: Sequence[str] = (),
        text: str | None = None,
        ids: Sequence[str] = (),
        limit: int,
    ) -> list[RelationshipEdge]:
        entity_keys = [_key(e) for e in entities]
        if ids:
            where = "r.id IN $ids"
        elif entity_keys:
            where = "true"
        else:
            where = (
                "(r.session_id = $session_id OR ($text IS NOT NULL AND ("
                "a.key CONTAINS $text OR b.key CONTAINS $text"
                " OR toLower(r.relationship_type) CONTAINS $text)))"
            )
        if entity_keys:
            where += " AND (a.key IN $entity_keys OR b.key IN $entity_keys)"
        rows = self._run(
            f"""
            MATCH (a:Entity)-[r:RELATES_TO]->(b:Entity)
            WHERE {where}
            RETURN {_RELATIONSHIP_PROJECTION}
            ORDER BY r.strength DESC, r.last_updated DESC
            LIMIT $limit
            """,
            ids=list(ids),
            entity_keys=entity_keys,
            session_id=session_id,
            text=_key(text) if text else None,
            limit=max(1, int(limit)),
        )
        return [_relationship(row["r"]) for row in rows]

    def recent_turns(self, session_id: str, limit: int) -> list[dict[str, Any]]:
        rows = self._run(
            """
            MATCH (:Session {id: $session_id})-[:HAS_TURN]->(t:Turn)
            RETURN t {.id, .speaker_id, .character_id, .text, .timestamp, .tokens, .significance_score} AS t
            ORDER BY t.timestamp DESC
            LIMIT $limit
            """,
            session_id=session_id,
            limit=max(1, int(limit)),
        )
        turns = [row["t"] for row in rows]
        turns.reverse()
        return turns

    def fact_history(self, fact_id: str) -> list[FactVersion]:
        rows = self._run(
            """
            MATCH (:Fact {id: $fact_id})-[:HAS_VERSION]->(v:FactVersion)
            RETURN v {.*} AS v
            ORDER BY v.recorded_at ASC
            """,
            fact_id=fact_id,
        )
        return [
            FactVersion(fact_id, row["v"]["value"], float(row["v"]["confidence"]), row["v"]["recorded_at"], row["v"].get("turn_id"))
            for row in rows
        ]

    def recent_operations(self, limit: int) -> list[MemoryOperation]:
        rows = self._run(
            """
            MATCH (o:MemoryOperation)
            RETURN o {.*} AS o
            ORDER BY o.timestamp DESC
            LIMIT $limit
            """,
            limit=max(1, int(limit)),
        )
        return [
            MemoryOperation(
                id=o["id"],
                type=o["type"],
                layer=o["layer"],
                operation=o["operation"],
                timestamp=o["timestamp"],
                duration_ms=float(o["duration_ms"]),
                details=json.loads(o.get("details_json") or "{}"),
            )
            for o in (row["o"] for row in rows)
        ]

    def counts(self) -> dict[str, int]:
        rows = self._run(
            """
            CALL { MATCH (n:Session) RETURN count(n) AS sessions }
            CALL { MATCH (n:Character) RETURN count(n) AS characters }
            CALL { MATCH (n:Turn) RETURN count(n) AS turns }
            CALL { MATCH (n:Fact) RETURN count(n) AS facts }
            CALL { MATCH ()-[r:RELATES_TO]->() RETURN count(r) AS relationships }
            CALL { MATCH (n:MemoryOperation) RETURN count(n) AS memory_operations }
            RETURN sessions, characters, turns, facts, relationships, memory_operations
            """
        )
        return {key: int(value) for key, value in (rows[0] if rows else {}).items()}


class Neo4jGraphStore:
    """Graph store over a synchronous Neo4j driver; each unit of work is one explicit transaction."""

    def __init__(
        self,
        uri: str = NEO4J_URI,
        user: str = NEO4J_USER,
        password: str = NEO4J_PASSWORD,
        database: str | None = NEO4J_DATABASE,
        *,
        driver: Any = None,
    ):
        self._driver = driver if driver is not None else GraphDatabase.driver(uri, auth=(user, password))
        self._database = database

    def ensure_schema(self):
        with self.transaction() as tx:
            for statement in SCHEMA_STATEMENTS:
                tx._run(statement)
        logger.info("neo4j_schema_ensured", statements=len(SCHEMA_STATEMENTS))

    @contextmanager
    def transaction(self) -> Iterator[Neo4jGraphTransaction]:
        if self._driver is None:
            raise RuntimeError("graph store connection is closed")
        session = self._driver.session(database=self._database, default_access_mode=WRITE_ACCESS)
        try:
            tx = session.begin_transaction()
            try:
                yield Neo4jGraphTransaction(tx)
                tx.commit()
            except Exception:
                tx.rollback()
                raise
        finally:
            session.close()

    @contextmanager
    def read(self) -> Iterator[Neo4jGraphTransaction]:
        if self._driver is None:
            raise RuntimeError("graph store connection is closed")
        session = self._driver.session(database=self._database, default_access_mode=READ_ACCESS)
        try:
            tx = session.begin_transaction()
            try:
                yield Neo4jGraphTransaction(tx)
            finally:
                tx.close()
        finally:
            session.close()

    def close(self):
        if self._driver is None:
            return
        self._driver.close()
        self._driver = None
