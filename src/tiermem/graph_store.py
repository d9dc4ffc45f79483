"""
Graph store abstraction for long-term memory records.

The ingestion and retrieval engines only see two capabilities:
- ``GraphStore.transaction()``: run a unit of work atomically
- ``GraphStore.read()``: execute a read against the last committed state

Both yield a ``GraphTransaction`` exposing record-level operations. The default
implementation is embedded SQLite; ``neo4j_store.Neo4jGraphStore`` targets Neo4j.
"""
from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, ContextManager, Iterator, Protocol, Sequence

from .affect import VAD, EmotionState, Mode
from .config import DB_PATH
from .db_migrations import SqliteMigration, apply_sqlite_migrations
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


class GraphTransaction(Protocol):
    # --- writes ---
    def merge_session(self, session_id: str, now: str):
        ...

    def upsert_character(
        self,
        character_id: str,
        name: str,
        vad: VAD,
        now: str,
        *,
        emotion: EmotionState | None = None,
    ):
        ...

    def link_character_session(self, character_id: str, session_id: str, now: str):
        ...

    def insert_fact(self, fact: FactNode):
        ...

    def update_fact(self, fact: FactNode):
        ...

    def append_fact_version(self, version: FactVersion):
        ...

    def insert_turn(self, turn: WorkingMemoryTurn, session_id: str, significance_score: float, tokens: int):
        ...

    def insert_relationship(self, edge: RelationshipEdge):
        ...

    def update_relationship(self, edge: RelationshipEdge):
        ...

    def record_operation(self, operation: MemoryOperation):
        ...

    # --- reads ---
    def get_character(self, character_id: str) -> Character | None:
        ...

    def get_emotion_state(self, character_id: str) -> EmotionState | None:
        ...

    def find_fact(self, entity: str, attribute: str) -> FactNode | None:
        ...

    def find_relationship(self, from_entity: str, to_entity: str, relationship_type: str) -> RelationshipEdge | None:
        ...

    def fetch_characters(
        self,
        *,
        session_id: str,
        character_id: str | None = None,
        text: str | None = None,
        ids: Sequence[str] = (),
        limit: int,
    ) -> list[Character]:
        ...

    def fetch_facts(
        self,
        *,
        session_id: str,
        entities: Sequence[str] = (),
        text: str | None = None,
        ids: Sequence[str] = (),
        limit: int,
    ) -> list[FactNode]:
        ...

    def fetch_relationships(
        self,
        *,
        session_id: str,
        entities: Sequence[str] = (),
        text: str | None = None,
        ids: Sequence[str] = (),
        limit: int,
    ) -> list[RelationshipEdge]:
        ...

    def recent_turns(self, session_id: str, limit: int) -> list[dict[str, Any]]:
        ...

    def fact_history(self, fact_id: str) -> list[FactVersion]:
        ...

    def recent_operations(self, limit: int) -> list[MemoryOperation]:
        ...

    def counts(self) -> dict[str, int]:
        ...


class GraphStore(Protocol):
    def transaction(self) -> ContextManager[GraphTransaction]:
        ...

    def read(self) -> ContextManager[GraphTransaction]:
        ...

    def close(self):
        ...


# ------------------------------------------------------------------------------
# SQLite implementation
# ------------------------------------------------------------------------------
def _key(value: str) -> str:
    return " ".join(str(value or "").split()).casefold()


def _vad_from_row(row: sqlite3.Row) -> VAD:
    return VAD(float(row["valence"]), float(row["arousal"]), float(row["dominance"]))


def _character_from_row(row: sqlite3.Row) -> Character:
    mode = row["mode"]
    return Character(
        id=row["id"],
        name=row["name"],
        emotional_state=_vad_from_row(row),
        created_at=row["created_at"],
        last_updated=row["last_updated"],
        mode=Mode(mode) if mode else None,
    )


def _fact_from_row(row: sqlite3.Row) -> FactNode:
    return FactNode(
        id=row["id"],
        entity=row["entity"],
        attribute=row["attribute"],
        current_value=row["current_value"],
        confidence=float(row["confidence"]),
        importance_score=float(row["importance_score"]),
        created_at=row["created_at"],
        last_updated=row["last_updated"],
        assertion_count=int(row["assertion_count"]),
        session_id=row["session_id"],
    )


def _relationship_from_row(row: sqlite3.Row) -> RelationshipEdge:
    return RelationshipEdge(
        id=row["id"],
        from_entity=row["from_entity"],
        to_entity=row["to_entity"],
        relationship_type=row["relationship_type"],
        strength=float(row["strength"]),
        created_at=row["created_at"],
        last_updated=row["last_updated"],
        session_id=row["session_id"],
    )


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


SQLITE_MIGRATIONS = [
    SqliteMigration(
        version=1,
        name="create_memory_graph_tables",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                started_at TEXT NOT NULL,
                last_active_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS characters (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                valence REAL NOT NULL DEFAULT 0,
                arousal REAL NOT NULL DEFAULT 0,
                dominance REAL NOT NULL DEFAULT 0,
                mode TEXT,
                affect_json TEXT,
                created_at TEXT NOT NULL,
                last_updated TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS character_sessions (
                character_id TEXT NOT NULL,
                session_id TEXT NOT NULL,
                first_seen_at TEXT NOT NULL,
                PRIMARY KEY(character_id, session_id),
                FOREIGN KEY(character_id) REFERENCES characters(id),
                FOREIGN KEY(session_id) REFERENCES sessions(session_id)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS turns (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                speaker_id TEXT NOT NULL,
                character_id TEXT,
                text TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                tokens INTEGER NOT NULL DEFAULT 0,
                significance_score REAL NOT NULL DEFAULT 0,
                FOREIGN KEY(session_id) REFERENCES sessions(session_id)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS facts (
                id TEXT PRIMARY KEY,
                entity TEXT NOT NULL,
                entity_key TEXT NOT NULL,
                attribute TEXT NOT NULL,
                attribute_key TEXT NOT NULL,
                current_value TEXT NOT NULL,
                confidence REAL NOT NULL,
                importance_score REAL NOT NULL,
                assertion_count INTEGER NOT NULL DEFAULT 1,
                session_id TEXT,
                created_at TEXT NOT NULL,
                last_updated TEXT NOT NULL,
                UNIQUE(entity_key, attribute_key)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS fact_versions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                fact_id TEXT NOT NULL,
                value TEXT NOT NULL,
                confidence REAL NOT NULL,
                recorded_at TEXT NOT NULL,
                turn_id TEXT,
                FOREIGN KEY(fact_id) REFERENCES facts(id)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS relationships (
                id TEXT PRIMARY KEY,
                from_entity TEXT NOT NULL,
                from_key TEXT NOT NULL,
                to_entity TEXT NOT NULL,
                to_key TEXT NOT NULL,
                relationship_type TEXT NOT NULL,
                strength REAL NOT NULL,
                session_id TEXT,
                created_at TEXT NOT NULL,
                last_updated TEXT NOT NULL,
                UNIQUE(from_key, to_key, relationship_type)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS memory_operations (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL CHECK(type IN ('write', 'update')),
                layer TEXT NOT NULL,
                operation TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                duration_ms REAL NOT NULL,
                details_json TEXT NOT NULL DEFAULT '{}'
            )
            """,
        ),
    ),
    SqliteMigration(
        version=2,
        name="create_memory_graph_indexes",
        statements=(
            "CREATE INDEX IF NOT EXISTS idx_turns_session_time ON turns(session_id, timestamp)",
            "CREATE INDEX IF NOT EXISTS idx_facts_session ON facts(session_id)",
            "CREATE INDEX IF NOT EXISTS idx_facts_importance ON facts(importance_score, last_updated)",
            "CREATE INDEX IF NOT EXISTS idx_fact_versions_fact ON fact_versions(fact_id)",
            "CREATE INDEX IF NOT EXISTS idx_relationships_session ON relationships(session_id)",
            "CREATE INDEX IF NOT EXISTS idx_operations_timestamp ON memory_operations(timestamp)",
        ),
    ),
]


class SqliteGraphTransaction:
    """Record-level graph operations bound to one SQLite connection."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    # --- writes ---
    def merge_session(self, session_id: str, now: str):
        self._conn.execute(
            """
            INSERT INTO sessions (session_id, started_at, last_active_at)
            VALUES (?, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET last_active_at = excluded.last_active_at
            """,
            (session_id, now, now),
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
        affect_json = json.dumps(emotion.to_dict(), ensure_ascii=True) if emotion is not None else None
        mode = emotion.mode.value if emotion is not None else None
        self._conn.execute(
            """
            INSERT INTO characters (id, name, valence, arousal, dominance, mode, affect_json, created_at, last_updated)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                valence = excluded.valence,
                arousal = excluded.arousal,
                dominance = excluded.dominance,
                mode = COALESCE(excluded.mode, characters.mode),
                affect_json = COALESCE(excluded.affect_json, characters.affect_json),
                last_updated = excluded.last_updated
            """,
            (character_id, name, vad.valence, vad.arousal, vad.dominance, mode, affect_json, now, now),
        )

    def link_character_session(self, character_id: str, session_id: str, now: str):
        self._conn.execute(
            """
            INSERT OR IGNORE INTO character_sessions (character_id, session_id, first_seen_at)
            VALUES (?, ?, ?)
            """,
            (character_id, session_id, now),
        )

    def insert_fact(self, fact: FactNode):
        self._conn.execute(
            """
            INSERT INTO facts (
                id, entity, entity_key, attribute, attribute_key, current_value, confidence,
                importance_score, assertion_count, session_id, created_at, last_updated
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                fact.id, fact.entity, _key(fact.entity), fact.attribute, _key(fact.attribute),
                fact.current_value, fact.confidence, fact.importance_score, fact.assertion_count,
                fact.session_id, fact.created_at, fact.last_updated,
            ),
        )

    def update_fact(self, fact: FactNode):
        self._conn.execute(
            """
            UPDATE facts
            SET current_value = ?, confidence = ?, importance_score = ?, assertion_count = ?,
                session_id = ?, last_updated = ?
            WHERE id = ?
            """,
            (
                fact.current_value, fact.confidence, fact.importance_score, fact.assertion_count,
                fact.session_id, fact.last_updated, fact.id,
            ),
        )

    def append_fact_version(self, version: FactVersion):
        self._conn.execute(
            """
            INSERT INTO fact_versions (fact_id, value, confidence, recorded_at, turn_id)
            VALUES (?, ?, ?, ?, ?)
            """,
            (version.fact_id, version.value, version.confidence, version.recorded_at, version.turn_id),
        )

    def insert_turn(self, turn: WorkingMemoryTurn, session_id: str, significance_score: float, tokens: int):
        self._conn.execute(
            """
            INSERT INTO turns (id, session_id, speaker_id, character_id, text, timestamp, tokens, significance_score)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                turn.id, session_id, turn.speaker_id, turn.character_id, turn.text,
                turn.timestamp, int(tokens), float(significance_score),
            ),
        )

    def insert_relationship(self, edge: RelationshipEdge):
        self._conn.execute(
            """
            INSERT INTO relationships (
                id, from_entity, from_key, to_entity, to_key, relationship_type,
                strength, session_id, created_at, last_updated
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                edge.id, edge.from_entity, _key(edge.from_entity), edge.to_entity, _key(edge.to_entity),
                edge.relationship_type, edge.strength, edge.session_id, edge.created_at, edge.last_updated,
            ),
        )

    def update_relationship(self, edge: RelationshipEdge):
        self._conn.execute(
            "UPDATE relationships SET strength = ?, session_id = ?, last_updated = ? WHERE id = ?",
            (edge.strength, edge.session_id, edge.last_updated, edge.id),
        )

    def record_operation(self, operation: MemoryOperation):
        self._conn.execute(
            """
            INSERT INTO memory_operations (id, type, layer, operation, timestamp, duration_ms, details_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                operation.id, operation.type, operation.layer, operation.operation, operation.timestamp,
                operation.duration_ms, json.dumps(operation.details, ensure_ascii=True, default=str),
            ),
        )

    # --- reads ---
    def get_character(self, character_id: str) -> Character | None:
        row = self._conn.execute("SELECT * FROM characters WHERE id = ?", (character_id,)).fetchone()
        return _character_from_row(row) if row else None

    def get_emotion_state(self, character_id: str) -> EmotionState | None:
        row = self._conn.execute(
            "SELECT affect_json FROM characters WHERE id = ?",
            (character_id,),
        ).fetchone()
        if row is None or not row["affect_json"]:
            return None
        return EmotionState.from_dict(json.loads(row["affect_json"]))

    def find_fact(self, entity: str, attribute: str) -> FactNode | None:
        row = self._conn.execute(
            "SELECT * FROM facts WHERE entity_key = ? AND attribute_key = ?",
            (_key(entity), _key(attribute)),
        ).fetchone()
        return _fact_from_row(row) if row else None

    def find_relationship(self, from_entity: str, to_entity: str, relationship_type: str) -> RelationshipEdge | None:
        row = self._conn.execute(
            """
            SELECT * FROM relationships
            WHERE from_key = ? AND to_key = ? AND relationship_type = ?
            """,
            (_key(from_entity), _key(to_entity), relationship_type),
        ).fetchone()
        return _relationship_from_row(row) if row else None

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
            clauses = [f"id IN ({_placeholders(ids)})"]
            params: list[Any] = list(ids)
            if character_id:
                clauses.append("id = ?")
                params.append(character_id)
        elif character_id:
            clauses, params = ["id = ?"], [character_id]
        else:
            scope = "id IN (SELECT character_id FROM character_sessions WHERE session_id = ?)"
            params = [session_id]
            if text:
                scope = f"({scope} OR instr(lower(name), ?) > 0)"
                params.append(_key(text))
            clauses = [scope]
        rows = self._conn.execute(
            f"""
            SELECT * FROM characters
            WHERE {" AND ".join(clauses)}
            ORDER BY last_updated DESC
            LIMIT ?
            """,
            (*params, max(1, int(limit))),
        ).fetchall()
        return [_character_from_row(row) for row in rows]

    def fetch_facts(
        self,
        *,
        session_id: str,
        entities: Sequence[str] = (),
        text: str | None = None,
        ids: Sequence[str] = (),
        limit: int,
    ) -> list[FactNode]:
        entity_keys = [_key(entity) for entity in entities]
        clauses: list[str] = []
        params: list[Any] = []
        if ids:
            clauses.append(f"id IN ({_placeholders(ids)})")
            params.extend(ids)
        elif not entity_keys:
            scope = "session_id = ?"
            params.append(session_id)
            if text:
                needle = _key(text)
                scope = (
                    f"({scope} OR instr(entity_key, ?) > 0 OR instr(attribute_key, ?) > 0"
                    " OR instr(lower(current_value), ?) > 0)"
                )
                params.extend([needle, needle, needle])
            clauses.append(scope)
        if entity_keys:
            clauses.append(f"entity_key IN ({_placeholders(entity_keys)})")
            params.extend(entity_keys)
        rows = self._conn.execute(
            f"""
            SELECT * FROM facts
            WHERE {" AND ".join(clauses)}
            ORDER BY importance_score DESC, confidence DESC, last_updated DESC
            LIMIT ?
            """,
            (*params, max(1, int(limit))),
        ).fetchall()
        return [_fact_from_row(row) for row in rows]

    def fetch_relationships(
        self,
        *,
        session_id: str,
        entities: Sequence[str] = (),
        text: str | None = None,
        ids: Sequence[str] = (),
        limit: int,
    ) -> list[RelationshipEdge]:
        entity_keys = [_key(entity) for entity in entities]
        clauses: list[str] = []
        params: list[Any] = []
        if ids:
            clauses.append(f"id IN ({_placeholders(ids)})")
            params.extend(ids)
        elif not entity_keys:
            scope = "session_id = ?"
            params.append(session_id)
            if text:
                needle = _key(text)
                scope = (
                    f"({scope} OR instr(from_key, ?) > 0 OR instr(to_key, ?) > 0"
                    " OR instr(lower(relationship_type), ?) > 0)"
                )
                params.extend([needle, needle, needle])
            clauses.append(scope)
        if entity_keys:
            marks = _placeholders(entity_keys)
            clauses.append(f"(from_key IN ({marks}) OR to_key IN ({marks}))")
            params.extend(entity_keys + entity_keys)
        rows = self._conn.execute(
            f"""
            SELECT * FROM relationships
            WHERE {" AND ".join(clauses)}
            ORDER BY strength DESC, last_updated DESC
            LIMIT ?
            """,
            (*params, max(1, int(limit))),
        ).fetchall()
        return [_relationship_from_row(row) for row in rows]

    def recent_turns(self, session_id: str, limit: int) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT id, speaker_id, character_id, text, timestamp, tokens, significance_score
            FROM turns
            WHERE session_id = ?
            ORDER BY timestamp DESC, rowid DESC
            LIMIT ?
            """,
            (session_id, max(1, int(limit))),
        ).fetchall()
        turns = [dict(row) for row in rows]
        turns.reverse()
        return turns

    def fact_history(self, fact_id: str) -> list[FactVersion]:
        rows = self._conn.execute(
            """
            SELECT fact_id, value, confidence, recorded_at, turn_id
            FROM fact_versions
            WHERE fact_id = ?
            ORDER BY id ASC
            """,
            (fact_id,),
        ).fetchall()
        return [
            FactVersion(row["fact_id"], row["value"], float(row["confidence"]), row["recorded_at"], row["turn_id"])
            for row in rows
        ]

    def recent_operations(self, limit: int) -> list[MemoryOperation]:
        rows = self._conn.execute(
            """
            SELECT * FROM memory_operations
            ORDER BY timestamp DESC, rowid DESC
            LIMIT ?
            """,
            (max(1, int(limit)),),
        ).fetchall()
        return [
            MemoryOperation(
                id=row["id"],
                type=row["type"],
                layer=row["layer"],
                operation=row["operation"],
                timestamp=row["timestamp"],
                duration_ms=float(row["duration_ms"]),
                details=json.loads(row["details_json"] or "{}"),
            )
            for row in rows
        ]

    def counts(self) -> dict[str, int]:
        out: dict[str, int] = {}
        for table in ("sessions", "characters", "turns", "facts", "relationships", "memory_operations"):
            row = self._conn.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()
            out[table] = int(row["n"]) if row else 0
        return out


class SqliteGraphStore:
    """SQLite-backed graph store; one serialized writer connection, fresh reader connections."""

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._connect()
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error:
            pass
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self):
        with self._lock:
            try:
                apply_sqlite_migrations(
                    self._conn,
                    component="graph_store",
                    migrations=SQLITE_MIGRATIONS,
                )
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    @contextmanager
    def transaction(self) -> Iterator[SqliteGraphTransaction]:
        with self._lock:
            if self._conn is None:
                raise RuntimeError("graph store connection is closed")
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield SqliteGraphTransaction(self._conn)
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    @contextmanager
    def read(self) -> Iterator[SqliteGraphTransaction]:
        if self._conn is None:
            raise RuntimeError("graph store connection is closed")
        conn = self._connect()
        try:
            conn.execute("PRAGMA query_only=ON")
            yield SqliteGraphTransaction(conn)
        finally:
            conn.close()

    def close(self):
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.commit()
            except sqlite3.Error:
                pass
            self._conn.close()
            self._conn = None

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass
