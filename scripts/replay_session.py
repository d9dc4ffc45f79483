"""
Replays a scripted conversation into a scratch memory store, then hammers retrieval
with concurrent queries to measure latency.

Usage:  python replay_session.py [num_queries] [concurrency]
"""
import sys
import tempfile
import time
import zlib
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

import numpy as np
from rich.table import Table

from tiermem.affect import VAD, PersonalityTraits
from tiermem.config import console
from tiermem.graph_store import SqliteGraphStore
from tiermem.memory_controller import MemoryController
from tiermem.models import WorkingMemoryTurn
from tiermem.significance import SignificanceScorer
from tiermem.vector_index import VectorIndex

SESSION_ID = "replay"
DIMENSION = 16

SCRIPT = [
    ("character:alice", "Hello. Who are you and why are you in my shop?"),
    ("character:alice", "Alice lives in Rivertown. Alice works as a clockmaker."),
    ("character:alice", "Thank you, that is awesome. I appreciate the help with the gears."),
    ("character:bob", "Bob is Alice's brother. Bob feels worried about the debt."),
    ("character:alice", "You are stupid! Stop touching the pendulum!"),
    ("character:bob", "Sorry, I understand. Alice is Bob's friend as well as his sister."),
    ("character:alice", "Alice feels calm again. Thanks for staying."),
    ("character:bob", "Bob hates the landlord. The landlord is Bob's enemy."),
]

QUERIES = [
    {"character_id": "character:alice"},
    {"character_id": "character:bob"},
    {"query_text": "rivertown"},
    {"query_text": "friend", "max_tokens": 120},
    {},
]


def embed(text: str) -> list[float]:
    """Deterministic bag-of-words hash embedding; enough to exercise the index."""
    vector = np.zeros(DIMENSION, dtype=np.float32)
    for word in text.lower().split():
        vector[zlib.crc32(word.encode("utf-8")) % DIMENSION] += 1.0
    norm = float(np.linalg.norm(vector))
    return (vector / norm).tolist() if norm else vector.tolist()


def replay(controller: MemoryController, scorer: SignificanceScorer):
    history: list[str] = []
    table = Table(title="Replay")
    table.add_column("#", justify="right")
    table.add_column("Character")
    table.add_column("Score", justify="right")
    table.add_column("Events", justify="right")
    table.add_column("Mode")
    table.add_column("Valence", justify="right")

    for i, (character_id, text) in enumerate(SCRIPT, start=1):
        score = scorer.score_turn(text, history)
        events = scorer.detect_events(text)
        turn = WorkingMemoryTurn(
            session_id=SESSION_ID,
            speaker_id="player",
            character_id=character_id,
            text=text,
            significance_score=score,
        )
        result = controller.ingest_turn(turn, events=events, embedding=embed(text))
        state = result.affect_updates[character_id].state
        table.add_row(
            str(i),
            character_id,
            f"{score:.1f}",
            str(len(events)),
            state.mode.value,
            f"{state.current.valence:+.3f}",
        )
        history.append(text)
    console.print(table)


def run_query(controller: MemoryController, query: dict) -> dict:
    payload = {"session_id": SESSION_ID, "embedding": embed(query.get("query_text") or "alice bob"), **query}
    start = time.perf_counter()
    batch = controller.retrieve_context(payload)
    return {
        "latency_ms": (time.perf_counter() - start) * 1000,
        "tokens": batch.token_count,
        "relevance": batch.relevance_score,
    }


def main():
    num_queries = int(sys.argv[1]) if len(sys.argv) > 1 else 50
    concurrency = int(sys.argv[2]) if len(sys.argv) > 2 else 4

    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp)
        controller = MemoryController(
            SqliteGraphStore(root / "graph.sqlite"),
            vector_index=VectorIndex(root / "vectors", dimension=DIMENSION),
        )
        try:
            controller.create_character("character:alice", traits=PersonalityTraits(volatility=0.6), name="Alice")
            controller.create_character(
                "character:bob",
                baseline=VAD(-0.1, 0.1, 0.0),
                traits=PersonalityTraits(sensitivity=0.5, reserved=True),
                name="Bob",
            )
            replay(controller, SignificanceScorer())

            results = []
            wall_start = time.perf_counter()
            with ThreadPoolExecutor(max_workers=concurrency) as pool:
                futures = [
                    pool.submit(run_query, controller, QUERIES[i % len(QUERIES)])
                    for i in range(num_queries)
                ]
                for future in as_completed(futures):
                    results.append(future.result())
            wall_elapsed = time.perf_counter() - wall_start

            latencies = sorted(r["latency_ms"] for r in results)
            summary = Table(title="Retrieval")
            summary.add_column("Metric")
            summary.add_column("Value", justify="right")
            summary.add_row("Queries", str(num_queries))
            summary.add_row("Concurrency", str(concurrency))
            summary.add_row("Throughput", f"{num_queries / wall_elapsed:.1f} q/s")
            if latencies:
                summary.add_row("Avg latency", f"{sum(latencies) / len(latencies):.2f} ms")
                summary.add_row("P50 latency", f"{latencies[len(latencies) // 2]:.2f} ms")
                summary.add_row("P95 latency", f"{latencies[int(len(latencies) * 0.95)]:.2f} ms")
                summary.add_row("Avg tokens", f"{sum(r['tokens'] for r in results) / len(results):.0f}")
            console.print(summary)
            console.print(controller.inspect())
        finally:
            controller.close()


if __name__ == "__main__":
    main()
