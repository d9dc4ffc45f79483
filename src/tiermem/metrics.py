"""
Operational metrics for the memory controller.

Tracks: ingest/retrieve latency, call counts, failures, tokens served, degraded
(graph-only) retrievals and process memory. Optionally appends JSONL entries.
"""
from __future__ import annotations

import json
import os
import threading
import time
from pathlib import Path

import psutil


class _LatencyStats:
    def __init__(self):
        self.count = 0
        self.errors = 0
        self.total_ms = 0.0
        self.min_ms = float("inf")
        self.max_ms = 0.0

    def record(self, latency_ms: float, success: bool):
        self.count += 1
        self.total_ms += latency_ms
        self.min_ms = min(self.min_ms, latency_ms)
        self.max_ms = max(self.max_ms, latency_ms)
        if not success:
            self.errors += 1

    def summary(self) -> dict:
        avg = (self.total_ms / self.count) if self.count else 0.0
        return {
            "count": self.count,
            "errors": self.errors,
            "avg_ms": round(avg, 2),
            "min_ms": round(self.min_ms if self.count else 0.0, 2),
            "max_ms": round(self.max_ms, 2),
        }


class MemoryMetrics:
    """Thread-safe ingest/retrieve tracker with optional JSONL file logging."""

    def __init__(self, log_dir: str | Path | None = None):
        self._lock = threading.Lock()
        self._start_time: float = time.time()
        self._ingest = _LatencyStats()
        self._retrieve = _LatencyStats()
        self._facts_written: int = 0
        self._tokens_served: int = 0
        self._degraded_retrievals: int = 0
        self._below_floor: int = 0

        self._log_path: Path | None = None
        if log_dir is not None:
            directory = Path(log_dir)
            directory.mkdir(parents=True, exist_ok=True)
            self._log_path = directory / "memory_metrics.jsonl"

        # Process handle for memory tracking.
        self._process = psutil.Process(os.getpid())

    def _append(self, entry: dict):
        if self._log_path is None:
            return
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True) + "\n")
        except OSError:
            pass

    def record_ingest(self, latency_ms: float, success: bool, facts_written: int = 0):
        with self._lock:
            self._ingest.record(latency_ms, success)
            self._facts_written += int(facts_written)
        self._append(
            {
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
                "kind": "ingest",
                "latency_ms": round(latency_ms, 2),
                "success": success,
                "facts_written": int(facts_written),
            }
        )

    def record_retrieve(
        self,
        latency_ms: float,
        success: bool,
        tokens: int = 0,
        degraded: bool = False,
        below_floor: bool = False,
    ):
        with self._lock:
            self._retrieve.record(latency_ms, success)
            self._tokens_served += int(tokens)
            if degraded:
                self._degraded_retrievals += 1
            if below_floor:
                self._below_floor += 1
        self._append(
            {
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
                "kind": "retrieve",
                "latency_ms": round(latency_ms, 2),
                "success": success,
                "tokens": int(tokens),
                "degraded": degraded,
            }
        )

    def get_summary(self) -> dict:
        """Returns a metrics snapshot."""
        with self._lock:
            ingest = self._ingest.summary()
            retrieve = self._retrieve.summary()
            facts_written = self._facts_written
            tokens = self._tokens_served
            degraded = self._degraded_retrievals
            below_floor = self._below_floor

        mem_info = self._process.memory_info()
        return {
            "ingest": {**ingest, "facts_written": facts_written},
            "retrieve": {
                **retrieve,
                "tokens_served": tokens,
                "degraded": degraded,
                "below_floor": below_floor,
            },
            "memory": {
                "rss_mb": round(mem_info.rss / (1024 * 1024), 1),
                "vms_mb": round(mem_info.vms / (1024 * 1024), 1),
            },
            "uptime_seconds": round(time.time() - self._start_time, 1),
        }
