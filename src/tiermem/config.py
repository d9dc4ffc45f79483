# /tiermem/config.py
"""
Centralized configuration for the memory controller.
Includes storage paths, retrieval limits, scoring coefficients and affect tuning.
"""
import os
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from .observability import configure_logging

# ==============================================================================
# CONSOLE & ENVIRONMENT
# ==============================================================================
console = Console()
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- Path Configuration ---
# Data directory is at ../../data relative to this file (src/tiermem/config.py)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
_DATA_DIR = _BASE_DIR / "data"

CACHE_DIR = Path(os.getenv("CACHE_DIR", str(_DATA_DIR / "runtime_cache")))
DB_PATH = Path(os.getenv("DB_PATH", str(CACHE_DIR / "memory_graph.sqlite")))
VECTOR_INDEX_PATH = Path(os.getenv("VECTOR_INDEX_PATH", str(CACHE_DIR / "vector_index")))
VECTOR_DIMENSION = _env_int("VECTOR_DIMENSION", 384, minimum=1)
# Flush the vector index every N ingested turns that carried an embedding.
VECTOR_SAVE_EVERY_N_TURNS = _env_int("VECTOR_SAVE_EVERY_N_TURNS", 10, minimum=1)

# --- Neo4j (optional backend) ---
NEO4J_URI = os.getenv("NEO4J_URI", "bolt://localhost:7687")
NEO4J_USER = os.getenv("NEO4J_USER", "neo4j")
NEO4J_PASSWORD = os.getenv("NEO4J_PASSWORD", "")
NEO4J_DATABASE = os.getenv("NEO4J_DATABASE", "neo4j")

# --- Retrieval Tuning ---
RETRIEVAL_CHARACTER_LIMIT = _env_int("RETRIEVAL_CHARACTER_LIMIT", 10, minimum=1)
RETRIEVAL_FACT_LIMIT = _env_int("RETRIEVAL_FACT_LIMIT", 25, minimum=1)
RETRIEVAL_RELATIONSHIP_LIMIT = _env_int("RETRIEVAL_RELATIONSHIP_LIMIT", 10, minimum=1)
RETRIEVAL_TOKEN_BUDGET = _env_int("RETRIEVAL_TOKEN_BUDGET", 1200, minimum=1)
RETRIEVAL_VECTOR_K = _env_int("RETRIEVAL_VECTOR_K", 20, minimum=1)
RETRIEVAL_RECENT_TURNS = _env_int("RETRIEVAL_RECENT_TURNS", 6, minimum=1)
RETRIEVAL_RELEVANCE_FLOOR = _env_float("RETRIEVAL_RELEVANCE_FLOOR", 0.1, minimum=0.0)
RETRIEVAL_SCOPE_BONUS = _env_float("RETRIEVAL_SCOPE_BONUS", 1.0, minimum=0.0)
RETRIEVAL_TEXT_MATCH_BONUS = _env_float("RETRIEVAL_TEXT_MATCH_BONUS", 0.5, minimum=0.0)
RELEVANCE_FACT_WEIGHT = _env_float("RELEVANCE_FACT_WEIGHT", 0.5)
RELEVANCE_RELATIONSHIP_WEIGHT = _env_float("RELEVANCE_RELATIONSHIP_WEIGHT", 0.3)
RELEVANCE_CHARACTER_WEIGHT = _env_float("RELEVANCE_CHARACTER_WEIGHT", 0.2)
relevance_total = RELEVANCE_FACT_WEIGHT + RELEVANCE_RELATIONSHIP_WEIGHT + RELEVANCE_CHARACTER_WEIGHT
if relevance_total > 1.0:
    RELEVANCE_FACT_WEIGHT = RELEVANCE_FACT_WEIGHT / relevance_total
    RELEVANCE_RELATIONSHIP_WEIGHT = RELEVANCE_RELATIONSHIP_WEIGHT / relevance_total
    RELEVANCE_CHARACTER_WEIGHT = RELEVANCE_CHARACTER_WEIGHT / relevance_total

# --- Fact Importance Tuning ---
FACT_CONFIDENCE_RECENCY_WEIGHT = _env_float("FACT_CONFIDENCE_RECENCY_WEIGHT", 0.6, minimum=0.0)
FACT_IMPORTANCE_CONFIDENCE_WEIGHT = _env_float("FACT_IMPORTANCE_CONFIDENCE_WEIGHT", 0.5)
FACT_IMPORTANCE_FREQUENCY_WEIGHT = _env_float("FACT_IMPORTANCE_FREQUENCY_WEIGHT", 0.3)
FACT_IMPORTANCE_RECENCY_WEIGHT = _env_float("FACT_IMPORTANCE_RECENCY_WEIGHT", 0.2)
FACT_FREQUENCY_SATURATION = _env_int("FACT_FREQUENCY_SATURATION", 10, minimum=1)
FACT_RECENCY_HALF_LIFE_HOURS = _env_float("FACT_RECENCY_HALF_LIFE_HOURS", 72.0, minimum=0.01)
RELATIONSHIP_REINFORCEMENT = _env_float("RELATIONSHIP_REINFORCEMENT", 0.05)
SIGNIFICANCE_THRESHOLD = _env_float("SIGNIFICANCE_THRESHOLD", 4.0, minimum=0.0)

# --- Affect Tuning ---
AFFECT_BASELINE_PULL = _env_float("AFFECT_BASELINE_PULL", 0.1)
AFFECT_DISCRETE_DECAY = _env_float("AFFECT_DISCRETE_DECAY", 0.85)
AFFECT_NEGATIVITY_BIAS = _env_float("AFFECT_NEGATIVITY_BIAS", 1.3, minimum=1.0)
AFFECT_SATURATION_K = _env_float("AFFECT_SATURATION_K", 1.2)
AFFECT_FRICTION_K = _env_float("AFFECT_FRICTION_K", 0.6)

# --- Observability ---
MEMORY_PERF_TRACE = _env_bool("MEMORY_PERF_TRACE", False)
METRICS_LOG_DIR = os.getenv("METRICS_LOG_DIR") or None

# --- Create necessary directories ---
CACHE_DIR.mkdir(parents=True, exist_ok=True)
LOG_PATH = Path(os.getenv("LOG_PATH", str(CACHE_DIR / "tiermem.log")))
LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
configure_logging(LOG_PATH)
