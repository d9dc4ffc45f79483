"""
Exact nearest-neighbour vector index persisted next to the graph store.

Vectors live in a float32 numpy matrix with one unique string label per row; adding
an existing label replaces its row. Mutations swap in a new matrix rather than
writing into the current one, so a concurrent ``search()`` always works on a
consistent snapshot. ``save()`` writes a single ``.npz`` archive and moves it into
place with one ``Path.replace``.
"""
from __future__ import annotations

import contextlib
import threading
import zipfile
from pathlib import Path
from typing import Any, Sequence

import numpy as np

from .config import VECTOR_DIMENSION, VECTOR_INDEX_PATH
from .errors import VectorIndexError
from .observability import get_logger

logger = get_logger(__name__)

INDEX_FORMAT_VERSION = 2


class VectorIndex:
    """Flat squared-L2 index keyed by dimension."""

    def __init__(self, index_path: str | Path | None = None, dimension: int = VECTOR_DIMENSION):
        if int(dimension) <= 0:
            raise ValueError("dimension must be positive")
        base = Path(index_path) if index_path else VECTOR_INDEX_PATH
        self.dimension = int(dimension)
        self.path = base.with_suffix(".npz")
        self._lock = threading.RLock()
        self._matrix: np.ndarray | None = None
        self._labels: list[str] = []
        self._rows: dict[str, int] = {}

    @property
    def is_initialized(self) -> bool:
        return self._matrix is not None

    @property
    def ntotal(self) -> int:
        with self._lock:
            return 0 if self._matrix is None else int(self._matrix.shape[0])

    def _reset(self):
        self._matrix = np.zeros((0, self.dimension), dtype=np.float32)
        self._labels = []
        self._rows = {}

    def _load(self) -> tuple[np.ndarray, list[str]]:
        with np.load(self.path, allow_pickle=False) as archive:
            if int(archive["dimension"]) != self.dimension:
                raise ValueError("dimension mismatch")
            matrix = np.asarray(archive["matrix"], dtype=np.float32)
            labels = [str(label) for label in archive["labels"].tolist()]
        if matrix.ndim != 2 or matrix.shape[1] != self.dimension or matrix.shape[0] != len(labels):
            raise ValueError("matrix shape does not match labels")
        if len(set(labels)) != len(labels):
            raise ValueError("duplicate labels")
        return matrix, labels

    def initialize(self) -> "VectorIndex":
        """Loads the persisted index, or starts empty when none exists or it cannot be read."""
        with self._lock:
            if self._matrix is not None:
                return self
            if not self.path.exists():
                self._reset()
                logger.info("vector_index_created", path=str(self.path), dimension=self.dimension)
                return self
            try:
                matrix, labels = self._load()
            except (OSError, ValueError, KeyError, TypeError, zipfile.BadZipFile) as exc:
                self._reset()
                logger.warning("vector_index_load_failed", path=str(self.path), error=str(exc))
                return self
            self._matrix = matrix
            self._labels = labels
            self._rows = {label: row for row, label in enumerate(labels)}
            logger.info("vector_index_loaded", path=str(self.path), vectors=len(labels))
            return self

    def _as_matrix(self, embeddings: Sequence[Sequence[float]] | np.ndarray) -> np.ndarray:
        try:
            matrix = np.asarray(embeddings, dtype=np.float32)
        except (TypeError, ValueError) as exc:
            raise VectorIndexError(f"embeddings are not numeric: {exc}") from exc
        if matrix.ndim == 1:
            matrix = matrix.reshape(1, -1)
        if matrix.ndim != 2 or (matrix.shape[0] and matrix.shape[1] != self.dimension):
            raise VectorIndexError(
                f"expected embeddings of dimension {self.dimension}, got shape {tuple(matrix.shape)}"
            )
        return matrix

    def add(self, embeddings: Sequence[Sequence[float]] | np.ndarray, labels: Sequence[str]) -> int:
        """Inserts or replaces one row per label; within a batch the last vector for a label wins."""
        matrix = self._as_matrix(embeddings)
        if matrix.shape[0] != len(labels):
            raise VectorIndexError("embeddings and labels must have the same length")
        if matrix.shape[0] == 0:
            return self.ntotal
        with self._lock:
            if self._matrix is None:
                raise VectorIndexError("vector index is not initialized")
            updated = self._matrix.copy()
            existing = updated.shape[0]
            rows = dict(self._rows)
            new_labels = list(self._labels)
            appended: list[np.ndarray] = []
            for vector, label in zip(matrix, labels):
                label = str(label)
                row = rows.get(label)
                if row is None:
                    rows[label] = len(new_labels)
                    new_labels.append(label)
                    appended.append(vector)
                elif row >= existing:
                    appended[row - existing] = vector
                else:
                    updated[row] = vector
            if appended:
                updated = np.vstack([updated, np.stack(appended)])
            self._matrix = updated
            self._labels = new_labels
            self._rows = rows
            return int(updated.shape[0])

    def search(self, embeddings: Sequence[Sequence[float]] | np.ndarray, k: int) -> dict[str, list[list[Any]]]:
        """Returns up to ``k`` (distance, label) neighbours per query embedding, nearest first."""
        queries = self._as_matrix(embeddings)
        with self._lock:
            if self._matrix is None:
                raise VectorIndexError("vector index is not initialized")
            stored = self._matrix
            labels = self._labels
        distances: list[list[float]] = []
        hits: list[list[str]] = []
        top_k = min(max(0, int(k)), stored.shape[0])
        for query in queries:
            if top_k == 0:
                distances.append([])
                hits.append([])
                continue
            diff = stored - query
            scores = np.einsum("ij,ij->i", diff, diff)
            order = np.argsort(scores, kind="stable")[:top_k]
            distances.append([float(scores[i]) for i in order])
            hits.append([labels[i] for i in order])
        return {"distances": distances, "labels": hits}

    def save(self):
        """Flushes the index to disk; failures are logged and raised, leaving the previous file intact."""
        with self._lock:
            if self._matrix is None:
                raise VectorIndexError("vector index is not initialized")
            matrix = self._matrix
            labels = list(self._labels)

        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("wb") as fh:
                np.savez(
                    fh,
                    version=np.int64(INDEX_FORMAT_VERSION),
                    dimension=np.int64(self.dimension),
                    matrix=matrix,
                    labels=np.asarray(labels, dtype=np.str_),
                )
            tmp_path.replace(self.path)
        except OSError as exc:
            with contextlib.suppress(OSError):
                tmp_path.unlink(missing_ok=True)
            logger.error("vector_index_save_failed", path=str(self.path), error=str(exc))
            raise VectorIndexError(f"failed to save vector index: {exc}") from exc
        logger.info("vector_index_saved", path=str(self.path), vectors=len(labels))
