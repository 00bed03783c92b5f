"""
In-memory embedding index with brute-force cosine similarity.

Vectors come from an external embedding service; this index only stores
and compares them. Every stored vector has exactly the configured
dimension.
"""

import logging
from typing import Optional, Sequence

import numpy as np

from .errors import ConfigError, QueryError

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between a and b. 0.0 if either is a zero vector."""
    vec_a = np.asarray(a, dtype=np.float64)
    vec_b = np.asarray(b, dtype=np.float64)
    if vec_a.shape != vec_b.shape:
        return 0.0
    norm_a = np.linalg.norm(vec_a)
    norm_b = np.linalg.norm(vec_b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(vec_a, vec_b) / (norm_a * norm_b))


class EmbeddingIndex:
    """
    id → vector map searched by cosine similarity.

    The stacked matrix used by search() is rebuilt lazily after any
    index/remove, so a search always sees whole entries.
    """

    def __init__(self, dimension: int):
        if not isinstance(dimension, int) or dimension < 1:
            raise ConfigError(f"Embedding dimension must be a positive integer, got {dimension!r}")
        self.dimension = dimension
        # Insertion-ordered; order breaks similarity ties
        self._vectors: dict[str, np.ndarray] = {}
        self._matrix: Optional[np.ndarray] = None
        self._norms: Optional[np.ndarray] = None
        self._ids: list[str] = []

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, id: str) -> bool:
        return id in self._vectors

    def _as_vector(self, vector: Sequence[float], what: str) -> np.ndarray:
        # Stored blobs are float32; a value that overflows there is rejected here
        with np.errstate(over="ignore"):
            arr = np.asarray(vector, dtype=np.float32)
        if arr.ndim != 1 or arr.shape[0] != self.dimension:
            got = arr.shape[0] if arr.ndim == 1 else arr.shape
            raise ConfigError(
                f"{what} has dimension {got}, index is configured for {self.dimension}"
            )
        if not np.all(np.isfinite(arr)):
            raise QueryError(f"{what} contains NaN or infinite values")
        return arr

    def validate(self, vector: Sequence[float], what: str = "Embedding") -> None:
        """Raise ConfigError/QueryError if vector could not be indexed or searched."""
        self._as_vector(vector, what)

    def index(self, id: str, vector: Sequence[float]) -> None:
        """
        Store (or replace) the vector for an item.

        Raises:
            ConfigError: If the vector's length is not the configured dimension
            QueryError: If the vector has non-finite components
        """
        arr = self._as_vector(vector, "Embedding")
        self._vectors.pop(id, None)
        self._vectors[id] = arr
        self._matrix = None

    def remove(self, id: str) -> bool:
        """Delete the stored vector. Returns True if one existed."""
        if self._vectors.pop(id, None) is None:
            return False
        self._matrix = None
        return True

    def clear(self) -> None:
        self._vectors.clear()
        self._matrix = None

    def get(self, id: str) -> Optional[np.ndarray]:
        return self._vectors.get(id)

    def _stacked(self) -> tuple[list[str], np.ndarray, np.ndarray]:
        if self._matrix is None:
            self._ids = list(self._vectors)
            if self._ids:
                self._matrix = np.vstack([self._vectors[i] for i in self._ids])
            else:
                self._matrix = np.empty((0, self.dimension), dtype=np.float32)
            self._norms = np.linalg.norm(self._matrix, axis=1)
        return self._ids, self._matrix, self._norms

    def search(
        self,
        query_vector: Sequence[float],
        top_k: int = 10,
        *,
        min_similarity: Optional[float] = None,
    ) -> list[tuple[str, float]]:
        """
        Rank stored vectors by cosine similarity to query_vector.

        A zero query vector (or a zero stored vector) scores 0.0.

        Returns:
            Up to top_k (id, similarity) pairs, best first

        Raises:
            ConfigError: If the query vector has the wrong dimension
            QueryError: If top_k < 1 or the query has non-finite values
        """
        if top_k < 1:
            raise QueryError(f"top_k must be >= 1, got {top_k}")
        query = self._as_vector(query_vector, "Query embedding")
        ids, matrix, norms = self._stacked()
        if not ids:
            return []

        query_norm = float(np.linalg.norm(query))
        denom = norms * query_norm
        dots = matrix @ query
        sims = np.divide(dots, denom, out=np.zeros_like(dots), where=denom > 0)

        order = sorted(range(len(ids)), key=lambda i: (-sims[i], i))
        results = []
        for i in order:
            sim = float(sims[i])
            if min_similarity is not None and sim < min_similarity:
                break
            results.append((ids[i], sim))
            if len(results) >= top_k:
                break
        return results
