from __future__ import annotations

import math
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Optional

from cortex.memory.types import IndexedVector


class SimilarityIndex(ABC):
    """Abstract similarity index over memory embeddings.

    Results are (entry_id, score) pairs sorted by descending score; ties go
    to the most recently added entry.
    """

    @abstractmethod
    def add(self, entry_id: str, vector: Sequence[float]) -> None:
        """Index one embedding."""

    @abstractmethod
    def remove(self, entry_id: str) -> bool:
        """Drop one embedding; return False when it was not indexed."""

    @abstractmethod
    def clear(self) -> None:
        """Drop every embedding."""

    @abstractmethod
    def search(
        self, query: Sequence[float], limit: int, threshold: Optional[float] = None
    ) -> list[tuple[str, float]]:
        """Return up to `limit` best matches scoring at least `threshold`."""

    @abstractmethod
    def __len__(self) -> int:
        """Number of indexed embeddings."""


class ExactCosineIndex(SimilarityIndex):
    """Linear-scan cosine similarity, O(n*d) per query.

    A threshold of None or 0 disables filtering.
    """

    def __init__(self) -> None:
        self._vectors: dict[str, IndexedVector] = {}
        self._next_position = 0

    def __len__(self) -> int:
        return len(self._vectors)

    def add(self, entry_id: str, vector: Sequence[float]) -> None:
        values = tuple(float(value) for value in vector)
        self._vectors.pop(entry_id, None)
        self._vectors[entry_id] = IndexedVector(
            entry_id=entry_id,
            position=self._next_position,
            vector=values,
            norm=math.sqrt(sum(value * value for value in values)),
        )
        self._next_position += 1

    def remove(self, entry_id: str) -> bool:
        return self._vectors.pop(entry_id, None) is not None

    def clear(self) -> None:
        self._vectors.clear()

    def search(
        self, query: Sequence[float], limit: int, threshold: Optional[float] = None
    ) -> list[tuple[str, float]]:
        if limit <= 0 or not self._vectors:
            return []

        values = [float(value) for value in query]
        query_norm = math.sqrt(sum(value * value for value in values))
        if query_norm <= 0:
            return []

        scored: list[tuple[float, int, str]] = []
        for row in self._vectors.values():
            score = _cosine_similarity(values, query_norm, row.vector, row.norm)
            if threshold and score < threshold:
                continue
            scored.append((score, row.position, row.entry_id))

        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [(entry_id, score) for score, _, entry_id in scored[:limit]]


def _cosine_similarity(
    left: Sequence[float], left_norm: float, right: Sequence[float], right_norm: float
) -> float:
    if left_norm <= 0 or right_norm <= 0 or len(left) != len(right):
        return 0.0
    dot = 0.0
    for l_value, r_value in zip(left, right):
        dot += l_value * r_value
    return dot / (left_norm * right_norm)
