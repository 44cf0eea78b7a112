from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping

from cortex.utils.time_utils import utc_now


@dataclass(frozen=True)
class MemoryEntry:
    """Embedded text persisted in long-term memory."""

    id: str
    text: str
    embedding: tuple[float, ...]
    metadata: Mapping[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class MemorySearchResult:
    """Search hit with its cosine similarity score."""

    entry: MemoryEntry
    score: float


@dataclass(frozen=True)
class IndexedVector:
    """Embedding handed to a similarity index with its insertion position."""

    entry_id: str
    position: int
    vector: tuple[float, ...]
    norm: float
