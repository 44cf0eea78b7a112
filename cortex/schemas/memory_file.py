from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal

from pydantic import Field

from cortex.schemas.common import RecordModel

MEMORY_FILE_FORMAT = "cortex-memory"
MEMORY_FILE_VERSION = 1


class MemoryEntryRecord(RecordModel):
    """One persisted memory entry."""

    id: str
    text: str
    embedding: List[float]
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime


class MemoryFile(RecordModel):
    """Flat, versioned serialization of a memory store."""

    format: Literal["cortex-memory"] = MEMORY_FILE_FORMAT
    version: int = MEMORY_FILE_VERSION
    embedding_dimension: int
    max_entries: int
    entries: List[MemoryEntryRecord] = Field(default_factory=list)
