from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from cortex.schemas.common import RecordModel


class CheckpointOut(RecordModel):
    """Serialized checkpoint metadata."""

    id: int
    session_id: str
    parent_id: Optional[int]
    name: Optional[str]
    message_count: int
    checksum: str
    created_at: datetime


class SessionOut(RecordModel):
    """Serialized session summary."""

    id: str
    status: str
    current_checkpoint_id: Optional[int]
    created_at: datetime
    updated_at: datetime


class MemoryHitOut(RecordModel):
    """Serialized memory search hit."""

    id: str
    text: str
    score: float
    metadata: dict[str, str]


class CheckpointListResponse(RecordModel):
    """Checkpoint lineage of a session, oldest first."""

    session_id: str
    current_checkpoint_id: Optional[int]
    checkpoints: List[CheckpointOut]
