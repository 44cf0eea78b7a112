from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from cortex.utils.time_utils import utc_now


class Role(str, Enum):
    """Author of a conversation message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    """One immutable conversation message."""

    role: Role
    content: str
    timestamp: datetime = field(default_factory=utc_now)

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(Role.SYSTEM, content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(Role.ASSISTANT, content)

    def as_prompt_dict(self) -> dict:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class Checkpoint:
    """Checkpoint node metadata; the opaque state blob stays in storage."""

    id: int
    session_id: str
    parent_id: Optional[int]
    message_count: int
    checksum: str
    created_at: datetime
    name: Optional[str] = None

    @property
    def is_root(self) -> bool:
        return self.parent_id is None


class SessionStatus(str, Enum):
    """Lifecycle of a session."""

    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(frozen=True)
class SessionSnapshot:
    """Session view returned by restore and branch."""

    session_id: str
    checkpoint_id: Optional[int]
    messages: tuple[Message, ...]
    status: SessionStatus
