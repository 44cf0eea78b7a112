from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from cortex.db.models import SessionMessage
from cortex.state.types import Message, Role
from cortex.utils.time_utils import ensure_utc


class MessageRepo:
    """Repository for the active message history of sessions."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def list_messages(self, session_id: str) -> list[Message]:
        """Return the full active history in ascending order."""

        result = await self._db.execute(
            select(SessionMessage)
            .where(SessionMessage.session_id == session_id)
            .order_by(SessionMessage.seq.asc())
        )
        return [_to_message(row) for row in result.scalars()]

    async def append_messages(
        self, session_id: str, start_seq: int, messages: Sequence[Message]
    ) -> None:
        """Append messages numbered from start_seq (1-based)."""

        for offset, message in enumerate(messages):
            self._db.add(
                SessionMessage(
                    session_id=session_id,
                    seq=start_seq + offset,
                    role=message.role.value,
                    content=message.content,
                    created_at=message.timestamp,
                )
            )
        await self._db.flush()

    async def replace_messages(self, session_id: str, messages: Sequence[Message]) -> None:
        """Replace the active history with exactly the given messages."""

        await self.delete_messages(session_id)
        await self.append_messages(session_id, 1, messages)

    async def delete_messages(self, session_id: str) -> int:
        result = await self._db.execute(
            delete(SessionMessage).where(SessionMessage.session_id == session_id)
        )
        await self._db.flush()
        return int(result.rowcount or 0)


def _to_message(row: SessionMessage) -> Message:
    return Message(role=Role(row.role), content=row.content, timestamp=ensure_utc(row.created_at))
