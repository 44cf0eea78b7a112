from __future__ import annotations

from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from cortex.db.models import ChatSession
from cortex.utils.time_utils import utc_now


class SessionRepo:
    """Repository for chat session persistence."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def create_session(self, session_id: str) -> ChatSession:
        """Persist a new uninitialized session and return it."""

        session = ChatSession(
            id=session_id,
            status="uninitialized",
            current_checkpoint_id=None,
            turns_since_checkpoint=0,
            created_at=utc_now(),
            updated_at=utc_now(),
        )
        self._db.add(session)
        await self._db.flush()
        return session

    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        """Fetch a session by ID."""

        result = await self._db.execute(select(ChatSession).where(ChatSession.id == session_id))
        return result.scalar_one_or_none()

    async def update_pointer(
        self,
        session_id: str,
        *,
        status: str,
        current_checkpoint_id: Optional[int],
        turns_since_checkpoint: int,
    ) -> Optional[ChatSession]:
        """Store lifecycle status, checkpoint pointer and turn cadence counter."""

        session = await self.get_session(session_id)
        if not session:
            return None
        session.status = status
        session.current_checkpoint_id = current_checkpoint_id
        session.turns_since_checkpoint = turns_since_checkpoint
        session.updated_at = utc_now()
        await self._db.flush()
        return session

    async def list_sessions(self, limit: int = 100) -> list[ChatSession]:
        """List sessions ordered by update time descending."""

        result = await self._db.execute(
            select(ChatSession)
            .order_by(ChatSession.updated_at.desc(), ChatSession.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session row; callers remove dependent rows first."""

        result = await self._db.execute(delete(ChatSession).where(ChatSession.id == session_id))
        await self._db.flush()
        return bool(result.rowcount)
