from __future__ import annotations

from collections.abc import Sequence
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from cortex.db.models import CheckpointMessage, CheckpointRecord
from cortex.state.types import Checkpoint, Message, Role
from cortex.utils.time_utils import ensure_utc, utc_now


class CheckpointRepo:
    """Repository for checkpoint nodes, their state blobs and message deltas."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def create_checkpoint(
        self,
        *,
        session_id: str,
        parent_id: Optional[int],
        name: Optional[str],
        message_count: int,
        opaque_state: bytes,
        checksum: str,
        delta_start_seq: int,
        delta_messages: Sequence[Message],
    ) -> Checkpoint:
        """Insert a checkpoint and the messages appended since its parent."""

        record = CheckpointRecord(
            session_id=session_id,
            parent_id=parent_id,
            name=name,
            message_count=message_count,
            opaque_state=opaque_state,
            checksum=checksum,
            created_at=utc_now(),
        )
        self._db.add(record)
        await self._db.flush()
        for offset, message in enumerate(delta_messages):
            self._db.add(
                CheckpointMessage(
                    checkpoint_id=record.id,
                    seq=delta_start_seq + offset,
                    role=message.role.value,
                    content=message.content,
                    created_at=message.timestamp,
                )
            )
        await self._db.flush()
        return _to_checkpoint(record)

    async def list_checkpoints(self, session_id: Optional[str] = None) -> list[Checkpoint]:
        """Return checkpoint metadata ordered by id."""

        stmt = select(CheckpointRecord).order_by(CheckpointRecord.id.asc())
        if session_id is not None:
            stmt = stmt.where(CheckpointRecord.session_id == session_id)
        result = await self._db.execute(stmt)
        return [_to_checkpoint(row) for row in result.scalars()]

    async def load_state(self, checkpoint_id: int) -> Optional[tuple[bytes, str]]:
        """Return the stored (opaque_state, checksum) pair."""

        result = await self._db.execute(
            select(CheckpointRecord.opaque_state, CheckpointRecord.checksum).where(
                CheckpointRecord.id == checkpoint_id
            )
        )
        row = result.one_or_none()
        if row is None:
            return None
        return bytes(row[0]), str(row[1])

    async def list_delta_messages(self, checkpoint_ids: Sequence[int]) -> dict[int, list[Message]]:
        """Return message deltas keyed by checkpoint id, each in seq order."""

        deltas: dict[int, list[Message]] = {checkpoint_id: [] for checkpoint_id in checkpoint_ids}
        if not checkpoint_ids:
            return deltas
        result = await self._db.execute(
            select(CheckpointMessage)
            .where(CheckpointMessage.checkpoint_id.in_(list(checkpoint_ids)))
            .order_by(CheckpointMessage.checkpoint_id.asc(), CheckpointMessage.seq.asc())
        )
        for row in result.scalars():
            deltas[row.checkpoint_id].append(
                Message(
                    role=Role(row.role),
                    content=row.content,
                    timestamp=ensure_utc(row.created_at),
                )
            )
        return deltas

    async def delete_checkpoint(self, checkpoint_id: int) -> None:
        await self._db.execute(
            delete(CheckpointMessage).where(CheckpointMessage.checkpoint_id == checkpoint_id)
        )
        await self._db.execute(delete(CheckpointRecord).where(CheckpointRecord.id == checkpoint_id))
        await self._db.flush()

    async def delete_for_session(self, session_id: str) -> int:
        """Delete every checkpoint of a session together with its deltas."""

        ids_result = await self._db.execute(
            select(CheckpointRecord.id).where(CheckpointRecord.session_id == session_id)
        )
        ids = [int(value) for value in ids_result.scalars()]
        if not ids:
            return 0
        await self._db.execute(
            delete(CheckpointMessage).where(CheckpointMessage.checkpoint_id.in_(ids))
        )
        await self._db.execute(delete(CheckpointRecord).where(CheckpointRecord.id.in_(ids)))
        await self._db.flush()
        return len(ids)


def _to_checkpoint(record: CheckpointRecord) -> Checkpoint:
    return Checkpoint(
        id=int(record.id),
        session_id=record.session_id,
        parent_id=record.parent_id,
        message_count=record.message_count,
        checksum=record.checksum,
        created_at=ensure_utc(record.created_at),
        name=record.name,
    )
