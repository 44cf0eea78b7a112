from __future__ import annotations

import hashlib
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cortex.core.errors import CorruptState, HasDescendants, NotFound
from cortex.inference.shared import SharedEngine
from cortex.repos.checkpoint_repo import CheckpointRepo
from cortex.repos.message_repo import MessageRepo
from cortex.repos.session_repo import SessionRepo
from cortex.state.tree import CheckpointTree
from cortex.state.types import Checkpoint, Message, SessionSnapshot, SessionStatus

logger = logging.getLogger(__name__)


def compute_checksum(blob: bytes) -> str:
    """Return the SHA-256 hex digest of an opaque state blob."""

    return hashlib.sha256(blob).hexdigest()


class CheckpointManager:
    """Create, restore, branch and delete checkpoints of sessions.

    The tree lives in an in-memory arena mirrored write-through to SQL. Each
    checkpoint stores only the messages appended since its parent, so the
    history of any node is rebuilt by walking its ancestor chain. Callers
    serialize operations on the same session; the manager itself does not.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: SharedEngine,
        tree: Optional[CheckpointTree] = None,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._engine = engine
        self._tree = tree or CheckpointTree()

    @property
    def tree(self) -> CheckpointTree:
        return self._tree

    async def hydrate(self) -> int:
        """Load every persisted checkpoint into the in-memory arena."""

        async with self._sessionmaker() as db:
            checkpoints = await CheckpointRepo(db).list_checkpoints()
        self._tree = CheckpointTree(checkpoints)
        logger.info("Loaded %d checkpoint(s)", len(self._tree))
        return len(self._tree)

    async def checkpoint(self, session_id: str, *, name: Optional[str] = None) -> Checkpoint:
        """Capture the session's history and engine state under a new node.

        The new node's parent is the session's current checkpoint, and the
        session pointer moves to it.
        """

        async with self._sessionmaker() as db:
            session_repo = SessionRepo(db)
            session = await session_repo.get_session(session_id)
            if not session:
                raise NotFound(f"Session {session_id} not found")
            messages = await MessageRepo(db).list_messages(session_id)

        parent = None
        if session.current_checkpoint_id is not None:
            parent = self._tree.find(session.current_checkpoint_id)
        parent_count = parent.message_count if parent else 0
        if len(messages) < parent_count:
            raise CorruptState(
                f"Session {session_id} holds fewer messages than its current checkpoint"
            )
        blob = await self._engine.export_state()
        checksum = compute_checksum(blob)

        async with self._sessionmaker() as db:
            async with db.begin():
                checkpoint = await CheckpointRepo(db).create_checkpoint(
                    session_id=session_id,
                    parent_id=parent.id if parent else None,
                    name=name,
                    message_count=len(messages),
                    opaque_state=blob,
                    checksum=checksum,
                    delta_start_seq=parent_count + 1,
                    delta_messages=messages[parent_count:],
                )
                await SessionRepo(db).update_pointer(
                    session_id,
                    status=session.status,
                    current_checkpoint_id=checkpoint.id,
                    turns_since_checkpoint=0,
                )
        self._tree.add(checkpoint)
        logger.info(
            "Created checkpoint %s for session %s (parent=%s, messages=%d)",
            checkpoint.id,
            session_id,
            checkpoint.parent_id,
            checkpoint.message_count,
        )
        return checkpoint

    async def restore(self, session_id: str, checkpoint_id: int) -> SessionSnapshot:
        """Reset the session's history and engine state to a checkpoint.

        The checksum is verified before the engine sees the blob. The tree is
        never modified.
        """

        node = self._owned(session_id, checkpoint_id)
        async with self._sessionmaker() as db:
            stored = await CheckpointRepo(db).load_state(checkpoint_id)
        if stored is None:
            raise NotFound(f"Checkpoint {checkpoint_id} state not found")
        blob, stored_checksum = stored
        actual = compute_checksum(blob)
        if actual != stored_checksum or actual != node.checksum:
            logger.warning("Checksum mismatch on checkpoint %s", checkpoint_id)
            raise CorruptState(f"Checkpoint {checkpoint_id} failed checksum verification")

        messages = await self.history(checkpoint_id)
        if len(messages) != node.message_count:
            raise CorruptState(
                f"Checkpoint {checkpoint_id} rebuilds {len(messages)} message(s), "
                f"expected {node.message_count}"
            )
        await self._engine.import_state(blob)

        async with self._sessionmaker() as db:
            async with db.begin():
                await MessageRepo(db).replace_messages(session_id, messages)
                session = await SessionRepo(db).update_pointer(
                    session_id,
                    status=SessionStatus.ACTIVE.value,
                    current_checkpoint_id=checkpoint_id,
                    turns_since_checkpoint=0,
                )
                if not session:
                    raise NotFound(f"Session {session_id} not found")
        logger.info("Restored session %s to checkpoint %s", session_id, checkpoint_id)
        return SessionSnapshot(
            session_id=session_id,
            checkpoint_id=checkpoint_id,
            messages=tuple(messages),
            status=SessionStatus.ACTIVE,
        )

    async def branch(
        self, session_id: str, checkpoint_id: int, *, name: Optional[str] = None
    ) -> Checkpoint:
        """Restore `checkpoint_id` and take a fresh child checkpoint of it."""

        await self.restore(session_id, checkpoint_id)
        checkpoint = await self.checkpoint(session_id, name=name)
        logger.info("Branched checkpoint %s from %s", checkpoint.id, checkpoint_id)
        return checkpoint

    async def list(self, session_id: str) -> list[Checkpoint]:
        """Return the ancestors of the session's current checkpoint, oldest first."""

        current = await self.current_checkpoint_id(session_id)
        if current is None or current not in self._tree:
            return []
        return self._tree.ancestors(current)

    def list_all(self, session_id: str) -> list[Checkpoint]:
        """Return every checkpoint of a session in id order."""

        return self._tree.for_session(session_id)

    async def current_checkpoint_id(self, session_id: str) -> Optional[int]:
        async with self._sessionmaker() as db:
            session = await SessionRepo(db).get_session(session_id)
        if not session:
            raise NotFound(f"Session {session_id} not found")
        return session.current_checkpoint_id

    async def delete(self, checkpoint_id: int) -> Checkpoint:
        """Delete a leaf checkpoint.

        A session whose pointer referenced the deleted node moves to its
        parent; its active history is kept.
        """

        node = self._tree.get(checkpoint_id)
        if not self._tree.is_leaf(checkpoint_id):
            raise HasDescendants(f"Checkpoint {checkpoint_id} has child checkpoints")

        async with self._sessionmaker() as db:
            async with db.begin():
                session_repo = SessionRepo(db)
                session = await session_repo.get_session(node.session_id)
                if session and session.current_checkpoint_id == checkpoint_id:
                    await session_repo.update_pointer(
                        node.session_id,
                        status=session.status,
                        current_checkpoint_id=node.parent_id,
                        turns_since_checkpoint=session.turns_since_checkpoint,
                    )
                await CheckpointRepo(db).delete_checkpoint(checkpoint_id)
        self._tree.remove_leaf(checkpoint_id)
        logger.info("Deleted checkpoint %s of session %s", checkpoint_id, node.session_id)
        return node

    async def history(self, checkpoint_id: int) -> list[Message]:
        """Rebuild the full message history captured by a checkpoint."""

        chain = self._tree.ancestors(checkpoint_id)
        async with self._sessionmaker() as db:
            deltas = await CheckpointRepo(db).list_delta_messages([node.id for node in chain])
        messages: list[Message] = []
        for node in chain:
            messages.extend(deltas.get(node.id, []))
        return messages

    def forget_session(self, session_id: str) -> int:
        """Drop the nodes of a deleted session from the arena."""

        return self._tree.drop_session(session_id)

    def _owned(self, session_id: str, checkpoint_id: int) -> Checkpoint:
        node = self._tree.get(checkpoint_id)
        if node.session_id != session_id:
            raise NotFound(f"Checkpoint {checkpoint_id} not found in session {session_id}")
        return node
