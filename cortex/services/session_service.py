from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cortex.core.errors import (
    CortexError,
    GenerationError,
    InvalidInput,
    NotFound,
    SessionClosed,
)
from cortex.inference.base import SamplingParams
from cortex.inference.shared import SharedEngine, TokenCallback
from cortex.memory.store import MemoryStore
from cortex.memory.types import MemorySearchResult
from cortex.repos.message_repo import MessageRepo
from cortex.repos.session_repo import SessionRepo
from cortex.services.checkpoint_service import CheckpointManager
from cortex.services.prompt_builder import PromptBuilder
from cortex.state.types import Checkpoint, Message, Role, SessionSnapshot, SessionStatus
from cortex.utils.time_utils import ensure_utc

logger = logging.getLogger(__name__)


@dataclass
class SessionOptions:
    """Per-turn behaviour shared by every session of a runtime."""

    top_k: int = 5
    auto_checkpoint_every_n_turns: int = 0
    generation_timeout: Optional[float] = None
    sampling: SamplingParams = field(default_factory=SamplingParams)
    memory_path: Optional[Path] = None


class Session:
    """One conversation bound to the shared engine, memory and checkpoints.

    chat, checkpoint, restore, branch and delete on the same session run one
    at a time. A turn is committed only after generation completes; on any
    failure or cancellation the history is left as it was.
    """

    def __init__(
        self,
        *,
        session_id: str,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: SharedEngine,
        memory: MemoryStore,
        checkpoints: CheckpointManager,
        prompt_builder: PromptBuilder,
        options: SessionOptions,
        status: SessionStatus = SessionStatus.UNINITIALIZED,
        messages: Optional[list[Message]] = None,
        current_checkpoint_id: Optional[int] = None,
        turns_since_checkpoint: int = 0,
        created_at: Optional[datetime] = None,
    ) -> None:
        self.id = session_id
        self.created_at = created_at
        self._sessionmaker = sessionmaker
        self._engine = engine
        self._memory = memory
        self._checkpoints = checkpoints
        self._prompt_builder = prompt_builder
        self._options = options
        self._status = status
        self._messages: list[Message] = list(messages or [])
        self._current_checkpoint_id = current_checkpoint_id
        self._turns_since_checkpoint = turns_since_checkpoint
        self._lock = asyncio.Lock()

    @classmethod
    async def open(
        cls,
        session_id: Optional[str] = None,
        *,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: SharedEngine,
        memory: MemoryStore,
        checkpoints: CheckpointManager,
        prompt_builder: PromptBuilder,
        options: SessionOptions,
        system_prompt: Optional[str] = None,
        create: bool = True,
    ) -> "Session":
        """Load a persisted session, or create it when it does not exist yet."""

        session_id = session_id or uuid.uuid4().hex
        async with sessionmaker() as db:
            async with db.begin():
                session_repo = SessionRepo(db)
                message_repo = MessageRepo(db)
                row = await session_repo.get_session(session_id)
                if row is None:
                    if not create:
                        raise NotFound(f"Session {session_id} not found")
                    row = await session_repo.create_session(session_id)
                    if system_prompt and system_prompt.strip():
                        await message_repo.append_messages(
                            session_id, 1, [Message.system(system_prompt.strip())]
                        )
                messages = await message_repo.list_messages(session_id)
                created_at = ensure_utc(row.created_at)

        return cls(
            session_id=session_id,
            sessionmaker=sessionmaker,
            engine=engine,
            memory=memory,
            checkpoints=checkpoints,
            prompt_builder=prompt_builder,
            options=options,
            status=SessionStatus(row.status),
            messages=messages,
            current_checkpoint_id=row.current_checkpoint_id,
            turns_since_checkpoint=row.turns_since_checkpoint,
            created_at=created_at,
        )

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def current_checkpoint_id(self) -> Optional[int]:
        return self._current_checkpoint_id

    @property
    def turns_since_checkpoint(self) -> int:
        return self._turns_since_checkpoint

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    async def chat(
        self,
        text: str,
        *,
        params: Optional[SamplingParams] = None,
        on_token: Optional[TokenCallback] = None,
    ) -> str:
        """Run one conversational turn and return the assistant's reply."""

        if not isinstance(text, str) or not text.strip():
            raise InvalidInput("Chat input must not be empty")
        async with self._lock:
            self._ensure_open()
            user_message = Message.user(text)
            pending = [*self._messages, user_message]

            memory_hits = await self._recall_for_turn(text)
            context = self._prompt_builder.build_messages(pending, memory_hits)
            reply = await self._generate(context, params or self._options.sampling, on_token)

            assistant_message = Message.assistant(reply)
            turns = self._turns_since_checkpoint + 1
            async with self._sessionmaker() as db:
                async with db.begin():
                    await MessageRepo(db).append_messages(
                        self.id, len(self._messages) + 1, [user_message, assistant_message]
                    )
                    await SessionRepo(db).update_pointer(
                        self.id,
                        status=SessionStatus.ACTIVE.value,
                        current_checkpoint_id=self._current_checkpoint_id,
                        turns_since_checkpoint=turns,
                    )
            self._messages.extend([user_message, assistant_message])
            self._status = SessionStatus.ACTIVE
            self._turns_since_checkpoint = turns

            await self._maybe_auto_checkpoint()
            return reply

    async def stream_chat(
        self,
        text: str,
        on_token: TokenCallback,
        *,
        params: Optional[SamplingParams] = None,
    ) -> str:
        """Like chat, forwarding each generated piece to `on_token`.

        Returning False from `on_token` stops the turn with GenerationCancelled.
        """

        return await self.chat(text, params=params, on_token=on_token)

    async def checkpoint(self, name: Optional[str] = None) -> Checkpoint:
        async with self._lock:
            self._ensure_open()
            checkpoint = await self._checkpoints.checkpoint(self.id, name=name)
            self._current_checkpoint_id = checkpoint.id
            self._turns_since_checkpoint = 0
            return checkpoint

    async def restore(self, checkpoint_id: int) -> SessionSnapshot:
        """Return to a checkpoint; also re-enters Active from Closed."""

        async with self._lock:
            snapshot = await self._checkpoints.restore(self.id, checkpoint_id)
            self._apply_snapshot(snapshot)
            return snapshot

    async def branch(self, checkpoint_id: int, name: Optional[str] = None) -> Checkpoint:
        """Start a divergent line as a new child of `checkpoint_id`.

        The restore half is committed first. If the child checkpoint then
        fails, the session stays restored at `checkpoint_id`.
        """

        async with self._lock:
            snapshot = await self._checkpoints.restore(self.id, checkpoint_id)
            self._apply_snapshot(snapshot)
            checkpoint = await self._checkpoints.checkpoint(self.id, name=name)
            self._current_checkpoint_id = checkpoint.id
            logger.info("Session %s branched to %s from %s", self.id, checkpoint.id, checkpoint_id)
            return checkpoint

    async def clear(self) -> None:
        """Start the conversation over, keeping only the system prompt.

        The engine context is dropped and the session detaches from its
        checkpoint, so the next checkpoint is a new root. Existing checkpoints
        stay restorable and long-term memory is not touched.
        """

        async with self._lock:
            self._ensure_open()
            kept = [message for message in self._messages if message.role is Role.SYSTEM]
            await self._reset(kept)

    async def set_system(self, prompt: str) -> None:
        """Replace the system prompt; like clear, this starts a fresh conversation."""

        if not isinstance(prompt, str) or not prompt.strip():
            raise InvalidInput("System prompt must not be empty")
        async with self._lock:
            self._ensure_open()
            await self._reset([Message.system(prompt.strip())])

    async def list_checkpoints(self) -> list[Checkpoint]:
        """Return the lineage of the current checkpoint, oldest first."""

        return await self._checkpoints.list(self.id)

    def all_checkpoints(self) -> list[Checkpoint]:
        return self._checkpoints.list_all(self.id)

    async def delete_checkpoint(self, checkpoint_id: int) -> Checkpoint:
        async with self._lock:
            node = self._checkpoints.tree.get(checkpoint_id)
            if node.session_id != self.id:
                raise NotFound(f"Checkpoint {checkpoint_id} not found in session {self.id}")
            deleted = await self._checkpoints.delete(checkpoint_id)
            if self._current_checkpoint_id == checkpoint_id:
                self._current_checkpoint_id = deleted.parent_id
            return deleted

    async def remember(self, text: str, metadata: Optional[Mapping[str, str]] = None) -> str:
        """Write text into long-term memory, tagged with this session's id."""

        self._ensure_open()
        tags = {"session_id": self.id}
        tags.update(metadata or {})
        return await self._memory.write(text, tags)

    async def recall(
        self, query: str, k: Optional[int] = None, threshold: Optional[float] = None
    ) -> list[MemorySearchResult]:
        self._ensure_open()
        return await self._memory.search(query, k or self._options.top_k, threshold)

    async def close(self) -> None:
        """Flush memory persistence and enter Closed."""

        async with self._lock:
            if self._status is SessionStatus.CLOSED:
                return
            if self._options.memory_path is not None:
                await self._memory.save(self._options.memory_path)
            async with self._sessionmaker() as db:
                async with db.begin():
                    await SessionRepo(db).update_pointer(
                        self.id,
                        status=SessionStatus.CLOSED.value,
                        current_checkpoint_id=self._current_checkpoint_id,
                        turns_since_checkpoint=self._turns_since_checkpoint,
                    )
            self._status = SessionStatus.CLOSED
            logger.info("Closed session %s", self.id)

    def mark_closed(self) -> None:
        """Close the in-memory handle without touching storage."""

        self._status = SessionStatus.CLOSED

    def _ensure_open(self) -> None:
        if self._status is SessionStatus.CLOSED:
            raise SessionClosed(f"Session {self.id} is closed; restore a checkpoint to reopen it")

    def _apply_snapshot(self, snapshot: SessionSnapshot) -> None:
        self._messages = list(snapshot.messages)
        self._current_checkpoint_id = snapshot.checkpoint_id
        self._status = snapshot.status
        self._turns_since_checkpoint = 0

    async def _reset(self, messages: list[Message]) -> None:
        await self._engine.clear()
        async with self._sessionmaker() as db:
            async with db.begin():
                await MessageRepo(db).replace_messages(self.id, messages)
                await SessionRepo(db).update_pointer(
                    self.id,
                    status=self._status.value,
                    current_checkpoint_id=None,
                    turns_since_checkpoint=0,
                )
        self._messages = list(messages)
        self._current_checkpoint_id = None
        self._turns_since_checkpoint = 0
        logger.info("Reset session %s; %d message(s) kept", self.id, len(messages))

    async def _recall_for_turn(self, text: str) -> list[MemorySearchResult]:
        if self._options.top_k <= 0:
            return []
        return await self._memory.search(text, self._options.top_k)

    async def _generate(
        self,
        context: list[dict],
        params: SamplingParams,
        on_token: Optional[TokenCallback],
    ) -> str:
        try:
            return await self._engine.generate(
                context,
                params,
                timeout=self._options.generation_timeout,
                on_token=on_token,
            )
        except asyncio.CancelledError:
            logger.info("Turn cancelled for session %s; nothing committed", self.id)
            raise
        except CortexError as exc:
            logger.warning("Turn failed for session %s: %s", self.id, exc.code)
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Turn failed for session %s", self.id)
            raise GenerationError(f"Generation failed: {exc}") from exc

    async def _maybe_auto_checkpoint(self) -> None:
        every = self._options.auto_checkpoint_every_n_turns
        if every <= 0 or self._turns_since_checkpoint < every:
            return
        try:
            checkpoint = await self._checkpoints.checkpoint(self.id)
        except (CortexError, SQLAlchemyError) as exc:
            # The turn stays committed; the counter keeps the checkpoint due.
            logger.warning("Auto-checkpoint failed for session %s: %s", self.id, exc)
            return
        self._current_checkpoint_id = checkpoint.id
        self._turns_since_checkpoint = 0


def with_sampling_overrides(params: SamplingParams, **overrides: object) -> SamplingParams:
    """Return a copy of `params` with the non-None overrides applied."""

    return replace(params, **{key: value for key, value in overrides.items() if value is not None})
