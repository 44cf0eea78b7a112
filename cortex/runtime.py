from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from cortex.core.config import Settings, get_settings
from cortex.core.errors import CorruptState, CortexError
from cortex.db.base import create_engine, create_sessionmaker, init_db
from cortex.db.models import ChatSession
from cortex.inference.base import InferenceEngine, SamplingParams
from cortex.inference.ollama_engine import OllamaEngine
from cortex.inference.shared import SharedEngine
from cortex.inference.stub_engine import StubEngine
from cortex.inference.templates import ChatTemplate
from cortex.memory.embedder import DeterministicEmbedder, Embedder, EngineEmbedder, OpenAIEmbedder
from cortex.memory.store import MemoryStore
from cortex.repos.checkpoint_repo import CheckpointRepo
from cortex.repos.message_repo import MessageRepo
from cortex.repos.session_repo import SessionRepo
from cortex.services.checkpoint_service import CheckpointManager
from cortex.services.prompt_builder import PromptBuilder
from cortex.services.session_service import Session, SessionOptions

logger = logging.getLogger(__name__)


class Runtime:
    """Process-wide wiring: database, shared engine, memory and checkpoints."""

    def __init__(
        self,
        *,
        settings: Settings,
        db_engine: AsyncEngine,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: SharedEngine,
        embedder: Embedder,
        memory: MemoryStore,
        checkpoints: CheckpointManager,
        prompt_builder: PromptBuilder,
        options: SessionOptions,
        memory_load_error: Optional[CorruptState] = None,
    ) -> None:
        self.settings = settings
        self.db_engine = db_engine
        self.sessionmaker = sessionmaker
        self.engine = engine
        self.embedder = embedder
        self.memory = memory
        self.checkpoints = checkpoints
        self.prompt_builder = prompt_builder
        self.options = options
        self.memory_load_error = memory_load_error
        self._sessions: dict[str, Session] = {}
        self._sessions_lock = asyncio.Lock()

    async def open_session(
        self,
        session_id: Optional[str] = None,
        *,
        system_prompt: Optional[str] = None,
        create: bool = True,
    ) -> Session:
        """Return the live handle of a session, loading or creating it on first use."""

        async with self._sessions_lock:
            if session_id and session_id in self._sessions:
                return self._sessions[session_id]
            session = await Session.open(
                session_id,
                sessionmaker=self.sessionmaker,
                engine=self.engine,
                memory=self.memory,
                checkpoints=self.checkpoints,
                prompt_builder=self.prompt_builder,
                options=self.options,
                system_prompt=system_prompt if system_prompt is not None else self.settings.system_prompt,
                create=create,
            )
            self._sessions[session.id] = session
            return session

    def context_usage(self) -> tuple[int, int]:
        """Return (tokens held, context window size) of the shared engine."""

        return self.engine.context_used, self.engine.context_size

    async def list_sessions(self, limit: int = 100) -> list[ChatSession]:
        async with self.sessionmaker() as db:
            return await SessionRepo(db).list_sessions(limit=limit)

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session with its messages and checkpoints."""

        handle = self._sessions.get(session_id)
        if handle is not None:
            async with handle.lock:
                deleted = await self._delete_rows(session_id)
                handle.mark_closed()
        else:
            deleted = await self._delete_rows(session_id)
        self._sessions.pop(session_id, None)
        if deleted:
            logger.info("Deleted session %s", session_id)
        return deleted

    async def close(self) -> None:
        """Flush memory persistence and dispose of the database engine."""

        path = self.options.memory_path
        try:
            if path is not None:
                await self.memory.save(path)
        finally:
            self._sessions.clear()
            await self.db_engine.dispose()

    async def _delete_rows(self, session_id: str) -> bool:
        async with self.sessionmaker() as db:
            async with db.begin():
                await CheckpointRepo(db).delete_for_session(session_id)
                await MessageRepo(db).delete_messages(session_id)
                deleted = await SessionRepo(db).delete_session(session_id)
        self.checkpoints.forget_session(session_id)
        return deleted


async def create_runtime(
    settings: Optional[Settings] = None,
    *,
    inference_engine: Optional[InferenceEngine] = None,
    embedder: Optional[Embedder] = None,
) -> Runtime:
    """Build a runtime from settings; engine and embedder can be injected."""

    settings = settings or get_settings()
    engine = SharedEngine(
        inference_engine or _create_inference_engine(settings),
        acquire_timeout=settings.acquire_timeout(),
    )
    embedder = embedder or _create_embedder(settings, engine)
    memory = MemoryStore(
        embedder,
        dimension=settings.embedding_dimension,
        max_entries=settings.max_entries,
        similarity_threshold=settings.similarity_threshold,
        default_k=settings.top_k,
    )

    memory_path = Path(settings.memory_path) if settings.memory_path.strip() else None
    memory_load_error: Optional[CorruptState] = None
    if memory_path is not None and memory_path.exists():
        try:
            await memory.load(memory_path)
        except CorruptState as exc:
            # Surfaced through memory_load_error; the store starts empty.
            logger.warning("Memory file %s rejected: %s; starting empty", memory_path, exc)
            memory_load_error = exc

    db_engine = create_engine(settings.db_url)
    await init_db(db_engine)
    sessionmaker = create_sessionmaker(db_engine)
    checkpoints = CheckpointManager(sessionmaker, engine)
    await checkpoints.hydrate()

    options = SessionOptions(
        top_k=settings.top_k,
        auto_checkpoint_every_n_turns=settings.auto_checkpoint_every_n_turns,
        generation_timeout=settings.generation_timeout(),
        sampling=SamplingParams(
            max_tokens=settings.gen_max_tokens,
            temperature=settings.gen_temperature,
            top_p=settings.gen_top_p,
            top_k=settings.gen_top_k,
            repeat_penalty=settings.gen_repeat_penalty,
        ),
        memory_path=memory_path,
    )
    return Runtime(
        settings=settings,
        db_engine=db_engine,
        sessionmaker=sessionmaker,
        engine=engine,
        embedder=embedder,
        memory=memory,
        checkpoints=checkpoints,
        prompt_builder=PromptBuilder(
            max_history=settings.max_history_messages,
            memory_max_chars=settings.memory_max_chars,
        ),
        options=options,
        memory_load_error=memory_load_error,
    )


def _create_inference_engine(settings: Settings) -> InferenceEngine:
    provider = settings.engine_provider.strip().lower()
    if provider == "ollama":
        return OllamaEngine(
            base_url=settings.ollama_base_url,
            model_name=settings.engine_model,
            embedding_dim=settings.embedding_dimension,
            template=ChatTemplate.parse(settings.chat_template),
            embed_model=settings.embed_model.strip() or None,
            timeout_sec=settings.generation_timeout() or 90,
        )
    if provider != "stub":
        logger.warning("Unknown ENGINE_PROVIDER=%s; fallback to stub", provider)
    return StubEngine(embedding_dim=settings.embedding_dimension)


def _create_embedder(settings: Settings, engine: SharedEngine) -> Embedder:
    provider = settings.embed_provider.strip().lower()
    if provider == "engine":
        if engine.embedding_dim != settings.embedding_dimension:
            raise CortexError(
                f"Engine embeds {engine.embedding_dim}-d vectors but "
                f"EMBEDDING_DIMENSION={settings.embedding_dimension}",
                code="CONFIG_INVALID",
            )
        return EngineEmbedder(engine)

    if provider == "deterministic":
        model_name = settings.embed_model.strip() or "deterministic-v1"
        return DeterministicEmbedder(dimension=settings.embedding_dimension, model_name=model_name)

    if provider == "openai":
        api_key = settings.embed_openai_api_key.strip()
        if not api_key:
            logger.warning(
                "EMBED_PROVIDER=openai but EMBED_OPENAI_API_KEY is missing; fallback to deterministic"
            )
            return DeterministicEmbedder(dimension=settings.embedding_dimension)
        model_name = settings.embed_model.strip() or "text-embedding-3-small"
        return OpenAIEmbedder(
            base_url=settings.openai_base_url,
            api_key=api_key,
            model_name=model_name,
            dimension=settings.embedding_dimension,
        )

    logger.warning("Unknown EMBED_PROVIDER=%s; fallback to engine", provider)
    return EngineEmbedder(engine)
