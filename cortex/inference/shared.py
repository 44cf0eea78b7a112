from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from typing import Optional

from cortex.core.errors import (
    CortexError,
    EmbeddingError,
    EngineBusy,
    EngineExportError,
    EngineImportError,
    GenerationCancelled,
    GenerationError,
    Timeout,
)
from cortex.inference.base import InferenceEngine, SamplingParams

logger = logging.getLogger(__name__)

TokenCallback = Callable[[str], Optional[bool]]


class SharedEngine:
    """Single owned engine handle shared by every session.

    At most one generate/embed/export/import call runs against the wrapped
    engine at a time. Waiters queue on an asyncio.Lock, which wakes them in
    arrival order.
    """

    def __init__(self, engine: InferenceEngine, acquire_timeout: Optional[float] = None) -> None:
        self._engine = engine
        self._lock = asyncio.Lock()
        self._acquire_timeout = acquire_timeout
        self._waiting = 0

    @property
    def engine(self) -> InferenceEngine:
        return self._engine

    @property
    def engine_id(self) -> str:
        return self._engine.engine_id

    @property
    def embedding_dim(self) -> int:
        return int(self._engine.embedding_dim)

    @property
    def context_size(self) -> int:
        return int(self._engine.context_size)

    @property
    def context_used(self) -> int:
        return int(self._engine.context_used)

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def tokenize(self, text: str) -> list[int]:
        """Tokenize without taking the lock; tokenization does not touch engine state."""

        return await self._engine.tokenize(text)

    async def embed(self, text: str) -> list[float]:
        async with self._exclusive("embed"):
            try:
                return await self._engine.embed(text)
            except CortexError:
                raise
            except Exception as exc:  # noqa: BLE001
                raise EmbeddingError(f"Engine failed to embed text: {exc}") from exc

    async def export_state(self) -> bytes:
        async with self._exclusive("export_state"):
            try:
                blob = await self._engine.export_state()
            except CortexError:
                raise
            except Exception as exc:  # noqa: BLE001
                raise EngineExportError(f"Engine failed to export state: {exc}") from exc
        if not isinstance(blob, (bytes, bytearray)):
            raise EngineExportError("Engine exported a non-bytes state blob")
        return bytes(blob)

    async def import_state(self, blob: bytes) -> None:
        async with self._exclusive("import_state"):
            try:
                await self._engine.import_state(blob)
            except CortexError:
                raise
            except Exception as exc:  # noqa: BLE001
                raise EngineImportError(f"Engine failed to import state: {exc}") from exc

    async def clear(self) -> None:
        async with self._exclusive("clear"):
            try:
                await self._engine.clear()
            except CortexError:
                raise
            except Exception as exc:  # noqa: BLE001
                raise EngineImportError(f"Engine failed to clear its context: {exc}") from exc

    async def generate(
        self,
        context: Sequence[dict],
        params: SamplingParams,
        *,
        timeout: Optional[float] = None,
        on_token: Optional[TokenCallback] = None,
    ) -> str:
        """Run one generation to completion and return the full text.

        The deadline covers queueing and streaming. `on_token` returning False
        stops the stream with GenerationCancelled. Task cancellation propagates
        unchanged.
        """

        if timeout is None:
            return await self._generate_locked(context, params, on_token)
        try:
            return await asyncio.wait_for(
                self._generate_locked(context, params, on_token), timeout=timeout
            )
        except asyncio.TimeoutError as exc:
            raise Timeout(f"Generation exceeded its {timeout:g}s deadline") from exc

    async def _generate_locked(
        self,
        context: Sequence[dict],
        params: SamplingParams,
        on_token: Optional[TokenCallback],
    ) -> str:
        async with self._exclusive("generate"):
            pieces: list[str] = []
            stream = self._engine.generate(context, params)
            try:
                async for piece in stream:
                    pieces.append(piece)
                    if on_token is not None and on_token(piece) is False:
                        raise GenerationCancelled("Generation stopped by caller")
            except CortexError:
                raise
            except Exception as exc:  # noqa: BLE001
                raise GenerationError(f"Engine failed to generate: {exc}") from exc
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()
            return "".join(pieces)

    @asynccontextmanager
    async def _exclusive(self, operation: str) -> AsyncIterator[None]:
        if self._lock.locked():
            logger.debug("Engine busy; %s queued behind %d waiter(s)", operation, self._waiting)
        self._waiting += 1
        try:
            if self._acquire_timeout is None:
                await self._lock.acquire()
            else:
                try:
                    await asyncio.wait_for(self._lock.acquire(), timeout=self._acquire_timeout)
                except asyncio.TimeoutError as exc:
                    logger.warning("Engine busy; %s gave up after %ss", operation, self._acquire_timeout)
                    raise EngineBusy(
                        f"Engine busy: could not start {operation} within {self._acquire_timeout:g}s"
                    ) from exc
        finally:
            self._waiting -= 1
        try:
            yield
        finally:
            self._lock.release()
