from __future__ import annotations

import asyncio
import hashlib
import json
from collections.abc import AsyncIterator, Sequence
from typing import Optional

from cortex.core.errors import (
    EmbeddingError,
    EngineExportError,
    EngineImportError,
    GenerationError,
)
from cortex.inference.base import SamplingParams
from cortex.memory.embedder import DeterministicEmbedder, split_words


class StubEngine:
    """Deterministic engine used for offline runs and tests.

    Its state is the list of token ids it has evaluated. Failures can be
    injected per capability through `fail_on` ("generate", "embed", "export",
    "import"), and `token_delay` slows streaming so callers can cancel.
    """

    engine_id = "stub"

    def __init__(
        self,
        embedding_dim: int = 64,
        context_size: int = 8192,
        response_prefix: str = "",
        token_delay: float = 0.0,
    ) -> None:
        self.embedding_dim = int(embedding_dim)
        self.context_size = int(context_size)
        self.response_prefix = response_prefix
        self.token_delay = token_delay
        self.fail_on: set[str] = set()
        self.calls: list[str] = []
        self.peak_in_flight = 0
        self._in_flight = 0
        self._tokens: list[int] = []
        self._embedder = DeterministicEmbedder(dimension=self.embedding_dim, model_name="stub")

    @property
    def context_used(self) -> int:
        return len(self._tokens)

    async def tokenize(self, text: str) -> list[int]:
        return _token_ids(text)

    async def generate(
        self, context: Sequence[dict], params: SamplingParams
    ) -> AsyncIterator[str]:
        self._enter("generate")
        try:
            if "generate" in self.fail_on:
                raise GenerationError("Stub engine refused to generate", code="STUB_GENERATE_FAILED")
            prompt_text = "\n".join(str(item.get("content", "")) for item in context)
            response = self._respond(context, params)
            pieces = _split_inclusive(response)[: max(1, params.max_tokens)]
            for piece in pieces:
                if self.token_delay:
                    await asyncio.sleep(self.token_delay)
                yield piece
            self._tokens.extend(_token_ids(prompt_text))
            self._tokens.extend(_token_ids("".join(pieces)))
        finally:
            self._leave()

    async def embed(self, text: str) -> list[float]:
        self._enter("embed")
        try:
            if self.token_delay:
                await asyncio.sleep(self.token_delay)
            if "embed" in self.fail_on:
                raise EmbeddingError("Stub engine refused to embed", code="STUB_EMBED_FAILED")
            return self._embedder.embed_sync(text)
        finally:
            self._leave()

    async def export_state(self) -> bytes:
        self._enter("export")
        try:
            if "export" in self.fail_on:
                raise EngineExportError("Stub engine is busy", code="STUB_EXPORT_FAILED")
            payload = {"engine_id": self.engine_id, "tokens": list(self._tokens)}
            return json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
        finally:
            self._leave()

    async def import_state(self, blob: bytes) -> None:
        self._enter("import")
        try:
            if "import" in self.fail_on:
                raise EngineImportError("Stub engine refused state", code="STUB_IMPORT_FAILED")
            try:
                payload = json.loads(blob.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                raise EngineImportError("State blob is not valid stub state") from exc
            if not isinstance(payload, dict) or payload.get("engine_id") != self.engine_id:
                raise EngineImportError(
                    f"Cannot restore state from engine '{payload.get('engine_id') if isinstance(payload, dict) else None}'"
                )
            tokens = payload.get("tokens")
            if not isinstance(tokens, list) or not all(isinstance(item, int) for item in tokens):
                raise EngineImportError("State blob has no token list")
            self._tokens = list(tokens)
        finally:
            self._leave()

    async def clear(self) -> None:
        self.calls.append("clear")
        self._tokens = []

    def _respond(self, context: Sequence[dict], params: SamplingParams) -> str:
        last_user: Optional[str] = None
        for message in reversed(context):
            if message.get("role") == "user":
                last_user = str(message.get("content", ""))
                break
        excerpt = (last_user or "").strip()[:30]
        return (
            f"{self.response_prefix}[Stub response for: \"{excerpt}\", "
            f"temp={params.temperature}, max={params.max_tokens}]"
        )

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        self._in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self._in_flight)

    def _leave(self) -> None:
        self._in_flight -= 1


def _token_ids(text: str) -> list[int]:
    ids: list[int] = []
    for token in split_words(text):
        digest = hashlib.blake2b(token.encode("utf-8"), digest_size=4).digest()
        ids.append(int.from_bytes(digest, byteorder="big") % 50_000)
    return ids


def _split_inclusive(text: str) -> list[str]:
    pieces: list[str] = []
    start = 0
    for index, ch in enumerate(text):
        if ch == " ":
            pieces.append(text[start : index + 1])
            start = index + 1
    if start < len(text):
        pieces.append(text[start:])
    return pieces
