from __future__ import annotations

import json
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx

from cortex.core.errors import EmbeddingError, EngineImportError, GenerationError
from cortex.inference.base import SamplingParams
from cortex.inference.templates import ChatTemplate, format_chat_prompt


class OllamaEngine:
    """Engine backed by a local Ollama server.

    Prompts are rendered client-side with a chat template and sent raw. The
    exportable state is the evaluated token context the server returns after
    each completed generation. While a context is held it is posted back with
    the next request, and only the turns after the last assistant reply are
    rendered into the prompt.
    """

    engine_id = "ollama"

    def __init__(
        self,
        *,
        base_url: str,
        model_name: str,
        embedding_dim: int,
        template: ChatTemplate = ChatTemplate.LLAMA3,
        embed_model: Optional[str] = None,
        context_size: int = 4096,
        timeout_sec: float = 90,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not base_url:
            raise GenerationError("Base URL is required for Ollama.", code="PROVIDER_BASE_URL_MISSING")
        self._base_url = base_url.rstrip("/")
        self.model_name = model_name
        self.embed_model = embed_model or model_name
        self.embedding_dim = int(embedding_dim)
        self.context_size = int(context_size)
        self.template = template
        self._timeout = timeout_sec
        self._client = http_client
        self._context: list[int] = []
        self._last_system: Optional[str] = None

    @property
    def context_used(self) -> int:
        return len(self._context)

    async def tokenize(self, text: str) -> list[int]:
        raise GenerationError("Ollama does not expose tokenization.", code="ENGINE_UNSUPPORTED")

    async def generate(
        self, context: Sequence[dict], params: SamplingParams
    ) -> AsyncIterator[str]:
        messages, continuing = self._pending_turn(context)
        payload: dict[str, Any] = {
            "model": self.model_name,
            "prompt": format_chat_prompt(messages, self.template, continuation=continuing),
            "raw": True,
            "stream": True,
            "options": self._options(params),
        }
        if continuing:
            payload["context"] = list(self._context)
        url = self._join_url("/api/generate")
        try:
            async with self._client_context() as client:
                async with client.stream("POST", url, json=payload) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        raise self._status_error(response)
                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        chunk = self._parse_chunk(line)
                        piece = chunk.get("response")
                        if isinstance(piece, str) and piece:
                            yield piece
                        if chunk.get("done"):
                            tokens = chunk.get("context")
                            if isinstance(tokens, list):
                                self._context = [int(item) for item in tokens]
                                self._last_system = _system_text(messages) or self._last_system
                            break
        except httpx.TimeoutException as exc:
            raise GenerationError(
                "Provider request timed out.", code="PROVIDER_TIMEOUT", retryable=True
            ) from exc
        except httpx.RequestError as exc:
            raise GenerationError(
                "Provider connection failed.", code="PROVIDER_CONNECTION_ERROR", retryable=True
            ) from exc

    async def embed(self, text: str) -> list[float]:
        url = self._join_url("/api/embed")
        try:
            async with self._client_context() as client:
                response = await client.post(url, json={"model": self.embed_model, "input": text})
        except httpx.HTTPError as exc:
            raise EmbeddingError("Ollama embedding request failed", retryable=True) from exc
        if response.status_code >= 400:
            raise EmbeddingError(f"Provider returned {response.status_code}: {response.text}")
        try:
            data = response.json()
        except ValueError as exc:
            raise EmbeddingError("Invalid JSON from provider.") from exc
        rows = data.get("embeddings") if isinstance(data, dict) else None
        if not isinstance(rows, list) or not rows or not isinstance(rows[0], list):
            raise EmbeddingError("Embedding response shape is invalid")
        vector = rows[0]
        if len(vector) != self.embedding_dim:
            raise EmbeddingError("Embedding dimension mismatch")
        try:
            return [float(value) for value in vector]
        except (TypeError, ValueError) as exc:
            raise EmbeddingError("Embedding contains non-numeric values") from exc

    async def export_state(self) -> bytes:
        payload = {"engine_id": self.engine_id, "model": self.model_name, "tokens": self._context}
        return json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")

    async def import_state(self, blob: bytes) -> None:
        try:
            payload = json.loads(blob.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise EngineImportError("State blob is not valid Ollama state") from exc
        if not isinstance(payload, dict) or payload.get("engine_id") != self.engine_id:
            raise EngineImportError("State blob was produced by another engine")
        if payload.get("model") != self.model_name:
            raise EngineImportError(
                f"State blob belongs to model '{payload.get('model')}', not '{self.model_name}'"
            )
        tokens = payload.get("tokens")
        if not isinstance(tokens, list):
            raise EngineImportError("State blob has no token context")
        self._context = [int(item) for item in tokens]
        self._last_system = None

    async def clear(self) -> None:
        self._context = []
        self._last_system = None

    def _pending_turn(self, context: Sequence[dict]) -> tuple[list[dict], bool]:
        if not self._context:
            return list(context), False
        last_reply = max(
            (index for index, message in enumerate(context) if message.get("role") == "assistant"),
            default=-1,
        )
        turn = [message for message in context[last_reply + 1 :] if message.get("role") != "system"]
        system = [message for message in context if message.get("role") == "system"]
        # The held context already carries an unchanged system block.
        if system and _system_text(system) != self._last_system:
            turn = [*system, *turn]
        return turn, True

    @asynccontextmanager
    async def _client_context(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            yield client

    def _join_url(self, path: str) -> str:
        if self._base_url.endswith("/api") and path.startswith("/api/"):
            return self._base_url + path[4:]
        return self._base_url + path

    @staticmethod
    def _options(params: SamplingParams) -> dict[str, Any]:
        options: dict[str, Any] = {
            "num_predict": params.max_tokens,
            "temperature": params.temperature,
            "top_p": params.top_p,
            "top_k": params.top_k,
            "repeat_penalty": params.repeat_penalty,
        }
        if params.stop:
            options["stop"] = list(params.stop)
        return options

    @staticmethod
    def _parse_chunk(line: str) -> dict[str, Any]:
        try:
            chunk = json.loads(line)
        except json.JSONDecodeError as exc:
            raise GenerationError("Invalid JSON from provider.", code="PROVIDER_PARSE_ERROR") from exc
        if not isinstance(chunk, dict):
            raise GenerationError("Provider returned invalid JSON payload.", code="PROVIDER_PARSE_ERROR")
        error = chunk.get("error")
        if isinstance(error, str) and error.strip():
            raise GenerationError(error.strip(), code="PROVIDER_UPSTREAM")
        return chunk

    @staticmethod
    def _status_error(response: httpx.Response) -> GenerationError:
        status = response.status_code
        message = f"Provider returned {status}: {response.text}"
        if status == 429:
            return GenerationError(message, code="PROVIDER_RATE_LIMIT", retryable=True)
        if status >= 500:
            return GenerationError(message, code="PROVIDER_UPSTREAM", retryable=True)
        return GenerationError(message, code="PROVIDER_BAD_STATUS")


def _system_text(messages: Sequence[dict]) -> Optional[str]:
    parts = [str(message.get("content", "")) for message in messages if message.get("role") == "system"]
    return "\n\n".join(parts) if parts else None
