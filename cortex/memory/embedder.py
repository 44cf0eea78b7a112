from __future__ import annotations

import hashlib
import math
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Optional

import httpx

from cortex.core.errors import CortexError, EmbeddingError

if TYPE_CHECKING:
    from cortex.inference.shared import SharedEngine

_WORD_RE = re.compile(r"[^\W_]+")


class Embedder(ABC):
    """Turns text into fixed-length vectors for the memory store."""

    provider: str
    model_name: str
    dimension: int

    @abstractmethod
    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        """Generate vectors for each text input."""

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_texts([text])
        if len(vectors) != 1:
            raise EmbeddingError("Embedding provider returned no vector")
        return vectors[0]


class DeterministicEmbedder(Embedder):
    """Offline bag-of-words embedder.

    Every word of two or more characters switches on `features_per_word`
    hashed positions, so texts sharing words score close together. Texts
    without such words map to the first basis vector.
    """

    provider = "deterministic"

    def __init__(
        self, dimension: int, model_name: str = "deterministic-v1", features_per_word: int = 8
    ) -> None:
        if dimension <= 0:
            raise EmbeddingError("Embedding dimension must be > 0")
        if features_per_word <= 0:
            raise EmbeddingError("features_per_word must be > 0")
        self.dimension = int(dimension)
        self.model_name = model_name
        self.features_per_word = int(features_per_word)

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        return [self.embed_sync(text) for text in texts]

    def embed_sync(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        words = split_words(text)
        if not words:
            vector[0] = 1.0
            return vector
        for word in words:
            for position in self._positions(word):
                vector[position] += 1.0
        return normalize_vector(vector)

    def _positions(self, word: str) -> list[int]:
        digest = hashlib.blake2b(word.encode("utf-8"), digest_size=4 * self.features_per_word).digest()
        return [
            int.from_bytes(digest[offset : offset + 4], byteorder="big") % self.dimension
            for offset in range(0, len(digest), 4)
        ]


class EngineEmbedder(Embedder):
    """Embed through the shared inference engine's embedding capability."""

    provider = "engine"

    def __init__(self, engine: "SharedEngine") -> None:
        self._engine = engine
        self.model_name = engine.engine_id
        self.dimension = int(engine.embedding_dim)

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for text in texts:
            try:
                vectors.append(await self._engine.embed(text))
            except CortexError:
                raise
            except Exception as exc:  # noqa: BLE001
                raise EmbeddingError(f"Engine failed to embed text: {exc}") from exc
        return vectors


class OpenAIEmbedder(Embedder):
    """Client for an OpenAI-compatible `/v1/embeddings` endpoint.

    Inputs are sent in batches of `batch_size`; rows are put back in input
    order by their `index` field and normalized to unit length.
    """

    provider = "openai"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model_name: str,
        dimension: int,
        batch_size: int = 64,
        timeout_sec: float = 20.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if dimension <= 0:
            raise EmbeddingError("Embedding dimension must be > 0")
        if not api_key.strip():
            raise EmbeddingError("OpenAI embedding API key is empty")
        self.model_name = model_name
        self.dimension = int(dimension)
        self.batch_size = max(1, int(batch_size))
        self._timeout_sec = timeout_sec
        self._headers = {"Authorization": f"Bearer {api_key}"}
        self._client = http_client
        self._endpoint = base_url.rstrip("/") + "/v1/embeddings"

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        batches = [
            list(texts[start : start + self.batch_size])
            for start in range(0, len(texts), self.batch_size)
        ]
        vectors: list[list[float]] = []
        if not batches:
            return vectors
        if self._client:
            for batch in batches:
                vectors.extend(await self._embed_batch(self._client, batch))
            return vectors
        async with httpx.AsyncClient(timeout=self._timeout_sec) as client:
            for batch in batches:
                vectors.extend(await self._embed_batch(client, batch))
        return vectors

    async def _embed_batch(self, client: httpx.AsyncClient, batch: list[str]) -> list[list[float]]:
        payload = {"model": self.model_name, "input": batch, "encoding_format": "float"}
        try:
            response = await client.post(self._endpoint, json=payload, headers=self._headers)
        except httpx.HTTPError as exc:
            raise EmbeddingError("Embedding request failed", retryable=True) from exc
        if response.status_code >= 400:
            retryable = response.status_code == 429 or response.status_code >= 500
            raise EmbeddingError(
                f"Embedding provider returned {response.status_code}", retryable=retryable
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise EmbeddingError("Embedding response is not JSON") from exc
        return [normalize_vector(vector) for vector in self._parse_rows(data, len(batch))]

    def _parse_rows(self, payload: Any, expected: int) -> list[list[float]]:
        rows = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(rows, list) or len(rows) != expected:
            raise EmbeddingError("Embedding response shape is invalid")

        ordered: list[Optional[list[float]]] = [None] * expected
        for position, row in enumerate(rows):
            if not isinstance(row, dict) or not isinstance(row.get("embedding"), list):
                raise EmbeddingError("Embedding row is missing vector data")
            index = row.get("index", position)
            if not isinstance(index, int) or not 0 <= index < expected or ordered[index] is not None:
                raise EmbeddingError("Embedding row index is invalid")
            embedding = row["embedding"]
            if len(embedding) != self.dimension:
                raise EmbeddingError(
                    f"Embedding has {len(embedding)} dimensions, expected {self.dimension}"
                )
            try:
                ordered[index] = [float(value) for value in embedding]
            except (TypeError, ValueError) as exc:
                raise EmbeddingError("Embedding contains non-numeric values") from exc
        return [vector for vector in ordered if vector is not None]


def split_words(text: str) -> list[str]:
    """Casefolded alphanumeric words of at least two characters."""

    return [word for word in _WORD_RE.findall(text.casefold()) if len(word) > 1]


def normalize_vector(vector: list[float]) -> list[float]:
    norm = math.sqrt(sum(item * item for item in vector))
    if norm <= 0:
        return vector
    return [item / norm for item in vector]
