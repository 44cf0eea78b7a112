from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable


@dataclass
class SamplingParams:
    """Sampling configuration passed to an engine's generate capability."""

    max_tokens: int = 1024
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    repeat_penalty: float = 1.1
    stop: list[str] = field(default_factory=list)

    @classmethod
    def deterministic(cls) -> "SamplingParams":
        return cls(temperature=0.0, top_p=1.0, top_k=1)

    @classmethod
    def creative(cls) -> "SamplingParams":
        return cls(temperature=1.0, top_p=0.95, top_k=0)


@runtime_checkable
class InferenceEngine(Protocol):
    """Capability contract consumed by the runtime core.

    `generate` receives role/content dictionaries and yields text pieces as
    they are produced. `export_state` and `import_state` must round-trip.
    """

    engine_id: str
    embedding_dim: int
    context_size: int

    @property
    def context_used(self) -> int:
        """Number of tokens held in the engine's context."""

    async def tokenize(self, text: str) -> list[int]:
        """Split text into model token ids."""

    def generate(
        self, context: Sequence[dict], params: SamplingParams
    ) -> AsyncIterator[str]:
        """Stream generated text pieces for a chat context."""

    async def embed(self, text: str) -> list[float]:
        """Return a fixed-length embedding vector for text."""

    async def export_state(self) -> bytes:
        """Serialize the engine's internal execution state."""

    async def import_state(self, blob: bytes) -> None:
        """Replace the engine's internal execution state."""

    async def clear(self) -> None:
        """Drop the evaluated context so the next generation starts fresh."""
