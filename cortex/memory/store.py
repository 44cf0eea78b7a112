from __future__ import annotations

import asyncio
import logging
import math
import os
import uuid
from collections import OrderedDict
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from cortex.core.errors import CorruptState, CortexError, EmbeddingError, InvalidInput, NotFound
from cortex.memory.embedder import Embedder
from cortex.memory.types import MemoryEntry, MemorySearchResult
from cortex.memory.vector_store import ExactCosineIndex, SimilarityIndex
from cortex.schemas.memory_file import (
    MEMORY_FILE_VERSION,
    MemoryEntryRecord,
    MemoryFile,
)
from cortex.utils.time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]


class MemoryStore:
    """Process-wide long-term memory with similarity search.

    Entries are kept in insertion order and bounded by `max_entries`; the
    oldest entry is evicted in the same step as the insert that would exceed
    the bound. Writes, deletes and persistence are serialized by one lock.
    Searches do not take the lock: after the query is embedded, scoring runs
    without yielding to the event loop, so a search sees a write either fully
    applied or not at all.
    """

    def __init__(
        self,
        embedder: Embedder,
        *,
        dimension: int,
        max_entries: int,
        similarity_threshold: float = 0.0,
        default_k: int = 5,
        index: Optional[SimilarityIndex] = None,
    ) -> None:
        if dimension <= 0:
            raise InvalidInput("Embedding dimension must be > 0")
        if max_entries <= 0:
            raise InvalidInput("max_entries must be > 0")
        if getattr(embedder, "dimension", dimension) != dimension:
            raise InvalidInput(
                f"Embedder produces {embedder.dimension}-d vectors, store expects {dimension}"
            )
        self._embedder = embedder
        self._dimension = int(dimension)
        self._max_entries = int(max_entries)
        self._similarity_threshold = float(similarity_threshold)
        self._default_k = max(1, int(default_k))
        self._index = index or ExactCosineIndex()
        self._entries: OrderedDict[str, MemoryEntry] = OrderedDict()
        self._write_lock = asyncio.Lock()

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def max_entries(self) -> int:
        return self._max_entries

    @property
    def similarity_threshold(self) -> float:
        return self._similarity_threshold

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._entries

    def entries(self) -> list[MemoryEntry]:
        """Return a snapshot of all entries, oldest first."""

        return list(self._entries.values())

    def get(self, entry_id: str) -> MemoryEntry:
        entry = self._entries.get(entry_id)
        if entry is None:
            raise NotFound(f"Memory entry {entry_id} not found")
        return entry

    async def write(self, text: str, metadata: Optional[Mapping[str, str]] = None) -> str:
        """Embed `text` and append it as a new entry; return the entry id."""

        if not isinstance(text, str) or not text.strip():
            raise InvalidInput("Memory text must not be empty")
        clean_metadata = _validate_metadata(metadata)

        async with self._write_lock:
            vector = await self._embed(text)
            entry = MemoryEntry(
                id=uuid.uuid4().hex,
                text=text,
                embedding=tuple(vector),
                metadata=clean_metadata,
                created_at=utc_now(),
            )
            # Eviction and insert happen without an await between them.
            while len(self._entries) >= self._max_entries:
                evicted_id, evicted = self._entries.popitem(last=False)
                self._index.remove(evicted_id)
                logger.debug("Evicted memory entry %s (%d chars)", evicted_id, len(evicted.text))
            self._entries[entry.id] = entry
            self._index.add(entry.id, entry.embedding)
            return entry.id

    async def search(
        self,
        query_text: str,
        k: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> list[MemorySearchResult]:
        """Return up to `k` entries by descending cosine similarity.

        Ties are broken most-recent-first. `threshold` defaults to the store's
        configured similarity threshold; 0 disables filtering.
        """

        if not isinstance(query_text, str) or not query_text.strip():
            raise InvalidInput("Search query must not be empty")
        limit = self._default_k if k is None else int(k)
        if limit <= 0:
            raise InvalidInput("k must be > 0")
        if not self._entries:
            return []

        vector = await self._embed(query_text)
        cutoff = self._similarity_threshold if threshold is None else float(threshold)
        results: list[MemorySearchResult] = []
        for entry_id, score in self._index.search(vector, limit, cutoff):
            entry = self._entries.get(entry_id)
            if entry is not None:
                results.append(MemorySearchResult(entry=entry, score=score))
        return results

    async def delete(self, entry_id: str) -> MemoryEntry:
        async with self._write_lock:
            entry = self._entries.pop(entry_id, None)
            if entry is None:
                raise NotFound(f"Memory entry {entry_id} not found")
            self._index.remove(entry_id)
            return entry

    async def clear(self) -> int:
        async with self._write_lock:
            removed = len(self._entries)
            self._entries.clear()
            self._index.clear()
            return removed

    async def save(self, path: PathLike) -> int:
        """Write every entry to `path` atomically; return the entry count."""

        async with self._write_lock:
            document = MemoryFile(
                embedding_dimension=self._dimension,
                max_entries=self._max_entries,
                entries=[
                    MemoryEntryRecord(
                        id=entry.id,
                        text=entry.text,
                        embedding=list(entry.embedding),
                        metadata=dict(entry.metadata),
                        created_at=entry.created_at,
                    )
                    for entry in self._entries.values()
                ],
            )
            target = Path(path)
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
            try:
                tmp_path.write_text(document.model_dump_json(), encoding="utf-8")
                os.replace(tmp_path, target)
            finally:
                if tmp_path.exists():
                    tmp_path.unlink()
            logger.info("Saved %d memory entries to %s", len(document.entries), target)
            return len(document.entries)

    async def load(self, path: PathLike) -> int:
        """Replace the store contents with the entries persisted at `path`.

        Raises NotFound when the file does not exist and CorruptState when it
        cannot be parsed, has another version or holds vectors of the wrong
        dimension. On failure the current contents are left untouched.
        """

        target = Path(path)
        try:
            raw = target.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise NotFound(f"Memory file {target} not found") from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise CorruptState(f"Memory file {target} is unreadable: {exc}") from exc

        try:
            document = MemoryFile.model_validate_json(raw)
        except ValidationError as exc:
            raise CorruptState(f"Memory file {target} is malformed") from exc
        if document.version != MEMORY_FILE_VERSION:
            raise CorruptState(
                f"Memory file version {document.version} is not supported "
                f"(expected {MEMORY_FILE_VERSION})"
            )
        if document.embedding_dimension != self._dimension:
            raise CorruptState(
                f"Memory file holds {document.embedding_dimension}-d embeddings, "
                f"store expects {self._dimension}"
            )

        loaded: OrderedDict[str, MemoryEntry] = OrderedDict()
        for record in document.entries:
            if record.id in loaded:
                raise CorruptState(f"Memory file repeats entry id {record.id}")
            if len(record.embedding) != self._dimension:
                raise CorruptState(f"Memory entry {record.id} has a wrong-sized embedding")
            if not all(math.isfinite(value) for value in record.embedding):
                raise CorruptState(f"Memory entry {record.id} has non-finite embedding values")
            loaded[record.id] = MemoryEntry(
                id=record.id,
                text=record.text,
                embedding=tuple(record.embedding),
                metadata=dict(record.metadata),
                created_at=ensure_utc(record.created_at),
            )

        if len(loaded) > self._max_entries:
            dropped = len(loaded) - self._max_entries
            logger.warning(
                "Memory file %s holds %d entries, keeping the newest %d",
                target,
                len(loaded),
                self._max_entries,
            )
            for _ in range(dropped):
                loaded.popitem(last=False)

        async with self._write_lock:
            self._entries = loaded
            self._index.clear()
            for entry in loaded.values():
                self._index.add(entry.id, entry.embedding)
        logger.info("Loaded %d memory entries from %s", len(loaded), target)
        return len(loaded)

    async def _embed(self, text: str) -> list[float]:
        try:
            vector = await self._embedder.embed(text)
        except CortexError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise EmbeddingError(f"Embedding failed: {exc}") from exc
        return _validate_vector(vector, self._dimension)


def _validate_vector(vector: Sequence[float], dimension: int) -> list[float]:
    if len(vector) != dimension:
        raise InvalidInput(f"Embedding has {len(vector)} dimensions, expected {dimension}")
    values = [float(value) for value in vector]
    if not all(math.isfinite(value) for value in values):
        raise EmbeddingError("Embedding contains non-finite values")
    return values


def _validate_metadata(metadata: Optional[Mapping[str, str]]) -> dict[str, str]:
    if not metadata:
        return {}
    clean: dict[str, str] = {}
    for key, value in metadata.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise InvalidInput("Memory metadata keys and values must be strings")
        clean[key] = value
    return clean
