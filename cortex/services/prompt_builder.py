from __future__ import annotations

from typing import Iterable, List, Sequence

from cortex.memory.types import MemorySearchResult
from cortex.state.types import Message, Role


class PromptBuilder:
    """Compose the generation context for one chat turn."""

    def __init__(self, max_history: int = 12, memory_max_chars: int = 4000) -> None:
        self._max_history = max(1, max_history)
        self._memory_max_chars = max(200, memory_max_chars)
        self._memory_max_tokens = max(50, memory_max_chars // 4)

    def build_messages(
        self,
        history: Sequence[Message],
        memory_hits: Iterable[MemorySearchResult] | None = None,
    ) -> List[dict]:
        """Create the role/content list handed to the engine.

        System messages are kept, followed by the retrieved memory block and
        the most recent conversation turns. `history` must already end with
        the pending user message.
        """

        system_lines = [item.content for item in history if item.role is Role.SYSTEM]
        memory_section = self._build_memory_section(memory_hits)
        if memory_section:
            system_lines.append(
                "Relevant long-term memory (most relevant first):\n" f"{memory_section}"
            )

        messages: List[dict] = []
        if system_lines:
            messages.append({"role": Role.SYSTEM.value, "content": "\n\n".join(system_lines)})

        turns = [item for item in history if item.role is not Role.SYSTEM]
        for item in turns[-self._max_history :]:
            messages.append(item.as_prompt_dict())
        return messages

    def _build_memory_section(self, memory_hits: Iterable[MemorySearchResult] | None) -> str:
        if not memory_hits:
            return ""

        lines: list[str] = []
        seen: set[str] = set()
        total_chars = 0
        total_tokens = 0
        for hit in memory_hits:
            text = " ".join(hit.entry.text.split())
            if not text:
                continue
            dedupe_key = text.casefold()
            if dedupe_key in seen:
                continue

            projected_chars = total_chars + len(text)
            projected_tokens = total_tokens + self._estimate_tokens(text)
            if projected_chars > self._memory_max_chars:
                break
            if projected_tokens > self._memory_max_tokens:
                break

            lines.append(f"- {text}")
            seen.add(dedupe_key)
            total_chars = projected_chars
            total_tokens = projected_tokens

        return "\n".join(lines)

    @staticmethod
    def _estimate_tokens(text: str) -> int:
        compact = text.strip()
        if not compact:
            return 0
        return max(1, len(compact) // 4)
