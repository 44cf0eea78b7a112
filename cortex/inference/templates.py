from __future__ import annotations

import logging
from collections.abc import Sequence
from enum import Enum

logger = logging.getLogger(__name__)


class ChatTemplate(str, Enum):
    """Prompt formats understood by local chat models."""

    LLAMA3 = "llama3"
    CHATML = "chatml"
    PHI3 = "phi3"
    GEMMA = "gemma"
    RAW = "raw"

    @classmethod
    def parse(cls, value: str) -> "ChatTemplate":
        normalized = (value or "").strip().lower()
        try:
            return cls(normalized)
        except ValueError:
            logger.warning("Unknown CHAT_TEMPLATE=%s; fallback to llama3", value)
            return cls.LLAMA3


def format_chat_prompt(
    messages: Sequence[dict], template: ChatTemplate, *, continuation: bool = False
) -> str:
    """Render role/content messages into a single prompt string.

    `continuation` renders turns appended to an already evaluated context,
    so llama3 leaves out its begin-of-text marker.
    """

    if template is ChatTemplate.CHATML:
        return _format_chatml(messages)
    if template is ChatTemplate.PHI3:
        return _format_phi3(messages)
    if template is ChatTemplate.GEMMA:
        return _format_gemma(messages)
    if template is ChatTemplate.RAW:
        return "\n".join(str(message.get("content", "")) for message in messages)
    return _format_llama3(messages, continuation)


def _format_llama3(messages: Sequence[dict], continuation: bool = False) -> str:
    parts = [] if continuation else ["<|begin_of_text|>"]
    for message in messages:
        parts.append(
            f"<|start_header_id|>{message['role']}<|end_header_id|>\n\n{message['content']}<|eot_id|>"
        )
    parts.append("<|start_header_id|>assistant<|end_header_id|>\n\n")
    return "".join(parts)


def _format_chatml(messages: Sequence[dict]) -> str:
    parts = [f"<|im_start|>{message['role']}\n{message['content']}<|im_end|>\n" for message in messages]
    parts.append("<|im_start|>assistant\n")
    return "".join(parts)


def _format_phi3(messages: Sequence[dict]) -> str:
    parts = [f"<|{message['role']}|>\n{message['content']}<|end|>\n" for message in messages]
    parts.append("<|assistant|>\n")
    return "".join(parts)


def _format_gemma(messages: Sequence[dict]) -> str:
    parts: list[str] = []
    for message in messages:
        # Gemma only knows user/model turns; system text rides in a user turn.
        role = "model" if message["role"] == "assistant" else "user"
        parts.append(f"<start_of_turn>{role}\n{message['content']}<end_of_turn>\n")
    parts.append("<start_of_turn>model\n")
    return "".join(parts)
