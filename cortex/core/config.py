from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    db_url: str = Field(default="sqlite+aiosqlite:///./cortex.db", alias="DB_URL")
    memory_path: str = Field(default="", alias="MEMORY_PATH")

    max_entries: int = Field(default=10_000, alias="MAX_ENTRIES")
    similarity_threshold: float = Field(default=0.0, alias="SIMILARITY_THRESHOLD")
    top_k: int = Field(default=5, alias="TOP_K")
    embedding_dimension: int = Field(default=64, alias="EMBEDDING_DIMENSION")
    auto_checkpoint_every_n_turns: int = Field(default=0, alias="AUTO_CHECKPOINT_EVERY_N_TURNS")

    engine_provider: str = Field(default="stub", alias="ENGINE_PROVIDER")
    engine_model: str = Field(default="llama3", alias="ENGINE_MODEL")
    ollama_base_url: str = Field(default="http://localhost:11434", alias="OLLAMA_BASE_URL")
    chat_template: str = Field(default="llama3", alias="CHAT_TEMPLATE")

    embed_provider: str = Field(default="engine", alias="EMBED_PROVIDER")
    embed_model: str = Field(default="", alias="EMBED_MODEL")
    embed_openai_api_key: str = Field(default="", alias="EMBED_OPENAI_API_KEY")
    openai_base_url: str = Field(default="https://api.openai.com", alias="OPENAI_BASE_URL")

    gen_max_tokens: int = Field(default=1024, alias="GEN_MAX_TOKENS")
    gen_temperature: float = Field(default=0.7, alias="GEN_TEMPERATURE")
    gen_top_p: float = Field(default=0.9, alias="GEN_TOP_P")
    gen_top_k: int = Field(default=40, alias="GEN_TOP_K")
    gen_repeat_penalty: float = Field(default=1.1, alias="GEN_REPEAT_PENALTY")

    max_history_messages: int = Field(default=12, alias="MAX_HISTORY_MESSAGES")
    memory_max_chars: int = Field(default=4000, alias="MEMORY_MAX_CHARS")
    system_prompt: str = Field(default="", alias="SYSTEM_PROMPT")

    generation_timeout_sec: float = Field(default=120.0, alias="GENERATION_TIMEOUT_SEC")
    # NOTE: 0 means waiters queue on the engine lock without a deadline.
    engine_acquire_timeout_sec: float = Field(default=0.0, alias="ENGINE_ACQUIRE_TIMEOUT_SEC")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    def acquire_timeout(self) -> float | None:
        """Return the engine acquire timeout, or None when waiting is unbounded."""

        value = float(self.engine_acquire_timeout_sec)
        return value if value > 0 else None

    def generation_timeout(self) -> float | None:
        """Return the generation deadline in seconds, or None when disabled."""

        value = float(self.generation_timeout_sec)
        return value if value > 0 else None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached runtime settings."""

    return Settings()
