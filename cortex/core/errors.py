from __future__ import annotations


class CortexError(RuntimeError):
    """Base class for every failure surfaced by the runtime core."""

    default_code = "CORTEX_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.message = message
        self.retryable = retryable


class NotFound(CortexError):
    """Unknown checkpoint, session or memory entry id."""

    default_code = "NOT_FOUND"


class InvalidInput(CortexError):
    """Empty text, bad dimensionality or other rejected arguments."""

    default_code = "INVALID_INPUT"


class EmbeddingError(CortexError):
    """The embedding capability could not embed a text."""

    default_code = "EMBEDDING_FAILED"


class EngineExportError(CortexError):
    """The engine could not produce its opaque state blob."""

    default_code = "ENGINE_EXPORT_FAILED"


class EngineImportError(CortexError):
    """The engine rejected an opaque state blob."""

    default_code = "ENGINE_IMPORT_FAILED"


class GenerationError(CortexError):
    """Text generation failed inside the engine."""

    default_code = "GENERATION_FAILED"


class GenerationCancelled(CortexError):
    """The caller stopped a generation before it completed."""

    default_code = "GENERATION_CANCELLED"


class CorruptState(CortexError):
    """Checksum or version mismatch on persisted state."""

    default_code = "CORRUPT_STATE"


class EngineBusy(CortexError):
    """The shared engine could not be acquired in time."""

    default_code = "ENGINE_BUSY"

    def __init__(self, message: str, code: str | None = None, retryable: bool = True) -> None:
        super().__init__(message, code=code, retryable=retryable)


class Timeout(CortexError):
    """An engine operation exceeded its deadline."""

    default_code = "TIMEOUT"

    def __init__(self, message: str, code: str | None = None, retryable: bool = True) -> None:
        super().__init__(message, code=code, retryable=retryable)


class HasDescendants(CortexError):
    """Delete was requested for a checkpoint that still has children."""

    default_code = "HAS_DESCENDANTS"


class SessionClosed(CortexError):
    """The session was torn down and only accepts a restore."""

    default_code = "SESSION_CLOSED"
