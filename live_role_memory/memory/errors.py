from __future__ import annotations

from enum import Enum


class SkipReason(str, Enum):
    """Normal early exits of an extraction run. These are statuses, not errors."""

    DISABLED = "disabled"
    NO_TURNS = "no_turns"
    NO_CONTEXT = "no_context"
    NO_NEW_TURNS = "no_new_turns"
    IN_PROGRESS = "in_progress"


class MemoryPipelineError(RuntimeError):
    pass


class ParseError(MemoryPipelineError):
    """LLM text could not be turned into JSON, even after repair."""


class ValidationError(MemoryPipelineError):
    """Parsed JSON does not match the extraction schema."""

    def __init__(self, message: str, diagnostics: list[str] | None = None) -> None:
        super().__init__(message)
        self.diagnostics: list[str] = list(diagnostics or [])

    def __str__(self) -> str:
        base = super().__str__()
        if not self.diagnostics:
            return base
        return f"{base}: " + "; ".join(self.diagnostics[:8])


class LLMError(MemoryPipelineError):
    """LLM collaborator timed out, failed, or returned an empty response."""


class SessionChangedError(MemoryPipelineError):
    def __init__(self, expected: str | None, current: str | None) -> None:
        super().__init__(f"Chat changed during extraction (expected={expected!r}, current={current!r})")
        self.expected = expected
        self.current = current


class ExtractionBusyError(MemoryPipelineError):
    def __init__(self, owner: str) -> None:
        super().__init__(f"Extraction already in progress (owner={owner})")
        self.owner = owner
