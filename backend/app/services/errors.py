"""Exceptions raised by the selection, coverage and generation services."""


class SelectionEngineError(Exception):
    """Base class for every error the engine raises on purpose."""


class InvalidSelectionRequest(SelectionEngineError, ValueError):
    """The caller sent a request that can never be satisfied (bad grade, count...)."""


class TemplatesUnavailableError(SelectionEngineError):
    """Neither the smart path nor the random fallback produced any template."""


class GenerationError(SelectionEngineError):
    """The LLM gateway failed to produce a usable template."""


class BatchAlreadyRunningError(SelectionEngineError):
    """A batch generation run is already in progress on this generator."""
