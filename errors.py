"""Error taxonomy shared by the engines and the transports."""

from __future__ import annotations


class MemoryGraphError(Exception):
    """Base class for every error raised by memory-graph."""


class ValidationError(MemoryGraphError):
    """Bad caller input. Never retried."""


class EmbeddingFailure(MemoryGraphError):
    """The embedding provider was unreachable or returned an error."""


class VectorStoreUnavailable(MemoryGraphError):
    """The vector store could not serve the request."""


class NotFound(MemoryGraphError):
    """Unknown memory or category."""


class Conflict(MemoryGraphError):
    """Duplicate name, category still referenced, or blocked deletion."""


class CircularDependency(MemoryGraphError):
    """A hierarchy mutation would introduce a cycle."""


class PartialFailure(MemoryGraphError):
    """A multi-step cascade only partially completed.

    Carried as a warning next to a successful result rather than raised.
    """

    def __init__(self, message: str, *, completed: int = 0, failed: int = 0):
        super().__init__(message)
        self.completed = completed
        self.failed = failed


TRANSIENT_ERRORS = (EmbeddingFailure, VectorStoreUnavailable)
