"""Error taxonomy for the generation pipeline.

Recoverable failures (``GenerationError`` and ``ParseFailure``) are absorbed at
the stage boundary and replaced by a fallback value. ``ConfigError`` and
``PersistenceError`` are the only conditions that end a run as failed.
"""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base error for pipeline failures that map to HTTP responses."""

    status_code: int = 500

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.__class__.__name__
        super().__init__(self.message)


class ConfigError(PipelineError):
    """Generation service configuration is missing or unusable. Never retried."""

    status_code = 503


class GenerationError(PipelineError):
    """A single call to the generation service failed."""

    status_code = 502


class GenerationTimeout(GenerationError):
    status_code = 504


class RateLimited(GenerationError):
    status_code = 429


class AuthError(GenerationError):
    status_code = 502


class UnknownGenerationError(GenerationError):
    """Non-success response from the generation service."""

    def __init__(self, message: str | None = None, upstream_status: int | None = None) -> None:
        self.upstream_status = upstream_status
        super().__init__(message)


class ParseFailure(PipelineError):
    """Generated text could not be recovered into the expected structure.

    Returned as a value by response recovery rather than raised.
    """

    status_code = 422

    def __init__(self, reason: str, raw_excerpt: str = "") -> None:
        self.reason = reason
        self.raw_excerpt = raw_excerpt[:200]
        super().__init__(reason)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ParseFailure):
            return NotImplemented
        return self.reason == other.reason

    def __hash__(self) -> int:
        return hash(self.reason)


class GraphValidationError(PipelineError):
    """A structural graph invariant was violated after parsing."""

    status_code = 422


class PersistenceError(PipelineError):
    """The graph store rejected or failed a write."""

    status_code = 503


class SessionConflictError(PipelineError):
    """A run is already active for the session."""

    status_code = 409


class SessionNotFoundError(PipelineError):
    status_code = 404


class NodeNotFoundError(PipelineError):
    status_code = 404


class SearchError(PipelineError):
    """The web search service failed or returned an unusable response."""

    status_code = 502
