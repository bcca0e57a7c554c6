"""
Exception hierarchy for the job orchestration core.

Each class maps onto one client-facing outcome, see ``webapi.routes``.
"""

from typing import Optional


class BookpipeError(Exception):
    """Base class for all bookpipe errors."""


class ValidationError(BookpipeError):
    """Malformed input, rejected before any state change."""


class NotFoundError(BookpipeError):
    """Unknown job, document, chapter, scene or passage."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class InvalidStateError(BookpipeError):
    """Operation illegal for the job's current status."""

    def __init__(self, message: str, job_id: Optional[str] = None, status: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id
        self.status = status


class ConflictError(InvalidStateError):
    """Another job for the same target is still active."""


class ProviderError(BookpipeError):
    """
    External generation or synthesis failure.

    Never escapes a task; the worker converts it into a failure outcome.
    """

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class PersistenceError(BookpipeError):
    """Storage layer unavailable or write rejected."""


class TaskTimeoutError(ProviderError):
    """A task ran past its per-task timeout."""

    def __init__(self, task: str, timeout: float):
        super().__init__("timeout", f"{task} did not finish within {timeout:.1f}s")
        self.timeout = timeout
