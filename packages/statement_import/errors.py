"""Error taxonomy for the statement-import pipeline.

Every error carries a user-facing ``message`` and an HTTP-like
``status_code`` so entry points can turn any failure into a structured
response without string matching.
"""

from __future__ import annotations


class StatementImportError(Exception):
    """Base class for all pipeline errors."""

    status_code: int = 500

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class AuthenticationError(StatementImportError):
    """No resolved user id was supplied to an entry point."""

    status_code = 401

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class ValidationError(StatementImportError):
    """Input rejected before any work was done (empty, oversized, malformed)."""

    status_code = 400


class ExtractionError(StatementImportError):
    """OCR or LLM backend failure, or an empty extraction result."""

    status_code = 500


class StageTimeoutError(ExtractionError):
    """A guarded external call exceeded its time budget."""

    status_code = 408

    def __init__(self, stage: str, seconds: float, message: str | None = None) -> None:
        self.stage = stage
        self.seconds = seconds
        super().__init__(message or f"{stage} timed out after {seconds:g}s")


class PersistenceError(StatementImportError):
    """The transaction or category store rejected a read or write."""

    status_code = 500


class ReviewError(StatementImportError):
    """An edit that the review protocol does not allow."""

    status_code = 400


__all__ = [
    "AuthenticationError",
    "ExtractionError",
    "PersistenceError",
    "ReviewError",
    "StageTimeoutError",
    "StatementImportError",
    "ValidationError",
]
