# core/exceptions.py
"""Define standardized exception types for the ChapterForge core.

This module provides a small exception hierarchy and helpers used across the
pipeline to propagate actionable error details without losing the original
exception.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from models.narrative_models import ContinuityAssessment


class ChapterForgeError(Exception):
    """Base exception for all ChapterForge errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class PreconditionError(ChapterForgeError):
    """A generation precondition failed before any work began.

    Raised for an incomplete prior chapter, unconfirmed pending entities, a
    novel stage that does not permit drafting, or a generation already in
    flight for the same chapter. No state is mutated when this is raised.
    """


class ContinuityGateRejected(ChapterForgeError):
    """The continuity gate rejected the final draft after all repair attempts."""

    def __init__(
        self,
        message: str,
        assessment: ContinuityAssessment,
        repair_attempts: int,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.assessment = assessment
        self.repair_attempts = repair_attempts


class StructuredParseFailure(ChapterForgeError):
    """Model output could not be recovered as structured data (strict mode only)."""

    def __init__(self, message: str, raw: str, details: dict[str, Any] | None = None):
        super().__init__(message, details)
        self.raw = raw


class PostProcessingSoftFailure(ChapterForgeError):
    """Enqueueing a post-generation job failed after content was committed."""


class ValidationError(ChapterForgeError):
    """Errors related to data validation."""


class HookTransitionError(ValidationError):
    """A narrative hook transition would violate its lifecycle invariants."""


class LLMServiceError(ChapterForgeError):
    """Errors related to model provider calls."""


class ExternalCallTimeout(LLMServiceError):
    """A model call exceeded its timeout; its slot was released and any late result discarded."""


class DatabaseError(ChapterForgeError):
    """Errors related to store operations."""


class DatabaseConnectionError(DatabaseError):
    """Errors related to store connection issues."""


class DatabaseTransactionError(DatabaseError):
    """Errors related to store transaction handling."""


class ContextAssemblyError(DatabaseError):
    """Narrative context could not be assembled from the store."""


def create_error_context(**kwargs: Any) -> dict[str, Any]:
    """Build a context dictionary for structured errors.

    Args:
        **kwargs: Key-value pairs to include.

    Returns:
        A dictionary containing only keys whose values are not `None`.
    """
    return {k: v for k, v in kwargs.items() if v is not None}


def handle_database_error(operation: str, original_error: Exception, **context: Any) -> DatabaseError:
    """Convert an exception into a standardized database error.

    Args:
        operation: Name/description of the store operation that failed.
        original_error: The caught exception.
        **context: Additional structured context to attach.

    Returns:
        A `DatabaseError` subclass chosen by heuristics over the original error text.
    """
    if isinstance(original_error, DatabaseError):
        return original_error

    error_details = create_error_context(
        operation=operation,
        original_error=str(original_error),
        error_type=type(original_error).__name__,
        **context,
    )

    lowered = str(original_error).lower()
    if "connection" in lowered or isinstance(original_error, ConnectionError):
        return DatabaseConnectionError(f"Database connection failed during {operation}", details=error_details)
    elif "transaction" in lowered:
        return DatabaseTransactionError(f"Database transaction failed during {operation}", details=error_details)
    else:
        return DatabaseError(f"Database error during {operation}", details=error_details)
