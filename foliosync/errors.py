"""
errors.py: FolioSync domain error taxonomy.

Every error raised by the aggregate, the concurrency controller or the store
derives from FolioError. main.py maps each class onto an HTTP status and the
standard {error: {code, message, details}} envelope.

  ValidationError → 400   malformed input / block content
  NotFoundError   → 404   missing portfolio or block
  ConflictError   → 409   stale version; carries the authoritative document
  DomainError     → 409   operation not allowed in the current state
  StoreError      → 500   persistence failure after the retry budget
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from foliosync.portfolio.schemas import Portfolio


class FolioError(Exception):
    """Base class. `code` is the machine-readable error code in the envelope."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[list[dict[str, Any]]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or []


class ValidationError(FolioError):
    code = "VALIDATION_ERROR"
    status_code = 400

    @classmethod
    def from_pydantic(cls, exc: Any, message: str = "Invalid input") -> "ValidationError":
        """Flatten a pydantic.ValidationError into {field, issue} details."""
        details = [
            {"field": ".".join(str(loc) for loc in err["loc"]) or None, "issue": err["msg"]}
            for err in exc.errors()
        ]
        return cls(message, details)


class NotFoundError(FolioError):
    code = "NOT_FOUND"
    status_code = 404


class DomainError(FolioError):
    code = "INVALID_STATE"
    status_code = 409


class ConflictError(FolioError):
    """
    The caller's version is not the stored version.

    `current` is the authoritative document so the caller can rebase.
    """

    code = "CONFLICT"
    status_code = 409

    def __init__(self, current: "Portfolio", message: Optional[str] = None) -> None:
        super().__init__(
            message or f"Portfolio has changed (current version {current.version})"
        )
        self.current = current

    @property
    def current_version(self) -> int:
        return self.current.version


class StoreError(FolioError):
    code = "STORE_ERROR"
    status_code = 500
