"""Error taxonomy shared by the request path and the queue path.

Every error carries a ``kind`` (used in ``{"error", "message"}`` response
bodies) and an HTTP status code. On the queue path ``retryable`` decides
whether a failed message goes back to the queue or is dropped.
"""
from __future__ import annotations


class ArchiveError(Exception):
    """Base class for archive errors."""

    kind = "archive_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"error": self.kind, "message": self.message}


class ValidationError(ArchiveError):
    """Missing or mistyped required field, or a wrong type discriminator."""

    kind = "validation_error"
    status_code = 400

    def __init__(self, field: str, message: str | None = None):
        super().__init__(message or f"Missing or invalid field: {field}")
        self.field = field


class AuthError(ArchiveError):
    kind = "unauthorized"
    status_code = 401

    def __init__(self, message: str = "Missing or invalid bearer token"):
        super().__init__(message)


class NotFoundError(ArchiveError):
    kind = "not_found"
    status_code = 404


class ConflictError(ArchiveError):
    """A secondary uniqueness constraint (e.g. slug) rejected a write."""

    kind = "conflict"
    status_code = 409

    def __init__(self, constraint: str, message: str | None = None):
        super().__init__(message or f"Uniqueness violation on {constraint}")
        self.constraint = constraint


class RejectedRecordError(ArchiveError):
    """The index refused a record's values (range, NOT NULL, CHECK)."""

    kind = "rejected_record"
    status_code = 422


class DependencyError(ArchiveError):
    """Blob store, index, queue or an external service is unavailable."""

    kind = "dependency_error"
    status_code = 500
    retryable = True


__all__ = [
    "ArchiveError",
    "AuthError",
    "ConflictError",
    "DependencyError",
    "NotFoundError",
    "RejectedRecordError",
    "ValidationError",
]
