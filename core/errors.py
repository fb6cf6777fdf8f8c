"""Engine error taxonomy.

Every error raised by the core carries a stable ``code`` so the transport
layer can map it to a status without string matching.
"""

from __future__ import annotations


class EngineError(Exception):
    code = "engine_error"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class ValidationError(EngineError):
    """Malformed input: bad config, unsupported format, empty selection."""

    code = "validation_error"


class LimitExceededError(ValidationError):
    """A quota or item ceiling was exceeded."""

    code = "limit_exceeded"

    def __init__(self, message: str, limit: int, **context):
        super().__init__(message, limit=limit, **context)
        self.limit = limit

    def to_dict(self) -> dict:
        return {**super().to_dict(), "limit": self.limit}


class PermissionDeniedError(EngineError):
    code = "permission_denied"


class NotFoundError(EngineError):
    code = "not_found"


class ConflictError(EngineError):
    """Illegal state transition or a lost optimistic-concurrency race."""

    code = "conflict"


class InternalError(EngineError):
    code = "internal_error"

    def to_dict(self) -> dict:
        # never leak internals to callers
        return {"error": self.code, "detail": "Internal server error"}
