from __future__ import annotations


class FlowgateError(Exception):
    """Base error for flowgate."""


class RateLimitedError(FlowgateError):
    """Request exceeded a rate-limit window; retry after the advertised delay."""

    def __init__(self, retry_after: int, *, scope: str | None = None) -> None:
        super().__init__(f"rate limited, retry after {retry_after}s")
        self.retry_after = retry_after
        self.scope = scope


class UnauthorizedError(FlowgateError):
    """Credential missing or rejected.

    ``reason`` is for server-side logs only and is never sent to clients.
    """

    def __init__(self, reason: str = "invalid_credentials") -> None:
        super().__init__(reason)
        self.reason = reason


class ForbiddenError(FlowgateError):
    """Authenticated principal lacks the required role."""


class ValidationFailedError(FlowgateError):
    """Request payload failed validation before reaching the store."""

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason


class NotFoundError(FlowgateError):
    """Requested resource does not exist or is not visible to the caller."""

    def __init__(self, resource: str) -> None:
        super().__init__(f"{resource} not found")
        self.resource = resource


class ConflictError(FlowgateError):
    """Write collided with an existing unique value."""


class DatabaseError(FlowgateError):
    """Database layer failure."""
