"""
Error taxonomy for the operation pipeline.

Every request ends in success or in exactly one of these errors. Each error
knows its HTTP status and the ``{"error": ..., "details": ...}`` body it maps to.
"""

from __future__ import annotations

from typing import Any


class BetterQueryError(Exception):
    """Base class for all errors raised by better_query."""

    status_code: int = 500
    error: str = "Internal error"

    def __init__(self, error: str | None = None, details: Any = None):
        self.error = error or self.error
        self.details = details
        super().__init__(self.error if details is None else f"{self.error}: {details}")

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error}
        if self.details is not None:
            body["details"] = self.details
        return body


class NotFound(BetterQueryError):
    status_code = 404
    error = "Resource not found"


class ValidationFailed(BetterQueryError):
    status_code = 400
    error = "Validation failed"


class Forbidden(BetterQueryError):
    status_code = 403
    error = "Forbidden"


class RateLimitExceeded(BetterQueryError):
    status_code = 429
    error = "Rate limit exceeded"


class HookExecutionFailed(BetterQueryError):
    """A before-hook raised; no storage call was made."""

    status_code = 500
    error = "Hook execution failed"


class AdapterFailure(BetterQueryError):
    """The storage adapter raised. Details carry the adapter's message verbatim."""

    status_code = 500
    error = "Storage operation failed"


class ConfigurationError(BetterQueryError):
    """Invalid resource/adapter/plugin setup. Raised at construction time."""

    error = "Invalid configuration"

    def __init__(self, message: str):
        super().__init__(message)


class SchemaIntrospectionError(ConfigurationError):
    """A resource schema could not be introspected into field attributes."""


# Per-operation adapter failure messages
ADAPTER_FAILURE_MESSAGES: dict[str, str] = {
    "create": "Failed to create resource",
    "read": "Failed to fetch resource",
    "update": "Failed to update resource",
    "delete": "Failed to delete resource",
    "list": "Failed to fetch resources",
}


def adapter_failure(operation: str, exc: BaseException) -> AdapterFailure:
    """Wrap a storage exception for ``operation``."""
    key = getattr(operation, "value", operation)
    message = ADAPTER_FAILURE_MESSAGES.get(key, AdapterFailure.error)
    return AdapterFailure(message, details=str(exc))
