"""
Per-request operation context and result values.

One ``OperationContext`` is created per pipeline run and handed to middleware,
permission callbacks and hooks. Hooks may mutate ``data``; middleware may
replace ``user`` and ``scopes``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from better_query.runtime.errors import BetterQueryError
from better_query.runtime.security import SecurityContext
from better_query.specs.entity import OperationKind
from better_query.specs.query import IncludeSpec

if TYPE_CHECKING:
    from better_query.runtime.adapters.base import StorageAdapter


@dataclass
class OperationContext:
    """Mutable state carried through one pipeline run."""

    resource: str
    operation: OperationKind
    model: str = ""
    user: dict[str, Any] | None = None
    scopes: list[str] = field(default_factory=list)
    data: dict[str, Any] | None = None
    id: str | None = None
    existing_data: dict[str, Any] | None = None
    result: Any = None
    cached_result: Any = None
    query: dict[str, Any] = field(default_factory=dict)
    include: IncludeSpec | None = None
    path: str = ""
    request: Any = None
    adapter: StorageAdapter | None = None
    security: SecurityContext = field(default_factory=SecurityContext)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def existingData(self) -> dict[str, Any] | None:  # noqa: N802
        """Alias kept for callbacks written against the camelCase context."""
        return self.existing_data


@dataclass
class OperationResult:
    """
    Outcome of a pipeline run.

    Exactly one of ``body`` (success) or ``error`` (failure) is meaningful.
    """

    status_code: int
    body: Any = None
    error: BetterQueryError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, body: Any, status_code: int = 200) -> OperationResult:
        return cls(status_code=status_code, body=body)

    @classmethod
    def failure(cls, error: BetterQueryError) -> OperationResult:
        return cls(status_code=error.status_code, body=error.to_body(), error=error)

    def unwrap(self) -> Any:
        """Return the body, raising the carried error on failure."""
        if self.error is not None:
            raise self.error
        return self.body
