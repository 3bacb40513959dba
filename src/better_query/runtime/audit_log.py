"""
Audit logging for successful operations.

Events go to a sink callable; the default sink writes one structured line per
event to the ``better_query.audit`` logger. Sink failures are logged and never
fail the request.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from better_query.runtime.security import extract_user_id
from better_query.specs.entity import OperationKind

if TYPE_CHECKING:
    from better_query.runtime.context import OperationContext

logger = logging.getLogger("better_query.audit")

DEFAULT_AUDITED_OPERATIONS = (OperationKind.CREATE, OperationKind.UPDATE, OperationKind.DELETE)


@dataclass
class AuditEvent:
    """One audited operation."""

    resource: str
    operation: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    user_id: Any = None
    record_id: str | None = None
    data_before: Any = None
    data_after: Any = None
    ip_address: str | None = None
    user_agent: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


AuditSink = Callable[[AuditEvent], Any]


def log_sink(event: AuditEvent) -> None:
    """Default sink: one JSON line on the audit logger."""
    logger.info(
        f"{event.operation.upper()} on {event.resource}",
        extra={"audit": json.dumps(event.to_dict(), default=str)},
    )


class AuditLogger:
    """
    Emits audit events for the configured operations.

    Args:
        enabled: Master switch
        operations: Operations to audit (default create/update/delete)
        sink: Callable receiving each AuditEvent; may be sync or async
    """

    def __init__(
        self,
        enabled: bool = True,
        operations: Iterable[OperationKind | str] = DEFAULT_AUDITED_OPERATIONS,
        sink: AuditSink | None = None,
    ):
        self.enabled = enabled
        self.operations = {OperationKind(op) for op in operations}
        self.sink = sink or log_sink

    def should_audit(self, operation: OperationKind | str) -> bool:
        return self.enabled and OperationKind(operation) in self.operations

    async def log(self, event: AuditEvent) -> None:
        """Deliver an event to the sink. Never raises."""
        if not self.should_audit(event.operation):
            return
        try:
            result = self.sink(event)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning(f"Failed to log audit event for {event.resource}: {e}")

    async def log_from_context(
        self,
        ctx: OperationContext,
        data_before: Any = None,
        data_after: Any = None,
    ) -> None:
        """Build an event from an operation context and log it."""
        await self.log(
            AuditEvent(
                resource=ctx.resource,
                operation=OperationKind(ctx.operation).value,
                user_id=extract_user_id(ctx.user),
                record_id=ctx.id,
                data_before=data_before,
                data_after=data_after,
                ip_address=ctx.security.ip,
                user_agent=ctx.security.user_agent,
                metadata={"path": ctx.path, **ctx.metadata},
            )
        )
