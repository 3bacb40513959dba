"""
Lifecycle hook execution.

Before-hooks run plugin hooks first, then the global hook, then the resource
hook; they may mutate ``ctx.data`` and any exception they raise aborts the
operation. After-hooks run in the reverse order once storage returned; their
exceptions are logged and never undo the completed write.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from better_query.runtime.security import extract_user_id
from better_query.specs.entity import HookFn, OperationKind, ResourceHooks
from better_query.specs.query import Where

if TYPE_CHECKING:
    from better_query.runtime.context import OperationContext
    from better_query.runtime.plugins import PluginManager

logger = logging.getLogger(__name__)


async def call_hook(hook: HookFn | None, ctx: OperationContext) -> Any:
    """Invoke a sync or async callback with the context."""
    if hook is None:
        return None
    result = hook(ctx)
    if asyncio.iscoroutine(result):
        result = await result
    return result


class HookExecutor:
    """Runs plugin, global and resource hooks for one BetterQuery instance."""

    def __init__(
        self,
        plugins: PluginManager | None = None,
        global_hooks: ResourceHooks | None = None,
    ):
        self.plugins = plugins
        self.global_hooks = global_hooks or ResourceHooks()

    async def execute_before(self, hooks: ResourceHooks | None, ctx: OperationContext) -> None:
        """Run before-stage hooks. Exceptions propagate to the caller."""
        operation = OperationKind(ctx.operation)
        if self.plugins is not None:
            await self.plugins.execute_hook(f"before_{operation.value}", ctx)
        await call_hook(self.global_hooks.before(operation), ctx)
        if hooks is not None:
            await call_hook(hooks.before(operation), ctx)

    async def execute_after(self, hooks: ResourceHooks | None, ctx: OperationContext) -> list[Exception]:
        """
        Run after-stage hooks, each isolated from the others.

        Returns:
            Exceptions raised by hooks (already logged)
        """
        operation = OperationKind(ctx.operation)
        errors: list[Exception] = []

        async def guarded(hook: HookFn | None, label: str) -> None:
            try:
                await call_hook(hook, ctx)
            except Exception as e:
                logger.warning(f"{label} after_{operation.value} hook failed on {ctx.resource}: {e}")
                errors.append(e)

        if hooks is not None:
            await guarded(hooks.after(operation), "Resource")
        await guarded(self.global_hooks.after(operation), "Global")
        if self.plugins is not None:
            try:
                await self.plugins.execute_hook(f"after_{operation.value}", ctx)
            except Exception as e:
                logger.warning(f"Plugin after_{operation.value} hook failed on {ctx.resource}: {e}")
                errors.append(e)
        return errors


class HookUtils:
    """Ready-made hooks for common cases."""

    @staticmethod
    def timestamp_hook(ctx: OperationContext) -> None:
        """Stamp ``createdAt``/``updatedAt`` on create and ``updatedAt`` on update."""
        if ctx.data is None:
            return
        now = datetime.now(UTC)
        if ctx.operation == OperationKind.CREATE:
            ctx.data["createdAt"] = now
            ctx.data["updatedAt"] = now
        elif ctx.operation == OperationKind.UPDATE:
            ctx.data["updatedAt"] = now

    @staticmethod
    def user_tracking_hook(user_field: str = "userId") -> Callable[[OperationContext], None]:
        """Copy the acting user's id into ``user_field`` on create."""

        def hook(ctx: OperationContext) -> None:
            if ctx.operation == OperationKind.CREATE and ctx.user and ctx.data is not None:
                ctx.data[user_field] = extract_user_id(ctx.user)

        return hook

    @staticmethod
    async def soft_delete_hook(ctx: OperationContext) -> None:
        """Mark the record deleted (``deletedAt``/``isDeleted``) before removal."""
        if ctx.operation != OperationKind.DELETE or not ctx.id or ctx.adapter is None:
            return
        await ctx.adapter.update(
            ctx.model or ctx.resource,
            [Where(field="id", value=ctx.id)],
            {"deletedAt": datetime.now(UTC), "isDeleted": True},
        )

    @staticmethod
    def validation_hook(validate: Callable[[dict[str, Any]], Any]) -> Callable[[OperationContext], Any]:
        """Reject create/update payloads for which ``validate`` returns falsy."""

        async def hook(ctx: OperationContext) -> None:
            if ctx.operation not in (OperationKind.CREATE, OperationKind.UPDATE) or ctx.data is None:
                return
            valid = validate(ctx.data)
            if asyncio.iscoroutine(valid):
                valid = await valid
            if not valid:
                raise ValueError("Custom validation failed")

        return hook

    @staticmethod
    def notification_hook(notify: Callable[[OperationContext], Any]) -> Callable[[OperationContext], Any]:
        """Forward the context to ``notify``."""

        async def hook(ctx: OperationContext) -> None:
            await call_hook(notify, ctx)

        return hook
