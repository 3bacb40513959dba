"""Plugins and middleware.

A plugin contributes any of:

- ``endpoints``  extra HTTP endpoints merged into the generated API
- ``schemas``    extra tables (field maps) merged into auto-migration
- ``resources``  extra resources registered alongside the user's own
- ``hooks``      callbacks invoked alongside resource hooks
- ``middleware`` handlers run at the start of every operation

Hook names are ``before_<op>``/``after_<op>`` for the five operations;
``on_<op>`` is accepted as a synonym of ``before_<op>``.

Bundled plugins::

    query = BetterQuery(
        resources=[...],
        plugins=[cache_plugin(ttl=60), audit_plugin(), timestamp_plugin()],
    )
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from better_query.runtime.audit_log import AuditLogger, AuditSink
from better_query.runtime.cache import QueryCache
from better_query.runtime.errors import ConfigurationError
from better_query.runtime.hooks import HookUtils, call_hook
from better_query.runtime.security import extract_user_id
from better_query.specs.entity import (
    CustomEndpoint,
    FieldAttribute,
    HookFn,
    OperationKind,
    ResourceSpec,
)

if TYPE_CHECKING:
    from better_query.runtime.context import OperationContext

logger = logging.getLogger(__name__)

VALID_HOOK_NAMES = frozenset(
    f"{stage}_{op.value}" for stage in ("before", "after") for op in OperationKind
)


@dataclass
class Middleware:
    """Operation middleware; ``path`` limits it to routes under that prefix."""

    handler: Callable[[Any], Any]
    path: str | None = None

    def applies_to(self, path: str) -> bool:
        return self.path is None or path.startswith(self.path)


class Plugin(BaseModel):
    """Declarative plugin bundle."""

    id: str
    endpoints: dict[str, CustomEndpoint] = Field(default_factory=dict)
    schemas: dict[str, dict[str, FieldAttribute]] = Field(default_factory=dict)
    resources: list[ResourceSpec] = Field(default_factory=list)
    hooks: dict[str, HookFn] = Field(default_factory=dict)
    middleware: list[Middleware] = Field(default_factory=list)
    init: Callable[[Any], Any] | None = None
    destroy: Callable[[Any], Any] | None = None

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    @field_validator("hooks")
    @classmethod
    def normalize_hook_names(cls, v: dict[str, HookFn]) -> dict[str, HookFn]:
        normalized: dict[str, HookFn] = {}
        for name, hook in v.items():
            if name.startswith("on_"):
                name = "before_" + name[3:]
            if name not in VALID_HOOK_NAMES:
                raise ValueError(f"Unknown hook '{name}'. Valid: {', '.join(sorted(VALID_HOOK_NAMES))}")
            normalized[name] = hook
        return normalized


@dataclass
class PluginManager:
    """Registry of plugins for one BetterQuery instance."""

    _plugins: dict[str, Plugin] = field(default_factory=dict)

    def register(self, plugin: Plugin) -> None:
        """Register a plugin. Duplicate ids are a configuration error."""
        if plugin.id in self._plugins:
            raise ConfigurationError(f"Plugin '{plugin.id}' is already registered")
        self._plugins[plugin.id] = plugin
        logger.info(f"Registered plugin {plugin.id} ({len(plugin.hooks)} hooks, {len(plugin.endpoints)} endpoints)")

    def get(self, plugin_id: str) -> Plugin | None:
        return self._plugins.get(plugin_id)

    @property
    def plugins(self) -> list[Plugin]:
        return list(self._plugins.values())

    def __len__(self) -> int:
        return len(self._plugins)

    def get_endpoints(self) -> dict[str, CustomEndpoint]:
        endpoints: dict[str, CustomEndpoint] = {}
        for plugin in self._plugins.values():
            for name, endpoint in plugin.endpoints.items():
                if name in endpoints:
                    raise ConfigurationError(f"Endpoint '{name}' from plugin '{plugin.id}' is already defined")
                endpoints[name] = endpoint
        return endpoints

    def get_schemas(self) -> dict[str, dict[str, FieldAttribute]]:
        schemas: dict[str, dict[str, FieldAttribute]] = {}
        for plugin in self._plugins.values():
            schemas.update(plugin.schemas)
        return schemas

    def get_resources(self) -> list[ResourceSpec]:
        return [resource for plugin in self._plugins.values() for resource in plugin.resources]

    def get_middleware(self) -> list[Middleware]:
        return [m for plugin in self._plugins.values() for m in plugin.middleware]

    async def execute_hook(self, name: str, ctx: OperationContext) -> None:
        """Run hook ``name`` of every plugin, in registration order."""
        for plugin in self._plugins.values():
            await call_hook(plugin.hooks.get(name), ctx)

    async def init_all(self, query: Any) -> None:
        for plugin in self._plugins.values():
            if plugin.init is not None:
                await call_hook(plugin.init, query)

    async def destroy_all(self, query: Any) -> None:
        for plugin in self._plugins.values():
            if plugin.destroy is not None:
                try:
                    await call_hook(plugin.destroy, query)
                except Exception as e:
                    logger.warning(f"Plugin {plugin.id} destroy failed: {e}")


# =============================================================================
# Bundled plugins
# =============================================================================


def cache_plugin(
    ttl: float = 300,
    cache: QueryCache | None = None,
    resources: list[str] | None = None,
) -> Plugin:
    """
    Read-through cache for read and list operations.

    A hit is placed on ``ctx.cached_result`` before the storage call, which the
    pipeline then skips. Any create, update or delete drops the resource's entries.

    Args:
        ttl: Entry lifetime in seconds
        cache: Cache instance (a fresh QueryCache by default)
        resources: Resource names to cache; all when omitted
    """
    store = cache or QueryCache(ttl=ttl)

    def enabled_for(ctx: OperationContext) -> bool:
        return resources is None or ctx.resource in resources

    def cache_key(ctx: OperationContext) -> str:
        # Entries are per user: ownership filters are applied after lookup
        query = {**ctx.query, "_user": extract_user_id(ctx.user)}
        return QueryCache.key(ctx.resource, OperationKind(ctx.operation).value, ctx.id, query)

    def lookup(ctx: OperationContext) -> None:
        if enabled_for(ctx):
            hit = store.get(cache_key(ctx))
            # hand out a copy so callers cannot mutate the stored entry
            ctx.cached_result = copy.deepcopy(hit) if hit is not None else None

    def remember(ctx: OperationContext) -> None:
        if enabled_for(ctx) and ctx.cached_result is None and ctx.result is not None:
            store.set(cache_key(ctx), copy.deepcopy(ctx.result))

    def invalidate(ctx: OperationContext) -> None:
        store.invalidate(ctx.resource)

    def stats(request: Any) -> dict[str, Any]:
        store.purge_expired()
        return {"size": len(store), "ttl": store.ttl}

    def clear(request: Any) -> dict[str, Any]:
        resource = request.query_params.get("resource") if request is not None else None
        if resource:
            removed = store.invalidate(resource)
            return {"message": f"Cleared cache for resource: {resource}", "removed": removed}
        store.clear()
        return {"message": "Cleared all cache"}

    return Plugin(
        id="cache",
        endpoints={
            "cache_stats": CustomEndpoint(path="/cache/stats", handler=stats, methods=["GET"]),
            "cache_clear": CustomEndpoint(path="/cache/clear", handler=clear, methods=["POST"]),
        },
        hooks={
            "before_read": lookup,
            "before_list": lookup,
            "after_read": remember,
            "after_list": remember,
            "after_create": invalidate,
            "after_update": invalidate,
            "after_delete": invalidate,
        },
    )


def audit_plugin(
    sink: AuditSink | None = None,
    operations: list[OperationKind | str] | None = None,
) -> Plugin:
    """Audit trail through after-hooks, independent of the instance audit config."""
    audit = AuditLogger(
        enabled=True,
        operations=operations or [OperationKind.CREATE, OperationKind.UPDATE, OperationKind.DELETE],
        sink=sink,
    )

    async def record(ctx: OperationContext) -> None:
        await audit.log_from_context(ctx, data_before=ctx.existing_data, data_after=ctx.result)

    return Plugin(
        id="audit",
        hooks={f"after_{op.value}": record for op in OperationKind},
    )


def timestamp_plugin() -> Plugin:
    """Stamp ``createdAt``/``updatedAt`` on every resource."""
    return Plugin(
        id="timestamp",
        hooks={
            "before_create": HookUtils.timestamp_hook,
            "before_update": HookUtils.timestamp_hook,
        },
    )
