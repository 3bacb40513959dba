"""
Runtime server - the BetterQuery instance and its FastAPI application.

``BetterQuery`` wires resources, storage, relationships, hooks, plugins and
security into one operation pipeline per resource. ``create_app`` exposes those
pipelines over HTTP; ``BetterQuery.api`` exposes them for direct calls.
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from better_query.runtime.adapters import MemoryAdapter, SQLiteAdapter, StorageAdapter
from better_query.runtime.audit_log import AuditLogger
from better_query.runtime.errors import ConfigurationError
from better_query.runtime.field_inference import infer_fields
from better_query.runtime.hooks import HookExecutor
from better_query.runtime.marshalling import create_junction_table_sql, create_table_sql
from better_query.runtime.pipeline import OperationPipeline
from better_query.runtime.plugins import Middleware, Plugin, PluginManager
from better_query.runtime.rate_limit import RateLimitConfig, RateLimiter
from better_query.runtime.relation_loader import ManyToManyOperation, RelationLoader, RelationRegistry
from better_query.specs.entity import FieldAttribute, OperationKind, ResourceHooks, ResourceSpec

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = logging.getLogger(__name__)

DEFAULT_BASE_PATH = "/api/query"


# =============================================================================
# Server Configuration
# =============================================================================


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ServerConfig:
    """
    Configuration for a BetterQuery application.

    Groups all initialization options into a single object.
    """

    # Database settings; None keeps everything in memory
    db_path: Path | None = None

    # API settings
    base_path: str = DEFAULT_BASE_PATH
    auto_migrate: bool = True
    cors_origins: list[str] | None = None

    # Security
    rate_limit: RateLimitConfig | None = None
    audit: bool = False

    # Logging
    log_level: str = "INFO"
    log_dir: Path | None = None

    # Server
    host: str = "127.0.0.1"
    port: int = 8000

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ServerConfig:
        """
        Build a config from ``BETTER_QUERY_*`` environment variables.

        Recognized variables: ``DB_PATH``, ``BASE_PATH``, ``AUTO_MIGRATE``,
        ``CORS_ORIGINS`` (comma separated), ``RATE_LIMIT_WINDOW_MS`` and
        ``RATE_LIMIT_MAX`` (either enables rate limiting), ``AUDIT``,
        ``LOG_LEVEL``, ``LOG_DIR``, ``HOST``, ``PORT``.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            return env.get(f"BETTER_QUERY_{name}")

        config = cls()
        if db_path := get("DB_PATH"):
            config.db_path = Path(db_path)
        if base_path := get("BASE_PATH"):
            config.base_path = base_path
        config.auto_migrate = _env_bool(get("AUTO_MIGRATE"), config.auto_migrate)
        if origins := get("CORS_ORIGINS"):
            config.cors_origins = [o.strip() for o in origins.split(",") if o.strip()]

        window, maximum = get("RATE_LIMIT_WINDOW_MS"), get("RATE_LIMIT_MAX")
        if window or maximum:
            defaults = RateLimitConfig()
            config.rate_limit = RateLimitConfig(
                window_ms=int(window) if window else defaults.window_ms,
                max=int(maximum) if maximum else defaults.max,
            )

        config.audit = _env_bool(get("AUDIT"), config.audit)
        if log_level := get("LOG_LEVEL"):
            config.log_level = log_level.upper()
        if log_dir := get("LOG_DIR"):
            config.log_dir = Path(log_dir)
        if host := get("HOST"):
            config.host = host
        if port := get("PORT"):
            config.port = int(port)
        return config


# =============================================================================
# Direct API
# =============================================================================


class QueryAPI:
    """
    Direct (non-HTTP) access to the generated operations.

    Every call runs the full pipeline and returns the response body; failures
    raise the matching ``BetterQueryError``.

    Example:
        product = await query.api.create("product", {"name": "Tea"}, user=user)
        page = await query.api.list("product", {"page": 2, "limit": 10})
    """

    def __init__(self, query: BetterQuery):
        self._query = query

    def _pipeline(self, resource: str, operation: OperationKind) -> OperationPipeline:
        pipeline = self._query.pipelines.get(resource)
        if pipeline is None:
            raise ConfigurationError(f"Unknown resource '{resource}'")
        if not pipeline.resource.is_enabled(operation):
            raise ConfigurationError(f"Operation '{operation.value}' is disabled for '{resource}'")
        return pipeline

    @staticmethod
    def _query_with_include(query: dict[str, Any] | None, include: Any) -> dict[str, Any]:
        query = dict(query or {})
        if include is not None:
            query["include"] = include
        return query

    async def create(
        self,
        resource: str,
        data: dict[str, Any],
        *,
        user: dict[str, Any] | None = None,
        include: Any = None,
    ) -> Any:
        pipeline = self._pipeline(resource, OperationKind.CREATE)
        result = await pipeline.create(data, query=self._query_with_include(None, include), user=user)
        return result.unwrap()

    async def read(
        self,
        resource: str,
        id: str,
        *,
        user: dict[str, Any] | None = None,
        include: Any = None,
    ) -> Any:
        pipeline = self._pipeline(resource, OperationKind.READ)
        result = await pipeline.read(id, query=self._query_with_include(None, include), user=user)
        return result.unwrap()

    async def update(
        self,
        resource: str,
        id: str,
        data: dict[str, Any],
        *,
        user: dict[str, Any] | None = None,
        include: Any = None,
    ) -> Any:
        pipeline = self._pipeline(resource, OperationKind.UPDATE)
        result = await pipeline.update(id, data, query=self._query_with_include(None, include), user=user)
        return result.unwrap()

    async def delete(self, resource: str, id: str, *, user: dict[str, Any] | None = None) -> Any:
        pipeline = self._pipeline(resource, OperationKind.DELETE)
        result = await pipeline.delete(id, user=user)
        return result.unwrap()

    async def list(
        self,
        resource: str,
        query: dict[str, Any] | None = None,
        *,
        user: dict[str, Any] | None = None,
        include: Any = None,
    ) -> Any:
        pipeline = self._pipeline(resource, OperationKind.LIST)
        result = await pipeline.list(self._query_with_include(query, include), user=user)
        return result.unwrap()

    async def manage_many_to_many(
        self,
        resource: str,
        id: str,
        relation: str,
        target_ids: Sequence[Any],
        operation: ManyToManyOperation = "set",
    ) -> list[Any]:
        """Set, add or remove associations; returns the resulting target ids."""
        return await self._query.manage_many_to_many(resource, id, relation, target_ids, operation)


# =============================================================================
# BetterQuery
# =============================================================================


class BetterQuery:
    """
    Central object: declarative resources turned into CRUD pipelines.

    Example:
        query = BetterQuery(
            resources=[product, category, tag],
            adapter=SQLiteAdapter("data/app.db"),
            plugins=[cache_plugin()],
            rate_limit=RateLimitConfig(window_ms=60_000, max=100),
        )
        app = create_app(query)
    """

    def __init__(
        self,
        resources: Sequence[ResourceSpec],
        adapter: StorageAdapter | None = None,
        plugins: Sequence[Plugin] = (),
        middleware: Sequence[Middleware] = (),
        hooks: ResourceHooks | None = None,
        rate_limit: RateLimitConfig | None = None,
        rate_limiter: RateLimiter | None = None,
        audit: AuditLogger | bool | None = None,
        auto_migrate: bool = False,
        base_path: str = DEFAULT_BASE_PATH,
    ):
        """
        Initialize and validate the configuration.

        Args:
            resources: Resource specifications
            adapter: Storage adapter (in-memory by default)
            plugins: Plugins to register, in order
            middleware: Middleware run at the start of every operation
            hooks: Hooks applied to every resource
            rate_limit: Per-window request budget; disabled when None
            rate_limiter: Limiter instance shared by all pipelines
            audit: AuditLogger, or True for the default logger sink
            auto_migrate: Create tables on startup
            base_path: URL prefix of the generated routes

        Raises:
            ConfigurationError: duplicate resources or invalid relationships
        """
        self.adapter = adapter or MemoryAdapter()
        self.base_path = base_path.rstrip("/")
        self.auto_migrate = auto_migrate

        self.plugins = PluginManager()
        for plugin in plugins:
            self.plugins.register(plugin)

        self.resources: dict[str, ResourceSpec] = {}
        for resource in [*resources, *self.plugins.get_resources()]:
            if resource.name in self.resources:
                raise ConfigurationError(f"Resource '{resource.name}' is defined more than once")
            self.resources[resource.name] = resource

        self.fields: dict[str, dict[str, FieldAttribute]] = {
            name: infer_fields(resource.schema_) for name, resource in self.resources.items()
        }
        for name, resource in self.resources.items():
            self.adapter.register_model(resource.table, self.fields[name])
        for table, fields in self.plugins.get_schemas().items():
            self.adapter.register_model(table, fields)

        self.registry = RelationRegistry.from_resources(list(self.resources.values()), self.fields)
        self.registry.validate()
        self.relations = RelationLoader(self.registry, self.adapter)
        self.adapter.bind_relations(self.relations)

        self.middleware = [*middleware, *self.plugins.get_middleware()]
        self.hooks = HookExecutor(plugins=self.plugins, global_hooks=hooks)
        self.rate_limit = rate_limit
        self.rate_limiter = rate_limiter or (RateLimiter() if rate_limit else None)
        if isinstance(audit, AuditLogger):
            self.audit: AuditLogger | None = audit
        else:
            self.audit = AuditLogger() if audit else None

        self.pipelines: dict[str, OperationPipeline] = {
            name: OperationPipeline(
                resource,
                self.adapter,
                self.fields[name],
                hooks=self.hooks,
                middleware=self.middleware,
                audit=self.audit,
                rate_limiter=self.rate_limiter,
                rate_limit=rate_limit,
                base_path=self.base_path,
            )
            for name, resource in self.resources.items()
        }
        self.api = QueryAPI(self)

        logger.info(
            f"BetterQuery ready: {len(self.resources)} resource(s), {len(self.plugins)} plugin(s), "
            f"adapter={self.adapter.provider}"
        )

    @classmethod
    def from_config(
        cls,
        resources: Sequence[ResourceSpec],
        config: ServerConfig,
        **kwargs: Any,
    ) -> BetterQuery:
        """Build an instance from a ServerConfig (SQLite when ``db_path`` is set)."""
        kwargs.setdefault("adapter", SQLiteAdapter(config.db_path) if config.db_path else MemoryAdapter())
        kwargs.setdefault("rate_limit", config.rate_limit)
        kwargs.setdefault("audit", config.audit)
        kwargs.setdefault("auto_migrate", config.auto_migrate)
        kwargs.setdefault("base_path", config.base_path)
        return cls(resources, **kwargs)

    # -------------------------------------------------------------------------
    # Migrations
    # -------------------------------------------------------------------------

    def migration_statements(self, provider: str | None = None) -> list[str]:
        """
        DDL for every resource table, plugin schema, junction table and FK index.

        Args:
            provider: "sqlite" or "postgres" (defaults to the adapter's provider)
        """
        if provider is None:
            provider = "postgres" if self.adapter.provider == "postgres" else "sqlite"

        statements: list[str] = []
        tables: set[str] = set()
        for name, resource in self.resources.items():
            statements.append(create_table_sql(resource.table, self.fields[name], provider))
            tables.add(resource.table)
        for table, fields in self.plugins.get_schemas().items():
            if table not in tables:
                statements.append(create_table_sql(table, fields, provider))
                tables.add(table)
        for junction in self.registry.required_junction_tables():
            if junction.name not in tables:
                statements.append(
                    create_junction_table_sql(junction.name, junction.source_key, junction.target_key, provider)
                )
                tables.add(junction.name)
        statements.extend(self.registry.foreign_key_indexes())
        return statements

    async def migrate(self) -> list[str]:
        """Create missing tables through the adapter. Returns the executed DDL."""
        create_schema = getattr(self.adapter, "create_schema", None)
        if create_schema is None:
            logger.warning(f"Adapter {self.adapter.provider} does not support schema creation")
            return []
        statements = self.migration_statements()
        await create_schema(statements)
        logger.info(f"Applied {len(statements)} schema statement(s)")
        return statements

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def startup(self) -> None:
        """Run auto-migration (failures are logged) and plugin init callbacks."""
        if self.auto_migrate:
            try:
                await self.migrate()
            except Exception as e:
                logger.error(f"Auto-migration failed: {e}", exc_info=True)
        await self.plugins.init_all(self)

    async def shutdown(self) -> None:
        await self.plugins.destroy_all(self)
        close = getattr(self.adapter, "close", None)
        if close is not None:
            await close()

    # -------------------------------------------------------------------------
    # Relationships
    # -------------------------------------------------------------------------

    async def manage_many_to_many(
        self,
        resource: str,
        id: str,
        relation: str,
        target_ids: Sequence[Any],
        operation: ManyToManyOperation = "set",
    ) -> list[Any]:
        spec = self.resources.get(resource)
        if spec is None:
            raise ConfigurationError(f"Unknown resource '{resource}'")
        return await self.relations.manage_many_to_many(spec.table, id, relation, target_ids, operation)


# =============================================================================
# Application Factory
# =============================================================================


def create_app(query: BetterQuery, config: ServerConfig | None = None) -> FastAPI:
    """
    Create a FastAPI application serving a BetterQuery instance.

    Args:
        query: Configured BetterQuery instance
        config: Server configuration (CORS origins, title defaults)

    Returns:
        FastAPI application

    Example:
        >>> app = create_app(query)
        >>> # Run with uvicorn: uvicorn mymodule:app
    """
    from fastapi import FastAPI
    from fastapi.middleware.cors import CORSMiddleware

    from better_query import __version__
    from better_query.runtime.exception_handlers import register_exception_handlers
    from better_query.runtime.route_generator import RouteGenerator

    config = config or ServerConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await query.startup()
        try:
            yield
        finally:
            await query.shutdown()

    app = FastAPI(
        title="better-query",
        description=f"CRUD API for {', '.join(query.resources) or 'no resources'}",
        version=__version__,
        lifespan=lifespan,
    )
    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    register_exception_handlers(app)
    app.include_router(RouteGenerator(query).generate_all_routes())
    app.state.better_query = query
    return app


def run_app(
    query: BetterQuery,
    config: ServerConfig | None = None,
    reload: bool = False,
) -> None:
    """
    Run a BetterQuery application with uvicorn.

    Args:
        query: Configured BetterQuery instance
        config: Server configuration (host, port, logging)
        reload: Enable auto-reload
    """
    import uvicorn

    from better_query.runtime.logging import setup_logging

    config = config or ServerConfig.from_env()
    setup_logging(level=config.log_level, log_dir=config.log_dir)
    app = create_app(query, config)
    logger.info(f"Starting server at http://{config.host}:{config.port}{query.base_path}")
    uvicorn.run(app, host=config.host, port=config.port, reload=reload)
