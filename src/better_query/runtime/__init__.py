"""
better-query runtime.

This module provides:
- Field inference and storage marshalling (pydantic schemas to field maps and DDL)
- Storage adapters (in-memory, SQLite)
- Relationship registry and loader
- The operation pipeline with security, hooks, audit and plugins
- Route generation and the server/app factory

Example usage:
    >>> from better_query.runtime import BetterQuery, create_app
    >>> query = BetterQuery(resources=[product, category])
    >>> app = create_app(query)
"""

from better_query.runtime.adapters import MemoryAdapter, SQLiteAdapter, StorageAdapter
from better_query.runtime.audit_log import AuditEvent, AuditLogger
from better_query.runtime.cache import QueryCache
from better_query.runtime.context import OperationContext, OperationResult
from better_query.runtime.errors import (
    AdapterFailure,
    BetterQueryError,
    ConfigurationError,
    Forbidden,
    HookExecutionFailed,
    NotFound,
    RateLimitExceeded,
    SchemaIntrospectionError,
    ValidationFailed,
)
from better_query.runtime.field_inference import build_validation_schema, infer_fields
from better_query.runtime.hooks import HookExecutor, HookUtils
from better_query.runtime.logging import get_logger, setup_logging
from better_query.runtime.pipeline import OperationPipeline
from better_query.runtime.plugins import (
    Middleware,
    Plugin,
    PluginManager,
    audit_plugin,
    cache_plugin,
    timestamp_plugin,
)
from better_query.runtime.rate_limit import RateLimitConfig, RateLimiter
from better_query.runtime.relation_loader import RelationLoader, RelationRegistry
from better_query.runtime.route_generator import RouteGenerator
from better_query.runtime.search import FilterBuilder, SearchBuilder
from better_query.runtime.server import BetterQuery, QueryAPI, ServerConfig, create_app, run_app

__all__ = [
    # Server
    "BetterQuery",
    "QueryAPI",
    "ServerConfig",
    "create_app",
    "run_app",
    "RouteGenerator",
    # Pipeline
    "OperationPipeline",
    "OperationContext",
    "OperationResult",
    # Storage
    "StorageAdapter",
    "MemoryAdapter",
    "SQLiteAdapter",
    "infer_fields",
    "build_validation_schema",
    # Relationships
    "RelationRegistry",
    "RelationLoader",
    # Hooks, plugins, audit
    "HookExecutor",
    "HookUtils",
    "Plugin",
    "PluginManager",
    "Middleware",
    "cache_plugin",
    "audit_plugin",
    "timestamp_plugin",
    "AuditLogger",
    "AuditEvent",
    "QueryCache",
    # Security
    "RateLimitConfig",
    "RateLimiter",
    # Search
    "SearchBuilder",
    "FilterBuilder",
    # Logging
    "setup_logging",
    "get_logger",
    # Errors
    "BetterQueryError",
    "NotFound",
    "ValidationFailed",
    "Forbidden",
    "RateLimitExceeded",
    "HookExecutionFailed",
    "AdapterFailure",
    "ConfigurationError",
    "SchemaIntrospectionError",
]
