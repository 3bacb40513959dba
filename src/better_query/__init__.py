"""
better-query - declarative resources to CRUD APIs with relationship resolution.

This package provides:
- Specs: resource, relationship and query declarations (pydantic models)
- Runtime: operation pipeline, storage adapters, plugins and the FastAPI surface
"""

__version__ = "0.1.0"

from better_query.runtime.server import BetterQuery, ServerConfig, create_app, run_app
from better_query.specs import (
    OperationKind,
    ResourceSpec,
    belongs_to,
    belongs_to_many,
    create_resource,
    has_many,
    has_one,
)

__all__ = [
    "BetterQuery",
    "ServerConfig",
    "create_app",
    "run_app",
    "ResourceSpec",
    "OperationKind",
    "create_resource",
    "belongs_to",
    "belongs_to_many",
    "has_many",
    "has_one",
]
