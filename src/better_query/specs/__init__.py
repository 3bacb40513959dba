"""
Resource and query specification types.

This module exports all specification types.
"""

from better_query.specs.entity import (
    CustomEndpoint,
    FieldAttribute,
    FieldKind,
    OperationKind,
    OwnershipSpec,
    OwnershipStrategy,
    ReferenceSpec,
    ReferentialAction,
    RelationKind,
    RelationSpec,
    ResourceHooks,
    ResourceSpec,
    SanitizationRule,
    SanitizationSpec,
    SanitizeKind,
    SearchSpec,
    SearchStrategy,
    belongs_to,
    belongs_to_many,
    create_resource,
    has_many,
    has_one,
)
from better_query.specs.query import (
    IncludeSpec,
    OrderBy,
    Pagination,
    PaginationResult,
    SortDirection,
    Where,
    WhereOperator,
)

__all__ = [
    # Resources
    "ResourceSpec",
    "create_resource",
    "OperationKind",
    "CustomEndpoint",
    "ResourceHooks",
    # Fields
    "FieldAttribute",
    "FieldKind",
    "ReferenceSpec",
    "ReferentialAction",
    # Relationships
    "RelationKind",
    "RelationSpec",
    "belongs_to",
    "belongs_to_many",
    "has_many",
    "has_one",
    # Security
    "OwnershipSpec",
    "OwnershipStrategy",
    "SanitizationRule",
    "SanitizationSpec",
    "SanitizeKind",
    # Search
    "SearchSpec",
    "SearchStrategy",
    # Queries
    "IncludeSpec",
    "OrderBy",
    "Pagination",
    "PaginationResult",
    "SortDirection",
    "Where",
    "WhereOperator",
]
