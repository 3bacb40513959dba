"""
Shared fixtures: a small catalog (categories, products, tags), an
owner-scoped notes resource and dated events.
"""

from datetime import date, datetime
from typing import Any

import pytest
from pydantic import BaseModel, Field

from better_query.runtime.audit_log import AuditEvent, AuditLogger
from better_query.runtime.server import BetterQuery
from better_query.specs import (
    OwnershipSpec,
    OwnershipStrategy,
    ResourceSpec,
    SearchSpec,
    belongs_to,
    belongs_to_many,
    has_many,
)

# =============================================================================
# Schemas
# =============================================================================


class Category(BaseModel):
    name: str = Field(max_length=100)
    parentId: str | None = None


class Product(BaseModel):
    name: str = Field(max_length=200)
    price: float = Field(ge=0)
    status: str = "active"
    description: str | None = None
    categoryId: str | None = None


class Tag(BaseModel):
    name: str = Field(json_schema_extra={"unique": True})


class Note(BaseModel):
    title: str
    ownerId: str | None = None


class Event(BaseModel):
    title: str
    day: date
    startsAt: datetime | None = None


# =============================================================================
# Resources
# =============================================================================


def category_resource(**kwargs: Any) -> ResourceSpec:
    return ResourceSpec(
        name="category",
        schema=Category,
        relationships={
            "parent": belongs_to("category", foreign_key="parentId"),
            "children": has_many("category", foreign_key="parentId"),
            "products": has_many("product", foreign_key="categoryId"),
        },
        **kwargs,
    )


def product_resource(**kwargs: Any) -> ResourceSpec:
    kwargs.setdefault("search", SearchSpec(fields=["name"]))
    return ResourceSpec(
        name="product",
        schema=Product,
        relationships={
            "category": belongs_to("category", foreign_key="categoryId"),
            "tags": belongs_to_many(
                "tag", through="product_tags", source_key="productId", target_foreign_key="tagId"
            ),
        },
        **kwargs,
    )


def tag_resource(**kwargs: Any) -> ResourceSpec:
    return ResourceSpec(
        name="tag",
        schema=Tag,
        relationships={
            "products": belongs_to_many(
                "product", through="product_tags", source_key="tagId", target_foreign_key="productId"
            ),
        },
        **kwargs,
    )


def note_resource(strategy: OwnershipStrategy = OwnershipStrategy.STRICT, **kwargs: Any) -> ResourceSpec:
    return ResourceSpec(
        name="note",
        schema=Note,
        ownership=OwnershipSpec(field="ownerId", strategy=strategy),
        **kwargs,
    )


def event_resource(**kwargs: Any) -> ResourceSpec:
    return ResourceSpec(name="event", schema=Event, **kwargs)


def catalog_resources() -> list[ResourceSpec]:
    return [category_resource(), product_resource(), tag_resource()]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def audit_events() -> list[AuditEvent]:
    """Collected audit events."""
    return []


@pytest.fixture
def query(audit_events: list[AuditEvent]) -> BetterQuery:
    """In-memory catalog instance recording audit events."""
    return BetterQuery(
        resources=catalog_resources(),
        audit=AuditLogger(sink=audit_events.append),
    )


@pytest.fixture
def alice() -> dict[str, Any]:
    return {"id": "alice", "scopes": ["user"]}


@pytest.fixture
def bob() -> dict[str, Any]:
    return {"id": "bob", "scopes": ["user"]}


@pytest.fixture
def admin() -> dict[str, Any]:
    return {"id": "root", "roles": ["admin"]}
