"""
Resource specification types.

Defines resources, field attributes, relationships and the per-resource
configuration blocks (permissions, scopes, ownership, sanitization, search,
hooks, endpoint flags, custom endpoints).
"""

from __future__ import annotations

import re
from collections.abc import Callable
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


# =============================================================================
# Operations
# =============================================================================


class OperationKind(str, Enum):
    """CRUD verbs a resource exposes."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    LIST = "list"


# =============================================================================
# Field Attributes
# =============================================================================


class FieldKind(str, Enum):
    """Semantic storage type of a field."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    JSON = "json"


class ReferentialAction(str, Enum):
    """Action taken on a referencing row when the referenced row changes."""

    CASCADE = "cascade"
    RESTRICT = "restrict"
    SET_NULL = "set null"
    SET_DEFAULT = "set default"
    NO_ACTION = "no action"


class ReferenceSpec(BaseModel):
    """Foreign-key reference descriptor."""

    model: str = Field(description="Referenced model/table name")
    field: str = Field(default="id", description="Referenced column")
    on_delete: ReferentialAction = Field(default=ReferentialAction.NO_ACTION)
    on_update: ReferentialAction = Field(default=ReferentialAction.NO_ACTION)

    model_config = ConfigDict(frozen=True)


class FieldAttribute(BaseModel):
    """
    Storage-level description of one field.

    A field with a default value is still required in storage terms: it is
    never persisted as null.
    """

    type: FieldKind
    required: bool = True
    unique: bool = False
    default: Any = None
    length: int | None = Field(default=None, description="Max length (strings only)")
    references: ReferenceSpec | None = None

    model_config = ConfigDict(frozen=True)

    @property
    def has_default(self) -> bool:
        return self.default is not None


# =============================================================================
# Relationships
# =============================================================================


class RelationKind(str, Enum):
    """Kinds of relationships between resources."""

    HAS_ONE = "hasOne"
    HAS_MANY = "hasMany"
    BELONGS_TO = "belongsTo"
    BELONGS_TO_MANY = "belongsToMany"


class RelationSpec(BaseModel):
    """
    Declarative relationship between two resources.

    Key usage by kind:
        - belongsTo: ``foreign_key`` lives on this resource and points at
          ``target_key`` on the target.
        - hasOne / hasMany: ``foreign_key`` lives on the target and points at
          ``local_key`` on this resource.
        - belongsToMany: ``through`` names the junction table; ``source_key`` is
          the junction column holding this resource's ``local_key`` and
          ``target_foreign_key`` the column holding the target's ``target_key``.
    """

    type: RelationKind
    target: str
    foreign_key: str | None = None
    target_key: str = "id"
    local_key: str = "id"
    through: str | None = None
    source_key: str | None = None
    target_foreign_key: str | None = None
    include_by_default: bool = False
    max_depth: int | None = Field(default=None, ge=1)

    model_config = ConfigDict(frozen=True)

    @property
    def is_to_one(self) -> bool:
        return self.type in (RelationKind.BELONGS_TO, RelationKind.HAS_ONE)

    @property
    def is_to_many(self) -> bool:
        return self.type in (RelationKind.HAS_MANY, RelationKind.BELONGS_TO_MANY)


def belongs_to(target: str, foreign_key: str, target_key: str = "id", **kwargs: Any) -> RelationSpec:
    """Declare that this resource holds a foreign key pointing at ``target``."""
    return RelationSpec(
        type=RelationKind.BELONGS_TO,
        target=target,
        foreign_key=foreign_key,
        target_key=target_key,
        **kwargs,
    )


def has_one(target: str, foreign_key: str, local_key: str = "id", **kwargs: Any) -> RelationSpec:
    """Declare a single ``target`` record whose ``foreign_key`` points here."""
    return RelationSpec(
        type=RelationKind.HAS_ONE,
        target=target,
        foreign_key=foreign_key,
        local_key=local_key,
        **kwargs,
    )


def has_many(target: str, foreign_key: str, local_key: str = "id", **kwargs: Any) -> RelationSpec:
    """Declare many ``target`` records whose ``foreign_key`` points here."""
    return RelationSpec(
        type=RelationKind.HAS_MANY,
        target=target,
        foreign_key=foreign_key,
        local_key=local_key,
        **kwargs,
    )


def belongs_to_many(
    target: str,
    through: str,
    source_key: str,
    target_foreign_key: str,
    local_key: str = "id",
    target_key: str = "id",
    **kwargs: Any,
) -> RelationSpec:
    """Declare a many-to-many association through a junction table."""
    return RelationSpec(
        type=RelationKind.BELONGS_TO_MANY,
        target=target,
        through=through,
        source_key=source_key,
        target_foreign_key=target_foreign_key,
        local_key=local_key,
        target_key=target_key,
        **kwargs,
    )


# =============================================================================
# Per-resource configuration blocks
# =============================================================================

# Callbacks receive the OperationContext; they may be sync or async.
PermissionFn = Callable[[Any], Any]
HookFn = Callable[[Any], Any]


class OwnershipStrategy(str, Enum):
    STRICT = "strict"
    FLEXIBLE = "flexible"


class OwnershipSpec(BaseModel):
    """Restricts access to records whose ``field`` matches the acting user id."""

    field: str
    strategy: OwnershipStrategy = OwnershipStrategy.STRICT

    model_config = ConfigDict(frozen=True)


class SanitizeKind(str, Enum):
    TRIM = "trim"
    ESCAPE = "escape"
    LOWERCASE = "lowercase"
    UPPERCASE = "uppercase"
    STRIP = "strip"
    CUSTOM = "custom"


class SanitizationRule(BaseModel):
    """A single sanitization step. ``custom`` rules carry ``custom_fn``."""

    type: SanitizeKind
    custom_fn: Callable[[str], str] | None = None

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class SanitizationSpec(BaseModel):
    """Global rules run before field-specific rules."""

    global_rules: list[SanitizationRule] = Field(default_factory=list)
    field_rules: dict[str, list[SanitizationRule]] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class SearchStrategy(str, Enum):
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    EXACT = "exact"
    FUZZY = "fuzzy"


class SearchSpec(BaseModel):
    """Free-text search configuration for list operations."""

    fields: list[str] = Field(default_factory=lambda: ["name"])
    strategy: SearchStrategy = SearchStrategy.CONTAINS
    case_sensitive: bool = False

    model_config = ConfigDict(frozen=True)


class ResourceHooks(BaseModel):
    """
    Lifecycle callbacks.

    ``on_<op>`` and ``before_<op>`` both name the before-stage hook; when both
    are set ``on_<op>`` wins. ``after_<op>`` runs once storage returned.
    """

    on_create: HookFn | None = None
    on_read: HookFn | None = None
    on_update: HookFn | None = None
    on_delete: HookFn | None = None
    on_list: HookFn | None = None
    before_create: HookFn | None = None
    before_read: HookFn | None = None
    before_update: HookFn | None = None
    before_delete: HookFn | None = None
    before_list: HookFn | None = None
    after_create: HookFn | None = None
    after_read: HookFn | None = None
    after_update: HookFn | None = None
    after_delete: HookFn | None = None
    after_list: HookFn | None = None

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    def before(self, operation: OperationKind | str) -> HookFn | None:
        op = OperationKind(operation).value
        return getattr(self, f"on_{op}") or getattr(self, f"before_{op}")

    def after(self, operation: OperationKind | str) -> HookFn | None:
        return getattr(self, f"after_{OperationKind(operation).value}")


class CustomEndpoint(BaseModel):
    """Extra HTTP endpoint merged into the generated API surface."""

    path: str
    handler: Callable[..., Any]
    methods: list[str] = Field(default_factory=lambda: ["GET"])
    summary: str | None = None

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


# =============================================================================
# Resource
# =============================================================================


class ResourceSpec(BaseModel):
    """
    Declarative description of a resource.

    Immutable after construction. ``schema`` is a pydantic model class used both
    for input validation and for field inference.
    """

    name: str
    schema_: type[BaseModel] = Field(alias="schema")
    table_name: str | None = None
    relationships: dict[str, RelationSpec] = Field(default_factory=dict)
    endpoints: dict[OperationKind, bool] = Field(
        default_factory=dict, description="Per-operation enable flags (default enabled)"
    )
    permissions: dict[OperationKind, PermissionFn] = Field(
        default_factory=dict, description="Permission callbacks; a missing callback allows"
    )
    scopes: dict[OperationKind, list[str]] = Field(
        default_factory=dict, description="Required scopes per operation"
    )
    ownership: OwnershipSpec | None = None
    sanitization: SanitizationSpec | None = None
    hooks: ResourceHooks = Field(default_factory=ResourceHooks)
    search: SearchSpec | None = None
    custom_endpoints: dict[str, CustomEndpoint] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, populate_by_name=True, arbitrary_types_allowed=True)

    @field_validator("name", "table_name")
    @classmethod
    def validate_identifier(cls, v: str | None) -> str | None:
        if v is not None and not _IDENTIFIER_RE.match(v):
            raise ValueError(f"'{v}' is not a valid resource identifier")
        return v

    @property
    def table(self) -> str:
        """Storage table/model name."""
        return self.table_name or self.name

    def get_relation(self, name: str) -> RelationSpec | None:
        return self.relationships.get(name)

    def is_enabled(self, operation: OperationKind | str) -> bool:
        return self.endpoints.get(OperationKind(operation), True)

    def permission_for(self, operation: OperationKind | str) -> PermissionFn | None:
        return self.permissions.get(OperationKind(operation))

    def scopes_for(self, operation: OperationKind | str) -> list[str]:
        return self.scopes.get(OperationKind(operation), [])


def create_resource(name: str, schema: type[BaseModel], **kwargs: Any) -> ResourceSpec:
    """Build a ResourceSpec, accepting plain dicts for the nested blocks."""
    return ResourceSpec(name=name, schema=schema, **kwargs)
