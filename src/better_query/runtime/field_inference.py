"""
Field inference - derives storage field attributes from resource schemas.

Walks a pydantic model's declared fields and maps each one to a
FieldAttribute (semantic type, required, unique, default, max length,
reference). Also builds the permissive validation schemas used by the
operation pipeline.
"""

from __future__ import annotations

import collections.abc
import enum
import types
import typing
from datetime import date, datetime, time
from decimal import Decimal
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, BeforeValidator, Field, create_model
from pydantic.fields import FieldInfo

from better_query.runtime.errors import SchemaIntrospectionError
from better_query.specs.entity import FieldAttribute, FieldKind, ReferenceSpec

# =============================================================================
# Type Mapping
# =============================================================================

_SCALAR_KINDS: list[tuple[type, FieldKind]] = [
    # bool before int: bool is an int subclass
    (bool, FieldKind.BOOLEAN),
    (int, FieldKind.NUMBER),
    (float, FieldKind.NUMBER),
    (Decimal, FieldKind.NUMBER),
    (datetime, FieldKind.DATE),
    (date, FieldKind.DATE),
    (time, FieldKind.STRING),
    (str, FieldKind.STRING),
    (bytes, FieldKind.STRING),
    (UUID, FieldKind.STRING),
]

_JSON_ORIGINS = (list, dict, set, frozenset, tuple)
_JSON_ABCS = (collections.abc.Mapping, collections.abc.Collection)


def _is_union(annotation: Any) -> bool:
    return typing.get_origin(annotation) in (Union, types.UnionType)


def _unwrap_optional(annotation: Any) -> tuple[Any, bool]:
    """Strip ``None`` members from a union. Returns (inner, was_nullable)."""
    if not _is_union(annotation):
        return annotation, False
    args = typing.get_args(annotation)
    non_none = [a for a in args if a is not type(None)]
    nullable = len(non_none) != len(args)
    if len(non_none) == 1:
        return non_none[0], nullable
    return Union[tuple(non_none)], nullable  # type: ignore[return-value]


def _kind_for_type(annotation: Any) -> FieldKind:
    """Map the innermost python type to a semantic field kind."""
    if typing.get_origin(annotation) is Annotated:
        return _kind_for_type(typing.get_args(annotation)[0])

    if annotation is Any or annotation is object:
        return FieldKind.JSON

    if _is_union(annotation):
        inner, _ = _unwrap_optional(annotation)
        if _is_union(inner):
            kinds = {_kind_for_type(a) for a in typing.get_args(inner)}
            return kinds.pop() if len(kinds) == 1 else FieldKind.JSON
        return _kind_for_type(inner)

    origin = typing.get_origin(annotation)
    if origin is Literal:
        values = typing.get_args(annotation)
        if values and all(isinstance(v, bool) for v in values):
            return FieldKind.BOOLEAN
        if values and all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in values):
            return FieldKind.NUMBER
        return FieldKind.STRING
    if origin is not None:
        if isinstance(origin, type) and issubclass(origin, _JSON_ABCS):
            return FieldKind.JSON
        return _kind_for_type(origin)

    if isinstance(annotation, type):
        if issubclass(annotation, enum.Enum):
            if issubclass(annotation, int):
                return FieldKind.NUMBER
            return FieldKind.STRING
        if issubclass(annotation, BaseModel) or issubclass(annotation, _JSON_ORIGINS):
            return FieldKind.JSON
        for python_type, kind in _SCALAR_KINDS:
            if issubclass(annotation, python_type):
                return kind

    raise SchemaIntrospectionError(f"Cannot map annotation {annotation!r} to a field type")


def _max_length(field_info: FieldInfo) -> int | None:
    for meta in field_info.metadata:
        length = getattr(meta, "max_length", None)
        if isinstance(length, int):
            return length
    return None


def _extra(field_info: FieldInfo) -> dict[str, Any]:
    extra = field_info.json_schema_extra
    return extra if isinstance(extra, dict) else {}


def _default(field_info: FieldInfo) -> Any:
    if field_info.is_required():
        return None
    value = field_info.get_default(call_default_factory=True)
    if isinstance(value, enum.Enum):
        return value.value
    return value


# =============================================================================
# Inference
# =============================================================================


def infer_field(name: str, field_info: FieldInfo) -> FieldAttribute:
    """
    Infer the storage attribute of a single schema field.

    ``required`` is False only when the annotation admits ``None``; a default
    value never changes it.
    """
    annotation = field_info.annotation
    if annotation is None:
        raise SchemaIntrospectionError(f"Field '{name}' has no type annotation")

    inner, nullable = _unwrap_optional(annotation)
    kind = _kind_for_type(inner)
    extra = _extra(field_info)

    references = extra.get("references")
    if isinstance(references, dict):
        references = ReferenceSpec(**references)

    return FieldAttribute(
        type=kind,
        required=not nullable,
        unique=bool(extra.get("unique", False)),
        default=_default(field_info),
        length=_max_length(field_info) if kind == FieldKind.STRING else None,
        references=references,
    )


def infer_fields(schema: Any) -> dict[str, FieldAttribute]:
    """
    Derive the field attribute map of a resource schema.

    Args:
        schema: Pydantic model class describing the resource

    Returns:
        Mapping of field name to FieldAttribute, in declaration order

    Raises:
        SchemaIntrospectionError: If the schema cannot be introspected
    """
    if not (isinstance(schema, type) and issubclass(schema, BaseModel)):
        raise SchemaIntrospectionError(
            f"Resource schema must be a pydantic model class, got {schema!r}"
        )

    fields: dict[str, FieldAttribute] = {}
    for name, field_info in schema.model_fields.items():
        try:
            fields[name] = infer_field(name, field_info)
        except SchemaIntrospectionError:
            raise
        except Exception as e:
            raise SchemaIntrospectionError(f"Cannot introspect field '{name}': {e}") from e
    return fields


# =============================================================================
# Validation Schemas
# =============================================================================


def _parse_datetime(value: Any) -> Any:
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            return value
    return value


def _parse_date(value: Any) -> Any:
    if isinstance(value, str):
        parsed = _parse_datetime(value)
        if isinstance(parsed, datetime):
            return parsed.date()
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            return value
    if isinstance(value, datetime):
        return value.date()
    return value


def _date_coercer(annotation: Any) -> BeforeValidator:
    inner, _ = _unwrap_optional(annotation)
    if inner is date:
        return BeforeValidator(_parse_date)
    return BeforeValidator(_parse_datetime)


def _with_metadata(field_info: FieldInfo) -> Any:
    annotation = field_info.annotation
    if field_info.metadata:
        return Annotated[(annotation, *field_info.metadata)]
    return annotation


def _field_default(field_info: FieldInfo) -> Any:
    if field_info.is_required():
        return ...
    if field_info.default_factory is not None:
        return Field(default_factory=field_info.default_factory)
    return field_info.default


def build_validation_schema(
    schema: type[BaseModel],
    partial: bool = False,
    name_suffix: str | None = None,
) -> type[BaseModel]:
    """
    Build the permissive input schema for a resource.

    Date fields accept either a native date/datetime or its ISO string form.
    The partial variant (used for updates) lets every field be omitted, but
    keeps each field's nullability: ``{"name": None}`` fails for a required
    ``name: str``. Dump it with ``exclude_unset=True``.

    Args:
        schema: Resource schema
        partial: Whether to make all fields optional
        name_suffix: Suffix for the generated model name

    Returns:
        Pydantic model for validating input
    """
    fields = infer_fields(schema)
    suffix = name_suffix or ("Update" if partial else "Input")

    field_definitions: dict[str, Any] = {}
    for name, field_info in schema.model_fields.items():
        is_date = fields[name].type == FieldKind.DATE
        if partial:
            annotation = _with_metadata(field_info)
            if is_date:
                annotation = Annotated[annotation, _date_coercer(field_info.annotation)]
            # Omitted fields stay unset; an explicit null is only valid where the schema allows it.
            _, nullable = _unwrap_optional(field_info.annotation)
            field_definitions[name] = (Optional[annotation] if nullable else annotation, None)
        elif is_date:
            annotation = Annotated[_with_metadata(field_info), _date_coercer(field_info.annotation)]
            field_definitions[name] = (annotation, _field_default(field_info))

    if partial:
        return create_model(
            f"{schema.__name__}{suffix}",
            __doc__=f"Partial input schema for {schema.__name__}",
            **field_definitions,
        )
    return create_model(
        f"{schema.__name__}{suffix}",
        __base__=schema,
        __doc__=f"Input schema for {schema.__name__}",
        **field_definitions,
    )
