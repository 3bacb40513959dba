"""
Value marshalling and table DDL at the storage boundary.

On write, dates and timestamps become ISO strings and arrays/objects become JSON
strings. On read, values are converted back according to the inferred field
map. Also generates CREATE TABLE statements for auto-migration.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from better_query.runtime.query_builder import validate_sql_identifier
from better_query.specs.entity import FieldAttribute, FieldKind

logger = logging.getLogger(__name__)


# =============================================================================
# Value Conversion
# =============================================================================


def to_storage(value: Any, attribute: FieldAttribute | None = None) -> Any:
    """Convert a Python value to its storage representation."""
    if value is None:
        return None
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (dict, list, tuple, set)):
        if isinstance(value, set):
            value = sorted(value, key=str)
        return json.dumps(value, default=str)
    if attribute is not None and attribute.type == FieldKind.JSON and not isinstance(value, str):
        return json.dumps(value, default=str)
    return value


def _parse_stored_date(value: str) -> Any:
    """ISO text back to ``date`` (date-only form) or ``datetime``."""
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        # date-only ISO forms ("2024-05-01", "20240501") are at most ten characters
        if len(text) <= 10:
            return date.fromisoformat(text)
        return datetime.fromisoformat(text)
    except ValueError:
        logger.debug(f"Stored value {value!r} is not an ISO date or timestamp")
        return value


def from_storage(value: Any, attribute: FieldAttribute | None = None) -> Any:
    """
    Convert a stored value back to Python according to its field attribute.

    JSON fields fall back to the raw string when the stored text is not valid
    JSON. Date fields come back as ``date`` or ``datetime`` following the
    stored form, and fall back to the raw value when it is not ISO formatted.
    """
    if value is None or attribute is None:
        return value

    if attribute.type == FieldKind.DATE:
        if isinstance(value, str):
            return _parse_stored_date(value)
        return value

    if attribute.type == FieldKind.JSON:
        if isinstance(value, (str, bytes)):
            try:
                return json.loads(value)
            except (TypeError, ValueError):
                return value
        return value

    if attribute.type == FieldKind.BOOLEAN and isinstance(value, int):
        return bool(value)

    return value


def marshal_record(
    data: dict[str, Any],
    fields: dict[str, FieldAttribute],
) -> dict[str, Any]:
    """Convert a record dict for writing."""
    return {k: to_storage(v, fields.get(k)) for k, v in data.items()}


def unmarshal_record(
    row: dict[str, Any],
    fields: dict[str, FieldAttribute],
) -> dict[str, Any]:
    """Convert a stored row dict for reading."""
    return {k: from_storage(v, fields.get(k)) for k, v in row.items()}


# =============================================================================
# DDL Generation
# =============================================================================

_SQLITE_TYPES: dict[FieldKind, str] = {
    FieldKind.STRING: "TEXT",
    FieldKind.NUMBER: "NUMERIC",
    FieldKind.BOOLEAN: "INTEGER",  # SQLite uses 0/1 for bool
    FieldKind.DATE: "TEXT",  # ISO format
    FieldKind.JSON: "TEXT",  # JSON as string
}

_POSTGRES_TYPES: dict[FieldKind, str] = {
    FieldKind.STRING: "TEXT",
    FieldKind.NUMBER: "NUMERIC",
    FieldKind.BOOLEAN: "BOOLEAN",
    FieldKind.DATE: "TIMESTAMP",
    FieldKind.JSON: "JSONB",
}

SUPPORTED_PROVIDERS = ("sqlite", "postgres")

_TIMESTAMP_COLUMNS = (("created_at", "createdAt"), ("updated_at", "updatedAt"))


def _column_type(attribute: FieldAttribute, provider: str) -> str:
    if provider == "postgres":
        if attribute.type == FieldKind.STRING and attribute.length:
            return f"VARCHAR({attribute.length})"
        return _POSTGRES_TYPES[attribute.type]
    return _SQLITE_TYPES[attribute.type]


def _default_literal(value: Any, provider: str) -> str:
    if isinstance(value, bool):
        if provider == "postgres":
            return "TRUE" if value else "FALSE"
        return "1" if value else "0"
    stored = to_storage(value)
    if isinstance(stored, str):
        escaped = stored.replace("'", "''")
        return f"'{escaped}'"
    return str(stored)


def build_column(name: str, attribute: FieldAttribute, provider: str = "sqlite") -> str:
    """Build a single column definition."""
    validate_sql_identifier(name, "column name")
    parts = [name, _column_type(attribute, provider)]

    if name == "id":
        parts.append("PRIMARY KEY")
    elif attribute.required:
        parts.append("NOT NULL")

    if attribute.unique and name != "id":
        parts.append("UNIQUE")

    if attribute.has_default:
        parts.append(f"DEFAULT {_default_literal(attribute.default, provider)}")

    return " ".join(parts)


def build_foreign_key_constraint(name: str, attribute: FieldAttribute) -> str | None:
    """Build a FOREIGN KEY constraint for a field carrying a reference."""
    ref = attribute.references
    if ref is None:
        return None
    validate_sql_identifier(ref.model, "table name")
    validate_sql_identifier(ref.field, "column name")
    return (
        f"FOREIGN KEY ({name}) REFERENCES {ref.model}({ref.field}) "
        f"ON DELETE {ref.on_delete.value.upper()} ON UPDATE {ref.on_update.value.upper()}"
    )


def create_table_sql(
    table_name: str,
    fields: dict[str, FieldAttribute],
    provider: str = "sqlite",
) -> str:
    """
    Generate a CREATE TABLE statement for a resource.

    Adds ``id`` as primary key when the schema does not declare it, and
    ``created_at``/``updated_at`` bookkeeping columns unless declared in either
    snake or camel case.

    Args:
        table_name: Table to create
        fields: Inferred field attributes
        provider: Target database ("sqlite" or "postgres")

    Returns:
        SQL statement
    """
    if provider not in SUPPORTED_PROVIDERS:
        raise ValueError(f"Unsupported database provider: {provider}")
    validate_sql_identifier(table_name, "table name")

    columns: list[str] = []
    constraints: list[str] = []

    if "id" not in fields:
        columns.append("id VARCHAR(255) PRIMARY KEY" if provider == "postgres" else "id TEXT PRIMARY KEY")

    for name, attribute in fields.items():
        columns.append(build_column(name, attribute, provider))
        fk = build_foreign_key_constraint(name, attribute)
        if fk:
            constraints.append(fk)

    timestamp_type = "TIMESTAMP" if provider == "postgres" else "TEXT"
    for snake, camel in _TIMESTAMP_COLUMNS:
        if snake not in fields and camel not in fields:
            columns.append(f"{snake} {timestamp_type} DEFAULT CURRENT_TIMESTAMP")

    body = ",\n  ".join(columns + constraints)
    return f"CREATE TABLE IF NOT EXISTS {table_name} (\n  {body}\n)"


def create_junction_table_sql(
    table_name: str,
    source_key: str,
    target_key: str,
    provider: str = "sqlite",
) -> str:
    """Generate a CREATE TABLE statement for a many-to-many junction table."""
    for ident in (table_name, source_key, target_key):
        validate_sql_identifier(ident)
    key_type = "VARCHAR(255)" if provider == "postgres" else "TEXT"
    return (
        f"CREATE TABLE IF NOT EXISTS {table_name} (\n"
        f"  id {key_type} PRIMARY KEY,\n"
        f"  {source_key} {key_type} NOT NULL,\n"
        f"  {target_key} {key_type} NOT NULL,\n"
        f"  UNIQUE ({source_key}, {target_key})\n"
        f")"
    )
