"""
Query builder for where conditions and ordering.

Provides SQL generation for Where conditions, plus an in-process evaluator with
the same semantics for adapters that do not speak SQL.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from better_query.specs.query import OrderBy, SortDirection, Where, WhereOperator

# Valid SQL identifier pattern (alphanumeric and underscore, not starting with digit)
_VALID_IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def validate_sql_identifier(name: str, context: str = "identifier") -> str:
    """
    Validate that a string is a safe SQL identifier.

    Args:
        name: The identifier to validate
        context: Description of what's being validated (for error messages)

    Returns:
        The validated name

    Raises:
        ValueError: If the name contains invalid characters
    """
    if not name:
        raise ValueError(f"SQL {context} cannot be empty")
    if not _VALID_IDENTIFIER_PATTERN.match(name):
        raise ValueError(
            f"Invalid SQL {context} '{name}': must contain only letters, digits, "
            "and underscores, and cannot start with a digit"
        )
    return name


# Operator mapping to SQL
OPERATOR_SQL: dict[WhereOperator, str] = {
    WhereOperator.EQ: "{field} = ?",
    WhereOperator.NE: "{field} != ?",
    WhereOperator.GT: "{field} > ?",
    WhereOperator.GTE: "{field} >= ?",
    WhereOperator.LT: "{field} < ?",
    WhereOperator.LTE: "{field} <= ?",
    WhereOperator.IN: "{field} IN ({placeholders})",
    WhereOperator.NOT_IN: "{field} NOT IN ({placeholders})",
    WhereOperator.LIKE: "{field} LIKE ?",
    WhereOperator.NOT_LIKE: "{field} NOT LIKE ?",
    WhereOperator.ILIKE: "LOWER({field}) LIKE LOWER(?)",
    WhereOperator.BETWEEN: "{field} BETWEEN ? AND ?",
}


def _convert_value(value: Any) -> Any:
    """Convert a condition value for use as a SQL parameter."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (list, tuple, set)):
        return [_convert_value(v) for v in value]
    return value


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def where_to_sql(condition: Where, table_alias: str | None = None) -> tuple[str, list[Any]]:
    """
    Convert a condition to a SQL fragment and parameters.

    Args:
        condition: Where condition
        table_alias: Optional table alias for the field

    Returns:
        Tuple of (sql_fragment, parameters)
    """
    validate_sql_identifier(condition.field, "field name")
    field_ref = f"{table_alias}.{condition.field}" if table_alias else condition.field
    operator = condition.operator
    value = _convert_value(condition.value)

    if value is None and operator in (WhereOperator.EQ, WhereOperator.NE):
        return (f"{field_ref} IS NULL" if operator == WhereOperator.EQ else f"{field_ref} IS NOT NULL"), []

    if operator in (WhereOperator.IN, WhereOperator.NOT_IN):
        values = _as_list(value)
        if not values:
            # Empty IN matches nothing, empty NOT IN matches everything
            return ("1 = 0" if operator == WhereOperator.IN else "1 = 1"), []
        placeholders = ", ".join("?" * len(values))
        return OPERATOR_SQL[operator].format(field=field_ref, placeholders=placeholders), values

    if operator == WhereOperator.BETWEEN:
        values = _as_list(value)
        if len(values) != 2:
            raise ValueError("BETWEEN operator requires a list of two values")
        return OPERATOR_SQL[operator].format(field=field_ref), values

    return OPERATOR_SQL[operator].format(field=field_ref), [value]


def build_where_clause(
    conditions: Sequence[Where],
    table_alias: str | None = None,
) -> tuple[str, list[Any]]:
    """
    Build a WHERE clause (without the keyword) AND-ing all conditions.

    Returns:
        Tuple of (sql, parameters); sql is empty when there are no conditions
    """
    fragments: list[str] = []
    params: list[Any] = []
    for condition in conditions:
        sql, values = where_to_sql(condition, table_alias)
        fragments.append(sql)
        params.extend(values)
    return " AND ".join(fragments), params


def build_order_clause(order_by: Sequence[OrderBy]) -> str:
    """Build an ORDER BY clause (without the keyword)."""
    parts = []
    for order in order_by:
        validate_sql_identifier(order.field, "sort field")
        direction = "DESC" if order.direction == SortDirection.DESC else "ASC"
        parts.append(f"{order.field} {direction}")
    return ", ".join(parts)


# =============================================================================
# In-process evaluation
# =============================================================================


def _like_to_regex(pattern: str) -> re.Pattern[str]:
    regex = "".join(
        ".*" if ch == "%" else "." if ch == "_" else re.escape(ch) for ch in pattern
    )
    return re.compile(f"^{regex}$", re.IGNORECASE | re.DOTALL)


def _compare(left: Any, right: Any, op: str) -> bool:
    if left is None or right is None:
        return False
    try:
        if op == "gt":
            return left > right
        if op == "gte":
            return left >= right
        if op == "lt":
            return left < right
        return left <= right
    except TypeError:
        return False


def matches(record: dict[str, Any], condition: Where) -> bool:
    """Evaluate a single condition against a record dict."""
    actual = _convert_value(record.get(condition.field))
    expected = _convert_value(condition.value)
    operator = condition.operator

    if operator == WhereOperator.EQ:
        return actual == expected
    if operator == WhereOperator.NE:
        return actual != expected
    if operator == WhereOperator.GT:
        return _compare(actual, expected, "gt")
    if operator == WhereOperator.GTE:
        return _compare(actual, expected, "gte")
    if operator == WhereOperator.LT:
        return _compare(actual, expected, "lt")
    if operator == WhereOperator.LTE:
        return _compare(actual, expected, "lte")
    if operator == WhereOperator.IN:
        return actual in _as_list(expected)
    if operator == WhereOperator.NOT_IN:
        return actual not in _as_list(expected)
    if operator in (WhereOperator.LIKE, WhereOperator.NOT_LIKE, WhereOperator.ILIKE):
        if actual is None:
            return False
        # SQLite LIKE is case-insensitive for ASCII
        found = bool(_like_to_regex(str(expected)).match(str(actual)))
        return not found if operator == WhereOperator.NOT_LIKE else found
    if operator == WhereOperator.BETWEEN:
        low, high = _as_list(expected)
        return _compare(actual, low, "gte") and _compare(actual, high, "lte")
    raise ValueError(f"Unsupported operator: {operator}")


def matches_all(record: dict[str, Any], conditions: Iterable[Where]) -> bool:
    """True iff the record satisfies every condition."""
    return all(matches(record, c) for c in conditions)


def sort_records(records: list[dict[str, Any]], order_by: Sequence[OrderBy]) -> list[dict[str, Any]]:
    """Stable multi-key sort; ``None`` values sort first."""
    def sort_key(record: dict[str, Any], name: str) -> tuple[bool, Any]:
        value = _convert_value(record.get(name))
        return (value is not None, value if value is not None else 0)

    result = list(records)
    for order in reversed(order_by):
        result.sort(
            key=lambda r, name=order.field: sort_key(r, name),
            reverse=order.direction == SortDirection.DESC,
        )
    return result
