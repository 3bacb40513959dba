"""
Search, filter, ordering and pagination builders for list operations.

Query parameters arrive either as raw HTTP strings (JSON-encoded for
``filters``, ``where`` and ``dateRange``) or as already-decoded Python values
from direct API calls; both shapes are accepted.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from better_query.specs.entity import SearchSpec, SearchStrategy
from better_query.specs.query import OrderBy, SortDirection, Where, WhereOperator

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class PageRequest:
    page: int
    limit: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


def _as_int(value: Any, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_instant(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return value


class SearchBuilder:
    """Turns list query parameters into Where conditions, ordering and paging."""

    @staticmethod
    def parse_string_array(value: Any) -> list[str]:
        """Accept a list or a comma-separated string."""
        if not value:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return [str(v) for v in value]

    @staticmethod
    def parse_json(value: Any, default: Any = None) -> Any:
        """Decode a JSON query parameter, returning ``default`` on failure."""
        if value is None or value == "":
            return {} if default is None else default
        if not isinstance(value, (str, bytes)):
            return value
        try:
            return json.loads(value)
        except ValueError:
            logger.debug(f"Ignoring malformed JSON query parameter: {value!r}")
            return {} if default is None else default

    @classmethod
    def build_search_conditions(cls, query: Mapping[str, Any], search: SearchSpec | None = None) -> list[Where]:
        """
        Build conditions for ``search``/``q``, ``filters``, ``dateRange`` and ``where``.

        Every search field receives its own condition; all conditions are AND-ed.
        """
        conditions: list[Where] = []

        term = query.get("search") or query.get("q")
        if term:
            spec = search or SearchSpec()
            fields = cls.parse_string_array(query.get("searchFields")) or spec.fields
            value, operator = cls._search_value(str(term), spec)
            conditions.extend(Where(field=f, value=value, operator=operator) for f in fields)

        filters = cls.parse_json(query.get("filters"))
        if isinstance(filters, Mapping):
            for field_name, spec_value in filters.items():
                if isinstance(spec_value, Mapping) and "value" in spec_value:
                    operator = WhereOperator(spec_value.get("operator") or "eq")
                    conditions.append(Where(field=field_name, value=spec_value["value"], operator=operator))
                else:
                    conditions.append(Where(field=field_name, value=spec_value))

        date_range = cls.parse_json(query.get("dateRange"))
        if isinstance(date_range, Mapping) and date_range.get("field"):
            if date_range.get("start"):
                conditions.append(
                    Where(field=date_range["field"], value=_as_instant(date_range["start"]), operator=WhereOperator.GTE)
                )
            if date_range.get("end"):
                conditions.append(
                    Where(field=date_range["field"], value=_as_instant(date_range["end"]), operator=WhereOperator.LTE)
                )

        where = cls.parse_json(query.get("where"))
        if isinstance(where, Mapping):
            conditions.extend(Where(field=k, value=v) for k, v in where.items())

        return conditions

    @staticmethod
    def _search_value(term: str, spec: SearchSpec) -> tuple[str, WhereOperator]:
        operator = WhereOperator.LIKE
        if not spec.case_sensitive:
            term = term.lower()
            operator = WhereOperator.ILIKE

        if spec.strategy == SearchStrategy.CONTAINS:
            return f"%{term}%", operator
        if spec.strategy == SearchStrategy.STARTS_WITH:
            return f"{term}%", operator
        if spec.strategy == SearchStrategy.EXACT:
            return term, WhereOperator.EQ
        # fuzzy: characters in order, anything between
        return "%" + "%".join(term) + "%", operator

    @staticmethod
    def build_order_by(query: Mapping[str, Any], default_field: str | None = None) -> list[OrderBy]:
        """
        Ordering from ``orderBy`` entries and ``sortBy``/``sortOrder``.

        Falls back to ``default_field`` descending when nothing was requested.
        """
        order_by: list[OrderBy] = []
        for entry in query.get("orderBy") or []:
            if isinstance(entry, OrderBy):
                order_by.append(entry)
            else:
                order_by.append(
                    OrderBy(field=entry["field"], direction=SortDirection(entry.get("direction", "asc")))
                )
        if query.get("sortBy"):
            direction = str(query.get("sortOrder") or "asc").lower()
            order_by.append(OrderBy(field=query["sortBy"], direction=SortDirection(direction)))
        if not order_by and default_field:
            order_by.append(OrderBy(field=default_field, direction=SortDirection.DESC))
        return order_by

    @staticmethod
    def build_pagination(query: Mapping[str, Any]) -> PageRequest:
        """Page defaults to 1 (minimum 1); limit defaults to 10, clamped to 1..100."""
        page = max(1, _as_int(query.get("page"), 1))
        limit = min(MAX_PAGE_SIZE, max(1, _as_int(query.get("limit"), DEFAULT_PAGE_SIZE)))
        return PageRequest(page=page, limit=limit)


class FilterBuilder:
    """
    Fluent composer of AND-ed Where conditions.

    Example:
        conditions = FilterBuilder().equals("status", "active").greater_than("price", 10).build()
    """

    def __init__(self) -> None:
        self._conditions: list[Where] = []

    def where(self, field: str, operator: WhereOperator | str, value: Any) -> FilterBuilder:
        self._conditions.append(Where(field=field, value=value, operator=WhereOperator(operator)))
        return self

    def equals(self, field: str, value: Any) -> FilterBuilder:
        return self.where(field, WhereOperator.EQ, value)

    def not_equals(self, field: str, value: Any) -> FilterBuilder:
        return self.where(field, WhereOperator.NE, value)

    def greater_than(self, field: str, value: Any) -> FilterBuilder:
        return self.where(field, WhereOperator.GT, value)

    def greater_than_or_equal(self, field: str, value: Any) -> FilterBuilder:
        return self.where(field, WhereOperator.GTE, value)

    def less_than(self, field: str, value: Any) -> FilterBuilder:
        return self.where(field, WhereOperator.LT, value)

    def less_than_or_equal(self, field: str, value: Any) -> FilterBuilder:
        return self.where(field, WhereOperator.LTE, value)

    def in_(self, field: str, values: list[Any]) -> FilterBuilder:
        return self.where(field, WhereOperator.IN, values)

    def not_in(self, field: str, values: list[Any]) -> FilterBuilder:
        return self.where(field, WhereOperator.NOT_IN, values)

    def like(self, field: str, pattern: str) -> FilterBuilder:
        return self.where(field, WhereOperator.LIKE, pattern)

    def ilike(self, field: str, pattern: str) -> FilterBuilder:
        return self.where(field, WhereOperator.ILIKE, pattern)

    def between(self, field: str, low: Any, high: Any) -> FilterBuilder:
        return self.where(field, WhereOperator.BETWEEN, [low, high])

    def date_range(self, field: str, start: Any = None, end: Any = None) -> FilterBuilder:
        if start is not None:
            self.greater_than_or_equal(field, _as_instant(start))
        if end is not None:
            self.less_than_or_equal(field, _as_instant(end))
        return self

    def build(self) -> list[Where]:
        return list(self._conditions)

    def reset(self) -> FilterBuilder:
        self._conditions.clear()
        return self
