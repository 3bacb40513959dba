"""
In-memory storage adapter.

Keeps rows in process-local lists. Values pass through the same marshalling
boundary as the SQL adapters, so stored rows look exactly like database rows.
Useful for tests and prototyping.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any

from better_query.runtime.adapters.base import RelationalWritesMixin, StorageAdapter, generate_id
from better_query.runtime.marshalling import marshal_record, unmarshal_record
from better_query.runtime.query_builder import matches_all, sort_records
from better_query.specs.query import OrderBy, Where

logger = logging.getLogger(__name__)


class MemoryAdapter(RelationalWritesMixin, StorageAdapter):
    """Storage adapter backed by dicts in memory."""

    provider = "memory"

    def __init__(self) -> None:
        super().__init__()
        self._tables: dict[str, list[dict[str, Any]]] = {}

    def _rows(self, model: str) -> list[dict[str, Any]]:
        return self._tables.setdefault(model, [])

    def _read(self, model: str, row: dict[str, Any]) -> dict[str, Any]:
        return unmarshal_record(dict(row), self.fields_for(model))

    def _check_unique(self, model: str, row: dict[str, Any], skip: dict[str, Any] | None = None) -> None:
        unique_fields = [name for name, attr in self.fields_for(model).items() if attr.unique]
        if "id" in row:
            unique_fields.append("id")
        for existing in self._rows(model):
            if existing is skip:
                continue
            for name in unique_fields:
                if row.get(name) is not None and existing.get(name) == row.get(name):
                    raise ValueError(f"UNIQUE constraint failed: {model}.{name}")

    async def _insert(self, model: str, data: dict[str, Any]) -> dict[str, Any]:
        row = marshal_record(data, self.fields_for(model))
        if not row.get("id"):
            row["id"] = generate_id()
        self._check_unique(model, row)
        self._rows(model).append(row)
        logger.debug(f"Inserted {model} {row['id']}")
        return self._read(model, row)

    def _matching(self, model: str, where: Sequence[Where]) -> list[dict[str, Any]]:
        return [row for row in self._rows(model) if matches_all(self._read(model, row), where)]

    async def _select(
        self,
        model: str,
        where: Sequence[Where],
        limit: int | None = None,
        offset: int | None = None,
        order_by: Sequence[OrderBy] = (),
    ) -> list[dict[str, Any]]:
        records = [self._read(model, row) for row in self._matching(model, where)]
        if order_by:
            records = sort_records(records, order_by)
        start = offset or 0
        end = start + limit if limit is not None else None
        return records[start:end]

    async def _update(
        self, model: str, where: Sequence[Where], data: dict[str, Any]
    ) -> dict[str, Any] | None:
        changes = marshal_record(data, self.fields_for(model))
        first: dict[str, Any] | None = None
        for row in self._matching(model, where):
            candidate = {**row, **changes}
            self._check_unique(model, candidate, skip=row)
            row.update(changes)
            if first is None:
                first = row
        return self._read(model, first) if first is not None else None

    async def _delete(self, model: str, where: Sequence[Where]) -> int:
        doomed = self._matching(model, where)
        doomed_ids = {id(row) for row in doomed}
        self._tables[model] = [row for row in self._rows(model) if id(row) not in doomed_ids]
        return len(doomed)

    async def _count(self, model: str, where: Sequence[Where]) -> int:
        return len(self._matching(model, where))

    # -------------------------------------------------------------------------
    # Optional extensions
    # -------------------------------------------------------------------------

    async def create_schema(self, statements: Sequence[str]) -> None:
        """Tables are created lazily; DDL is accepted and ignored."""
        logger.debug(f"MemoryAdapter ignoring {len(statements)} schema statement(s)")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Snapshot the store; restore it if the block raises. Re-entrant."""
        async with self._transaction_scope() as outermost:
            if not outermost:
                yield
                return
            snapshot = copy.deepcopy(self._tables)
            try:
                yield
            except BaseException:
                self._tables = snapshot
                raise

    def clear(self) -> None:
        """Drop every stored row."""
        self._tables.clear()
