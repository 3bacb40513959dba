"""
SQLite storage adapter (aiosqlite).

Keeps one persistent async connection per adapter. Identifiers are validated
and every value is bound as a parameter.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite

from better_query.runtime.adapters.base import RelationalWritesMixin, StorageAdapter, generate_id
from better_query.runtime.marshalling import marshal_record, unmarshal_record
from better_query.runtime.query_builder import (
    build_order_clause,
    build_where_clause,
    validate_sql_identifier,
)
from better_query.specs.query import OrderBy, Where

logger = logging.getLogger(__name__)


class SQLiteAdapter(RelationalWritesMixin, StorageAdapter):
    """
    Storage adapter backed by SQLite through aiosqlite.

    Usage:
        adapter = SQLiteAdapter("data/app.db")
        await adapter.connect()
        ...
        await adapter.close()
    """

    provider = "sqlite"

    def __init__(self, db_path: str | Path = ":memory:"):
        """
        Initialize the adapter.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        super().__init__()
        self.db_path = str(db_path)
        self._conn: aiosqlite.Connection | None = None
        self._connect_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Connection management
    # -------------------------------------------------------------------------

    async def connect(self) -> aiosqlite.Connection:
        """Open the connection if needed and return it."""
        async with self._connect_lock:
            if self._conn is None:
                if self.db_path != ":memory:":
                    Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                conn = await aiosqlite.connect(self.db_path)
                conn.row_factory = aiosqlite.Row
                await conn.execute("PRAGMA foreign_keys = ON")
                self._conn = conn
                logger.info(f"Connected to SQLite database {self.db_path}")
        return self._conn

    async def close(self) -> None:
        """Close the connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def _execute(self, sql: str, params: Sequence[Any] = ()) -> aiosqlite.Cursor:
        conn = await self.connect()
        logger.debug(f"SQL: {sql} {list(params)}")
        cursor = await conn.execute(sql, list(params))
        if not self._in_transaction.get():
            await conn.commit()
        return cursor

    async def _fetch(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        conn = await self.connect()
        logger.debug(f"SQL: {sql} {list(params)}")
        async with conn.execute(sql, list(params)) as cursor:
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    # -------------------------------------------------------------------------
    # Primitives
    # -------------------------------------------------------------------------

    def _read(self, model: str, row: dict[str, Any]) -> dict[str, Any]:
        return unmarshal_record(row, self.fields_for(model))

    @staticmethod
    def _where_sql(where: Sequence[Where]) -> tuple[str, list[Any]]:
        clause, params = build_where_clause(where)
        return (f" WHERE {clause}" if clause else ""), params

    async def _insert(self, model: str, data: dict[str, Any]) -> dict[str, Any]:
        validate_sql_identifier(model, "table name")
        row = marshal_record(data, self.fields_for(model))
        if not row.get("id"):
            row["id"] = generate_id()
        columns = list(row.keys())
        for column in columns:
            validate_sql_identifier(column, "column name")
        placeholders = ", ".join("?" * len(columns))
        sql = f"INSERT INTO {model} ({', '.join(columns)}) VALUES ({placeholders})"
        cursor = await self._execute(sql, [row[c] for c in columns])
        stored = await self._fetch(f"SELECT * FROM {model} WHERE rowid = ?", [cursor.lastrowid])
        return self._read(model, stored[0]) if stored else self._read(model, row)

    async def _select(
        self,
        model: str,
        where: Sequence[Where],
        limit: int | None = None,
        offset: int | None = None,
        order_by: Sequence[OrderBy] = (),
    ) -> list[dict[str, Any]]:
        validate_sql_identifier(model, "table name")
        where_sql, params = self._where_sql(where)
        sql = f"SELECT * FROM {model}{where_sql}"
        if order_by:
            sql += f" ORDER BY {build_order_clause(order_by)}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        if offset:
            if limit is None:
                sql += " LIMIT -1"
            sql += " OFFSET ?"
            params.append(offset)
        return [self._read(model, row) for row in await self._fetch(sql, params)]

    async def _update(
        self, model: str, where: Sequence[Where], data: dict[str, Any]
    ) -> dict[str, Any] | None:
        validate_sql_identifier(model, "table name")
        where_sql, where_params = self._where_sql(where)
        targets = await self._fetch(f"SELECT rowid AS _rowid FROM {model}{where_sql}", where_params)
        if not targets:
            return None
        rowids = [t["_rowid"] for t in targets]

        row = marshal_record(data, self.fields_for(model))
        if row:
            for column in row:
                validate_sql_identifier(column, "column name")
            assignments = ", ".join(f"{c} = ?" for c in row)
            placeholders = ", ".join("?" * len(rowids))
            await self._execute(
                f"UPDATE {model} SET {assignments} WHERE rowid IN ({placeholders})",
                [*row.values(), *rowids],
            )
        stored = await self._fetch(f"SELECT * FROM {model} WHERE rowid = ?", [rowids[0]])
        return self._read(model, stored[0]) if stored else None

    async def _delete(self, model: str, where: Sequence[Where]) -> int:
        validate_sql_identifier(model, "table name")
        where_sql, params = self._where_sql(where)
        cursor = await self._execute(f"DELETE FROM {model}{where_sql}", params)
        return cursor.rowcount

    async def _count(self, model: str, where: Sequence[Where]) -> int:
        validate_sql_identifier(model, "table name")
        where_sql, params = self._where_sql(where)
        rows = await self._fetch(f"SELECT COUNT(*) AS total FROM {model}{where_sql}", params)
        return int(rows[0]["total"]) if rows else 0

    # -------------------------------------------------------------------------
    # Optional extensions
    # -------------------------------------------------------------------------

    async def create_schema(self, statements: Sequence[str]) -> None:
        """Execute DDL statements (CREATE TABLE IF NOT EXISTS ...)."""
        async with self._exclusive():
            for sql in statements:
                await self._execute(sql)

    async def table_exists(self, table_name: str) -> bool:
        """Check if a table exists."""
        async with self._exclusive():
            rows = await self._fetch(
                "SELECT name FROM sqlite_master WHERE type='table' AND name=?", [table_name]
            )
        return bool(rows)

    async def get_table_columns(self, table_name: str) -> list[str]:
        """Get column names for a table."""
        validate_sql_identifier(table_name, "table name")
        async with self._exclusive():
            rows = await self._fetch(f"PRAGMA table_info({table_name})")
        return [row["name"] for row in rows]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Run the block in a single transaction. Re-entrant.

        Other tasks sharing this adapter wait until the transaction ends, so
        their statements never run inside it.
        """
        async with self._transaction_scope() as outermost:
            if not outermost:
                yield
                return
            conn = await self.connect()
            await conn.execute("BEGIN")
            try:
                yield
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()
