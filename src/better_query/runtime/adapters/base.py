"""
Storage adapter contract.

Every backend driver implements the primitive operations below. The public
``create``/``find_first``/``find_many``/``update`` methods attach relationship
data when an include specification is given and a relation loader is bound;
an empty specification attaches the relations flagged ``include_by_default``.

Optional extensions (``create_with_relations``, ``update_with_relations``,
``validate_references``, ``create_schema``, ``transaction``) are NOT declared
here: a driver that cannot support one simply does not define it, and callers
check for it with ``hasattr``.

Each adapter owns one ``asyncio.Lock``. A primitive call holds it for its own
duration and a transaction holds it from start to finish, so concurrent tasks
never see or join another task's open transaction. Calls made by the task that
opened the transaction pass straight through.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from better_query.specs.entity import FieldAttribute, RelationKind
from better_query.specs.query import IncludeSpec, OrderBy, Where

if TYPE_CHECKING:
    from better_query.runtime.relation_loader import RelationLoader

logger = logging.getLogger(__name__)


def generate_id() -> str:
    """Generate a record id."""
    return uuid4().hex


class StorageAdapter(ABC):
    """
    Abstract storage adapter.

    Subclasses implement ``_insert``, ``_select``, ``_update``, ``_delete`` and
    ``_count``. Field maps registered via ``register_model`` drive value
    marshalling at the boundary.
    """

    provider: str = "generic"

    def __init__(self) -> None:
        self._fields: dict[str, dict[str, FieldAttribute]] = {}
        self.relations: RelationLoader | None = None
        self._lock = asyncio.Lock()
        self._in_transaction: ContextVar[bool] = ContextVar(
            f"better_query_transaction_{id(self)}", default=False
        )

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register_model(self, model: str, fields: dict[str, FieldAttribute]) -> None:
        """Register the inferred field map of a model/table."""
        self._fields[model] = dict(fields)

    def bind_relations(self, loader: RelationLoader) -> None:
        """Bind the relation loader used to resolve includes."""
        self.relations = loader

    def fields_for(self, model: str) -> dict[str, FieldAttribute]:
        return self._fields.get(model, {})

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    @property
    def in_transaction(self) -> bool:
        """Whether the current task has a transaction open on this adapter."""
        return self._in_transaction.get()

    @asynccontextmanager
    async def _exclusive(self) -> AsyncIterator[None]:
        if self._in_transaction.get():
            yield
            return
        async with self._lock:
            yield

    @asynccontextmanager
    async def _transaction_scope(self) -> AsyncIterator[bool]:
        """
        Claim the adapter for a transaction.

        Yields True when this call opened the outermost transaction and must
        commit or roll back; nested calls from the same task yield False.
        """
        if self._in_transaction.get():
            yield False
            return
        async with self._lock:
            token = self._in_transaction.set(True)
            try:
                yield True
            finally:
                self._in_transaction.reset(token)

    # -------------------------------------------------------------------------
    # Primitives
    # -------------------------------------------------------------------------

    @abstractmethod
    async def _insert(self, model: str, data: dict[str, Any]) -> dict[str, Any]:
        """Insert a row and return the stored record."""
        ...

    @abstractmethod
    async def _select(
        self,
        model: str,
        where: Sequence[Where],
        limit: int | None = None,
        offset: int | None = None,
        order_by: Sequence[OrderBy] = (),
    ) -> list[dict[str, Any]]:
        """Select rows matching all conditions."""
        ...

    @abstractmethod
    async def _update(
        self, model: str, where: Sequence[Where], data: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Update matching rows and return the first updated record."""
        ...

    @abstractmethod
    async def _delete(self, model: str, where: Sequence[Where]) -> int:
        """Delete matching rows and return how many were removed."""
        ...

    @abstractmethod
    async def _count(self, model: str, where: Sequence[Where]) -> int:
        """Count rows matching all conditions."""
        ...

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    async def _attach(
        self,
        model: str,
        records: list[dict[str, Any]],
        include: IncludeSpec | None,
    ) -> list[dict[str, Any]]:
        if self.relations is None or not records or include is None:
            return records
        return await self.relations.resolve(model, records, include)

    async def create(
        self,
        model: str,
        data: dict[str, Any],
        include: IncludeSpec | None = None,
    ) -> dict[str, Any]:
        async with self._exclusive():
            record = await self._insert(model, data)
        if include:
            return (await self._attach(model, [record], include))[0]
        return record

    async def find_first(
        self,
        model: str,
        where: Sequence[Where] = (),
        include: IncludeSpec | None = None,
    ) -> dict[str, Any] | None:
        records = await self.find_many(model, where, limit=1, include=include)
        return records[0] if records else None

    async def find_many(
        self,
        model: str,
        where: Sequence[Where] = (),
        limit: int | None = None,
        offset: int | None = None,
        order_by: Sequence[OrderBy] = (),
        include: IncludeSpec | None = None,
    ) -> list[dict[str, Any]]:
        async with self._exclusive():
            records = await self._select(model, where, limit, offset, order_by)
        return await self._attach(model, records, include)

    async def update(
        self,
        model: str,
        where: Sequence[Where],
        data: dict[str, Any],
        include: IncludeSpec | None = None,
    ) -> dict[str, Any] | None:
        async with self._exclusive():
            record = await self._update(model, where, data)
        if record is not None and include:
            return (await self._attach(model, [record], include))[0]
        return record

    async def delete(self, model: str, where: Sequence[Where]) -> int:
        async with self._exclusive():
            return await self._delete(model, where)

    async def count(self, model: str, where: Sequence[Where] = ()) -> int:
        async with self._exclusive():
            return await self._count(model, where)


class RelationalWritesMixin:
    """
    Atomic write-and-attach extensions shared by the bundled adapters.

    ``relations`` maps relation names to payloads:
        - belongsTo: target id (sets the local foreign key)
        - hasOne / hasMany: dict or list of dicts created with the foreign key set
        - belongsToMany: list of target ids (replaces the association set)
    """

    relations: RelationLoader | None

    async def create_with_relations(
        self,
        model: str,
        data: dict[str, Any],
        relations: dict[str, Any],
        include: IncludeSpec | None = None,
    ) -> dict[str, Any]:
        async with self.transaction():  # type: ignore[attr-defined]
            data = self._apply_belongs_to(model, dict(data), relations)
            record = await self._insert(model, data)  # type: ignore[attr-defined]
            await self._write_relations(model, record, relations)
        if include:
            return (await self._attach(model, [record], include))[0]  # type: ignore[attr-defined]
        return record

    async def update_with_relations(
        self,
        model: str,
        where: Sequence[Where],
        data: dict[str, Any],
        relations: dict[str, Any],
        include: IncludeSpec | None = None,
    ) -> dict[str, Any] | None:
        async with self.transaction():  # type: ignore[attr-defined]
            data = self._apply_belongs_to(model, dict(data), relations)
            record = await self._update(model, where, data)  # type: ignore[attr-defined]
            if record is None:
                return None
            await self._write_relations(model, record, relations)
        if include:
            return (await self._attach(model, [record], include))[0]  # type: ignore[attr-defined]
        return record

    async def validate_references(self, model: str, data: dict[str, Any]) -> list[str]:
        """
        Check that every belongsTo foreign key in ``data`` points at an existing row.

        Returns:
            List of error messages (empty when all references resolve)
        """
        if self.relations is None:
            return []
        errors: list[str] = []
        for name, relation in self.relations.registry.get_relations(model).items():
            if relation.type != RelationKind.BELONGS_TO or not relation.foreign_key:
                continue
            value = data.get(relation.foreign_key)
            if value is None:
                continue
            target = self.relations.registry.table_for(relation.target)
            found = await self.find_first(  # type: ignore[attr-defined]
                target, [Where(field=relation.target_key, value=value)]
            )
            if found is None:
                errors.append(
                    f"Referenced {relation.target} with {relation.target_key}={value} "
                    f"not found (relation '{name}')"
                )
        return errors

    def _apply_belongs_to(
        self, model: str, data: dict[str, Any], relations: dict[str, Any]
    ) -> dict[str, Any]:
        if self.relations is None:
            return data
        for name, payload in relations.items():
            relation = self.relations.registry.get_relation(model, name)
            if relation and relation.type == RelationKind.BELONGS_TO and relation.foreign_key:
                data[relation.foreign_key] = payload
        return data

    async def _write_relations(
        self, model: str, record: dict[str, Any], relations: dict[str, Any]
    ) -> None:
        if self.relations is None:
            return
        for name, payload in relations.items():
            relation = self.relations.registry.get_relation(model, name)
            if relation is None:
                logger.warning(f"Ignoring unknown relation '{name}' on {model}")
                continue
            if relation.type == RelationKind.BELONGS_TO_MANY:
                await self.relations.manage_many_to_many(
                    model, record[relation.local_key], name, list(payload or []), "set"
                )
            elif relation.type in (RelationKind.HAS_ONE, RelationKind.HAS_MANY):
                children = payload if isinstance(payload, list) else [payload]
                target = self.relations.registry.table_for(relation.target)
                for child in children:
                    child = dict(child)
                    child[relation.foreign_key] = record[relation.local_key]
                    child.setdefault("id", generate_id())
                    await self._insert(target, child)  # type: ignore[attr-defined]
