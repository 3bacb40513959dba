"""
Relation loader for nested data fetching.

Holds the declared relationship graph per resource, attaches related records to
results according to an include specification, and mutates many-to-many
associations through junction tables.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from better_query.runtime.errors import ConfigurationError
from better_query.runtime.query_builder import validate_sql_identifier
from better_query.specs.entity import FieldAttribute, RelationKind, RelationSpec
from better_query.specs.query import IncludeSpec, Where, WhereOperator

if TYPE_CHECKING:
    from better_query.runtime.adapters.base import StorageAdapter
    from better_query.specs.entity import ResourceSpec

logger = logging.getLogger(__name__)

# Levels attached for a plain ``True`` include entry
DEFAULT_INCLUDE_DEPTH = 1
# Recursion ceiling for nested include shapes when the request sets none
MAX_INCLUDE_DEPTH = 3

ManyToManyOperation = Literal["set", "add", "remove"]


@dataclass(frozen=True)
class JunctionTable:
    """A junction table required by a belongsToMany relationship."""

    name: str
    source_key: str
    target_key: str


@dataclass
class RelationRegistry:
    """
    Registry of relationships between resources.

    Lookups accept either a resource name or its table name.
    """

    _relations: dict[str, dict[str, RelationSpec]] = field(default_factory=dict)
    _tables: dict[str, str] = field(default_factory=dict)
    _by_table: dict[str, str] = field(default_factory=dict)
    _fields: dict[str, dict[str, FieldAttribute]] = field(default_factory=dict)

    def register(
        self,
        resource: str,
        relations: Mapping[str, RelationSpec],
        table: str | None = None,
        fields: Mapping[str, FieldAttribute] | None = None,
    ) -> None:
        """Register a resource and its declared relationships."""
        table = table or resource
        self._relations[resource] = dict(relations)
        self._tables[resource] = table
        self._by_table[table] = resource
        self._fields[resource] = dict(fields or {})

    @classmethod
    def from_resources(
        cls,
        resources: Sequence[ResourceSpec],
        fields: Mapping[str, Mapping[str, FieldAttribute]],
    ) -> RelationRegistry:
        """
        Build a registry from resource specifications.

        Args:
            resources: Resource specs
            fields: Inferred field maps keyed by resource name

        Returns:
            Populated RelationRegistry
        """
        registry = cls()
        for resource in resources:
            registry.register(
                resource.name,
                resource.relationships,
                table=resource.table,
                fields=fields.get(resource.name),
            )
        return registry

    def resource_name(self, model: str) -> str:
        if model in self._relations:
            return model
        return self._by_table.get(model, model)

    def table_for(self, model: str) -> str:
        return self._tables.get(self.resource_name(model), model)

    def has_resource(self, model: str) -> bool:
        return self.resource_name(model) in self._relations

    def get_relations(self, model: str) -> dict[str, RelationSpec]:
        """Get all relations of a resource."""
        return self._relations.get(self.resource_name(model), {})

    def get_relation(self, model: str, relation_name: str) -> RelationSpec | None:
        """Get a specific relation by name."""
        return self.get_relations(model).get(relation_name)

    def has_relation(self, model: str, relation_name: str) -> bool:
        return relation_name in self.get_relations(model)

    def default_includes(self, model: str) -> dict[str, Any]:
        """Relations flagged ``include_by_default``."""
        return {
            name: True
            for name, relation in self.get_relations(model).items()
            if relation.include_by_default
        }

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _has_field(self, model: str, name: str) -> bool:
        fields = self._fields.get(self.resource_name(model))
        # Unknown field maps and the implicit id column are accepted
        return not fields or name == "id" or name in fields

    def validate_relationship(self, model: str, name: str, relation: RelationSpec) -> None:
        """
        Check one relationship against the registered resources.

        Raises:
            ConfigurationError: If the relationship cannot be resolved
        """
        where = f"Relationship '{name}' on '{model}'"
        if not self.has_resource(relation.target):
            raise ConfigurationError(f"{where}: target resource '{relation.target}' not found")

        if relation.type == RelationKind.BELONGS_TO:
            if not relation.foreign_key:
                raise ConfigurationError(f"{where}: belongsTo requires foreign_key")
            if not self._has_field(model, relation.foreign_key):
                raise ConfigurationError(
                    f"{where}: foreign key '{relation.foreign_key}' not found in '{model}'"
                )
            if not self._has_field(relation.target, relation.target_key):
                raise ConfigurationError(
                    f"{where}: target key '{relation.target_key}' not found in '{relation.target}'"
                )
        elif relation.type in (RelationKind.HAS_ONE, RelationKind.HAS_MANY):
            if not relation.foreign_key:
                raise ConfigurationError(f"{where}: {relation.type.value} requires foreign_key")
            if not self._has_field(relation.target, relation.foreign_key):
                raise ConfigurationError(
                    f"{where}: foreign key '{relation.foreign_key}' not found in '{relation.target}'"
                )
        elif relation.type == RelationKind.BELONGS_TO_MANY:
            if not relation.through:
                raise ConfigurationError(f"{where}: belongsToMany requires 'through'")
            if not relation.source_key or not relation.target_foreign_key:
                raise ConfigurationError(
                    f"{where}: belongsToMany requires source_key and target_foreign_key"
                )
            for ident in (relation.through, relation.source_key, relation.target_foreign_key):
                try:
                    validate_sql_identifier(ident)
                except ValueError as e:
                    raise ConfigurationError(f"{where}: {e}") from e

    def validate(self) -> None:
        """Validate every registered relationship."""
        for model, relations in self._relations.items():
            for name, relation in relations.items():
                self.validate_relationship(model, name, relation)

    def required_junction_tables(self) -> list[JunctionTable]:
        """Junction tables needed by belongsToMany relationships, de-duplicated."""
        tables: dict[str, JunctionTable] = {}
        for relations in self._relations.values():
            for relation in relations.values():
                if (
                    relation.type == RelationKind.BELONGS_TO_MANY
                    and relation.through
                    and relation.source_key
                    and relation.target_foreign_key
                    and relation.through not in tables
                ):
                    tables[relation.through] = JunctionTable(
                        name=relation.through,
                        source_key=relation.source_key,
                        target_key=relation.target_foreign_key,
                    )
        return list(tables.values())

    def foreign_key_indexes(self) -> list[str]:
        """CREATE INDEX statements for belongsTo foreign-key columns."""
        indexes = []
        for resource, relations in self._relations.items():
            table = self._tables[resource]
            for relation in relations.values():
                if relation.type == RelationKind.BELONGS_TO and relation.foreign_key:
                    validate_sql_identifier(relation.foreign_key, "column name")
                    idx_name = f"idx_{table}_{relation.foreign_key}"
                    indexes.append(
                        f"CREATE INDEX IF NOT EXISTS {idx_name} ON {table}({relation.foreign_key})"
                    )
        return indexes


class RelationLoader:
    """
    Attaches related records to results and manages junction rows.

    Resolution is per record: each relation costs one storage round trip per
    record (two for belongsToMany). Nested steps always decrement a remaining
    depth budget, so self-referential graphs terminate without shared state.
    """

    def __init__(self, registry: RelationRegistry, adapter: StorageAdapter):
        """
        Initialize the relation loader.

        Args:
            registry: Relation registry
            adapter: Storage adapter used for fetches and junction writes
        """
        self.registry = registry
        self.adapter = adapter

    # -------------------------------------------------------------------------
    # Include resolution
    # -------------------------------------------------------------------------

    async def resolve(
        self,
        model: str,
        records: list[dict[str, Any]],
        include: IncludeSpec | None,
    ) -> list[dict[str, Any]]:
        """
        Attach related data to every record.

        Args:
            model: Resource or table name of the records
            records: Records to decorate (modified in place)
            include: Requested include shape; ``None`` or an empty tree attaches default includes

        Returns:
            The decorated records
        """
        if include is None or include.is_empty:
            tree = self.registry.default_includes(model)
            ceiling = MAX_INCLUDE_DEPTH
            select = None
        else:
            tree = include.tree
            ceiling = min(include.max_depth or MAX_INCLUDE_DEPTH, MAX_INCLUDE_DEPTH)
            select = include.select
        if not tree or not records:
            return records

        await self._resolve_tree(model, records, tree, ceiling)
        if select:
            _apply_select(records, tree, select)
        return records

    async def _resolve_tree(
        self,
        model: str,
        records: list[dict[str, Any]],
        tree: Mapping[str, Any],
        depth: int,
    ) -> None:
        if depth <= 0 or not records:
            return

        for name, sub in tree.items():
            relation = self.registry.get_relation(model, name)
            if relation is None:
                logger.debug(f"Unknown relation '{name}' on {model}, skipping")
                continue

            if isinstance(sub, Mapping):
                branch_depth = depth
                child_tree: Mapping[str, Any] = sub
            else:
                branch_depth = min(depth, relation.max_depth or DEFAULT_INCLUDE_DEPTH)
                # A depth override on a self-referential relation keeps following it
                is_self = self.registry.resource_name(relation.target) == self.registry.resource_name(model)
                child_tree = {name: True} if is_self and branch_depth > 1 else {}

            for record in records:
                related = await self.load_relation(model, record, relation)
                if child_tree and branch_depth > 1 and related:
                    children = related if isinstance(related, list) else [related]
                    await self._resolve_tree(relation.target, children, child_tree, branch_depth - 1)
                record[name] = related

    async def load_relation(
        self,
        model: str,
        record: dict[str, Any],
        relation: RelationSpec,
    ) -> dict[str, Any] | list[dict[str, Any]] | None:
        """Fetch the related value of one record for one relation."""
        target = self.registry.table_for(relation.target)

        if relation.type == RelationKind.BELONGS_TO:
            value = record.get(relation.foreign_key or "")
            if value is None:
                return None
            return await self.adapter.find_first(
                target, [Where(field=relation.target_key, value=value)]
            )

        local_value = record.get(relation.local_key)
        if local_value is None:
            return None if relation.is_to_one else []

        if relation.type == RelationKind.HAS_ONE:
            return await self.adapter.find_first(
                target, [Where(field=relation.foreign_key, value=local_value)]
            )

        if relation.type == RelationKind.HAS_MANY:
            return await self.adapter.find_many(
                target, [Where(field=relation.foreign_key, value=local_value)]
            )

        # belongsToMany: junction rows first, then the targets they point at
        junction_rows = await self.adapter.find_many(
            relation.through, [Where(field=relation.source_key, value=local_value)]
        )
        target_ids = _unique(row.get(relation.target_foreign_key) for row in junction_rows)
        if not target_ids:
            return []
        return await self.adapter.find_many(
            target,
            [Where(field=relation.target_key, value=target_ids, operator=WhereOperator.IN)],
        )

    # -------------------------------------------------------------------------
    # Many-to-many mutation
    # -------------------------------------------------------------------------

    def _transaction(self) -> Any:
        begin = getattr(self.adapter, "transaction", None)
        return begin() if begin is not None else contextlib.nullcontext()

    async def manage_many_to_many(
        self,
        model: str,
        source_id: Any,
        relation_name: str,
        target_ids: Sequence[Any],
        operation: ManyToManyOperation,
    ) -> list[Any]:
        """
        Mutate the association set of one source record.

        ``set`` replaces the whole set, ``add`` inserts only missing
        associations, ``remove`` deletes only the given ones.

        Returns:
            The associated target ids after the operation
        """
        relation = self.registry.get_relation(model, relation_name)
        if relation is None or relation.type != RelationKind.BELONGS_TO_MANY:
            raise ConfigurationError(
                f"'{relation_name}' on '{model}' is not a belongsToMany relationship"
            )
        if operation not in ("set", "add", "remove"):
            raise ValueError(f"Unknown many-to-many operation: {operation}")

        through = relation.through
        source_key = relation.source_key
        target_key = relation.target_foreign_key
        ids = _unique(target_ids)
        source_cond = Where(field=source_key, value=source_id)

        async with self._transaction():
            if operation == "set":
                await self.adapter.delete(through, [source_cond])
                for target_id in ids:
                    await self.adapter.create(through, {source_key: source_id, target_key: target_id})
            elif operation == "add":
                existing = await self.adapter.find_many(
                    through,
                    [source_cond, Where(field=target_key, value=ids, operator=WhereOperator.IN)],
                )
                present = {row.get(target_key) for row in existing}
                for target_id in ids:
                    if target_id not in present:
                        await self.adapter.create(
                            through, {source_key: source_id, target_key: target_id}
                        )
            elif ids:
                await self.adapter.delete(
                    through,
                    [source_cond, Where(field=target_key, value=ids, operator=WhereOperator.IN)],
                )

        logger.debug(f"{operation} {relation_name} on {model} {source_id}: {ids}")
        return await self.associated_ids(model, source_id, relation_name)

    async def associated_ids(self, model: str, source_id: Any, relation_name: str) -> list[Any]:
        """Target ids currently associated with ``source_id``."""
        relation = self.registry.get_relation(model, relation_name)
        if relation is None or relation.type != RelationKind.BELONGS_TO_MANY:
            raise ConfigurationError(
                f"'{relation_name}' on '{model}' is not a belongsToMany relationship"
            )
        rows = await self.adapter.find_many(
            relation.through, [Where(field=relation.source_key, value=source_id)]
        )
        return _unique(row.get(relation.target_foreign_key) for row in rows)


def _unique(values: Any) -> list[Any]:
    seen: list[Any] = []
    for value in values:
        if value is not None and value not in seen:
            seen.append(value)
    return seen


def _apply_select(
    records: list[dict[str, Any]],
    tree: Mapping[str, Any],
    select: Mapping[str, Any],
) -> None:
    """Project attached relations to the fields named in ``select``."""
    for name, fields in select.items():
        if name not in tree:
            continue
        if isinstance(fields, Mapping):
            keep = {k for k, v in fields.items() if v is True}
        elif isinstance(fields, (list, tuple, set)):
            keep = set(fields)
        else:
            continue
        if not keep:
            continue
        for record in records:
            value = record.get(name)
            if isinstance(value, list):
                record[name] = [{k: v for k, v in item.items() if k in keep} for item in value]
            elif isinstance(value, dict):
                record[name] = {k: v for k, v in value.items() if k in keep}
