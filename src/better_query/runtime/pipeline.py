"""
Operation pipeline.

One pipeline per resource drives every create/read/update/delete/list request
through the same fixed stages:

1. middleware
2. existence check (read/update/delete)
3. before-hooks
4. validation and sanitization
5. permission, scope and ownership checks
6. id generation (create)
7. rate limiting
8. storage call, with relationship includes
9. after-hooks and audit

Each run ends in success or in exactly one BetterQueryError, returned as an
OperationResult rather than raised.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel, ValidationError

from better_query.runtime.adapters.base import StorageAdapter, generate_id
from better_query.runtime.audit_log import AuditLogger
from better_query.runtime.context import OperationContext, OperationResult
from better_query.runtime.errors import (
    BetterQueryError,
    Forbidden,
    HookExecutionFailed,
    NotFound,
    RateLimitExceeded,
    ValidationFailed,
    adapter_failure,
)
from better_query.runtime.field_inference import build_validation_schema
from better_query.runtime.hooks import HookExecutor, call_hook
from better_query.runtime.plugins import Middleware
from better_query.runtime.rate_limit import RateLimitConfig, RateLimiter, rate_limit_key
from better_query.runtime.search import SearchBuilder
from better_query.runtime.security import (
    check_ownership,
    extract_scopes,
    extract_security_context,
    extract_user_id,
    has_required_scopes,
    is_admin,
    sanitize,
)
from better_query.specs.entity import (
    FieldAttribute,
    OperationKind,
    OwnershipStrategy,
    ResourceSpec,
)
from better_query.specs.query import IncludeSpec, Pagination, Where

logger = logging.getLogger(__name__)

_EXISTING_RECORD_OPS = (OperationKind.READ, OperationKind.UPDATE, OperationKind.DELETE)
_WRITE_OPS = (OperationKind.CREATE, OperationKind.UPDATE)


def _validation_details(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
        for err in exc.errors(include_url=False)
    ]


def parse_include(query: dict[str, Any]) -> IncludeSpec | None:
    """Build an IncludeSpec from ``include``/``select``/``maxDepth`` query values."""
    include = query.get("include")
    select = query.get("select")
    if isinstance(include, IncludeSpec) and not select:
        return include
    if isinstance(select, str):
        select = SearchBuilder.parse_json(select)
    if not include and not select:
        return None
    return IncludeSpec.parse(
        {
            "include": include,
            "select": select or None,
            "max_depth": query.get("maxDepth") or query.get("max_depth"),
        }
    )


class OperationPipeline:
    """
    Generated CRUD operations for one resource.

    Attributes:
        resource: Resource specification
        adapter: Storage adapter
        fields: Inferred field map of the resource schema
    """

    def __init__(
        self,
        resource: ResourceSpec,
        adapter: StorageAdapter,
        fields: dict[str, FieldAttribute],
        hooks: HookExecutor | None = None,
        middleware: Sequence[Middleware] = (),
        audit: AuditLogger | None = None,
        rate_limiter: RateLimiter | None = None,
        rate_limit: RateLimitConfig | None = None,
        base_path: str = "",
    ):
        self.resource = resource
        self.adapter = adapter
        self.fields = fields
        self.hooks = hooks or HookExecutor()
        self.middleware = list(middleware)
        self.audit = audit
        self.rate_limiter = rate_limiter
        self.rate_limit = rate_limit
        self.base_path = base_path.rstrip("/")

        self.model = resource.table
        self.create_schema = build_validation_schema(resource.schema_)
        self.update_schema = build_validation_schema(resource.schema_, partial=True)

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def create(self, data: dict[str, Any], **kwargs: Any) -> OperationResult:
        return await self.run(OperationKind.CREATE, data=data, **kwargs)

    async def read(self, id: str, **kwargs: Any) -> OperationResult:
        return await self.run(OperationKind.READ, id=id, **kwargs)

    async def update(self, id: str, data: dict[str, Any], **kwargs: Any) -> OperationResult:
        return await self.run(OperationKind.UPDATE, id=id, data=data, **kwargs)

    async def delete(self, id: str, **kwargs: Any) -> OperationResult:
        return await self.run(OperationKind.DELETE, id=id, **kwargs)

    async def list(self, query: dict[str, Any] | None = None, **kwargs: Any) -> OperationResult:
        return await self.run(OperationKind.LIST, query=query, **kwargs)

    def default_path(self, operation: OperationKind, id: str | None = None) -> str:
        name = self.resource.name
        if operation == OperationKind.LIST:
            return f"{self.base_path}/{name}s"
        if operation == OperationKind.CREATE:
            return f"{self.base_path}/{name}"
        return f"{self.base_path}/{name}/{id}"

    async def run(
        self,
        operation: OperationKind | str,
        *,
        id: str | None = None,
        data: dict[str, Any] | None = None,
        query: dict[str, Any] | None = None,
        user: dict[str, Any] | None = None,
        request: Any = None,
        path: str | None = None,
    ) -> OperationResult:
        """
        Run one operation through every stage.

        Returns:
            OperationResult carrying the body and status, or the terminal error
        """
        operation = OperationKind(operation)
        ctx = OperationContext(
            resource=self.resource.name,
            operation=operation,
            model=self.model,
            user=user,
            scopes=extract_scopes(user),
            data=dict(data) if data is not None else None,
            id=id,
            query=dict(query or {}),
            path=path or self.default_path(operation, id),
            request=request,
            adapter=self.adapter,
            security=extract_security_context(request),
        )
        try:
            body, status_code = await self._execute(ctx)
        except BetterQueryError as e:
            logger.debug(f"{operation.value} {self.resource.name} -> {e.status_code} {e.error}")
            return OperationResult.failure(e)
        return OperationResult.success(body, status_code)

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def _execute(self, ctx: OperationContext) -> tuple[Any, int]:
        operation = ctx.operation

        await self._run_middleware(ctx)

        if operation in _EXISTING_RECORD_OPS:
            ctx.existing_data = await self._fetch_existing(ctx)

        try:
            await self.hooks.execute_before(self.resource.hooks, ctx)
        except BetterQueryError:
            raise
        except Exception as e:
            raise HookExecutionFailed(details=str(e)) from e

        relations: dict[str, Any] = {}
        if operation in _WRITE_OPS:
            relations = self._split_relations(ctx)
            ctx.data = await self._validate(ctx)
        ctx.include = parse_include(ctx.query) or IncludeSpec()
        list_plan = self._plan_list(ctx) if operation == OperationKind.LIST else None

        await self._authorize(ctx, list_plan)

        if operation == OperationKind.CREATE:
            if not ctx.data.get("id"):
                ctx.data["id"] = generate_id()
            ctx.id = ctx.data["id"]

        self._check_rate_limit(ctx)

        body, status_code = await self._call_adapter(ctx, relations, list_plan)
        ctx.result = body

        await self.hooks.execute_after(self.resource.hooks, ctx)
        if self.audit is not None:
            await self.audit.log_from_context(ctx, data_before=ctx.existing_data, data_after=self._audit_after(ctx))

        return ctx.result, status_code

    async def _run_middleware(self, ctx: OperationContext) -> None:
        for middleware in self.middleware:
            if not middleware.applies_to(ctx.path):
                continue
            try:
                await call_hook(middleware.handler, ctx)
            except BetterQueryError:
                raise
            except Exception as e:
                raise HookExecutionFailed(details=str(e)) from e
        if not ctx.scopes:
            ctx.scopes = extract_scopes(ctx.user)

    async def _fetch_existing(self, ctx: OperationContext) -> dict[str, Any]:
        if not ctx.id:
            raise NotFound()
        try:
            existing = await self.adapter.find_first(self.model, [Where(field="id", value=ctx.id)])
        except Exception as e:
            raise adapter_failure(ctx.operation, e) from e
        if existing is None:
            raise NotFound()
        return existing

    def _split_relations(self, ctx: OperationContext) -> dict[str, Any]:
        """Pull relationship payloads (e.g. ``{"tags": [...]}``) out of the input."""
        if not ctx.data:
            return {}
        relations = {}
        for name in list(ctx.data):
            if name in self.resource.relationships and name not in self.fields:
                relations[name] = ctx.data.pop(name)
        return relations

    async def _validate(self, ctx: OperationContext) -> dict[str, Any]:
        payload = ctx.data or {}
        try:
            if ctx.operation == OperationKind.CREATE:
                model: BaseModel = self.create_schema.model_validate(payload)
                dumped = model.model_dump()
                data = {
                    k: v for k, v in dumped.items() if k in model.model_fields_set or v is not None
                }
                if payload.get("id") and "id" not in data:
                    data["id"] = payload["id"]
            else:
                model = self.update_schema.model_validate(payload)
                data = model.model_dump(exclude_unset=True)
                data.pop("id", None)
        except ValidationError as e:
            raise ValidationFailed(details=_validation_details(e)) from e

        data = sanitize(data, self.resource.sanitization)

        validate_references = getattr(self.adapter, "validate_references", None)
        if validate_references is not None:
            try:
                errors = await validate_references(self.model, data)
            except Exception as e:
                raise adapter_failure(ctx.operation, e) from e
            if errors:
                raise ValidationFailed(details=errors)
        return data

    def _plan_list(self, ctx: OperationContext) -> dict[str, Any]:
        try:
            conditions = SearchBuilder.build_search_conditions(ctx.query, self.resource.search)
            order_by = SearchBuilder.build_order_by(
                ctx.query, default_field="createdAt" if "createdAt" in self.fields else None
            )
        except (ValueError, KeyError, TypeError) as e:
            raise ValidationFailed(details=str(e)) from e
        return {
            "conditions": conditions,
            "order_by": order_by,
            "page": SearchBuilder.build_pagination(ctx.query),
        }

    async def _authorize(self, ctx: OperationContext, list_plan: dict[str, Any] | None) -> None:
        permission = self.resource.permission_for(ctx.operation)
        if permission is not None:
            try:
                allowed = await call_hook(permission, ctx)
            except Exception as e:
                logger.debug(f"Permission callback raised for {ctx.resource}: {e}")
                allowed = False
            if not allowed:
                raise Forbidden()

        if not has_required_scopes(ctx.scopes, self.resource.scopes_for(ctx.operation)):
            raise Forbidden()

        ownership = self.resource.ownership
        if ownership is None:
            return

        if ctx.operation == OperationKind.LIST:
            if ownership.strategy == OwnershipStrategy.FLEXIBLE and is_admin(ctx.scopes):
                return
            user_id = extract_user_id(ctx.user)
            if user_id is None:
                raise Forbidden()
            list_plan["conditions"].append(Where(field=ownership.field, value=user_id))
            return

        if ctx.operation == OperationKind.CREATE:
            user_id = extract_user_id(ctx.user)
            if ctx.data.get(ownership.field) is None and user_id is not None:
                ctx.data[ownership.field] = user_id
            record = ctx.data
        else:
            record = ctx.existing_data
        if not check_ownership(record, ctx.user, ownership, ctx.scopes):
            raise Forbidden()

    def _check_rate_limit(self, ctx: OperationContext) -> None:
        if self.rate_limiter is None or self.rate_limit is None:
            return
        key = rate_limit_key(ctx.security.ip, ctx.operation.value, ctx.resource)
        if not self.rate_limiter.check(key, self.rate_limit):
            raise RateLimitExceeded()

    async def _call_adapter(
        self,
        ctx: OperationContext,
        relations: dict[str, Any],
        list_plan: dict[str, Any] | None,
    ) -> tuple[Any, int]:
        operation = ctx.operation
        if operation in (OperationKind.READ, OperationKind.LIST) and ctx.cached_result is not None:
            return ctx.cached_result, 200

        by_id = [Where(field="id", value=ctx.id)]
        try:
            if operation == OperationKind.CREATE:
                if relations and hasattr(self.adapter, "create_with_relations"):
                    record = await self.adapter.create_with_relations(
                        self.model, ctx.data, relations, include=ctx.include
                    )
                else:
                    record = await self.adapter.create(self.model, ctx.data, include=ctx.include)
                return record, 201

            if operation == OperationKind.READ:
                record = await self.adapter.find_first(self.model, by_id, include=ctx.include)
                if record is None:
                    raise NotFound()
                return record, 200

            if operation == OperationKind.UPDATE:
                if relations and hasattr(self.adapter, "update_with_relations"):
                    record = await self.adapter.update_with_relations(
                        self.model, by_id, ctx.data, relations, include=ctx.include
                    )
                else:
                    record = await self.adapter.update(self.model, by_id, ctx.data, include=ctx.include)
                if record is None:
                    raise NotFound()
                return record, 200

            if operation == OperationKind.DELETE:
                await self.adapter.delete(self.model, by_id)
                return {"success": True}, 200

            page = list_plan["page"]
            total = await self.adapter.count(self.model, list_plan["conditions"])
            items = await self.adapter.find_many(
                self.model,
                list_plan["conditions"],
                limit=page.limit,
                offset=page.offset,
                order_by=list_plan["order_by"],
                include=ctx.include,
            )
            pagination = Pagination.compute(total, page.page, page.limit)
            return {"items": items, "pagination": pagination.model_dump()}, 200
        except BetterQueryError:
            raise
        except Exception as e:
            logger.warning(f"Storage {operation.value} on {ctx.resource} failed: {e}")
            raise adapter_failure(operation, e) from e

    @staticmethod
    def _audit_after(ctx: OperationContext) -> Any:
        if ctx.operation == OperationKind.DELETE:
            return None
        return ctx.result

