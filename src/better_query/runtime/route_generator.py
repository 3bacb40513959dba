"""
Route generator - generates FastAPI routes from resource pipelines.

Per resource (under the configured base path)::

    POST   /{name}        create  -> 201
    GET    /{name}/{id}   read
    PATCH  /{name}/{id}   update
    DELETE /{name}/{id}   delete  -> {"success": true}
    GET    /{name}s       list    -> {"items": [...], "pagination": {...}}

Custom endpoints declared on resources are mounted under ``/{name}``; plugin
endpoints are mounted directly under the base path.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response

from better_query.runtime.context import OperationResult
from better_query.runtime.errors import ValidationFailed
from better_query.runtime.hooks import call_hook
from better_query.specs.entity import CustomEndpoint, OperationKind

if TYPE_CHECKING:
    from better_query.runtime.pipeline import OperationPipeline
    from better_query.runtime.server import BetterQuery

logger = logging.getLogger(__name__)


def _user(request: Request) -> dict[str, Any] | None:
    return getattr(request.state, "user", None)


def to_response(result: OperationResult) -> JSONResponse:
    """Encode an OperationResult as a JSON response."""
    return JSONResponse(content=jsonable_encoder(result.body), status_code=result.status_code)


async def _read_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError as e:
        raise ValidationFailed(details=f"Invalid JSON body: {e}") from e
    if not isinstance(body, dict):
        raise ValidationFailed(details="Request body must be a JSON object")
    return body


def _include_query(include: str | None, select: str | None) -> dict[str, Any]:
    return {k: v for k, v in (("include", include), ("select", select)) if v}


# =============================================================================
# Route Handler Factory
# =============================================================================


def create_create_handler(pipeline: OperationPipeline) -> Callable[..., Any]:
    """Create a handler for create operations."""

    async def handler(
        request: Request,
        include: str | None = Query(None, description="Comma-separated relations"),
        select: str | None = Query(None, description="JSON field selection per relation"),
    ) -> JSONResponse:
        try:
            data = await _read_body(request)
        except ValidationFailed as e:
            return to_response(OperationResult.failure(e))
        result = await pipeline.create(
            data,
            query=_include_query(include, select),
            user=_user(request),
            request=request,
            path=request.url.path,
        )
        return to_response(result)

    return handler


def create_read_handler(pipeline: OperationPipeline) -> Callable[..., Any]:
    """Create a handler for read operations."""

    async def handler(
        id: str,
        request: Request,
        include: str | None = Query(None),
        select: str | None = Query(None),
    ) -> JSONResponse:
        result = await pipeline.read(
            id,
            query=_include_query(include, select),
            user=_user(request),
            request=request,
            path=request.url.path,
        )
        return to_response(result)

    return handler


def create_update_handler(pipeline: OperationPipeline) -> Callable[..., Any]:
    """Create a handler for update operations."""

    async def handler(
        id: str,
        request: Request,
        include: str | None = Query(None),
        select: str | None = Query(None),
    ) -> JSONResponse:
        try:
            data = await _read_body(request)
        except ValidationFailed as e:
            return to_response(OperationResult.failure(e))
        result = await pipeline.update(
            id,
            data,
            query=_include_query(include, select),
            user=_user(request),
            request=request,
            path=request.url.path,
        )
        return to_response(result)

    return handler


def create_delete_handler(pipeline: OperationPipeline) -> Callable[..., Any]:
    """Create a handler for delete operations."""

    async def handler(id: str, request: Request) -> JSONResponse:
        result = await pipeline.delete(id, user=_user(request), request=request, path=request.url.path)
        return to_response(result)

    return handler


def create_list_handler(pipeline: OperationPipeline) -> Callable[..., Any]:
    """Create a handler for list operations."""

    async def handler(
        request: Request,
        page: int | None = Query(None, description="Page number (1-based)"),
        limit: int | None = Query(None, description="Items per page (max 100)"),
        search: str | None = Query(None),
        q: str | None = Query(None),
        search_fields: str | None = Query(None, alias="searchFields"),
        sort_by: str | None = Query(None, alias="sortBy"),
        sort_order: str | None = Query(None, alias="sortOrder"),
        include: str | None = Query(None),
        select: str | None = Query(None),
        filters: str | None = Query(None, description="JSON filter map"),
        where: str | None = Query(None, description="JSON equality map"),
        date_range: str | None = Query(None, alias="dateRange", description="JSON {field, start, end}"),
    ) -> JSONResponse:
        query = {
            "page": page,
            "limit": limit,
            "search": search,
            "q": q,
            "searchFields": search_fields,
            "sortBy": sort_by,
            "sortOrder": sort_order,
            "include": include,
            "select": select,
            "filters": filters,
            "where": where,
            "dateRange": date_range,
        }
        result = await pipeline.list(
            {k: v for k, v in query.items() if v is not None},
            user=_user(request),
            request=request,
            path=request.url.path,
        )
        return to_response(result)

    return handler


def create_custom_handler(endpoint: CustomEndpoint) -> Callable[..., Any]:
    """Create a handler wrapping a custom endpoint callback."""

    async def handler(request: Request) -> Response:
        result = await call_hook(endpoint.handler, request)
        if isinstance(result, Response):
            return result
        return JSONResponse(content=jsonable_encoder(result))

    return handler


# =============================================================================
# Route Generator
# =============================================================================


class RouteGenerator:
    """
    Generates FastAPI routes for every resource of a BetterQuery instance.
    """

    def __init__(self, query: BetterQuery):
        """
        Initialize the route generator.

        Args:
            query: Configured BetterQuery instance
        """
        self.query = query

    def generate_resource_routes(self, name: str) -> APIRouter:
        """Build the router for one resource."""
        pipeline = self.query.pipelines[name]
        resource = pipeline.resource
        router = APIRouter(tags=[name])

        if resource.is_enabled(OperationKind.CREATE):
            router.add_api_route(
                f"/{name}",
                create_create_handler(pipeline),
                methods=["POST"],
                name=f"create_{name}",
                summary=f"Create {name}",
                status_code=201,
            )
        if resource.is_enabled(OperationKind.LIST):
            router.add_api_route(
                f"/{name}s",
                create_list_handler(pipeline),
                methods=["GET"],
                name=f"list_{name}",
                summary=f"List {name}",
            )
        if resource.is_enabled(OperationKind.READ):
            router.add_api_route(
                f"/{name}/{{id}}",
                create_read_handler(pipeline),
                methods=["GET"],
                name=f"get_{name}",
                summary=f"Get {name}",
            )
        if resource.is_enabled(OperationKind.UPDATE):
            router.add_api_route(
                f"/{name}/{{id}}",
                create_update_handler(pipeline),
                methods=["PATCH"],
                name=f"update_{name}",
                summary=f"Update {name}",
            )
        if resource.is_enabled(OperationKind.DELETE):
            router.add_api_route(
                f"/{name}/{{id}}",
                create_delete_handler(pipeline),
                methods=["DELETE"],
                name=f"delete_{name}",
                summary=f"Delete {name}",
            )

        for endpoint_name, endpoint in resource.custom_endpoints.items():
            router.add_api_route(
                f"/{name}{endpoint.path}",
                create_custom_handler(endpoint),
                methods=endpoint.methods,
                name=f"{name}_{endpoint_name}",
                summary=endpoint.summary,
            )
        return router

    def generate_all_routes(self) -> APIRouter:
        """
        Build one router covering every resource and plugin endpoint.

        Returns:
            APIRouter mounted under the instance base path
        """
        router = APIRouter(prefix=self.query.base_path)
        for name in self.query.pipelines:
            router.include_router(self.generate_resource_routes(name))
        for endpoint_name, endpoint in self.query.plugins.get_endpoints().items():
            router.add_api_route(
                endpoint.path,
                create_custom_handler(endpoint),
                methods=endpoint.methods,
                name=endpoint_name,
                summary=endpoint.summary,
            )
        logger.info(f"Generated routes for {len(self.query.pipelines)} resource(s) under {self.query.base_path}")
        return router
