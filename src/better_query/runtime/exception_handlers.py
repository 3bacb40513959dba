"""
Exception handlers for BetterQuery applications.

Generated CRUD routes return error bodies directly; these handlers cover
errors raised from custom and plugin endpoints so every error leaves the API
as ``{"error": ..., "details": ...}``.
"""

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from better_query.runtime.errors import BetterQueryError

logger = logging.getLogger(__name__)


def _clean_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
    # errors() can carry raw exception objects in ctx
    cleaned = []
    for err in errors:
        cleaned.append({"loc": list(err.get("loc", ())), "msg": str(err.get("msg", "")), "type": err.get("type")})
    return cleaned


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register error handlers on a FastAPI application.

    Handles:
    - BetterQueryError: mapped to its own status and body
    - ValidationError / RequestValidationError: 400 "Validation failed"

    Args:
        app: FastAPI application instance
    """

    @app.exception_handler(BetterQueryError)
    async def better_query_error_handler(request: Request, exc: BetterQueryError) -> Response:
        if exc.status_code >= 500:
            logger.warning(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> Response:
        return JSONResponse(
            status_code=400,
            content={"error": "Validation failed", "details": _clean_errors(exc.errors())},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
        return JSONResponse(
            status_code=400,
            content={"error": "Validation failed", "details": _clean_errors(list(exc.errors()))},
        )
