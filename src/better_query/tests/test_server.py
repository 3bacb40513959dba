"""
Tests for the HTTP surface: generated routes, custom and plugin endpoints,
exception handlers, lifespan migration, configuration and logging.
"""

import json
import logging
from pathlib import Path
from typing import Any

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from better_query.runtime.adapters import SQLiteAdapter
from better_query.runtime.errors import Forbidden
from better_query.runtime.logging import LOG_FILE_NAME, ROOT_LOGGER, get_logger, setup_logging
from better_query.runtime.plugins import Middleware, cache_plugin
from better_query.runtime.server import BetterQuery, ServerConfig, create_app
from better_query.specs import CustomEndpoint, OwnershipStrategy
from better_query.tests.conftest import catalog_resources, category_resource, note_resource, product_resource, tag_resource

BASE = "/api/query"


def category_stats(request: Request) -> dict[str, Any]:
    return {"path": request.url.path}


def locked(request: Request) -> dict[str, Any]:
    raise Forbidden(details="Locked")


def header_identity(ctx: Any) -> None:
    if ctx.request is None:
        return
    user_id = ctx.request.headers.get("x-user-id")
    if user_id:
        ctx.user = {"id": user_id}


@pytest.fixture
def query() -> BetterQuery:
    """In-memory catalog with custom endpoints and a cache plugin."""
    category = category_resource(
        custom_endpoints={
            "stats": CustomEndpoint(path="/stats", handler=category_stats),
            "locked": CustomEndpoint(path="/locked", handler=locked, methods=["POST"]),
        }
    )
    return BetterQuery(
        resources=[category, product_resource(), tag_resource(), note_resource(OwnershipStrategy.STRICT)],
        plugins=[cache_plugin()],
        middleware=[Middleware(header_identity)],
    )


@pytest.fixture
def app(query: BetterQuery) -> FastAPI:
    return create_app(query)


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


# =============================================================================
# Generated routes
# =============================================================================


class TestCrudRoutes:
    """Tests for the generated CRUD routes."""

    def test_lifecycle(self, client: TestClient):
        response = client.post(f"{BASE}/product", json={"name": "Tea", "price": 3})
        assert response.status_code == 201
        product = response.json()

        response = client.get(f"{BASE}/product/{product['id']}")
        assert response.status_code == 200
        assert response.json()["name"] == "Tea"

        response = client.patch(f"{BASE}/product/{product['id']}", json={"price": 4})
        assert response.status_code == 200
        assert response.json()["price"] == 4

        response = client.delete(f"{BASE}/product/{product['id']}")
        assert response.json() == {"success": True}

        response = client.get(f"{BASE}/product/{product['id']}")
        assert response.status_code == 404
        assert response.json() == {"error": "Resource not found"}

    def test_list(self, client: TestClient):
        for name in ("Green Tea", "Black Tea", "Coffee"):
            client.post(f"{BASE}/product", json={"name": name, "price": 1})

        response = client.get(f"{BASE}/products", params={"search": "tea", "limit": 1})
        body = response.json()

        assert response.status_code == 200
        assert len(body["items"]) == 1
        assert body["pagination"] == {
            "page": 1,
            "limit": 1,
            "total": 2,
            "totalPages": 2,
            "hasNext": True,
            "hasPrev": False,
        }

    def test_include_param(self, client: TestClient):
        drinks = client.post(f"{BASE}/category", json={"name": "Drinks"}).json()
        tea = client.post(f"{BASE}/product", json={"name": "Tea", "price": 3, "categoryId": drinks["id"]}).json()

        response = client.get(f"{BASE}/product/{tea['id']}", params={"include": "category"})

        assert response.json()["category"]["name"] == "Drinks"

    def test_validation_error(self, client: TestClient):
        response = client.post(f"{BASE}/product", json={"name": "Tea", "price": -1})

        assert response.status_code == 400
        assert response.json()["error"] == "Validation failed"

    def test_invalid_json(self, client: TestClient):
        response = client.post(
            f"{BASE}/product", content=b"{not json", headers={"content-type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Validation failed"

    def test_bad_query_parameter(self, client: TestClient):
        response = client.get(f"{BASE}/products", params={"page": "abc"})

        assert response.status_code == 400

    def test_middleware_identity_from_headers(self, client: TestClient):
        response = client.post(f"{BASE}/note", json={"title": "Mine"}, headers={"x-user-id": "alice"})
        assert response.status_code == 201
        note = response.json()
        assert note["ownerId"] == "alice"

        assert client.get(f"{BASE}/note/{note['id']}", headers={"x-user-id": "bob"}).status_code == 403
        assert client.get(f"{BASE}/notes").status_code == 403
        listed = client.get(f"{BASE}/notes", headers={"x-user-id": "alice"}).json()
        assert [n["id"] for n in listed["items"]] == [note["id"]]


# =============================================================================
# Custom and plugin endpoints
# =============================================================================


class TestCustomEndpoints:
    """Tests for resource and plugin endpoints."""

    def test_resource_endpoint(self, client: TestClient):
        response = client.get(f"{BASE}/category/stats")

        assert response.json() == {"path": f"{BASE}/category/stats"}

    def test_endpoint_error_uses_error_body(self, client: TestClient):
        response = client.post(f"{BASE}/category/locked")

        assert response.status_code == 403
        assert response.json() == {"error": "Forbidden", "details": "Locked"}

    def test_cache_endpoints(self, client: TestClient):
        tea = client.post(f"{BASE}/product", json={"name": "Tea", "price": 3}).json()
        client.get(f"{BASE}/product/{tea['id']}")

        assert client.get(f"{BASE}/cache/stats").json()["size"] == 1
        assert client.post(f"{BASE}/cache/clear").json() == {"message": "Cleared all cache"}
        assert client.get(f"{BASE}/cache/stats").json()["size"] == 0

    def test_state(self, app: FastAPI, query: BetterQuery):
        assert app.state.better_query is query


# =============================================================================
# Lifespan
# =============================================================================


class TestLifespan:
    """Tests for startup migration against SQLite."""

    def test_auto_migrate_on_startup(self, tmp_path: Path):
        config = ServerConfig(db_path=tmp_path / "app.db")
        query = BetterQuery.from_config(catalog_resources(), config)

        assert isinstance(query.adapter, SQLiteAdapter)
        with TestClient(create_app(query, config)) as client:
            response = client.post(f"{BASE}/tag", json={"name": "green"})
            assert response.status_code == 201

            duplicate = client.post(f"{BASE}/tag", json={"name": "green"})
            assert duplicate.status_code == 500
            assert duplicate.json()["error"] == "Failed to create resource"

        assert (tmp_path / "app.db").exists()

    def test_custom_base_path(self):
        query = BetterQuery(resources=[category_resource()], base_path="/v1/")
        client = TestClient(create_app(query))

        assert client.post("/v1/category", json={"name": "Root"}).status_code == 201
        assert client.post(f"{BASE}/category", json={"name": "Root"}).status_code == 404


# =============================================================================
# Configuration
# =============================================================================


class TestServerConfig:
    """Tests for ServerConfig."""

    def test_defaults(self):
        config = ServerConfig.from_env({})

        assert config.db_path is None
        assert config.base_path == BASE
        assert config.auto_migrate is True
        assert config.rate_limit is None
        assert config.port == 8000

    def test_from_env(self):
        config = ServerConfig.from_env(
            {
                "BETTER_QUERY_DB_PATH": "data/app.db",
                "BETTER_QUERY_AUTO_MIGRATE": "false",
                "BETTER_QUERY_CORS_ORIGINS": "http://a.test, http://b.test",
                "BETTER_QUERY_RATE_LIMIT_MAX": "5",
                "BETTER_QUERY_AUDIT": "yes",
                "BETTER_QUERY_LOG_LEVEL": "debug",
                "BETTER_QUERY_PORT": "9000",
            }
        )

        assert config.db_path == Path("data/app.db")
        assert config.auto_migrate is False
        assert config.cors_origins == ["http://a.test", "http://b.test"]
        assert config.rate_limit.max == 5
        assert config.rate_limit.window_ms == 60_000
        assert config.audit is True
        assert config.log_level == "DEBUG"
        assert config.port == 9000

    def test_cors(self):
        query = BetterQuery(resources=[category_resource()])
        client = TestClient(create_app(query, ServerConfig(cors_origins=["http://a.test"])))

        response = client.get(f"{BASE}/categorys", headers={"origin": "http://a.test"})

        assert response.headers["access-control-allow-origin"] == "http://a.test"


# =============================================================================
# Logging
# =============================================================================


class TestLogging:
    """Tests for setup_logging and the JSONL file output."""

    @pytest.fixture(autouse=True)
    def restore_logger(self):
        yield
        root = logging.getLogger(ROOT_LOGGER)
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        root.propagate = True
        root.setLevel(logging.NOTSET)

    def test_jsonl_file(self, tmp_path: Path):
        setup_logging(level="INFO", log_dir=tmp_path / "logs")
        logger = get_logger("migrations")

        logger.info("applied")
        logger.warning("slow")
        for handler in logging.getLogger(ROOT_LOGGER).handlers:
            handler.flush()

        lines = (tmp_path / "logs" / LOG_FILE_NAME).read_text().splitlines()
        entries = [json.loads(line) for line in lines]

        assert [e["message"] for e in entries] == ["applied", "slow"]
        assert entries[0]["component"] == "migrations"
        assert entries[0]["level"] == "INFO"
        assert "source" not in entries[0]
        assert "source" in entries[1]

    def test_level_filters(self, tmp_path: Path):
        setup_logging(level="WARNING", log_dir=tmp_path)

        logging.getLogger("better_query.runtime.pipeline").info("hidden")
        logging.getLogger("better_query.runtime.pipeline").error("shown")
        for handler in logging.getLogger(ROOT_LOGGER).handlers:
            handler.flush()

        entries = [json.loads(line) for line in (tmp_path / LOG_FILE_NAME).read_text().splitlines()]
        assert [e["message"] for e in entries] == ["shown"]
        assert entries[0]["component"] == "pipeline"
