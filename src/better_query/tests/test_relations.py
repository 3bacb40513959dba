"""
Tests for the relationship registry, include resolution and many-to-many
association management.
"""

import pytest
from pydantic import BaseModel

from better_query.runtime.errors import ConfigurationError
from better_query.runtime.relation_loader import JunctionTable
from better_query.runtime.server import BetterQuery
from better_query.specs import IncludeSpec, RelationSpec, ResourceSpec, belongs_to, belongs_to_many, has_many
from better_query.tests.conftest import catalog_resources, category_resource

# =============================================================================
# Registry
# =============================================================================


class Comment(BaseModel):
    body: str
    postId: str | None = None


class Post(BaseModel):
    title: str


class TestRelationRegistry:
    """Tests for relationship validation at construction time."""

    def test_unknown_target_rejected(self):
        resource = ResourceSpec(
            name="comment",
            schema=Comment,
            relationships={"post": belongs_to("post", foreign_key="postId")},
        )

        with pytest.raises(ConfigurationError, match="target resource 'post' not found"):
            BetterQuery(resources=[resource])

    def test_missing_foreign_key_field_rejected(self):
        post = ResourceSpec(name="post", schema=Post)
        comment = ResourceSpec(
            name="comment",
            schema=Comment,
            relationships={"post": belongs_to("post", foreign_key="articleId")},
        )

        with pytest.raises(ConfigurationError, match="foreign key 'articleId'"):
            BetterQuery(resources=[post, comment])

    def test_has_many_checks_target_field(self):
        post = ResourceSpec(
            name="post",
            schema=Post,
            relationships={"comments": has_many("comment", foreign_key="post_id")},
        )
        comment = ResourceSpec(name="comment", schema=Comment)

        with pytest.raises(ConfigurationError):
            BetterQuery(resources=[post, comment])

    def test_belongs_to_many_requires_through(self):
        post = ResourceSpec(
            name="post",
            schema=Post,
            relationships={
                "tags": RelationSpec(type="belongsToMany", target="post", source_key="a", target_foreign_key="b")
            },
        )

        with pytest.raises(ConfigurationError, match="requires 'through'"):
            BetterQuery(resources=[post])

    def test_duplicate_resource_rejected(self):
        with pytest.raises(ConfigurationError, match="more than once"):
            BetterQuery(resources=[category_resource(), category_resource()])

    def test_junction_tables_deduplicated(self):
        query = BetterQuery(resources=catalog_resources())

        assert query.registry.required_junction_tables() == [
            JunctionTable(name="product_tags", source_key="productId", target_key="tagId")
        ]

    def test_foreign_key_indexes(self):
        query = BetterQuery(resources=catalog_resources())
        indexes = query.registry.foreign_key_indexes()

        assert "CREATE INDEX IF NOT EXISTS idx_product_categoryId ON product(categoryId)" in indexes
        assert "CREATE INDEX IF NOT EXISTS idx_category_parentId ON category(parentId)" in indexes


# =============================================================================
# Include resolution
# =============================================================================


class TestIncludeResolution:
    """Tests for attaching related records."""

    @pytest.mark.asyncio
    async def test_belongs_to_and_has_many(self, query: BetterQuery):
        drinks = await query.api.create("category", {"name": "Drinks"})
        tea = await query.api.create("product", {"name": "Tea", "price": 3, "categoryId": drinks["id"]})
        await query.api.create("product", {"name": "Coffee", "price": 4, "categoryId": drinks["id"]})

        product = await query.api.read("product", tea["id"], include="category")
        assert product["category"]["name"] == "Drinks"

        category = await query.api.read("category", drinks["id"], include=["products"])
        assert sorted(p["name"] for p in category["products"]) == ["Coffee", "Tea"]

    @pytest.mark.asyncio
    async def test_missing_foreign_key_attaches_none(self, query: BetterQuery):
        orphan = await query.api.create("product", {"name": "Orphan", "price": 1}, include="category")

        assert orphan["category"] is None

    @pytest.mark.asyncio
    async def test_self_referential_default_depth_is_one(self, query: BetterQuery):
        """Parent of parent is not fetched unless asked for."""
        root = await query.api.create("category", {"name": "Root"})
        child = await query.api.create("category", {"name": "Child", "parentId": root["id"]})
        leaf = await query.api.create("category", {"name": "Leaf", "parentId": child["id"]})

        result = await query.api.read("category", leaf["id"], include="parent")

        assert result["parent"]["id"] == child["id"]
        assert "parent" not in result["parent"]

    @pytest.mark.asyncio
    async def test_nested_include(self, query: BetterQuery):
        root = await query.api.create("category", {"name": "Root"})
        child = await query.api.create("category", {"name": "Child", "parentId": root["id"]})
        leaf = await query.api.create("category", {"name": "Leaf", "parentId": child["id"]})

        result = await query.api.read("category", leaf["id"], include={"parent": {"parent": True}})

        assert result["parent"]["parent"]["id"] == root["id"]

    @pytest.mark.asyncio
    async def test_children(self, query: BetterQuery):
        root = await query.api.create("category", {"name": "Root"})
        await query.api.create("category", {"name": "A", "parentId": root["id"]})
        await query.api.create("category", {"name": "B", "parentId": root["id"]})

        result = await query.api.read("category", root["id"], include="children")

        assert sorted(c["name"] for c in result["children"]) == ["A", "B"]

    @pytest.mark.asyncio
    async def test_relation_depth_override_follows_self_reference(self):
        resource = ResourceSpec(
            name="category",
            schema=category_resource().schema_,
            relationships={"parent": belongs_to("category", foreign_key="parentId", max_depth=3)},
        )
        query = BetterQuery(resources=[resource])
        a = await query.api.create("category", {"name": "A"})
        b = await query.api.create("category", {"name": "B", "parentId": a["id"]})
        c = await query.api.create("category", {"name": "C", "parentId": b["id"]})
        d = await query.api.create("category", {"name": "D", "parentId": c["id"]})

        result = await query.api.read("category", d["id"], include="parent")

        assert result["parent"]["id"] == c["id"]
        assert result["parent"]["parent"]["id"] == b["id"]
        assert result["parent"]["parent"]["parent"]["id"] == a["id"]

    @pytest.mark.asyncio
    async def test_max_depth_caps_nesting(self, query: BetterQuery):
        root = await query.api.create("category", {"name": "Root"})
        child = await query.api.create("category", {"name": "Child", "parentId": root["id"]})
        leaf = await query.api.create("category", {"name": "Leaf", "parentId": child["id"]})

        include = IncludeSpec(tree={"parent": {"parent": True}}, max_depth=1)
        result = await query.api.read("category", leaf["id"], include=include)

        assert result["parent"]["id"] == child["id"]
        assert "parent" not in result["parent"]

    @pytest.mark.asyncio
    async def test_select_projects_related_fields(self, query: BetterQuery):
        drinks = await query.api.create("category", {"name": "Drinks"})
        tea = await query.api.create("product", {"name": "Tea", "price": 3, "categoryId": drinks["id"]})

        result = await query.pipelines["product"].read(
            tea["id"], query={"include": "category", "select": '{"category": ["name"]}'}
        )

        assert result.body["category"] == {"name": "Drinks"}

    @pytest.mark.asyncio
    async def test_include_by_default(self):
        resource = ResourceSpec(
            name="category",
            schema=category_resource().schema_,
            relationships={
                "parent": belongs_to("category", foreign_key="parentId", include_by_default=True)
            },
        )
        query = BetterQuery(resources=[resource])
        root = await query.api.create("category", {"name": "Root"})
        child = await query.api.create("category", {"name": "Child", "parentId": root["id"]})

        result = await query.api.read("category", child["id"])

        assert result["parent"]["name"] == "Root"

    @pytest.mark.asyncio
    async def test_unknown_relation_ignored(self, query: BetterQuery):
        tea = await query.api.create("product", {"name": "Tea", "price": 3})

        result = await query.api.read("product", tea["id"], include="nonexistent")

        assert "nonexistent" not in result


# =============================================================================
# Many-to-many
# =============================================================================


class TestManyToMany:
    """Tests for belongsToMany associations."""

    @pytest.mark.asyncio
    async def test_create_with_tags(self, query: BetterQuery):
        t1 = await query.api.create("tag", {"name": "green"})
        t2 = await query.api.create("tag", {"name": "organic"})

        product = await query.api.create(
            "product", {"name": "Tea", "price": 3, "tags": [t1["id"], t2["id"]]}, include="tags"
        )

        assert sorted(t["name"] for t in product["tags"]) == ["green", "organic"]
        tag = await query.api.read("tag", t1["id"], include="products")
        assert [p["name"] for p in tag["products"]] == ["Tea"]

    @pytest.mark.asyncio
    async def test_set_is_idempotent(self, query: BetterQuery):
        t1 = await query.api.create("tag", {"name": "green"})
        t2 = await query.api.create("tag", {"name": "organic"})
        tea = await query.api.create("product", {"name": "Tea", "price": 3})

        ids = [t1["id"], t2["id"]]
        await query.api.manage_many_to_many("product", tea["id"], "tags", ids, "set")
        result = await query.api.manage_many_to_many("product", tea["id"], "tags", ids, "set")

        assert sorted(result) == sorted(ids)
        assert await query.adapter.count("product_tags") == 2

    @pytest.mark.asyncio
    async def test_set_remove_add(self, query: BetterQuery):
        t1 = await query.api.create("tag", {"name": "green"})
        t2 = await query.api.create("tag", {"name": "organic"})
        tea = await query.api.create("product", {"name": "Tea", "price": 3})

        await query.api.manage_many_to_many("product", tea["id"], "tags", [t1["id"], t2["id"]], "set")
        remaining = await query.api.manage_many_to_many("product", tea["id"], "tags", [t1["id"]], "remove")
        assert remaining == [t2["id"]]

        again = await query.api.manage_many_to_many("product", tea["id"], "tags", [t2["id"], t1["id"]], "add")
        assert sorted(again) == sorted([t1["id"], t2["id"]])
        assert await query.adapter.count("product_tags") == 2

    @pytest.mark.asyncio
    async def test_set_empty_clears(self, query: BetterQuery):
        t1 = await query.api.create("tag", {"name": "green"})
        tea = await query.api.create("product", {"name": "Tea", "price": 3, "tags": [t1["id"]]})

        result = await query.api.manage_many_to_many("product", tea["id"], "tags", [], "set")

        assert result == []
        assert await query.adapter.count("product_tags") == 0

    @pytest.mark.asyncio
    async def test_update_replaces_tags(self, query: BetterQuery):
        t1 = await query.api.create("tag", {"name": "green"})
        t2 = await query.api.create("tag", {"name": "organic"})
        tea = await query.api.create("product", {"name": "Tea", "price": 3, "tags": [t1["id"]]})

        updated = await query.api.update("product", tea["id"], {"tags": [t2["id"]]}, include="tags")

        assert [t["id"] for t in updated["tags"]] == [t2["id"]]

    @pytest.mark.asyncio
    async def test_not_many_to_many(self, query: BetterQuery):
        tea = await query.api.create("product", {"name": "Tea", "price": 3})

        with pytest.raises(ConfigurationError):
            await query.api.manage_many_to_many("product", tea["id"], "category", ["x"], "set")

    @pytest.mark.asyncio
    async def test_relation_spec_helpers(self):
        relation = belongs_to_many("tag", through="product_tags", source_key="productId", target_foreign_key="tagId")

        assert relation.is_to_many
        assert not relation.is_to_one
