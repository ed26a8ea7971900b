"""
tests/conftest.py
Shared fixtures for the crudgraph test suite.

Every test gets its own SQLite file, created through a synchronous
SQLAlchemy engine. The app under test connects to the same file through
aiosqlite.
"""

from __future__ import annotations

import asyncio
import pathlib
from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import create_async_engine

from crudgraph import (
    AssociationSpec,
    AssociationType,
    EntityDescriptor,
    EntityKind,
    ParameterSpec,
    Settings,
    ValidationSpec,
    build_registry,
    create_app,
)
from crudgraph.core.rules import blocked_email_domains, min_length, value_range


# ---------------------------------------------------------------------------
# Database schema
# ---------------------------------------------------------------------------

SCHEMA: List[str] = [
    """
    CREATE TABLE users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username VARCHAR(50) NOT NULL UNIQUE,
        email VARCHAR(255) NOT NULL UNIQUE,
        age INTEGER,
        is_active BOOLEAN DEFAULT 1
    )
    """,
    """
    CREATE TABLE profiles (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL UNIQUE REFERENCES users(id),
        bio TEXT
    )
    """,
    """
    CREATE TABLE categories (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name VARCHAR(100) NOT NULL
    )
    """,
    """
    CREATE TABLE posts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title VARCHAR(200) NOT NULL,
        status VARCHAR(20) DEFAULT 'draft',
        views INTEGER DEFAULT 0,
        user_id INTEGER NOT NULL REFERENCES users(id),
        category_id INTEGER REFERENCES categories(id),
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE tags (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name VARCHAR(50) NOT NULL UNIQUE
    )
    """,
    """
    CREATE TABLE post_tags (
        post_id INTEGER NOT NULL REFERENCES posts(id),
        tag_id INTEGER NOT NULL REFERENCES tags(id),
        PRIMARY KEY (post_id, tag_id)
    )
    """,
    """
    CREATE TABLE products (
        product_id INTEGER PRIMARY KEY AUTOINCREMENT,
        sku VARCHAR(32) UNIQUE,
        name VARCHAR(100) NOT NULL,
        price REAL NOT NULL
    )
    """,
    """
    CREATE TABLE orders (
        order_uuid VARCHAR(36) PRIMARY KEY,
        customer VARCHAR(100)
    )
    """,
    """
    CREATE TABLE order_items (
        order_uuid VARCHAR(36) NOT NULL,
        product_id INTEGER NOT NULL,
        quantity INTEGER NOT NULL DEFAULT 1,
        PRIMARY KEY (order_uuid, product_id)
    )
    """,
    """
    CREATE VIEW post_summary AS
    SELECT p.id, p.title, p.views, u.username AS author
    FROM posts p
    JOIN users u ON u.id = p.user_id
    """,
]


def make_descriptors() -> List[EntityDescriptor]:
    """Entities of the test database. Posts come before users on purpose."""
    return [
        EntityDescriptor(
            name="posts",
            kind=EntityKind.TABLE,
            route="/api/posts",
            associations=[
                AssociationSpec(AssociationType.BELONGS_TO, "users", "user_id", "author"),
                AssociationSpec(AssociationType.BELONGS_TO, "categories", "category_id", "category"),
                AssociationSpec(
                    AssociationType.BELONGS_TO_MANY,
                    "tags",
                    "post_id",
                    "tags",
                    other_key="tag_id",
                    through="post_tags",
                ),
            ],
            response_messages={201: "Post created successfully", 404: "Post not found"},
        ),
        EntityDescriptor(
            name="users",
            kind=EntityKind.TABLE,
            route="/api/users",
            associations=[
                AssociationSpec(AssociationType.HAS_MANY, "posts", "user_id", "posts"),
                AssociationSpec(AssociationType.HAS_ONE, "profiles", "user_id", "profile"),
            ],
            validation=ValidationSpec(unique_fields=["username", "email"]),
            rules=[
                min_length("username", 3),
                blocked_email_domains("email", ["tempmail.org"]),
                value_range("age", 0, 150),
            ],
            response_messages={409: "Username or email already exists"},
        ),
        EntityDescriptor(name="profiles", kind=EntityKind.TABLE, route="/api/profiles"),
        EntityDescriptor(
            name="categories",
            kind=EntityKind.TABLE,
            route="/api/categories",
            associations=[
                AssociationSpec(AssociationType.HAS_MANY, "posts", "category_id", "posts"),
            ],
        ),
        EntityDescriptor(
            name="tags",
            kind=EntityKind.TABLE,
            route="/api/tags",
            validation=ValidationSpec(unique_fields=["name"]),
        ),
        EntityDescriptor(
            name="products",
            kind=EntityKind.TABLE,
            route="/api/products",
            validation=ValidationSpec(unique_fields=["sku"]),
        ),
        EntityDescriptor(
            name="orders",
            kind=EntityKind.TABLE,
            route="/api/orders",
            validation=ValidationSpec(conflict_status_code=422),
        ),
        EntityDescriptor(name="order_items", kind=EntityKind.TABLE, route="/api/order-items"),
        EntityDescriptor(name="post_summary", kind=EntityKind.VIEW, route="/api/post-summary"),
        EntityDescriptor(
            name="popular_posts",
            kind=EntityKind.QUERY,
            route="/api/popular-posts",
            sql="SELECT id, title, views FROM posts WHERE views >= :min_views ORDER BY views DESC",
            parameters=[ParameterSpec("min_views", "integer", default=0)],
        ),
        EntityDescriptor(
            name="bump_views",
            kind=EntityKind.QUERY,
            route="/api/bump-views",
            sql="UPDATE posts SET views = views + 1 WHERE id = :post_id",
            parameters=[ParameterSpec("post_id", "integer", required=True)],
        ),
    ]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def database_path(tmp_path: pathlib.Path) -> pathlib.Path:
    """Create the test schema in a fresh SQLite file."""
    path = tmp_path / "test.db"
    engine = create_engine(f"sqlite:///{path}")
    with engine.begin() as conn:
        for statement in SCHEMA:
            conn.exec_driver_sql(statement)
    engine.dispose()
    return path


@pytest.fixture()
def database_url(database_path: pathlib.Path) -> str:
    return f"sqlite+aiosqlite:///{database_path}"


@pytest.fixture()
def descriptors() -> List[EntityDescriptor]:
    return make_descriptors()


@pytest.fixture()
def settings(database_url: str) -> Settings:
    return Settings(database_url=database_url, query_timeout=10)


@pytest.fixture()
def client(settings: Settings, descriptors: List[EntityDescriptor]):
    """TestClient with the lifespan running (registry built, routes mounted)."""
    app = create_app(descriptors, settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def register(database_url: str):
    """
    Build a sealed registry against the test database.

    The engine lives only for the registration; the returned registry is
    plain data afterwards.
    """

    def _register(descriptors: List[EntityDescriptor]):
        async def run():
            engine = create_async_engine(database_url)
            try:
                return await build_registry(descriptors, engine)
            finally:
                await engine.dispose()

        return asyncio.run(run())

    return _register


@pytest.fixture()
def registry(register, descriptors):
    return register(descriptors)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def create(client: TestClient, route: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """POST a record and return its data, failing loudly on any error."""
    response = client.post(route, json=payload)
    assert response.status_code == 201, response.text
    return response.json()["data"]


@pytest.fixture()
def create_record(client: TestClient):
    def _create(route: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return create(client, route, payload)

    return _create


@pytest.fixture()
def blog(client: TestClient) -> Dict[str, Any]:
    """Two authors, two categories, three posts and two tags."""
    john = create(client, "/api/users", {"username": "john", "email": "john@example.com", "age": 30})
    jane = create(client, "/api/users", {"username": "jane", "email": "jane@example.com", "age": 25})
    news = create(client, "/api/categories", {"name": "News"})
    tech = create(client, "/api/categories", {"name": "Tech"})
    posts = [
        create(client, "/api/posts", {"title": "Hello world", "user_id": john["id"], "category_id": news["id"], "views": 5}),
        create(client, "/api/posts", {"title": "Async Python", "user_id": john["id"], "category_id": tech["id"], "views": 50}),
        create(client, "/api/posts", {"title": "Gardening", "user_id": jane["id"], "views": 12}),
    ]
    python = create(client, "/api/tags", {"name": "python"})
    asyncio_tag = create(client, "/api/tags", {"name": "asyncio"})
    return {
        "john": john,
        "jane": jane,
        "news": news,
        "tech": tech,
        "posts": posts,
        "python": python,
        "asyncio": asyncio_tag,
    }
