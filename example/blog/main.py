"""
Blog API - minimal configuration example.

Usage:
    sqlite3 blog.db < example/blog/schema.sql
    DATABASE_URL=sqlite+aiosqlite:///blog.db uvicorn example.blog.main:app

    curl "localhost:8000/api/posts?filter[author.username]=john&include=tags"
"""

from pathlib import Path

from crudgraph import Settings, create_app, load_entities
from crudgraph.config import dialect_from_url

settings = Settings.from_env()

entities = load_entities(
    Path(__file__).with_name("entities.yaml"),
    dialect_from_url(settings.database_url),
)

app = create_app(entities, settings)
