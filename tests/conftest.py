import os

os.environ.setdefault("APP_LIMITER_ENABLED", "false")
os.environ.setdefault("APP_OTEL_ENABLED", "false")

import pytest
from sqlalchemy import text

from catalog.config import get_settings
from catalog.db import Database
from catalog.errors import QueryTimeout, StorageError
from catalog.models import Book
from catalog.repository import BookRepository


@pytest.fixture(scope="session")
def database():
    db = Database.from_settings(get_settings())
    try:
        db.ping()
    except (StorageError, QueryTimeout) as exc:
        db.dispose()
        pytest.skip(f"database unavailable: {exc}")
    db.drop_all()
    db.create_all()
    yield db
    db.drop_all()
    db.dispose()


@pytest.fixture()
def repository(database):
    with database.session() as session:
        session.execute(text("TRUNCATE TABLE books RESTART IDENTITY"))
    return BookRepository(database)


@pytest.fixture()
def make_book():
    def factory(**overrides) -> Book:
        fields = {
            "title": "Dune",
            "sales": 100,
            "pages": 412,
            "year": 1965,
            "runtime": 1,
            "genres": ["scifi"],
        }
        fields.update(overrides)
        return Book(**fields)

    return factory
