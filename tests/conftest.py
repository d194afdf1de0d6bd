"""Shared fixtures: a fresh in-memory database per test."""

from datetime import datetime

import pytest

from tag_explorer.db import Database
from tag_explorer.models.stock import Stock


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.init_db()
    yield database
    database.dispose()


@pytest.fixture
def add_stocks(db):
    """Insert stock rows; ``refreshed=True`` stamps last_updated so they are taggable."""
    def _add(*rows, refreshed=True):
        with db.transaction() as session:
            for row in rows:
                values = dict(row)
                if refreshed:
                    values.setdefault("last_updated", datetime.utcnow())
                session.add(Stock(**values))
    return _add


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr("time.sleep", lambda *_, **__: None)
