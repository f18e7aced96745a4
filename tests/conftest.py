from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from usage_engine.core.config import load_config
from usage_engine.storage import database
from usage_engine.storage import models  # noqa: F401


@pytest.fixture(autouse=True)
def in_memory_db(monkeypatch):
    """Point every ``session_scope`` at an isolated in-memory database."""

    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    TestingSession = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )
    database.Base.metadata.create_all(engine)
    monkeypatch.setattr(database, "SessionLocal", TestingSession)

    yield engine

    engine.dispose()


@pytest.fixture(autouse=True)
def default_config():
    load_config.cache_clear()
    yield
    load_config.cache_clear()
