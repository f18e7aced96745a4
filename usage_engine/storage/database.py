"""Database session and base model setup."""

from __future__ import annotations

import os
import pathlib
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from usage_engine.core.exceptions import StoreUnavailableError

BASE_DIR = pathlib.Path(__file__).resolve().parent.parent
DB_PATH = BASE_DIR.parent / "data" / "usage_engine.db"

DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DB_PATH}")

if DATABASE_URL.startswith("sqlite"):
    if DATABASE_URL == f"sqlite:///{DB_PATH}":
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    _connect_args = {"check_same_thread": False, "timeout": 30}
else:
    _connect_args = {}

engine = create_engine(
    DATABASE_URL,
    connect_args=_connect_args,
    future=True,
)
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)


class Base(DeclarativeBase):
    pass


def init_db() -> None:
    """Create tables if they do not already exist."""
    # Import for side effect: registers every table on Base.metadata.
    from usage_engine.storage import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def as_utc(value: datetime | None) -> datetime | None:
    """Label naive timestamps (SQLite drops tzinfo) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@contextmanager
def session_scope():
    """Provide a transactional scope around a series of operations.

    Connection-level failures surface as ``StoreUnavailableError`` so callers
    can tell a transient outage apart from a bad record.
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except (OperationalError, InterfaceError, DisconnectionError) as exc:
        session.rollback()
        raise StoreUnavailableError(str(getattr(exc, "orig", None) or exc)) from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
