"""Engine and session factory for the exchange database."""

from __future__ import annotations

from collections.abc import Generator, Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from activity_exchange.core.settings import settings


class Base(DeclarativeBase):
    """Declarative base shared by all ORM models."""


# Ensure model modules are imported so that metadata is populated when create_all runs.
import activity_exchange.models  # noqa: E402,F401


def build_engine(url: str, **options: Any) -> Engine:
    """Create an engine for ``url``.

    SQLite connections are shared between the web handlers and the task
    worker, so they are opened with ``check_same_thread`` disabled.

    Args:
        url: SQLAlchemy database URL
        **options: Extra keyword arguments for ``create_engine``

    Returns:
        The configured engine
    """
    options.setdefault("pool_pre_ping", True)
    options.setdefault("echo", settings.sql_debug)
    if make_url(url).get_backend_name() == "sqlite":
        connect_args = dict(options.pop("connect_args", None) or {})
        connect_args.setdefault("check_same_thread", False)
        options["connect_args"] = connect_args
    return create_engine(url, **options)


engine = build_engine(settings.effective_database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for dependency injection."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Open a session for one unit of background work, rolled back on database errors."""
    db = SessionLocal()
    try:
        yield db
    except SQLAlchemyError:
        db.rollback()
        raise
    finally:
        db.close()
