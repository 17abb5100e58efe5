"""SQLAlchemy engine, session, and declarative base setup."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from dattrain.config import get_settings


class Base(DeclarativeBase):
    """Declarative base class for all SQLAlchemy models."""


def create_db_engine(database_url: str | None = None) -> Engine:
    """Create an engine, making sure a SQLite file's directory exists."""
    url = make_url(database_url or get_settings().database_url)
    if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, future=True)


def create_session_factory(database_url: str | None = None, *, create_schema: bool = True) -> sessionmaker[Session]:
    """Build a session factory bound to a fresh engine, creating tables if asked."""
    engine = create_db_engine(database_url)
    if create_schema:
        import dattrain.models  # noqa: F401

        Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
