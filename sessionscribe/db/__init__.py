"""Database helpers for SessionScribe."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import DatabaseSettings, get_database_settings
from .models import Base, ProcessingRunRecord, RecordingRecord, SessionNoteRecord, TranscriptRecord


def create_db_engine(settings: Optional[DatabaseSettings] = None) -> Engine:
    """Create an engine for ``settings`` (the environment by default)."""

    settings = settings or get_database_settings()
    return create_engine(settings.url, **settings.engine_options())


def initialise_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Context manager yielding a session that commits or rolls back."""

    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "Base",
    "DatabaseSettings",
    "get_database_settings",
    "create_db_engine",
    "initialise_schema",
    "session_factory",
    "session_scope",
    "RecordingRecord",
    "TranscriptRecord",
    "ProcessingRunRecord",
    "SessionNoteRecord",
]
