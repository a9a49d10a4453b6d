from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from lms_import.core.config import get_settings
from lms_import.db.base import Base

_engine = None
SessionLocal: sessionmaker | None = None


def _ensure_engine() -> None:
    global _engine, SessionLocal
    if _engine is not None and SessionLocal is not None:
        return

    settings = get_settings()
    connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}
    _engine = create_engine(
        settings.database_url,
        echo=False,
        future=True,
        connect_args=connect_args,
    )
    SessionLocal = sessionmaker(bind=_engine, autoflush=False, autocommit=False, future=True)


def init_db() -> None:
    # Registers every mapped table on Base.metadata.
    import lms_import.models  # noqa: F401

    _ensure_engine()
    assert _engine is not None
    Base.metadata.create_all(bind=_engine)


def reset_engine() -> None:
    global _engine, SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    SessionLocal = None


def get_session() -> Iterator[Session]:
    _ensure_engine()
    assert SessionLocal is not None
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for work that outlives a request, such as detached continuations.

    Unlike ``get_session`` nothing is committed on exit: the caller commits
    what it means to keep and anything still pending is rolled back.
    """
    _ensure_engine()
    assert SessionLocal is not None
    session: Session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
