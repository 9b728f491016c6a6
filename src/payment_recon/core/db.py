from __future__ import annotations

from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import Session, sessionmaker

from payment_recon.core.config import settings

_url = make_url(settings.database_url)
IS_SQLITE = _url.drivername.startswith("sqlite")

_connect_args: dict = {}
if IS_SQLITE:
    # Verification and ingestion can run on separate threads against the same file.
    _connect_args = {"check_same_thread": False, "timeout": settings.sqlite_busy_timeout_seconds}

engine = create_engine(settings.database_url, pool_pre_ping=True, connect_args=_connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def db_session() -> Generator[Session, None, None]:
    """Request-scoped session. Services commit their own units of work."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for work outside a request (Celery tasks, bootstrap)."""
    session = SessionLocal()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
