"""Engine and session helpers for the SQLite store shared by the API and worker processes."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from loguru import logger
from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from ..config import Config

SQLITE_BUSY_TIMEOUT_MS = 5000


class Base(DeclarativeBase):
    pass


def _connect_args(url: str) -> dict[str, object]:
    if url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_MS / 1000}
    return {}


def build_engine(url: Optional[str] = None) -> Engine:
    """Create an engine; SQLite connections get WAL and a busy timeout."""
    url = url or Config.DATABASE_URL
    engine = create_engine(url, connect_args=_connect_args(url))

    if url.startswith("sqlite"):

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
            cursor.close()

    return engine


def init_db(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    from . import tables  # noqa: F401  (registers mappers on Base.metadata)

    Base.metadata.create_all(engine)
    logger.debug(f"[store] schema ready url={engine.url.render_as_string(hide_password=True)}")


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    """Provide a transactional scope: commit on success, roll back on error."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
