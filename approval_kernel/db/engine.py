"""
Module: approval_kernel.db.engine
Responsibility: Engine and session-factory lifecycle, and the transactional
    scope every service call runs in.
Architecture position: Kernel > DB.  May import from db/base.py and
    db/immutability.py.  MUST NOT import from services/, domain/, or outer
    layers (create_tables imports models to populate the metadata).

Invariants enforced:
    - PostgreSQL runs at READ COMMITTED; the orchestrator takes an explicit
      row lock (SELECT ... FOR UPDATE) on the invoice it transitions.
    - SQLite has no row locks.  Its connections may cross threads and wait
      on a busy database instead of failing; callers serialize per key.
    - session_scope() commits on success and rolls back on any exception.
      A failed commit surfaces as PersistenceFailureError, never as a raw
      driver error.
    - Sessions do not expire on commit, so DTOs built after commit are safe.

Failure modes:
    - RuntimeError from get_engine()/get_session_factory() before
      init_engine_from_url().
    - PersistenceFailureError when the commit itself fails.
"""

from contextlib import contextmanager
from typing import Any, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from approval_kernel.exceptions import PersistenceFailureError
from approval_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

SQLITE_BUSY_TIMEOUT_SECONDS = 30

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _engine_options(
    database_url: str,
    pool_size: int,
    max_overflow: int,
    pool_pre_ping: bool,
) -> dict[str, Any]:
    if database_url.startswith("sqlite"):
        # Pool sizing does not apply to the SQLite pool
        return {
            "connect_args": {
                "check_same_thread": False,
                "timeout": SQLITE_BUSY_TIMEOUT_SECONDS,
            },
        }
    return {
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_pre_ping": pool_pre_ping,
        "isolation_level": "READ COMMITTED",
    }


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
) -> Engine:
    """
    Create the process-wide engine and session factory.

    A second call replaces the first (the old engine is not disposed; call
    reset_engine() for that).

    Args:
        database_url: ``postgresql://...`` or ``sqlite:///path``.
        echo: Log every SQL statement.
        pool_size, max_overflow, pool_pre_ping: PostgreSQL pool settings.
    """
    global _engine, _session_factory

    _engine = create_engine(
        database_url,
        echo=echo,
        **_engine_options(database_url, pool_size, max_overflow, pool_pre_ping),
    )
    _session_factory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": _engine.dialect.name, "echo": echo},
    )
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """The factory services open their sessions from (one per call)."""
    if _session_factory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _session_factory


@contextmanager
def session_scope(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """
    One transaction: commit on normal exit, roll back and re-raise on error.

    Usage:
        with session_scope(factory) as session:
            SqlAlchemyStore(session).upsert(...)
    """
    session = (session_factory or get_session_factory())()
    try:
        yield session
        try:
            session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceFailureError("commit", None, str(exc)) from exc
    except Exception:
        session.rollback()
        logger.debug("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables(engine: Engine | None = None) -> None:
    """Create the schema and register the audit immutability listeners."""
    from approval_kernel.db.base import Base
    from approval_kernel.db.immutability import register_immutability_listeners
    import approval_kernel.models  # noqa: F401  populates Base.metadata

    Base.metadata.create_all(engine or get_engine())
    register_immutability_listeners()


def drop_tables(engine: Engine | None = None) -> None:
    """Drop the schema.  Tests and local resets only."""
    from approval_kernel.db.base import Base
    import approval_kernel.models  # noqa: F401

    Base.metadata.drop_all(engine or get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _session_factory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
