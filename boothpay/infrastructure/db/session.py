# boothpay/infrastructure/db/session.py

import logging
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from boothpay.config import get_settings
from boothpay.domain.exceptions import SettlementConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# PostgreSQL SQLSTATEs worth re-running a serializable transaction for.
_RETRYABLE_SQLSTATES = {"40001", "40P01"}


# -----------------------------
# Engine
# -----------------------------
def build_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(
        database_url,
        echo=False,
        future=True,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


engine: Engine = build_engine(get_settings().database_url)


# -----------------------------
# Base Class for Models
# -----------------------------
class Base(DeclarativeBase):
    pass


# -----------------------------
# Session Factory
# -----------------------------
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
)


# -----------------------------
# Context Managers (Non-FastAPI usage)
# -----------------------------
@contextmanager
def get_db_session(session_factory: sessionmaker = SessionLocal) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def serializable_session(session_factory: sessionmaker = SessionLocal) -> Iterator[Session]:
    """
    Same as get_db_session, but the transaction runs at SERIALIZABLE.
    The isolation level must be set before the first statement.
    """
    session = session_factory()
    try:
        session.connection(execution_options={"isolation_level": "SERIALIZABLE"})
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def is_serialization_failure(exc: DBAPIError) -> bool:
    return getattr(exc.orig, "pgcode", None) in _RETRYABLE_SQLSTATES


def run_serializable(
    session_factory: sessionmaker,
    work: Callable[[Session], T],
    retries: int = 3,
) -> T:
    """
    Run ``work`` in a SERIALIZABLE transaction, re-running it from scratch
    when the database aborts it as a serialization failure.
    ``work`` must be safe to repeat.
    """
    attempts = max(1, retries)
    for attempt in range(1, attempts + 1):
        try:
            with serializable_session(session_factory) as session:
                return work(session)
        except DBAPIError as exc:
            if not is_serialization_failure(exc):
                raise
            logger.warning(
                "Serialization failure (attempt %s/%s). Retrying.",
                attempt,
                attempts,
            )
    raise SettlementConflictError()
