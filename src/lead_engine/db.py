from __future__ import annotations

from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from .config import load_config


class Base(DeclarativeBase):
    pass


def _connect_args(statement_timeout_ms: int) -> dict:
    # A stuck statement aborts the transaction instead of blocking the request.
    if statement_timeout_ms <= 0:
        return {}
    return {"options": f"-c statement_timeout={statement_timeout_ms}"}


_config = load_config()
_engine = create_engine(
    _config.database_url,
    pool_pre_ping=True,
    pool_recycle=3600,
    pool_timeout=30,
    connect_args=_connect_args(_config.db_statement_timeout_ms),
)
SessionLocal = sessionmaker(bind=_engine, expire_on_commit=False)


@contextmanager
def session_scope():
    """One unit of work: commit on success, roll back everything on any error."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
