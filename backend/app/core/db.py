from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker, declarative_base

from .config import get_settings

settings = get_settings()

_db_url = make_url(str(settings.DATABASE_URL))
# Local dev runs against SQLite; request handlers and Celery threads share it
_connect_args = {"check_same_thread": False} if _db_url.get_backend_name() == "sqlite" else {}

engine = create_engine(_db_url, pool_pre_ping=True, connect_args=_connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
Base = declarative_base()


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """
    Session for work outside a request (Celery tasks).

    Rolls back on error and always closes; committing is left to the caller
    so services keep control of their transaction boundaries.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
