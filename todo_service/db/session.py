from __future__ import annotations

from collections.abc import Generator
from functools import lru_cache

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from todo_service.config import get_settings
from todo_service.db.models import Base


@lru_cache(maxsize=4)
def _engine_for(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Sync handlers run in the threadpool, so connections cross threads.
        connect_args["check_same_thread"] = False
    return create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)


def get_engine() -> Engine:
    return _engine_for(get_settings().database_url)


def init_db() -> None:
    Base.metadata.create_all(get_engine())


def reset_engines() -> None:
    """Forget cached engines (used by tests)."""

    _engine_for.cache_clear()


def get_db() -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
