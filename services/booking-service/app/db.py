from __future__ import annotations

import os
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from .models import Base

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./booking.db")


@lru_cache(maxsize=8)
def _engine(url: str) -> Engine:
    eng = create_engine(url, pool_pre_ping=True)
    ensure_schema(eng)
    return eng


def get_engine() -> Engine:
    return _engine(DATABASE_URL)


def ensure_schema(engine: Engine) -> None:
    # No Alembic in this service; create_all() only adds missing tables.
    Base.metadata.create_all(engine)


def session(engine: Engine) -> Session:
    # This service commonly returns ORM objects (or reads their fields) after
    # committing inside a short-lived session context. Prevent attributes from
    # being expired on commit to avoid DetachedInstanceError.
    return Session(engine, expire_on_commit=False)
