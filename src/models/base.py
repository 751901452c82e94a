"""
Base SQLAlchemy configuration and utilities for Tether models.
"""

import os
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, JSON
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.types import TypeDecorator


class JSONType(TypeDecorator):
    """Cross-database JSON type that works with both PostgreSQL and SQLite.

    Uses JSONB on PostgreSQL for performance, falls back to JSON on SQLite.
    """
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import JSONB
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Interpret a stored datetime as UTC.

    SQLite hands back naive datetimes even for timezone-aware columns, so
    naive values are tagged as UTC rather than converted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value) -> Optional[datetime]:
    """Parse a datetime or ISO-8601 string into an aware UTC datetime.

    Accepts a trailing ``Z``. Returns None for empty or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if not isinstance(value, str):
        return None

    raw = value.strip()
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(raw))
    except ValueError:
        return None


# Database URL from environment or default to a local SQLite file
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./tether.db")

if DATABASE_URL.startswith("postgresql://"):
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+psycopg2://", 1)


def get_engine(database_url: str | None = None):
    """Create the SQLAlchemy engine.

    SQLite engines allow cross-thread use (FastAPI runs sync routes in a
    worker pool); other backends get a pre-pinged, recycled pool.
    """
    url = database_url or DATABASE_URL
    echo = os.getenv("SQL_ECHO", "false").lower() == "true"

    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False}, echo=echo)

    return create_engine(
        url,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
        echo=echo,
    )


_SessionLocal = None


def get_session_factory(engine=None):
    """Session factory bound to ``engine``, or the process-wide default.

    Sessions keep loaded attributes after commit so services can map rows
    to read schemas once the session is closed.
    """
    global _SessionLocal

    if engine is not None:
        return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=get_engine(),
        )
    return _SessionLocal
