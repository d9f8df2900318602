import datetime as dt
import os
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.schema import MetaData

METADATA = MetaData()

_ENGINE: Optional[Engine] = None


def normalize_db_url(database_url: str) -> str:
    # Force psycopg driver instead of SQLAlchemy's psycopg2 default.
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return database_url


def get_engine() -> Engine:
    global _ENGINE
    if _ENGINE is None:
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL not set")
        _ENGINE = create_engine(normalize_db_url(database_url), pool_pre_ping=True)
    return _ENGINE


def ensure_tables(engine: Engine) -> None:
    # Table modules register themselves on METADATA at import time.
    from app.services import match_store, patient_store, trial_store  # noqa: F401

    METADATA.create_all(engine, checkfirst=True)


def utcnow() -> dt.datetime:
    """Naive UTC timestamp, matching the TIMESTAMP columns."""
    return dt.datetime.now(dt.UTC).replace(tzinfo=None)


def dialect_insert(engine: Engine):
    """Insert construct with ON CONFLICT support for the engine's dialect."""
    if engine.dialect.name == "postgresql":
        return postgresql.insert
    if engine.dialect.name == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"unsupported database dialect: {engine.dialect.name}")
