"""
Base database model and session management
"""
import os
from typing import Any, Dict, Iterable

from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

from kpi_coach.config import get_settings
from kpi_coach.utils.logger import log

settings = get_settings()

# Resolve relative SQLite paths to absolute so cwd changes can't break it
_db_url = settings.database_url
if _db_url.startswith("sqlite:///") and not _db_url.startswith("sqlite:////"):
    rel_path = _db_url[len("sqlite:///"):]
    if rel_path and rel_path != ":memory:":
        _db_url = "sqlite:///" + os.path.abspath(rel_path)

# Create database engine
if _db_url in ("sqlite://", "sqlite:///:memory:"):
    # In-memory database: every session must share the one connection
    engine = create_engine(
        _db_url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
elif _db_url.startswith("sqlite"):
    engine = create_engine(
        _db_url,
        connect_args={"check_same_thread": False, "timeout": 60},
        poolclass=NullPool,
        pool_pre_ping=True
    )
else:
    engine = create_engine(
        _db_url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        pool_recycle=300,
    )

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for all models
Base = declarative_base()


def get_db():
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _dialect_insert(db: Session, model):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"ON CONFLICT is not supported for dialect '{dialect}'")


def insert_ignore(db: Session, model, values: Dict[str, Any]) -> bool:
    """
    INSERT ... ON CONFLICT DO NOTHING.

    The unique constraint decides whether the row is new, so concurrent
    writers racing on the same key produce exactly one row. Returns True
    when this call wrote the row.
    """
    stmt = _dialect_insert(db, model).values(**values).on_conflict_do_nothing()
    result = db.execute(stmt)
    return result.rowcount == 1


def upsert(
    db: Session,
    model,
    values: Dict[str, Any],
    key_columns: Iterable[str],
    update_columns: Iterable[str],
) -> None:
    """INSERT ... ON CONFLICT (key_columns) DO UPDATE SET update_columns."""
    stmt = _dialect_insert(db, model).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(key_columns),
        set_={col: stmt.excluded[col] for col in update_columns},
    )
    db.execute(stmt)


def init_db():
    """Initialize database tables."""
    # Register every model on the metadata before create_all
    import kpi_coach.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    log.info(f"Database ready ({engine.dialect.name})")
