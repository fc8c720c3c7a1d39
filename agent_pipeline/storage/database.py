"""Database connection and session management."""

import os
from typing import Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

DEFAULT_DATABASE_URL = "sqlite:///./agent_pipeline.db"

# Base class for all database models
Base = declarative_base()

_engine: Optional[Engine] = None
SessionLocal = sessionmaker(autocommit=False, autoflush=False)


def _build_engine(database_url: str, echo: bool = False) -> Engine:
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo
        )
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


def configure_database(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """(Re)bind the engine and session factory to a database URL."""
    global _engine

    if database_url is None:
        database_url = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)

    if _engine is not None:
        _engine.dispose()

    _engine = _build_engine(database_url, echo=echo)
    SessionLocal.configure(bind=_engine)
    return _engine


def get_database_engine() -> Engine:
    """Get the configured engine, configuring the default one on first use."""
    if _engine is None:
        return configure_database()
    return _engine


def reset_database_engine():
    """Dispose of the global database engine (mainly for testing)."""
    global _engine
    if _engine:
        _engine.dispose()
    _engine = None


def get_db():
    """Dependency to get database session."""
    get_database_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables():
    """Create all database tables."""
    from . import models  # noqa: F401  (registers the tables on Base.metadata)
    Base.metadata.create_all(bind=get_database_engine())
