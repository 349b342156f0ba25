"""Base model configuration."""
from datetime import UTC, datetime
from typing import Optional

from sqlalchemy import Column, DateTime, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from levelup.config import DatabaseSettings

# Create declarative base class
Base = declarative_base()


class TimestampMixin:
    """Mixin to add timestamp columns to models."""
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


def create_db_engine(database: Optional[DatabaseSettings] = None) -> Engine:
    """Create a SQLAlchemy engine for the configured database."""
    database = database or DatabaseSettings()
    return create_engine(database.url, echo=database.echo)


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to the engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Initialize database."""
    # Import models so they register with the metadata
    from levelup.models import models  # noqa: F401

    Base.metadata.create_all(bind=engine)  # Create tables if they don't exist
