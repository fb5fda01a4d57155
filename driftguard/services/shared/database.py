"""
SQLAlchemy engine and session factory for DriftGuard services.
The evidence stores, kill-switch service and audit sink all import from here.

DATABASE_URL defaults to the docker-compose PostgreSQL instance.
Override via environment variable for local dev or other environments
(an in-memory "sqlite://" URL is accepted for tests and demos).
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from driftguard.services.shared.config import DATABASE_URL


def _engine_kwargs(url: str) -> dict:
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection so every session sees the same in-memory DB
        return {
            "connect_args": {"check_same_thread": False},
            "poolclass":    StaticPool,
        }
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    # pool_pre_ping=True drops dead connections automatically
    return {
        "pool_pre_ping": True,
        "pool_size":     10,
        "max_overflow":  20,
    }


def make_engine(url: str = DATABASE_URL):
    return create_engine(url, **_engine_kwargs(url))


engine = make_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency: yields a DB session and closes it when done."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_all_tables(bind=None) -> None:
    """Create all ORM tables. Called at service startup."""
    from driftguard.services.shared import models  # noqa: F401 - ensures models are registered
    Base.metadata.create_all(bind=bind or engine)
