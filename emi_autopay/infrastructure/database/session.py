"""Database engine, session factory and schema bootstrap"""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from emi_autopay.config import settings
from emi_autopay.infrastructure.database.models import Base


def build_engine(url: str) -> Engine:
    """Pooled engine for Postgres; SQLite (local runs, tests) gets a plain one"""
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    # Batch runs open one session per user alongside API traffic
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_recycle=3600,
    )


engine = build_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables(bind: Engine = engine) -> None:
    """Create missing tables. Migrations are run out of band in production."""
    Base.metadata.create_all(bind=bind)


def get_db() -> Session:
    """Per-request session; endpoints and the payment engine own the commits"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
