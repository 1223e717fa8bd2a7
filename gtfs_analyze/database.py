import os
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from gtfs_analyze.models import Base

# Load environment variables before reading DATABASE_URL
load_dotenv()

DEFAULT_DATABASE_URL = "sqlite:///gtfs.db"


def get_database_url() -> str:
    return os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL


def get_engine(database_url: Optional[str] = None) -> Engine:
    """
    Create and return a SQLAlchemy engine

    Connection pooling is only configured for server databases (e.g. PostgreSQL):
    - pool_pre_ping: Verify connections before using (handle stale connections)
    - pool_size: Number of connections to maintain in pool
    - max_overflow: Additional connections allowed when pool is full
    - pool_recycle: Recycle connections after 1 hour
    """
    url = database_url or get_database_url()
    if url.startswith("sqlite"):
        return create_engine(url, echo=False)

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        echo=False,  # Set to True for SQL debugging
    )


def init_db(engine: Optional[Engine] = None) -> Engine:
    """Initialize the database by creating all tables"""
    if engine is None:
        engine = get_engine()

    Base.metadata.create_all(bind=engine)
    return engine


def get_session(engine: Optional[Engine] = None) -> Session:
    """Get a new database session"""
    if engine is None:
        engine = get_engine()
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return SessionLocal()


def get_db():
    """FastAPI dependency yielding a database session"""
    db = get_session()
    try:
        yield db
    finally:
        db.close()
