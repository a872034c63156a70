"""
Database engine and session helpers.
"""
from sqlmodel import Session, SQLModel, create_engine
from sqlalchemy.pool import StaticPool

from .config import DATABASE_URL
from .logger import logger


def is_memory_url(url: str) -> bool:
    return url == "sqlite://" or ":memory:" in url or "mode=memory" in url


def build_engine(url: str = DATABASE_URL):
    """
    In-memory SQLite shares one connection so the database survives between
    sessions. File SQLite keeps the default pool, one connection per thread.
    """
    if url.startswith("sqlite"):
        if is_memory_url(url):
            return create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, echo=False)


engine = build_engine()


def create_db_and_tables(bind=None):
    """Create database tables on startup."""
    # Registers the table classes on SQLModel.metadata
    from . import models  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)
    logger.info("Database schema created/verified")


def get_session():
    """Dependency to get database session."""
    with Session(engine) as session:
        yield session
