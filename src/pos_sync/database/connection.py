"""
Database connection and session management.
"""

from contextlib import contextmanager
from typing import Generator

from dotenv import load_dotenv
load_dotenv()

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from pos_sync.utils.config import get_config
from pos_sync.utils.logger import get_logger

logger = get_logger(__name__)


def build_engine(database_url: str, pool_size: int = 10, echo: bool = False) -> Engine:
    """
    Create an engine for ``database_url``.

    SQLite gets ``check_same_thread=False`` instead of pool sizing.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=echo,
        )
    return create_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before using
        echo=echo,
    )


_config = get_config()
engine = build_engine(_config.database_url, _config.db_pool_size, _config.db_echo)

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine
)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for FastAPI to get database session.

    Usage:
        @router.get("/logs")
        def list_logs(db: Session = Depends(get_db)):
            ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """
    Context manager for database session; commits on success.

    Usage:
        with get_db_context() as db:
            repository = IntegrationRepository(db, get_encryptor())
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Engine = None):
    """Initialize database - create all tables."""
    from pos_sync.database.models import Base

    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables created successfully")


def drop_db(bind: Engine = None):
    """Drop all database tables (use with caution!)."""
    from pos_sync.database.models import Base

    logger.warning("Dropping all database tables...")
    Base.metadata.drop_all(bind=bind or engine)
    logger.warning("All database tables dropped")
