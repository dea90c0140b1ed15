"""Database configuration and session management."""
import logging
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.services.errors import BrocyError

logger = logging.getLogger(__name__)

SQLALCHEMY_DATABASE_URL = settings.database_url

# Configure engine based on database type
if SQLALCHEMY_DATABASE_URL.startswith("sqlite"):
    # SQLite-specific config
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False}
    )
else:
    # PostgreSQL config (production)
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=5,
        max_overflow=10
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Dependency for FastAPI endpoints to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session):
    """
    Run a unit of work atomically.

    Commits when the block exits cleanly; any exception rolls back every
    write made inside the block and is re-raised to the caller.
    """
    try:
        yield db
        db.commit()
    except (BrocyError, StaleDataError) as exc:
        logger.warning("Transaction rolled back: %s", exc)
        db.rollback()
        raise
    except Exception:
        logger.error("Transaction rolled back", exc_info=True)
        db.rollback()
        raise
