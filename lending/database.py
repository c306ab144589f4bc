import logging
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker, declarative_base
from sqlalchemy.orm.exc import StaleDataError

from lending.config import DATABASE_URL
from lending.errors import ConflictError


logger = logging.getLogger(__name__)

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if "sqlite" in DATABASE_URL else {},
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """
    Dependency function that provides a database session.

    This generator function:
    1. Creates a new SQLAlchemy session
    2. Yields it to the caller (FastAPI endpoint)
    3. Ensures the session is closed after use (in finally block)

    Anything left uncommitted when the session closes is rolled back.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def unit_of_work(db: Session):
    """
    Run a block of repository writes as one transaction.

    Commits when the block finishes, rolls back when it raises. A stale
    version counter on any flushed row means another transaction changed it
    since it was loaded; that surfaces as ConflictError so callers see one
    error kind for every lost race.
    """
    try:
        yield db
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        logger.warning("Rolled back unit of work after concurrent update: %s", exc)
        raise ConflictError(
            "The record was modified by another request, retry the operation"
        ) from exc
    except Exception:
        db.rollback()
        raise
