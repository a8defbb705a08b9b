import logging
from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from common.error_handling import StoreError
from common.settings import settings

logger = logging.getLogger(__name__)

def make_engine(url: str = None):
    url = url or settings.database_url
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True, isolation_level="READ COMMITTED")

engine = make_engine()
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)

@contextmanager
def atomic(db: Session, operation: str):
    """Commit everything staged in the block, or nothing.

    Store failures surface as StoreError; any other exception rolls back and propagates unchanged.
    """
    try:
        yield db
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"❌ {operation} failed, rolled back: {e}")
        raise StoreError(f"Could not {operation}", original_error=e) from e
    except Exception:
        db.rollback()
        raise
