from __future__ import annotations

import logging
from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from shiftwatch.errors import TransientError
from shiftwatch.settings import get_settings

logger = logging.getLogger("shiftwatch.db")


class Base(DeclarativeBase):
    pass


engine = create_engine(get_settings().database_url, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Commit everything done inside the block, or nothing.

    Integrity violations are re-raised for the caller to translate; other
    driver failures become ``TransientError`` since no write survived.
    """
    try:
        yield db
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    except DBAPIError as exc:
        db.rollback()
        logger.warning(
            "unit_of_work_failed",
            extra={"error_type": exc.__class__.__name__, "error": str(exc.orig)},
        )
        raise TransientError() from exc
    except BaseException:
        db.rollback()
        raise
