import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .errors import (
    ConcurrencyConflict, ConstraintError, LedgerError, StorageError
)

logger = logging.getLogger(__name__)

Base = declarative_base()

# PostgreSQL SQLSTATEs for lock_not_available, serialization_failure, deadlock_detected
_CONFLICT_SQLSTATES = {"55P03", "40001", "40P01"}
_CONFLICT_MESSAGES = ("database is locked", "lock timeout", "could not serialize", "deadlock")


class Database:
    """
    Storage handle: owns the engine and the session factory.

    Created once at process start (``create_app``) and disposed at shutdown.
    Components receive sessions from it; nothing reaches for a global engine.
    """

    def __init__(self, url: str, lock_timeout: int = 30, echo: bool = False):
        self.url = url
        connect_args = {}
        if url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": lock_timeout}
        elif url.startswith("postgresql"):
            connect_args = {"options": f"-c lock_timeout={lock_timeout * 1000}"}

        self.engine: Engine = create_engine(url, echo=echo, connect_args=connect_args)
        if url.startswith("sqlite"):
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)

        self.session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_all(self) -> None:
        from . import models  # noqa: F401  registers tables on Base.metadata
        Base.metadata.create_all(bind=self.engine)

    def session(self) -> Session:
        return self.session_factory()

    def dispose(self) -> None:
        self.engine.dispose()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def is_lock_conflict(exc: OperationalError) -> bool:
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in _CONFLICT_SQLSTATES:
        return True
    text = str(orig or exc).lower()
    return any(m in text for m in _CONFLICT_MESSAGES)


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """
    One business operation = one database transaction.

    Commits on success; on any failure rolls back every step already
    performed and re-raises as a ledger error.
    """
    try:
        yield db
        db.commit()
    except LedgerError:
        db.rollback()
        raise
    except IntegrityError as exc:
        db.rollback()
        raise ConstraintError("Invalid reference. The referenced record does not exist or is still in use.") from exc
    except OperationalError as exc:
        db.rollback()
        if is_lock_conflict(exc):
            raise ConcurrencyConflict("Another operation is modifying the same records; retry the request.") from exc
        logger.exception("Database operation failed")
        raise StorageError("Database unavailable") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Database operation failed")
        raise StorageError("Database error") from exc
    except Exception:
        db.rollback()
        raise
