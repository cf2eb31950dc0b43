"""Database session management with context manager pattern.

Two entry points:

- ``db_session()`` for reads and for callers that manage commits themselves.
- ``transaction()`` for the ledger's atomic writes: it commits on success,
  rolls back on any exception and translates SQLAlchemy errors into the
  feeledger storage hierarchy, so callers only ever see
  :class:`~feeledger.exceptions.TransientStorageError` (safe to resubmit) or
  :class:`~feeledger.exceptions.DatabaseIntegrityError`.

Usage:
    with db_session() as db:
        student = db.get(Student, 1)

    with transaction() as db:
        db.add(Balance(...))
        # committed on exit
"""

from collections.abc import Callable, Generator
from contextlib import contextmanager

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session

from feeledger.exceptions import DatabaseIntegrityError, TransientStorageError, wrap_exception
from feeledger.utils.logging import get_logger

logger = get_logger(__name__)

SessionFactory = Callable[[], Session]


def _open_session(session_factory: SessionFactory | None) -> Session:
    if session_factory is not None:
        return session_factory()

    from feeledger.storage.database.base import SessionLocal, get_session

    if SessionLocal is None:
        raise RuntimeError(
            "Database not initialized. Call init_db() first or configure DATABASE_URL."
        )
    return get_session()


@contextmanager
def db_session(session_factory: SessionFactory | None = None) -> Generator[Session, None, None]:
    """Context manager for database sessions with automatic cleanup.

    The session is rolled back on exception and always closed on exit. You
    must call ``db.commit()`` yourself to persist changes.

    Raises:
        RuntimeError: If database not initialized
    """
    db = _open_session(session_factory)
    try:
        logger.debug("db_session_created", session_id=id(db))
        yield db
    except Exception as e:
        logger.error(
            "db_session_error_rollback",
            error=str(e),
            error_type=type(e).__name__,
            session_id=id(db),
        )
        db.rollback()
        raise
    finally:
        logger.debug("db_session_closed", session_id=id(db))
        db.close()


def translate_storage_error(error: DBAPIError, operation: str | None = None) -> Exception:
    """Map a SQLAlchemy error onto the feeledger storage hierarchy.

    Lock timeouts and dropped connections are transient; constraint
    violations are integrity errors. Anything else is returned unchanged.
    """
    if isinstance(error, IntegrityError):
        return wrap_exception(
            error,
            "Database integrity constraint violated",
            exception_class=DatabaseIntegrityError,
            operation=operation,
        )
    if isinstance(error, OperationalError) or error.connection_invalidated:
        return wrap_exception(
            error,
            "Storage temporarily unavailable, the operation was rolled back",
            exception_class=TransientStorageError,
            operation=operation,
        )
    return error


@contextmanager
def transaction(
    session_factory: SessionFactory | None = None,
    *,
    operation: str | None = None,
) -> Generator[Session, None, None]:
    """Run the block as one atomic unit of work.

    Commits when the block exits normally. On any exception (including a
    failing commit) the whole unit is rolled back, so no partial effect is
    ever visible.

    Raises:
        TransientStorageError: Lock timeout or lost connection; resubmit the operation
        DatabaseIntegrityError: A constraint rejected the write
    """
    db = _open_session(session_factory)
    try:
        yield db
        db.commit()
    except DBAPIError as e:
        db.rollback()
        translated = translate_storage_error(e, operation)
        logger.warning(
            "transaction_rolled_back",
            operation=operation,
            error_type=type(e).__name__,
            translated_to=type(translated).__name__,
        )
        if translated is e:
            raise
        raise translated from e
    except Exception as e:
        logger.debug(
            "transaction_aborted",
            operation=operation,
            error_type=type(e).__name__,
            error=str(e),
        )
        db.rollback()
        raise
    finally:
        db.close()
