"""
Database Connection and Transactions
====================================

SQLite storage for blueprints, macro nodes, artifacts and node executions,
using SQLAlchemy.

Every write that changes a node's status together with one of its
executions goes through :func:`run_in_transaction`, so a reader never sees a
node marked ``running`` without a matching ``running`` execution row.

Usage:
    engine, SessionLocal = create_database(Path(".clawui"))
    with SessionLocal() as session:
        ...
"""
from __future__ import annotations

import logging
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from fastapi import Request
from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

Base = declarative_base()

_logger = logging.getLogger(__name__)

T = TypeVar("T")

DATABASE_FILENAME = "clawui.db"


def _utc_now() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


# =============================================================================
# Transaction errors
# =============================================================================

class TransactionError(Exception):
    """Base exception for database transaction errors."""
    pass


class ConcurrentModificationError(TransactionError):
    """
    Raised when a write collides with a concurrent insert or update.

    The session is rolled back before this is raised, so no partial
    node/execution state is left behind.
    """

    def __init__(
        self,
        entity_id: str,
        operation: str,
        original_error: Exception | None = None,
        message: str | None = None,
    ):
        self.entity_id = entity_id
        self.operation = operation
        self.original_error = original_error

        if message is None:
            message = (
                f"Concurrent modification detected for {entity_id} "
                f"during {operation}: {original_error}"
            )

        super().__init__(message)


class DatabaseLockError(TransactionError):
    """Raised when the SQLite write lock stays busy through every retry."""

    def __init__(
        self,
        entity_id: str,
        operation: str,
        attempts: int,
        message: str | None = None,
    ):
        self.entity_id = entity_id
        self.operation = operation
        self.attempts = attempts

        if message is None:
            message = (
                f"Database stayed locked during {operation} for {entity_id} "
                f"after {attempts} attempts"
            )

        super().__init__(message)


def _is_lock_error(error: OperationalError) -> bool:
    error_msg = str(error.orig) if hasattr(error, "orig") else str(error)
    return "database is locked" in error_msg or "SQLITE_BUSY" in error_msg


def run_in_transaction(
    session: Session,
    operation: str,
    entity_id: str,
    apply: Callable[[Session], T],
    max_retries: int = 3,
) -> T:
    """
    Apply a group of writes and commit them as one transaction.

    ``apply`` is called with the session and must perform all of its changes
    through it. On a busy database the session is rolled back and ``apply``
    is replayed from scratch, so it must not depend on state from a previous
    attempt.

    Args:
        session: SQLAlchemy session
        operation: Description of the operation (for logs and errors)
        entity_id: ID of the node or execution being written (for errors)
        apply: Callable performing the writes; its return value is returned
        max_retries: Maximum number of commit attempts

    Raises:
        ConcurrentModificationError: On integrity violations
        DatabaseLockError: If the database stays locked
        TransactionError: On any other database failure
    """
    for attempt in range(max_retries):
        try:
            result = apply(session)
            session.commit()
            return result
        except IntegrityError as e:
            session.rollback()
            raise ConcurrentModificationError(
                entity_id=entity_id,
                operation=operation,
                original_error=e,
            ) from e
        except OperationalError as e:
            session.rollback()
            if _is_lock_error(e):
                if attempt < max_retries - 1:
                    _logger.warning(
                        "Database locked during %s for %s (attempt %d/%d), retrying...",
                        operation, entity_id, attempt + 1, max_retries,
                    )
                    time.sleep(0.1 * (attempt + 1))
                    continue
                raise DatabaseLockError(entity_id, operation, max_retries) from e
            raise TransactionError(
                f"Database operation failed during {operation} for {entity_id}: {e}"
            ) from e
        except Exception:
            session.rollback()
            raise

    raise DatabaseLockError(entity_id, operation, max_retries)


# =============================================================================
# Engine setup
# =============================================================================

def get_database_path(db_dir: Path) -> Path:
    """Return the path to the SQLite database inside ``db_dir``."""
    return db_dir / DATABASE_FILENAME


def get_database_url(db_dir: Path) -> str:
    """Return the SQLAlchemy database URL for ``db_dir``.

    Uses POSIX-style paths (forward slashes) for cross-platform compatibility.
    """
    db_path = get_database_path(db_dir)
    return f"sqlite:///{db_path.as_posix()}"


def _is_network_path(path: Path) -> bool:
    """Detect if path is on a network filesystem.

    WAL mode doesn't work reliably on NFS/SMB mounts, so those fall back to
    the DELETE journal mode.
    """
    path_str = str(path.resolve())

    if sys.platform == "win32":
        return path_str.startswith("\\\\")

    try:
        with open("/proc/mounts", "r") as f:
            for line in f.read().splitlines():
                parts = line.split()
                if len(parts) >= 3 and path_str.startswith(parts[1]):
                    if parts[2] in ("nfs", "nfs4", "cifs", "smbfs", "fuse.sshfs"):
                        return True
    except (FileNotFoundError, PermissionError):
        pass

    return False


def _enable_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_database(db_dir: Path) -> tuple:
    """
    Create database and return engine + session maker.

    Args:
        db_dir: Directory holding the database file (created if missing)

    Returns:
        Tuple of (engine, SessionLocal)
    """
    # Importing the models registers their tables on Base.metadata
    from clawui import plan_models  # noqa: F401

    db_dir.mkdir(parents=True, exist_ok=True)
    engine = create_engine(get_database_url(db_dir), connect_args={
        "check_same_thread": False,
        "timeout": 30,  # Wait up to 30s for locks
    })
    event.listen(engine, "connect", _enable_foreign_keys)
    Base.metadata.create_all(bind=engine)

    journal_mode = "DELETE" if _is_network_path(db_dir) else "WAL"
    with engine.connect() as conn:
        conn.execute(text(f"PRAGMA journal_mode={journal_mode}"))
        conn.execute(text("PRAGMA busy_timeout=30000"))
        conn.commit()

    _logger.info("Database ready at %s (journal_mode=%s)", get_database_path(db_dir), journal_mode)

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    return engine, SessionLocal


def get_db(request: Request) -> Iterator[Session]:
    """
    Dependency for FastAPI to get database session.

    The session maker lives on ``app.state`` (set during startup), so tests
    can build an app around an in-memory engine.
    """
    session_maker = getattr(request.app.state, "session_maker", None)
    if session_maker is None:
        raise RuntimeError("Database not initialized. Set app.state.session_maker first.")

    db = session_maker()
    try:
        yield db
    finally:
        db.close()
