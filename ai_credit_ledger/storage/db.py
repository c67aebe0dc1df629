"""
Database connection management.

Provides SQLite connections and write transactions for the ledger.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from ai_credit_ledger.core.errors import StorageUnavailable

DEFAULT_DB_PATH = "credit_ledger.db"
DEFAULT_BUSY_TIMEOUT = 30.0


def get_connection(
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = DEFAULT_BUSY_TIMEOUT
) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    The connection runs in autocommit mode; multi-statement writes go
    through ``immediate_transaction``. ``timeout`` is the busy timeout
    concurrent writers wait for before failing.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def open_connection(
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = DEFAULT_BUSY_TIMEOUT
) -> Iterator[sqlite3.Connection]:
    """Yield a connection and close it afterwards.

    Constraint violations propagate unchanged so callers can act on them.
    Any other SQLite failure is raised as StorageUnavailable.
    """
    try:
        conn = get_connection(db_path, timeout)
    except sqlite3.Error as e:
        raise StorageUnavailable(f"Cannot open database {db_path}: {e}") from e
    try:
        yield conn
    except sqlite3.IntegrityError:
        raise
    except sqlite3.Error as e:
        raise StorageUnavailable(f"Storage error: {e}") from e
    finally:
        conn.close()


@contextmanager
def immediate_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside ``BEGIN IMMEDIATE``.

    The write lock is taken up front so a read inside the block cannot be
    invalidated by another writer before this transaction commits.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()
