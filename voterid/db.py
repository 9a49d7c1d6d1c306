"""
SQLite plumbing shared by the off-chain store and the reference ledger.

Connections are thread-local and reused within a thread. Writes go through
``transaction()``, which takes the database write lock up front
(``BEGIN IMMEDIATE``) so that check-then-write sequences inside it are
serialized across threads and processes.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List

from .errors import StoreUnavailable

BUSY_TIMEOUT_SECONDS = 30.0


class Database:
    """A SQLite file with thread-local connections."""

    def __init__(self, path: str):
        self.path = Path(path)
        self._local = threading.local()
        self._all: List[sqlite3.Connection] = []
        self._all_lock = threading.Lock()

    def connection(self) -> sqlite3.Connection:
        """
        Get a thread-local database connection.
        Connections are reused within the same thread for performance.
        """
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(
                    str(self.path),
                    timeout=BUSY_TIMEOUT_SECONDS,
                    check_same_thread=False,
                    isolation_level=None,
                )
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=NORMAL;")
                conn.execute("PRAGMA temp_store=MEMORY;")
                conn.execute("PRAGMA foreign_keys=ON;")
            except sqlite3.OperationalError as e:
                raise StoreUnavailable(f"cannot open {self.path}: {e}") from e
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._all_lock:
                self._all.append(conn)
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for write transactions.
        Commits on success, rolls back on failure.
        """
        conn = self.connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            raise StoreUnavailable(f"cannot lock {self.path}: {e}") from e
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.OperationalError as e:
            self._rollback(conn)
            raise StoreUnavailable(str(e)) from e
        except BaseException:
            self._rollback(conn)
            raise

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        # a failed COMMIT may already have ended the transaction
        try:
            conn.execute("ROLLBACK")
        except sqlite3.OperationalError:
            if conn.in_transaction:
                raise

    def query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            return self.connection().execute(sql, params).fetchall()
        except sqlite3.OperationalError as e:
            raise StoreUnavailable(str(e)) from e

    def query_one(self, sql: str, params: tuple = ()):
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def close(self) -> None:
        """Close every connection opened through this instance."""
        with self._all_lock:
            for conn in self._all:
                conn.close()
            self._all.clear()
        self._local = threading.local()
