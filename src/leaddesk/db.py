"""
SQLite query executor over a bounded connection pool.

The pool never holds more than `max_connections` live connections.
Borrowers beyond that limit wait for a connection to be returned
instead of failing.
"""

import queue
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence

from loguru import logger


Row = Dict[str, Any]


class QueryExecutor(Protocol):
    """Anything that can run a parameterized statement and return rows."""

    def execute_query(self, sql: str, params: Sequence[Any] = ()) -> List[Row]:
        ...


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id TEXT PRIMARY KEY,
        email TEXT UNIQUE NOT NULL,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        role_id INTEGER NOT NULL DEFAULT 4,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        audit_id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        action TEXT NOT NULL,
        category TEXT NOT NULL,
        level TEXT NOT NULL,
        resource TEXT NOT NULL,
        resource_id TEXT,
        details TEXT,
        old_values TEXT,
        new_values TEXT,
        ip_address TEXT NOT NULL,
        user_agent TEXT,
        success INTEGER NOT NULL,
        error_message TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS security_alerts (
        alert_id INTEGER PRIMARY KEY AUTOINCREMENT,
        alert_type TEXT NOT NULL,
        severity TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT NOT NULL,
        source TEXT NOT NULL,
        count INTEGER NOT NULL,
        first_seen TEXT NOT NULL,
        last_seen TEXT NOT NULL,
        resolved INTEGER NOT NULL DEFAULT 0,
        resolution TEXT,
        resolved_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_action_created ON audit_log(action, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_audit_ip ON audit_log(ip_address)",
    "CREATE INDEX IF NOT EXISTS idx_audit_user ON audit_log(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_alerts_type_source ON security_alerts(alert_type, source, resolved)",
)


class Database:
    """
    Thread-safe SQLite executor.

    Connections are created lazily up to `max_connections` and recycled
    through a queue. A semaphore bounds how many are borrowed at once.
    """

    def __init__(self, db_path: Path, max_connections: int = 10, timeout: Optional[float] = None):
        """
        Initialize database.

        Args:
            db_path: Path to SQLite database file
            max_connections: Upper bound on live connections
            timeout: Seconds a borrower waits for a free connection (None waits forever)
        """
        self.db_path = Path(db_path)
        self.max_connections = max_connections
        self.timeout = timeout
        self._slots = threading.BoundedSemaphore(max_connections)
        self._idle: "queue.LifoQueue[sqlite3.Connection]" = queue.LifoQueue()
        self._lock = threading.Lock()
        self._created = 0

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        with self._lock:
            self._created += 1
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """
        Borrow a connection, waiting while the pool is exhausted.

        The connection is returned to the pool on every exit path.
        """
        if not self._slots.acquire(timeout=self.timeout):
            raise TimeoutError(f"No database connection available after {self.timeout}s")
        try:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                conn = self._connect()
            try:
                yield conn
            finally:
                self._idle.put(conn)
        finally:
            self._slots.release()

    def execute_query(self, sql: str, params: Sequence[Any] = ()) -> List[Row]:
        """
        Run one parameterized statement.

        Args:
            sql: SQL with `?` placeholders
            params: Bound parameters

        Returns:
            Result rows as dicts (empty list for statements without results)
        """
        with self.connection() as conn:
            try:
                cursor = conn.execute(sql, tuple(params))
                rows = [dict(row) for row in cursor.fetchall()] if cursor.description else []
                conn.commit()
                return rows
            except sqlite3.Error:
                conn.rollback()
                raise

    @property
    def live_connections(self) -> int:
        return self._created

    def init_schema(self) -> None:
        """Create tables if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        for statement in SCHEMA:
            self.execute_query(statement)
        logger.info(f"Database initialized: {self.db_path}")

    def close(self) -> None:
        """Close idle connections."""
        while True:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                break
            conn.close()
