"""
Database connection management.

Provides SQLite connections for the shared governance store.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = ".clinical-ai-guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 30.0) -> sqlite3.Connection:
    """Create and return a SQLite connection shared safely across processes.

    WAL journaling lets readers proceed while a writer holds the lock, and the
    busy timeout makes concurrent writers wait instead of failing.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout)
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute(f"PRAGMA busy_timeout = {int(timeout * 1000)}")
    return conn
