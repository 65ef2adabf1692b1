"""
Database connection management.

Provides SQLite connections for the cost ledger and artifact store.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "content_forge.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Open a SQLite connection, creating the parent directory if needed.

    Args:
        db_path: Path to SQLite database file

    Returns:
        A new connection; the caller closes it
    """
    path = Path(db_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite3.connect(str(path))
