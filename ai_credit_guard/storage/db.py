"""
Database connection management.

Opens short-lived async SQLite connections; every repository call gets
its own, so concurrent requests never share a cursor.
"""

import aiosqlite

DEFAULT_DB_PATH = "ai_credit_guard.db"
BUSY_TIMEOUT_MS = 5000


async def get_connection(db_path: str = DEFAULT_DB_PATH) -> aiosqlite.Connection:
    """Open a connection with foreign keys on and a busy timeout for concurrent writers.

    Args:
        db_path: Path to SQLite database file
    """
    conn = await aiosqlite.connect(db_path)
    await conn.execute("PRAGMA foreign_keys = ON")
    await conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
    return conn
