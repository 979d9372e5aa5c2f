"""
Repository pattern for data access.

Handles database operations and data persistence logic for usage events,
limit configuration and the chat/message facts the message cap reads.
"""

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import aiosqlite

from .db import DEFAULT_DB_PATH, get_connection
from .models import UsageEvent, UsageLimit, utcnow

COST_QUANTUM = Decimal("0.000001")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS usage_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        model_id TEXT NOT NULL,
        provider TEXT NOT NULL,
        input_tokens INTEGER NOT NULL,
        output_tokens INTEGER NOT NULL,
        total_tokens INTEGER NOT NULL,
        estimated_cost REAL NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_usage_events_user_created ON usage_events (user_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS usage_limits (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT,
        model_id TEXT,
        provider TEXT,
        daily_token_limit INTEGER NOT NULL,
        monthly_token_limit INTEGER NOT NULL,
        daily_cost_limit TEXT NOT NULL,
        monthly_cost_limit TEXT NOT NULL,
        request_rate_limit INTEGER NOT NULL DEFAULT 60,
        currency TEXT NOT NULL DEFAULT 'USD',
        is_active INTEGER NOT NULL DEFAULT 1,
        description TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_usage_limits_user ON usage_limits (user_id, is_active)",
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        metadata TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chats (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        title TEXT NOT NULL DEFAULT 'New Chat',
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_chats_user_created ON chats (user_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_chat_created ON messages (chat_id, created_at)",
)

_LIMIT_COLUMNS = """
    id, user_id, model_id, provider, daily_token_limit, monthly_token_limit,
    daily_cost_limit, monthly_cost_limit, request_rate_limit, currency,
    is_active, description, created_at, updated_at
"""


def to_db_timestamp(value: datetime) -> str:
    """Serialize a datetime as a sortable UTC ISO string.

    Naive datetimes are taken to be UTC already.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def to_decimal(value: Any) -> Decimal:
    """Convert a SQLite numeric (REAL sum or TEXT) to a quantized Decimal."""
    if value is None:
        return Decimal("0").quantize(COST_QUANTUM)
    return Decimal(str(value)).quantize(COST_QUANTUM)


def _row_to_limit(row: Sequence[Any]) -> UsageLimit:
    return UsageLimit(
        id=row[0],
        user_id=row[1],
        model_id=row[2],
        provider=row[3],
        daily_token_limit=row[4],
        monthly_token_limit=row[5],
        daily_cost_limit=Decimal(row[6]),
        monthly_cost_limit=Decimal(row[7]),
        request_rate_limit=row[8],
        currency=row[9],
        is_active=bool(row[10]),
        description=row[11],
        created_at=datetime.fromisoformat(row[12]),
        updated_at=datetime.fromisoformat(row[13]),
    )


class UsageRepository:
    """Repository for usage events, limit rows and message-cap facts.

    Every method opens its own connection, so one instance can be shared
    by concurrent requests.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await get_connection(self.db_path)
        try:
            yield conn
        finally:
            await conn.close()

    async def initialize_schema(self) -> None:
        """Create all tables and indexes if they don't exist.

        ``usage_events`` is an append-only ledger: no UPDATE or DELETE is
        ever issued against it.
        """
        async with self._connection() as conn:
            for statement in _SCHEMA:
                await conn.execute(statement)
            await conn.commit()

    # -- usage events -----------------------------------------------------

    async def insert_usage_event(self, event: UsageEvent) -> None:
        """Append a single usage event to the ledger."""
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO usage_events
                (user_id, model_id, provider, input_tokens, output_tokens,
                 total_tokens, estimated_cost, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.user_id,
                    event.model_id,
                    event.provider,
                    event.input_tokens,
                    event.output_tokens,
                    event.total_tokens,
                    float(event.estimated_cost),
                    to_db_timestamp(event.created_at),
                ),
            )
            await conn.commit()

    async def aggregate_usage(
        self,
        user_id: str,
        day_start: datetime,
        month_start: datetime,
    ) -> Dict[str, Any]:
        """Sum a user's tokens and cost for the daily and monthly windows.

        One scan over the user's events since ``month_start``, with
        conditional sums for the daily window.

        Returns:
            Dictionary with daily_tokens, monthly_tokens, daily_cost and
            monthly_cost (zeros when the user has no events)
        """
        day_cutoff = to_db_timestamp(day_start)
        async with self._connection() as conn:
            cursor = await conn.execute(
                """
                SELECT
                    COALESCE(SUM(CASE WHEN created_at >= ? THEN total_tokens END), 0),
                    COALESCE(SUM(total_tokens), 0),
                    COALESCE(SUM(CASE WHEN created_at >= ? THEN estimated_cost END), 0),
                    COALESCE(SUM(estimated_cost), 0)
                FROM usage_events
                WHERE user_id = ? AND created_at >= ?
                """,
                (day_cutoff, day_cutoff, user_id, to_db_timestamp(month_start)),
            )
            row = await cursor.fetchone()

        return {
            "daily_tokens": int(row[0] or 0),
            "monthly_tokens": int(row[1] or 0),
            "daily_cost": to_decimal(row[2]),
            "monthly_cost": to_decimal(row[3]),
        }

    async def fetch_recent_usage_events(
        self,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[UsageEvent]:
        """Fetch recent usage events, newest first."""
        query = """
            SELECT user_id, model_id, provider, input_tokens, output_tokens,
                   total_tokens, estimated_cost, created_at
            FROM usage_events
        """
        params: List[Any] = []
        if user_id:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()

        return [
            UsageEvent(
                user_id=row[0],
                model_id=row[1],
                provider=row[2],
                input_tokens=row[3],
                output_tokens=row[4],
                total_tokens=row[5],
                estimated_cost=to_decimal(row[6]),
                created_at=datetime.fromisoformat(row[7]),
            )
            for row in rows
        ]

    # -- limit configuration ----------------------------------------------

    async def get_active_limit(self, user_id: Optional[str] = None) -> Optional[UsageLimit]:
        """Read the active limit row for a user, or the global row.

        Args:
            user_id: User scope; None selects the global row (no user, no model)

        Returns:
            The active row, or None when the scope has none
        """
        if user_id is not None:
            query = f"""
                SELECT {_LIMIT_COLUMNS} FROM usage_limits
                WHERE user_id = ? AND is_active = 1
                ORDER BY updated_at DESC LIMIT 1
            """
            params: tuple = (user_id,)
        else:
            query = f"""
                SELECT {_LIMIT_COLUMNS} FROM usage_limits
                WHERE user_id IS NULL AND model_id IS NULL AND is_active = 1
                ORDER BY updated_at DESC LIMIT 1
            """
            params = ()

        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            row = await cursor.fetchone()
        return _row_to_limit(row) if row else None

    async def upsert_limit(self, limit: UsageLimit) -> UsageLimit:
        """Create or update the limit row for the limit's scope.

        Rows are matched on (user_id, model_id, provider); they are never
        deleted.

        Returns:
            The stored row as read back from the database
        """
        now = to_db_timestamp(utcnow())
        values = (
            limit.daily_token_limit,
            limit.monthly_token_limit,
            str(limit.daily_cost_limit),
            str(limit.monthly_cost_limit),
            limit.request_rate_limit,
            limit.currency,
            int(limit.is_active),
            limit.description,
        )
        async with self._connection() as conn:
            cursor = await conn.execute(
                """
                SELECT id FROM usage_limits
                WHERE user_id IS ? AND model_id IS ? AND provider IS ?
                ORDER BY id LIMIT 1
                """,
                (limit.user_id, limit.model_id, limit.provider),
            )
            existing = await cursor.fetchone()
            if existing:
                row_id = existing[0]
                await conn.execute(
                    """
                    UPDATE usage_limits SET
                        daily_token_limit = ?, monthly_token_limit = ?,
                        daily_cost_limit = ?, monthly_cost_limit = ?,
                        request_rate_limit = ?, currency = ?, is_active = ?,
                        description = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    values + (now, row_id),
                )
            else:
                cursor = await conn.execute(
                    """
                    INSERT INTO usage_limits
                    (user_id, model_id, provider, daily_token_limit,
                     monthly_token_limit, daily_cost_limit, monthly_cost_limit,
                     request_rate_limit, currency, is_active, description,
                     created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (limit.user_id, limit.model_id, limit.provider) + values + (now, now),
                )
                row_id = cursor.lastrowid
            await conn.commit()

            cursor = await conn.execute(
                f"SELECT {_LIMIT_COLUMNS} FROM usage_limits WHERE id = ?", (row_id,)
            )
            row = await cursor.fetchone()
        return _row_to_limit(row)

    # -- users, chats and messages ------------------------------------------

    async def upsert_user(self, user_id: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Insert a user record or replace its metadata."""
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO users (id, metadata, created_at) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET metadata = excluded.metadata
                """,
                (user_id, json.dumps(metadata or {}), to_db_timestamp(utcnow())),
            )
            await conn.commit()

    async def get_user_message_limit(self, user_id: str) -> Optional[int]:
        """Return the user's ``messageLimit`` override, if one is set."""
        async with self._connection() as conn:
            cursor = await conn.execute("SELECT metadata FROM users WHERE id = ?", (user_id,))
            row = await cursor.fetchone()
        if not row or not row[0]:
            return None

        metadata = json.loads(row[0])
        if not isinstance(metadata, dict):
            return None
        value = metadata.get("messageLimit")
        # bool is an int subclass; a flag is not a limit
        if isinstance(value, int) and not isinstance(value, bool) and value > 0:
            return value
        return None

    async def insert_chat(
        self,
        chat_id: str,
        user_id: str,
        created_at: Optional[datetime] = None,
        title: str = "New Chat",
    ) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "INSERT INTO chats (id, user_id, title, created_at) VALUES (?, ?, ?, ?)",
                (chat_id, user_id, title, to_db_timestamp(created_at or utcnow())),
            )
            await conn.commit()

    async def insert_message(
        self,
        message_id: str,
        chat_id: str,
        role: str,
        created_at: Optional[datetime] = None,
    ) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "INSERT INTO messages (id, chat_id, role, created_at) VALUES (?, ?, ?, ?)",
                (message_id, chat_id, role, to_db_timestamp(created_at or utcnow())),
            )
            await conn.commit()

    async def get_chat_ids_created_since(self, user_id: str, since: datetime) -> List[str]:
        """Ids of the user's chats created at or after ``since``."""
        async with self._connection() as conn:
            cursor = await conn.execute(
                "SELECT id FROM chats WHERE user_id = ? AND created_at >= ?",
                (user_id, to_db_timestamp(since)),
            )
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def count_user_messages_in_chats(self, chat_ids: Sequence[str], since: datetime) -> int:
        """Count user-role messages created since ``since`` in the given chats."""
        if not chat_ids:
            return 0
        placeholders = ", ".join("?" for _ in chat_ids)
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"""
                SELECT COUNT(*) FROM messages
                WHERE chat_id IN ({placeholders})
                  AND role = 'user' AND created_at >= ?
                """,
                (*chat_ids, to_db_timestamp(since)),
            )
            row = await cursor.fetchone()
        return int(row[0] or 0)

    async def count_user_messages_joined(self, user_id: str, since: datetime) -> int:
        """Join-based equivalent of the chat-id count.

        Applies the same filters (user's chats created since ``since``,
        user-role messages since ``since``) so both paths agree.
        """
        cutoff = to_db_timestamp(since)
        async with self._connection() as conn:
            cursor = await conn.execute(
                """
                SELECT COUNT(*) FROM messages m
                INNER JOIN chats c ON c.id = m.chat_id
                WHERE c.user_id = ? AND c.created_at >= ?
                  AND m.role = 'user' AND m.created_at >= ?
                """,
                (user_id, cutoff, cutoff),
            )
            row = await cursor.fetchone()
        return int(row[0] or 0)
