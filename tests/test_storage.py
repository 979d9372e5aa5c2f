"""
Unit tests for storage layer.

Tests schema creation, event insertion, aggregation, limit rows and the
chat/message queries behind the daily message cap.
"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from ai_credit_guard.storage.db import get_connection
from ai_credit_guard.storage.models import UsageEvent, UsageLimit
from ai_credit_guard.storage.repository import UsageRepository, to_db_timestamp

from .conftest import FIXED_NOW


def _event(user_id="u1", tokens=(100, 50), cost="0.25", created_at=FIXED_NOW):
    return UsageEvent(
        user_id=user_id,
        model_id="openai/gpt-4o",
        provider="openai",
        input_tokens=tokens[0],
        output_tokens=tokens[1],
        total_tokens=sum(tokens),
        estimated_cost=Decimal(cost),
        created_at=created_at,
    )


class TestStorageSchema:
    """Test database schema creation and structure."""

    @pytest.mark.asyncio
    async def test_schema_creation(self, db_path):
        """Verify all tables are created."""
        await UsageRepository(db_path).initialize_schema()

        conn = await get_connection(db_path)
        try:
            cursor = await conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = {row[0] for row in await cursor.fetchall()}
        finally:
            await conn.close()

        assert {"usage_events", "usage_limits", "users", "chats", "messages"} <= tables

    @pytest.mark.asyncio
    async def test_schema_creation_is_idempotent(self, repository):
        await repository.initialize_schema()


class TestTimestamps:
    """Test timestamp serialization."""

    def test_naive_is_treated_as_utc(self):
        naive = datetime(2024, 1, 1, 12, 0, 0)
        aware = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        assert to_db_timestamp(naive) == to_db_timestamp(aware)

    def test_offsets_are_normalized(self):
        plus_two = datetime(2024, 1, 1, 14, 0, 0, tzinfo=timezone(timedelta(hours=2)))
        assert to_db_timestamp(plus_two) == "2024-01-01T12:00:00.000000+00:00"


class TestUsageEvents:
    """Test usage event insertion and aggregation."""

    def test_total_must_match(self):
        with pytest.raises(ValueError):
            UsageEvent(
                user_id="u1", model_id="m", provider="p",
                input_tokens=1, output_tokens=1, total_tokens=3,
                estimated_cost=Decimal("0"),
            )

    @pytest.mark.asyncio
    async def test_insert_and_fetch(self, repository):
        await repository.insert_usage_event(_event())
        events = await repository.fetch_recent_usage_events(user_id="u1")

        assert len(events) == 1
        assert events[0].total_tokens == 150
        assert events[0].estimated_cost == Decimal("0.250000")
        assert events[0].created_at == FIXED_NOW

    @pytest.mark.asyncio
    async def test_fetch_newest_first(self, repository):
        await repository.insert_usage_event(_event(created_at=FIXED_NOW - timedelta(hours=1)))
        await repository.insert_usage_event(_event(tokens=(1, 1), created_at=FIXED_NOW))

        events = await repository.fetch_recent_usage_events(limit=10)
        assert [e.total_tokens for e in events] == [2, 150]

    @pytest.mark.asyncio
    async def test_aggregate_windows(self, repository):
        """Daily sums only today's events, monthly sums the month, older ignored."""
        day_start = FIXED_NOW.replace(hour=0)
        month_start = day_start.replace(day=1)

        await repository.insert_usage_event(_event(tokens=(1000, 0), cost="1.00"))
        await repository.insert_usage_event(_event(tokens=(2000, 0), cost="2.00", created_at=FIXED_NOW - timedelta(days=3)))
        await repository.insert_usage_event(_event(tokens=(4000, 0), cost="4.00", created_at=month_start - timedelta(seconds=1)))
        await repository.insert_usage_event(_event(user_id="other", tokens=(8000, 0), cost="8.00"))

        stats = await repository.aggregate_usage("u1", day_start, month_start)

        assert stats["daily_tokens"] == 1000
        assert stats["monthly_tokens"] == 3000
        assert stats["daily_cost"] == Decimal("1.000000")
        assert stats["monthly_cost"] == Decimal("3.000000")

    @pytest.mark.asyncio
    async def test_aggregate_without_events(self, repository):
        stats = await repository.aggregate_usage("nobody", FIXED_NOW, FIXED_NOW)
        assert stats["daily_tokens"] == 0
        assert stats["monthly_cost"] == Decimal("0")


class TestUsageLimits:
    """Test limit rows."""

    def _limit(self, **kwargs):
        values = dict(
            daily_token_limit=1000,
            monthly_token_limit=10000,
            daily_cost_limit=Decimal("1.50"),
            monthly_cost_limit=Decimal("20"),
        )
        values.update(kwargs)
        return UsageLimit(**values)

    def test_user_and_model_scope_are_exclusive(self):
        with pytest.raises(ValueError):
            self._limit(user_id="u1", model_id="m", provider="p")

    def test_non_positive_limit_rejected(self):
        with pytest.raises(ValueError):
            self._limit(daily_token_limit=0)

    @pytest.mark.asyncio
    async def test_upsert_creates_then_updates(self, repository):
        created = await repository.upsert_limit(self._limit(user_id="u1"))
        updated = await repository.upsert_limit(self._limit(user_id="u1", daily_token_limit=5))

        assert created.id == updated.id
        assert updated.daily_token_limit == 5
        assert updated.daily_cost_limit == Decimal("1.50")

    @pytest.mark.asyncio
    async def test_user_and_global_rows(self, repository):
        await repository.upsert_limit(self._limit(daily_token_limit=111))
        await repository.upsert_limit(self._limit(user_id="u1", daily_token_limit=222))

        user_limit = await repository.get_active_limit(user_id="u1")
        global_limit = await repository.get_active_limit()

        assert user_limit.daily_token_limit == 222
        assert global_limit.daily_token_limit == 111
        assert global_limit.is_global
        assert await repository.get_active_limit(user_id="u2") is None

    @pytest.mark.asyncio
    async def test_model_row_is_not_global(self, repository):
        await repository.upsert_limit(self._limit(model_id="openai/gpt-4o", provider="openai"))
        assert await repository.get_active_limit() is None

    @pytest.mark.asyncio
    async def test_inactive_row_is_ignored(self, repository):
        await repository.upsert_limit(self._limit(user_id="u1", is_active=False))
        assert await repository.get_active_limit(user_id="u1") is None


class TestMessageCounts:
    """Test user records, chats and message counts."""

    @pytest.mark.asyncio
    async def test_message_limit_override(self, repository):
        await repository.upsert_user("u1", {"messageLimit": 50})
        await repository.upsert_user("u2", {"messageLimit": True})
        await repository.upsert_user("u3", {"messageLimit": 0})
        await repository.upsert_user("u4")

        assert await repository.get_user_message_limit("u1") == 50
        assert await repository.get_user_message_limit("u2") is None
        assert await repository.get_user_message_limit("u3") is None
        assert await repository.get_user_message_limit("u4") is None
        assert await repository.get_user_message_limit("missing") is None

    @pytest.mark.asyncio
    async def test_upsert_user_replaces_metadata(self, repository, db_path):
        await repository.upsert_user("u1", {"messageLimit": 50})
        await repository.upsert_user("u1", {"messageLimit": 75, "plan": "team"})

        conn = await get_connection(db_path)
        try:
            cursor = await conn.execute("SELECT metadata FROM users WHERE id = 'u1'")
            row = await cursor.fetchone()
        finally:
            await conn.close()
        assert json.loads(row[0]) == {"messageLimit": 75, "plan": "team"}

    @pytest.mark.asyncio
    async def test_both_count_paths_agree(self, repository):
        """Only user-role messages today, in chats created today, are counted."""
        day_start = FIXED_NOW.replace(hour=0)
        yesterday = FIXED_NOW - timedelta(days=1)

        await repository.insert_chat("today", "u1", created_at=FIXED_NOW)
        await repository.insert_chat("old", "u1", created_at=yesterday)
        await repository.insert_chat("theirs", "u2", created_at=FIXED_NOW)

        await repository.insert_message("m1", "today", "user", created_at=FIXED_NOW)
        await repository.insert_message("m2", "today", "user", created_at=FIXED_NOW)
        await repository.insert_message("m3", "today", "assistant", created_at=FIXED_NOW)
        await repository.insert_message("m4", "old", "user", created_at=FIXED_NOW)
        await repository.insert_message("m5", "theirs", "user", created_at=FIXED_NOW)

        chat_ids = await repository.get_chat_ids_created_since("u1", day_start)
        assert chat_ids == ["today"]
        assert await repository.count_user_messages_in_chats(chat_ids, day_start) == 2
        assert await repository.count_user_messages_joined("u1", day_start) == 2

    @pytest.mark.asyncio
    async def test_count_without_chats(self, repository):
        assert await repository.count_user_messages_in_chats([], FIXED_NOW) == 0
