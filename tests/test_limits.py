"""
Unit tests for limit resolution, aggregation windows and usage snapshots.
"""

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from ai_credit_guard.core.aggregator import UsageAggregator, UsageTotals, start_of_day, start_of_month
from ai_credit_guard.core.limits import LimitConfigResolver
from ai_credit_guard.core.ttl_cache import TTLCache
from ai_credit_guard.core.usage_limits import (
    DAILY_COST,
    DAILY_TOKENS,
    MONTHLY_TOKENS,
    OptimizedUsageLimitsService,
    UsageSnapshot,
    exceeded_limit_messages,
    find_exceeded_limits,
)
from ai_credit_guard.storage.models import DEFAULT_USAGE_LIMIT, UsageEvent, UsageLimit

from .conftest import FIXED_NOW


def _limit(tokens, **kwargs):
    return UsageLimit(
        daily_token_limit=tokens,
        monthly_token_limit=tokens * 10,
        daily_cost_limit=Decimal("5"),
        monthly_cost_limit=Decimal("50"),
        **kwargs
    )


class TestLimitConfigResolver:
    """Test user > global > default priority."""

    @pytest.mark.asyncio
    async def test_defaults_when_no_rows(self, repository):
        resolver = LimitConfigResolver(repository)
        assert await resolver.resolve("u1") == DEFAULT_USAGE_LIMIT

    @pytest.mark.asyncio
    async def test_global_beats_default(self, repository):
        await repository.upsert_limit(_limit(700))
        limits = await LimitConfigResolver(repository).resolve("u1")
        assert limits.daily_token_limit == 700

    @pytest.mark.asyncio
    async def test_user_beats_global(self, repository):
        await repository.upsert_limit(_limit(700))
        await repository.upsert_limit(_limit(900, user_id="u1"))
        resolver = LimitConfigResolver(repository)

        assert (await resolver.resolve("u1")).daily_token_limit == 900
        assert (await resolver.resolve("u2")).daily_token_limit == 700

    @pytest.mark.asyncio
    async def test_user_row_short_circuits(self):
        """The global scope is never read when a user row exists."""
        repository = AsyncMock()
        repository.get_active_limit.return_value = _limit(900, user_id="u1")

        await LimitConfigResolver(repository).resolve("u1")

        repository.get_active_limit.assert_awaited_once_with(user_id="u1")

    @pytest.mark.asyncio
    async def test_store_errors_propagate(self):
        repository = AsyncMock()
        repository.get_active_limit.side_effect = RuntimeError("db down")
        with pytest.raises(RuntimeError):
            await LimitConfigResolver(repository).resolve("u1")


class TestWindows:
    """Test UTC window boundaries."""

    def test_start_of_day(self):
        assert start_of_day(FIXED_NOW) == datetime(2024, 3, 15, tzinfo=timezone.utc)

    def test_start_of_month(self):
        assert start_of_month(FIXED_NOW) == datetime(2024, 3, 1, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        assert start_of_day(datetime(2024, 3, 15, 23, 59)) == datetime(2024, 3, 15, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_aggregate(self, repository):
        await repository.insert_usage_event(UsageEvent(
            user_id="u1", model_id="openai/gpt-4o", provider="openai",
            input_tokens=300, output_tokens=200, total_tokens=500,
            estimated_cost=Decimal("0.5"), created_at=FIXED_NOW,
        ))
        totals = await UsageAggregator(repository, now=lambda: FIXED_NOW).aggregate("u1")

        assert totals.daily_tokens == 500
        assert totals.monthly_tokens == 500
        assert totals.daily_cost == Decimal("0.5")


class TestExceededLimits:
    """Test strict-greater-than comparisons."""

    def test_at_limit_is_not_exceeded(self):
        usage = UsageTotals(daily_tokens=50_000)
        assert find_exceeded_limits(usage, DEFAULT_USAGE_LIMIT) == []

    def test_daily_tokens_exceeded(self):
        """52,000 tokens against the default 50,000 daily cap."""
        usage = UsageTotals(daily_tokens=52_000, monthly_tokens=52_000)
        snapshot = UsageSnapshot(usage, DEFAULT_USAGE_LIMIT, find_exceeded_limits(usage, DEFAULT_USAGE_LIMIT))

        assert snapshot.exceeded_limits == [DAILY_TOKENS]
        assert snapshot.is_over_limit
        assert exceeded_limit_messages(snapshot) == ["Daily token limit (50,000) exceeded"]

    def test_multiple_limits(self):
        usage = UsageTotals(
            daily_tokens=60_000,
            monthly_tokens=2_000_000,
            daily_cost=Decimal("10.01"),
        )
        assert find_exceeded_limits(usage, DEFAULT_USAGE_LIMIT) == [DAILY_TOKENS, MONTHLY_TOKENS, DAILY_COST]


class TestOptimizedUsageLimitsService:
    """Test caching and fail-open behavior."""

    def _service(self, clock, usage=None, limits=None):
        aggregator = AsyncMock()
        aggregator.aggregate.return_value = usage or UsageTotals()
        resolver = AsyncMock()
        resolver.resolve.return_value = limits or DEFAULT_USAGE_LIMIT
        service = OptimizedUsageLimitsService(aggregator, resolver, cache=TTLCache(60, clock=clock))
        return service, aggregator, resolver

    @pytest.mark.asyncio
    async def test_cached_within_ttl(self, clock):
        service, aggregator, _ = self._service(clock)

        await service.get_user_usage_and_limits("u1")
        clock.advance(59)
        await service.get_user_usage_and_limits("u1")

        assert aggregator.aggregate.await_count == 1

    @pytest.mark.asyncio
    async def test_recomputed_after_ttl(self, clock):
        """A read at 61 seconds misses the cache and recomputes."""
        service, aggregator, _ = self._service(clock)

        await service.get_user_usage_and_limits("u1")
        clock.advance(61)
        await service.get_user_usage_and_limits("u1")

        assert aggregator.aggregate.await_count == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_recompute(self, clock):
        service, aggregator, _ = self._service(clock)

        await service.get_user_usage_and_limits("u1")
        service.invalidate_user_cache("u1")
        service.invalidate_user_cache("u1")
        await service.get_user_usage_and_limits("u1")

        assert aggregator.aggregate.await_count == 2

    @pytest.mark.asyncio
    async def test_aggregator_failure_fails_open(self, clock):
        """Errors give zero usage against defaults and are not cached."""
        service, aggregator, _ = self._service(clock)
        aggregator.aggregate.side_effect = RuntimeError("db down")

        snapshot = await service.get_user_usage_and_limits("u1")

        assert not snapshot.is_over_limit
        assert snapshot.daily_tokens == 0
        assert snapshot.limits == DEFAULT_USAGE_LIMIT
        assert "u1" not in service.cache

    @pytest.mark.asyncio
    async def test_resolver_failure_fails_open(self, clock):
        service, _, resolver = self._service(clock, usage=UsageTotals(daily_tokens=10**9))
        resolver.resolve.side_effect = RuntimeError("db down")

        assert await service.quick_usage_check("u1") == (False, [])

    @pytest.mark.asyncio
    async def test_quick_usage_check_over_limit(self, clock):
        service, _, _ = self._service(clock, usage=UsageTotals(daily_tokens=52_000))
        assert await service.quick_usage_check("u1") == (True, [DAILY_TOKENS])

    @pytest.mark.asyncio
    async def test_cleanup_cache(self, clock):
        service, _, _ = self._service(clock)
        await service.get_user_usage_and_limits("u1")
        clock.advance(120)
        assert service.cleanup_cache() == 1
