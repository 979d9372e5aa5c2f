"""
Unit tests for request-scoped caches.
"""

from unittest.mock import AsyncMock

import pytest

from ai_credit_guard.core.pricing import ModelInfo
from ai_credit_guard.core.request_cache import RequestCreditCache, RequestModelCache
from ai_credit_guard.core.result import MeteringError


class TestRequestCreditCache:
    """Test per-request memoization of ledger reads."""

    @pytest.mark.asyncio
    async def test_balance_read_once(self):
        ledger = AsyncMock()
        ledger.get_remaining_credits_by_external_id.return_value = 42
        cache = RequestCreditCache(ledger)

        assert await cache.get_remaining_credits_by_external_id("u1") == 42
        assert await cache.get_remaining_credits_by_external_id("u1") == 42

        ledger.get_remaining_credits_by_external_id.assert_awaited_once_with("u1")
        assert cache.has_external_id("u1")

    @pytest.mark.asyncio
    async def test_none_is_cached(self):
        """No ledger entry is a real answer and is memoized too."""
        ledger = AsyncMock()
        ledger.get_remaining_credits_by_external_id.return_value = None
        cache = RequestCreditCache(ledger)

        await cache.get_remaining_credits_by_external_id("u1")
        await cache.get_remaining_credits_by_external_id("u1")

        assert ledger.get_remaining_credits_by_external_id.await_count == 1

    @pytest.mark.asyncio
    async def test_failure_remembered_for_the_request(self):
        """A failed key is not retried within the same request."""
        ledger = AsyncMock()
        ledger.get_remaining_credits_by_external_id.side_effect = [RuntimeError("timeout"), 7]
        cache = RequestCreditCache(ledger)

        with pytest.raises(MeteringError):
            await cache.get_remaining_credits_by_external_id("u1")
        with pytest.raises(MeteringError):
            await cache.get_remaining_credits_by_external_id("u1")

        assert ledger.get_remaining_credits_by_external_id.await_count == 1
        assert not cache.has_external_id("u1")
        assert cache.stats()["failed"] == ["external:u1"]

    @pytest.mark.asyncio
    async def test_clear_forgets_failures(self):
        ledger = AsyncMock()
        ledger.get_remaining_credits.side_effect = [RuntimeError("timeout"), 7]
        cache = RequestCreditCache(ledger)

        with pytest.raises(MeteringError):
            await cache.get_remaining_credits("cus_1")
        cache.clear()

        assert await cache.get_remaining_credits("cus_1") == 7

    @pytest.mark.asyncio
    async def test_customer_and_external_keys_are_separate(self):
        ledger = AsyncMock()
        ledger.get_remaining_credits_by_external_id.return_value = 1
        ledger.get_remaining_credits.return_value = 2
        cache = RequestCreditCache(ledger)

        assert await cache.get_remaining_credits_by_external_id("x") == 1
        assert await cache.get_remaining_credits("x") == 2
        assert cache.has_customer_id("x")
        assert cache.size() == 2
        assert sorted(cache.stats()["keys"]) == ["customer:x", "external:x"]

        cache.clear()
        assert cache.size() == 0


class TestRequestModelCache:
    """Test per-request memoization of model metadata."""

    @pytest.mark.asyncio
    async def test_model_read_once(self):
        catalog = AsyncMock()
        catalog.get_model_details.return_value = ModelInfo(model_id="openai/gpt-4o")
        cache = RequestModelCache(catalog)

        first = await cache.get_model_details("openai/gpt-4o")
        second = await cache.get_model_details("openai/gpt-4o")

        assert first is second
        catalog.get_model_details.assert_awaited_once_with("openai/gpt-4o")
        assert cache.has("openai/gpt-4o")
        assert cache.size() == 1
