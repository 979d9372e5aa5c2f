"""
Unit tests for credit ledgers.

The Polar ledger is exercised against httpx.MockTransport.
"""

import httpx
import pytest

from ai_credit_guard.billing.ledger import InMemoryCreditLedger, LedgerError, PolarCreditLedger


def _polar(handler, **kwargs):
    return PolarCreditLedger("polar_test_token", transport=httpx.MockTransport(handler), **kwargs)


class TestInMemoryCreditLedger:
    """Test the dictionary-backed ledger."""

    @pytest.mark.asyncio
    async def test_lookups(self):
        ledger = InMemoryCreditLedger({"u1": 12}, customer_ids={"cus_1": "u1"})

        assert await ledger.get_remaining_credits_by_external_id("u1") == 12
        assert await ledger.get_remaining_credits_by_external_id("u2") is None
        assert await ledger.get_remaining_credits("cus_1") == 12
        assert await ledger.get_remaining_credits("cus_2") is None


class TestPolarCreditLedger:
    """Test Polar API response handling."""

    def test_requires_token(self):
        with pytest.raises(ValueError):
            PolarCreditLedger("  ")

    def test_rejects_unknown_server(self):
        with pytest.raises(ValueError):
            PolarCreditLedger("token", server="staging")

    @pytest.mark.asyncio
    async def test_active_meter_balance(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json={"active_meters": [{"balance": 42}, {"balance": 7}]})

        ledger = _polar(handler)
        try:
            assert await ledger.get_remaining_credits_by_external_id("user-1") == 42
        finally:
            await ledger.aclose()

        assert seen["url"] == "https://sandbox-api.polar.sh/v1/customers/external/user-1/state"
        assert seen["auth"] == "Bearer polar_test_token"

    @pytest.mark.asyncio
    async def test_external_id_is_escaped(self):
        """Slashes and query characters stay inside the id path segment."""
        seen = {}

        def handler(request):
            seen["raw_path"] = request.url.raw_path
            seen["query"] = request.url.query
            return httpx.Response(200, json={"active_meters": [{"balance": 3}]})

        ledger = _polar(handler)
        try:
            assert await ledger.get_remaining_credits_by_external_id("team/u1?admin=1") == 3
        finally:
            await ledger.aclose()

        assert seen["raw_path"] == b"/v1/customers/external/team%2Fu1%3Fadmin%3D1/state"
        assert seen["query"] == b""

    @pytest.mark.asyncio
    async def test_legacy_named_meter(self):
        def handler(request):
            return httpx.Response(200, json={
                "active_meters": [],
                "meters": [
                    {"meter": {"name": "Other"}, "balance": 1},
                    {"meter": {"name": "Message Credits Used"}, "balance": -3},
                ],
            })

        ledger = _polar(handler)
        assert await ledger.get_remaining_credits_by_external_id("user-1") == -3
        await ledger.aclose()

    @pytest.mark.asyncio
    async def test_not_found_is_none(self):
        ledger = _polar(lambda request: httpx.Response(404, json={"detail": "Not found"}))
        assert await ledger.get_remaining_credits_by_external_id("user-1") is None
        await ledger.aclose()

    @pytest.mark.asyncio
    async def test_no_meters_is_none(self):
        ledger = _polar(lambda request: httpx.Response(200, json={"active_meters": []}))
        assert await ledger.get_remaining_credits_by_external_id("user-1") is None
        await ledger.aclose()

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        ledger = _polar(lambda request: httpx.Response(500))
        with pytest.raises(LedgerError):
            await ledger.get_remaining_credits_by_external_id("user-1")
        await ledger.aclose()

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        ledger = _polar(handler)
        with pytest.raises(LedgerError):
            await ledger.get_remaining_credits_by_external_id("user-1")
        await ledger.aclose()

    @pytest.mark.asyncio
    async def test_customer_meters(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["customer_id"] = request.url.params["customer_id"]
            return httpx.Response(200, json={"items": [
                {"meter": {"name": "Message Credits Used"}, "balance": 99},
            ]})

        ledger = _polar(handler, server="production")
        assert await ledger.get_remaining_credits("cus_1") == 99
        await ledger.aclose()

        assert seen == {"path": "/v1/customer-meters/", "customer_id": "cus_1"}
