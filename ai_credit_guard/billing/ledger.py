"""
Prepaid credit ledgers.

A ledger answers one question: how many credits does a principal have
left? ``None`` means the ledger has no entry for the principal, which is
not the same as a zero balance. Negative balances mean the principal is
in debt.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

POLAR_SERVERS = {
    "production": "https://api.polar.sh",
    "sandbox": "https://sandbox-api.polar.sh",
}
DEFAULT_METER_NAME = "Message Credits Used"


class LedgerError(Exception):
    """The ledger could not be reached or returned an unusable answer."""


class CreditLedger(ABC):
    """Remaining-credit lookups by external id or legacy customer id."""

    @abstractmethod
    async def get_remaining_credits_by_external_id(self, user_id: str) -> Optional[int]:
        """Balance keyed by our own user id (authoritative path)."""

    @abstractmethod
    async def get_remaining_credits(self, customer_id: str) -> Optional[int]:
        """Balance keyed by the billing provider's legacy customer id."""

    async def aclose(self) -> None:
        """Release any held resources."""


class InMemoryCreditLedger(CreditLedger):
    """Dictionary-backed ledger for local development and tests.

    Users missing from ``balances`` have no ledger entry.
    """

    def __init__(
        self,
        balances: Optional[Dict[str, int]] = None,
        customer_ids: Optional[Dict[str, str]] = None,
    ):
        self.balances: Dict[str, int] = dict(balances or {})
        # legacy customer id -> user id
        self.customer_ids: Dict[str, str] = dict(customer_ids or {})

    async def get_remaining_credits_by_external_id(self, user_id: str) -> Optional[int]:
        return self.balances.get(user_id)

    async def get_remaining_credits(self, customer_id: str) -> Optional[int]:
        user_id = self.customer_ids.get(customer_id)
        if user_id is None:
            return None
        return self.balances.get(user_id)


def _meter_balance(meter: Dict[str, Any]) -> int:
    balance = meter.get("balance")
    if balance is None:
        balance = meter.get("remaining") or 0
    return int(balance)


def _find_named_meter(meters: Iterable[Dict[str, Any]], meter_name: str) -> Optional[Dict[str, Any]]:
    for meter in meters:
        details = meter.get("meter") or {}
        if details.get("name") == meter_name:
            return meter
    return None


class PolarCreditLedger(CreditLedger):
    """Reads meter balances from the Polar billing API.

    404s map to None (no customer); other HTTP and transport failures
    raise LedgerError so callers can tell "no entry" from "unknown".
    """

    def __init__(
        self,
        access_token: str,
        server: str = "sandbox",
        meter_name: str = DEFAULT_METER_NAME,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not access_token or not access_token.strip():
            raise ValueError("access_token is required and cannot be empty")
        if server not in POLAR_SERVERS:
            raise ValueError(f"server must be one of: {sorted(POLAR_SERVERS)}")

        self.server = server
        self.meter_name = meter_name
        self._client = httpx.AsyncClient(
            base_url=POLAR_SERVERS[server],
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> Optional[Dict[str, Any]]:
        try:
            response = await self._client.get(path, params=params)
        except httpx.HTTPError as e:
            raise LedgerError(f"Polar request to {path} failed: {e}") from e

        if response.status_code == 404:
            return None
        try:
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPStatusError, ValueError) as e:
            raise LedgerError(f"Polar request to {path} failed: {e}") from e

    async def get_remaining_credits_by_external_id(self, user_id: str) -> Optional[int]:
        state = await self._get(f"/v1/customers/external/{quote(user_id, safe='')}/state")
        if not state:
            logger.debug(f"No Polar customer state for external id {user_id}")
            return None

        active_meters = state.get("active_meters") or []
        if active_meters:
            return _meter_balance(active_meters[0])

        legacy = _find_named_meter(state.get("meters") or [], self.meter_name)
        if legacy is not None:
            return _meter_balance(legacy)

        logger.debug(f"No active or '{self.meter_name}' meter for external id {user_id}")
        return None

    async def get_remaining_credits(self, customer_id: str) -> Optional[int]:
        page = await self._get("/v1/customer-meters/", params={"customer_id": customer_id})
        if not page:
            return None

        items = page if isinstance(page, list) else page.get("items") or []
        meter = _find_named_meter(items, self.meter_name)
        if meter is None:
            logger.debug(f"No '{self.meter_name}' meter for customer {customer_id}")
            return None
        return _meter_balance(meter)

    async def aclose(self) -> None:
        await self._client.aclose()
