"""
Request-scoped lookup caches.

Built when a request starts and dropped when it ends, these make sure a
single request asks the ledger or the model catalog for a given fact at
most once, however many call sites need it. There is no TTL and nothing
is shared across requests.
"""

from typing import Awaitable, Callable, Dict, List, Optional

from .pricing import ModelCatalog, ModelInfo
from .result import MeteringError
from ai_credit_guard.billing.ledger import CreditLedger


class RequestCreditCache:
    """Memoizes credit balances (including None results) for one request.

    A failed lookup is remembered too: later reads of the same key raise
    the same MeteringError without asking the ledger again.
    """

    def __init__(self, ledger: CreditLedger):
        self.ledger = ledger
        self._cache: Dict[str, Optional[int]] = {}
        self._errors: Dict[str, MeteringError] = {}

    async def _lookup(self, key: str, fetch: Callable[[], Awaitable[Optional[int]]]) -> Optional[int]:
        if key in self._cache:
            return self._cache[key]
        if key in self._errors:
            raise self._errors[key]
        try:
            balance = await fetch()
        except Exception as e:
            error = MeteringError(f"ledger lookup {key}", e)
            self._errors[key] = error
            raise error from e
        self._cache[key] = balance
        return balance

    async def get_remaining_credits_by_external_id(self, user_id: str) -> Optional[int]:
        return await self._lookup(
            f"external:{user_id}",
            lambda: self.ledger.get_remaining_credits_by_external_id(user_id),
        )

    async def get_remaining_credits(self, customer_id: str) -> Optional[int]:
        return await self._lookup(
            f"customer:{customer_id}",
            lambda: self.ledger.get_remaining_credits(customer_id),
        )

    def has_external_id(self, user_id: str) -> bool:
        return f"external:{user_id}" in self._cache

    def has_customer_id(self, customer_id: str) -> bool:
        return f"customer:{customer_id}" in self._cache

    def clear(self) -> None:
        self._cache.clear()
        self._errors.clear()

    def size(self) -> int:
        return len(self._cache)

    def stats(self) -> Dict[str, object]:
        keys: List[str] = list(self._cache.keys())
        return {"size": len(keys), "keys": keys, "failed": list(self._errors.keys())}


class RequestModelCache:
    """Memoizes model metadata lookups for one request."""

    def __init__(self, catalog: ModelCatalog):
        self.catalog = catalog
        self._cache: Dict[str, Optional[ModelInfo]] = {}

    async def get_model_details(self, model_id: str) -> Optional[ModelInfo]:
        if model_id in self._cache:
            return self._cache[model_id]
        info = await self.catalog.get_model_details(model_id)
        self._cache[model_id] = info
        return info

    def has(self, model_id: str) -> bool:
        return model_id in self._cache

    def clear(self) -> None:
        self._cache.clear()

    def size(self) -> int:
        return len(self._cache)
