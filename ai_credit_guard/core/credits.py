"""
Credit checks for chat requests.

Order of evaluation:
1. The principal brought their own provider key: always has credits.
2. Free-tier model: no credit check here; the daily message cap governs.
3. Otherwise compare the ledger balance with the model's credit cost.
   Ledger failures fail open and mark the result degraded.

Web search costs a flat WEB_SEARCH_COST credits and needs either an own
provider key or a balance of at least that much.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from .pricing import ModelInfo, calculate_credit_cost, provider_of
from .request_cache import RequestCreditCache
from .result import MeteringError, capture

logger = logging.getLogger(__name__)

FREE_MODEL_SUFFIX = ":free"
WEB_SEARCH_COST = 5

DEFAULT_PROVIDER_KEYS: Dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "groq": "GROQ_API_KEY",
    "xai": "XAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "requesty": "REQUESTY_API_KEY",
}


@dataclass(frozen=True)
class Principal:
    """The user or anonymous session a request is attributed to."""
    user_id: str
    is_anonymous: bool = False
    legacy_customer_id: Optional[str] = None


@dataclass(frozen=True)
class CreditCheckResult:
    has_credits: bool
    actual_credits: Optional[int]
    is_using_own_api_keys: bool
    is_free_model: bool
    can_use_web_search: bool = False
    degraded: bool = False


class CreditService:
    """Decides whether a principal can pay for a model call."""

    def __init__(
        self,
        provider_keys: Optional[Mapping[str, str]] = None,
        free_model_suffix: str = FREE_MODEL_SUFFIX,
        web_search_cost: int = WEB_SEARCH_COST,
    ):
        self.provider_keys = dict(DEFAULT_PROVIDER_KEYS if provider_keys is None else provider_keys)
        self.free_model_suffix = free_model_suffix
        self.web_search_cost = web_search_cost

    def is_using_own_api_keys(self, model_id: str, api_keys: Optional[Mapping[str, str]] = None) -> bool:
        """True when ``api_keys`` holds a non-blank key for the model's provider."""
        key_name = self.provider_keys.get(provider_of(model_id))
        if not key_name or not api_keys:
            return False
        value = api_keys.get(key_name)
        return bool(value and value.strip())

    def is_free_model(self, model_id: str) -> bool:
        return model_id.endswith(self.free_model_suffix)

    def get_web_search_cost(self) -> int:
        return self.web_search_cost

    async def get_balance(self, principal: Principal, credit_cache: RequestCreditCache) -> Optional[int]:
        """The principal's balance, or None when the ledger has no entry.

        The external-id balance is authoritative; the legacy customer id is
        consulted only if that lookup errors. Raises MeteringError when no
        lookup path answered.
        """
        if principal.is_anonymous:
            return None

        try:
            balance = await credit_cache.get_remaining_credits_by_external_id(principal.user_id)
        except MeteringError as e:
            if not principal.legacy_customer_id:
                raise
            logger.warning(f"External-id credit lookup failed for {principal.user_id}: {e}")
        else:
            if balance is None:
                logger.debug(f"No ledger entry for {principal.user_id}, daily message cap applies")
            return balance

        balance = await credit_cache.get_remaining_credits(principal.legacy_customer_id)
        if balance is None:
            logger.debug(f"No ledger entry for customer {principal.legacy_customer_id}")
        return balance

    async def has_enough_credits(
        self,
        principal: Principal,
        credit_cache: RequestCreditCache,
        required_credits: int = 1,
    ) -> bool:
        """Compare the principal's balance with ``required_credits``.

        No ledger entry means no credits. Lookup failures propagate.
        """
        balance = await self.get_balance(principal, credit_cache)
        return balance is not None and balance >= required_credits

    def can_use_web_search(
        self,
        is_using_own_api_keys: bool,
        is_anonymous: bool,
        actual_credits: Optional[int],
    ) -> bool:
        if is_using_own_api_keys:
            return True
        return not is_anonymous and actual_credits is not None and actual_credits >= self.web_search_cost

    async def check_credits(
        self,
        principal: Principal,
        model_id: str,
        credit_cache: RequestCreditCache,
        api_keys: Optional[Mapping[str, str]] = None,
        model_info: Optional[ModelInfo] = None,
        estimated_credits: int = 1,
        web_search: bool = False,
    ) -> CreditCheckResult:
        """Full credit check for one request.

        Args:
            principal: Who the request is attributed to
            model_id: Requested model
            credit_cache: Request-scoped ledger cache
            api_keys: Provider keys supplied with the request
            model_info: Model metadata, used for the credit tier
            estimated_credits: Lower bound on the credits the call will use
            web_search: Whether the request asks for web search
        """
        is_using_own_api_keys = self.is_using_own_api_keys(model_id, api_keys)
        is_free_model = self.is_free_model(model_id)

        if is_using_own_api_keys:
            return CreditCheckResult(True, None, True, is_free_model, can_use_web_search=web_search)
        if is_free_model:
            return CreditCheckResult(False, None, False, True)

        required = max(estimated_credits, calculate_credit_cost(model_info))
        result = await capture("credit check", self.get_balance(principal, credit_cache))
        if not result.ok:
            return CreditCheckResult(result.unwrap_or(True), None, False, False, degraded=True)

        balance = result.value
        return CreditCheckResult(
            balance is not None and balance >= required,
            balance,
            False,
            False,
            can_use_web_search=web_search and self.can_use_web_search(False, principal.is_anonymous, balance),
        )

    @staticmethod
    def should_block_negative_credits(
        is_using_own_api_keys: bool,
        is_free_model: bool,
        is_anonymous: bool,
        actual_credits: Optional[int],
    ) -> bool:
        """True when an in-debt principal must be rejected outright."""
        return (
            not is_using_own_api_keys
            and not is_free_model
            and not is_anonymous
            and actual_credits is not None
            and actual_credits < 0
        )
