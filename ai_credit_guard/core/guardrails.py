"""
Request admission and usage recording.

Implements the per-request decision for a chat call and the write path
that follows it.

Evaluation Order (first strategy to return a Decision wins):
1. own_api_key - The caller pays the provider directly
2. negative_balance - In-debt principals are rejected outright
3. web_search - Web search needs an own key or WEB_SEARCH_COST credits
4. usage_limits - Token and cost caps (authenticated principals only)
5. free_model - Free-tier models are gated by the daily message cap
6. credits - Enough credits for the model's tier
7. credits_required - Paid model without credits

Every lookup fails open; an unexpected error anywhere in the chain
allows the request with a degraded decision.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, List, Mapping, Optional, Sequence

from .aggregator import UsageAggregator
from .credits import CreditCheckResult, CreditService, Principal
from .limits import LimitConfigResolver
from .message_limits import MessageLimitCache, MessageLimitStatus
from .pricing import ModelCatalog, ModelInfo, calculate_credit_cost
from .request_cache import RequestCreditCache, RequestModelCache
from .result import capture
from .ttl_cache import Clock, CacheSweeper, TTLCache
from .usage_limits import OptimizedUsageLimitsService, exceeded_limit_messages
from ai_credit_guard.billing.ledger import CreditLedger, InMemoryCreditLedger, PolarCreditLedger
from ai_credit_guard.config.loader import MeteringConfig
from ai_credit_guard.storage.models import UsageEvent, utcnow
from ai_credit_guard.storage.repository import UsageRepository

logger = logging.getLogger(__name__)


class DecisionReason(Enum):
    """Why a request was allowed or denied."""
    OWN_API_KEY = "own_api_key"
    FREE_MODEL = "free_model"
    SUFFICIENT_CREDITS = "sufficient_credits"
    DAILY_MESSAGE_CAP = "daily_message_cap"
    USAGE_LIMIT_EXCEEDED = "usage_limit_exceeded"
    NEGATIVE_BALANCE = "negative_balance"
    CREDITS_REQUIRED = "credits_required"
    WEB_SEARCH_RESTRICTED = "web_search_restricted"
    WEB_SEARCH_INSUFFICIENT_CREDITS = "web_search_insufficient_credits"
    METERING_UNAVAILABLE = "metering_unavailable"


_DENIED_STATUS = {
    DecisionReason.NEGATIVE_BALANCE: 402,
    DecisionReason.CREDITS_REQUIRED: 403,
    DecisionReason.DAILY_MESSAGE_CAP: 429,
    DecisionReason.USAGE_LIMIT_EXCEEDED: 429,
    DecisionReason.WEB_SEARCH_RESTRICTED: 403,
    DecisionReason.WEB_SEARCH_INSUFFICIENT_CREDITS: 402,
}


@dataclass(frozen=True)
class Decision:
    """Admission verdict for one request. Not persisted."""
    allowed: bool
    reason: DecisionReason
    exceeded_limits: List[str] = field(default_factory=list)
    credits: Optional[int] = None
    message_status: Optional[MessageLimitStatus] = None
    credit_cost: int = 1
    degraded: bool = False
    web_search: bool = False
    detail: str = ""

    @property
    def http_status(self) -> int:
        if self.allowed:
            return 200
        return _DENIED_STATUS.get(self.reason, 403)


class RequestDenied(Exception):
    """Raised by callers that turn a denied Decision into an error."""

    def __init__(self, decision: Decision):
        message = decision.detail or f"Request denied: {decision.reason.value}"
        super().__init__(message)
        self.decision = decision

    @property
    def http_status(self) -> int:
        return self.decision.http_status


class EvaluationContext:
    """State shared by the strategies while evaluating one request.

    The credit check runs at most once per request; strategies that need
    it await ``credit_check()``.
    """

    def __init__(
        self,
        principal: Principal,
        model_id: str,
        api_keys: Optional[Mapping[str, str]],
        credit_cache: RequestCreditCache,
        model_cache: RequestModelCache,
        credit_service: CreditService,
        usage_limits: OptimizedUsageLimitsService,
        message_limits: MessageLimitCache,
        web_search: bool = False,
    ):
        self.principal = principal
        self.web_search = web_search
        self.model_id = model_id
        self.api_keys = api_keys
        self.credit_cache = credit_cache
        self.model_cache = model_cache
        self.credit_service = credit_service
        self.usage_limits = usage_limits
        self.message_limits = message_limits
        self.model_info: Optional[ModelInfo] = None
        self.credit_cost = 1
        self._credit_check: Optional[CreditCheckResult] = None

    async def load_model(self) -> None:
        self.model_info = await self.model_cache.get_model_details(self.model_id)
        self.credit_cost = calculate_credit_cost(self.model_info)

    async def credit_check(self) -> CreditCheckResult:
        if self._credit_check is None:
            self._credit_check = await self.credit_service.check_credits(
                self.principal,
                self.model_id,
                self.credit_cache,
                api_keys=self.api_keys,
                model_info=self.model_info,
                web_search=self.web_search,
            )
        return self._credit_check

    def allow(self, reason: DecisionReason, **kwargs) -> Decision:
        credit_check = self._credit_check
        return Decision(
            allowed=True,
            reason=reason,
            credit_cost=self.credit_cost,
            degraded=credit_check is not None and credit_check.degraded,
            web_search=credit_check is not None and credit_check.can_use_web_search,
            **kwargs,
        )

    def deny(self, reason: DecisionReason, detail: str, **kwargs) -> Decision:
        return Decision(
            allowed=False,
            reason=reason,
            credit_cost=self.credit_cost,
            detail=detail,
            **kwargs,
        )


StrategyCheck = Callable[[EvaluationContext], Awaitable[Optional[Decision]]]


@dataclass(frozen=True)
class Strategy:
    name: str
    check: StrategyCheck


async def check_own_api_key(ctx: EvaluationContext) -> Optional[Decision]:
    credit_check = await ctx.credit_check()
    if credit_check.is_using_own_api_keys:
        return ctx.allow(DecisionReason.OWN_API_KEY)
    return None


async def check_negative_balance(ctx: EvaluationContext) -> Optional[Decision]:
    credit_check = await ctx.credit_check()
    if CreditService.should_block_negative_credits(
        credit_check.is_using_own_api_keys,
        credit_check.is_free_model,
        ctx.principal.is_anonymous,
        credit_check.actual_credits,
    ):
        return ctx.deny(
            DecisionReason.NEGATIVE_BALANCE,
            f"Credit balance is negative ({credit_check.actual_credits}); "
            "top up before sending more messages",
            credits=credit_check.actual_credits,
        )
    return None


async def check_web_search(ctx: EvaluationContext) -> Optional[Decision]:
    if not ctx.web_search:
        return None
    credit_check = await ctx.credit_check()
    if credit_check.can_use_web_search:
        return None

    cost = ctx.credit_service.get_web_search_cost()
    if ctx.principal.is_anonymous:
        return ctx.deny(
            DecisionReason.WEB_SEARCH_RESTRICTED,
            "Web search is only available to signed-in users with credits",
        )
    if credit_check.actual_credits is not None and credit_check.actual_credits < cost:
        return ctx.deny(
            DecisionReason.WEB_SEARCH_INSUFFICIENT_CREDITS,
            f"Web search needs at least {cost} credits; balance is {credit_check.actual_credits}",
            credits=credit_check.actual_credits,
        )
    # Unknown balance: the message goes through without web search
    return None


async def check_usage_limits(ctx: EvaluationContext) -> Optional[Decision]:
    if ctx.principal.is_anonymous:
        return None
    snapshot = await ctx.usage_limits.get_user_usage_and_limits(ctx.principal.user_id)
    if not snapshot.is_over_limit:
        return None
    return ctx.deny(
        DecisionReason.USAGE_LIMIT_EXCEEDED,
        "; ".join(exceeded_limit_messages(snapshot)),
        exceeded_limits=list(snapshot.exceeded_limits),
    )


async def check_free_model(ctx: EvaluationContext) -> Optional[Decision]:
    credit_check = await ctx.credit_check()
    if not credit_check.is_free_model:
        return None

    status = await ctx.message_limits.check_message_limit(
        ctx.principal.user_id,
        is_anonymous=ctx.principal.is_anonymous,
        credit_cache=ctx.credit_cache,
    )
    if not status.has_reached_limit:
        return ctx.allow(DecisionReason.FREE_MODEL, credits=status.credits, message_status=status)
    if status.used_credits:
        return ctx.deny(
            DecisionReason.NEGATIVE_BALANCE,
            f"Credit balance is negative ({status.credits}); top up before sending more messages",
            credits=status.credits,
            message_status=status,
        )
    return ctx.deny(
        DecisionReason.DAILY_MESSAGE_CAP,
        f"Daily limit of {status.limit} messages reached",
        credits=status.credits,
        message_status=status,
    )


async def check_credits(ctx: EvaluationContext) -> Optional[Decision]:
    credit_check = await ctx.credit_check()
    if credit_check.has_credits:
        return ctx.allow(DecisionReason.SUFFICIENT_CREDITS, credits=credit_check.actual_credits)
    return None


async def require_credits(ctx: EvaluationContext) -> Optional[Decision]:
    credit_check = await ctx.credit_check()
    return ctx.deny(
        DecisionReason.CREDITS_REQUIRED,
        f"{ctx.model_id} requires {ctx.credit_cost} credit(s) per message; "
        "use a free model or purchase credits",
        credits=credit_check.actual_credits,
    )


DEFAULT_STRATEGIES = (
    Strategy("own_api_key", check_own_api_key),
    Strategy("negative_balance", check_negative_balance),
    Strategy("web_search", check_web_search),
    Strategy("usage_limits", check_usage_limits),
    Strategy("free_model", check_free_model),
    Strategy("credits", check_credits),
    Strategy("credits_required", require_credits),
)


class MeteringEngine:
    """Admission decisions and usage recording for chat requests.

    Owns the process-wide usage and message-limit caches and the sweeper
    that expires them. Request-scoped caches are built fresh per
    ``evaluate`` call.
    """

    def __init__(
        self,
        repository: UsageRepository,
        ledger: CreditLedger,
        catalog: Optional[ModelCatalog] = None,
        config: Optional[MeteringConfig] = None,
        clock: Clock = time.monotonic,
        now: Callable[[], datetime] = utcnow,
        strategies: Sequence[Strategy] = DEFAULT_STRATEGIES,
    ):
        config = config or MeteringConfig()
        self.repository = repository
        self.ledger = ledger
        self.catalog = catalog if catalog is not None else ModelCatalog(config.models)
        self.config = config
        self.strategies = list(strategies)

        self.usage_cache: TTLCache = TTLCache(config.cache.usage_ttl_seconds, clock=clock, name="usage_limits")
        self.message_cache: TTLCache = TTLCache(config.cache.message_ttl_seconds, clock=clock, name="message_limits")

        self.usage_limits = OptimizedUsageLimitsService(
            UsageAggregator(repository, now=now),
            LimitConfigResolver(repository, default_limit=config.default_limits),
            cache=self.usage_cache,
            default_limit=config.default_limits,
        )
        self.message_limits = MessageLimitCache(
            repository,
            ledger,
            cache=self.message_cache,
            anonymous_daily_limit=config.messages.anonymous_daily_limit,
            authenticated_daily_limit=config.messages.authenticated_daily_limit,
            credited_display_limit=config.messages.credited_display_limit,
            fail_open_limit=config.messages.fail_open_limit,
            now=now,
        )
        self.credit_service = CreditService(
            provider_keys=config.provider_keys,
            free_model_suffix=config.free_model_suffix,
            web_search_cost=config.web_search_cost,
        )

        self.sweeper = CacheSweeper(config.cache.sweep_interval_seconds)
        self.sweeper.register(self.usage_cache)
        self.sweeper.register(self.message_cache)

    @classmethod
    def from_config(
        cls,
        config: MeteringConfig,
        db_path: str,
        ledger: Optional[CreditLedger] = None,
    ) -> "MeteringEngine":
        """Build an engine backed by SQLite at ``db_path``.

        Without an explicit ``ledger``, Polar is used when the configured
        access token variable is set, and an empty in-memory ledger
        otherwise.
        """
        if ledger is None:
            token = os.environ.get(config.ledger.access_token_env)
            if token:
                ledger = PolarCreditLedger(
                    token,
                    server=config.ledger.server,
                    meter_name=config.ledger.meter_name,
                    timeout=config.ledger.timeout_seconds,
                )
            else:
                logger.warning(
                    f"{config.ledger.access_token_env} is not set; using an empty in-memory credit ledger"
                )
                ledger = InMemoryCreditLedger()
        return cls(UsageRepository(db_path), ledger, config=config)

    def _context(
        self,
        principal: Principal,
        model_id: str,
        api_keys: Optional[Mapping[str, str]],
        web_search: bool,
    ) -> EvaluationContext:
        return EvaluationContext(
            principal=principal,
            model_id=model_id,
            api_keys=api_keys,
            credit_cache=RequestCreditCache(self.ledger),
            model_cache=RequestModelCache(self.catalog),
            credit_service=self.credit_service,
            usage_limits=self.usage_limits,
            message_limits=self.message_limits,
            web_search=web_search,
        )

    async def _run_strategies(self, ctx: EvaluationContext) -> Decision:
        await ctx.load_model()
        for strategy in self.strategies:
            decision = await strategy.check(ctx)
            if decision is not None:
                logger.debug(
                    f"{strategy.name} decided {decision.reason.value} for "
                    f"{ctx.principal.user_id}/{ctx.model_id}"
                )
                return decision
        raise RuntimeError(f"No strategy decided {ctx.principal.user_id}/{ctx.model_id}")

    async def evaluate(
        self,
        principal: Principal,
        model_id: str,
        api_keys: Optional[Mapping[str, str]] = None,
        web_search: bool = False,
    ) -> Decision:
        """Decide whether ``principal`` may send a message to ``model_id``.

        Args:
            principal: Who the request is attributed to
            model_id: Requested model, ``provider/model[:free]``
            api_keys: Provider keys supplied with the request, by key name
            web_search: Whether the request asks for web search

        Returns:
            Decision; never raises for metering failures
        """
        ctx = self._context(principal, model_id, api_keys, web_search)
        result = await capture("request evaluation", self._run_strategies(ctx))
        decision = result.unwrap_or(
            Decision(
                allowed=True,
                reason=DecisionReason.METERING_UNAVAILABLE,
                credit_cost=ctx.credit_cost,
                degraded=True,
            )
        )
        if not decision.allowed:
            logger.info(f"Denied {principal.user_id} on {model_id}: {decision.reason.value}")
        return decision

    async def record_usage(self, event: UsageEvent) -> None:
        """Append ``event`` and drop the user's cached usage and message state.

        Store errors propagate: a lost usage event must be visible.
        """
        await self.repository.insert_usage_event(event)
        self.invalidate_user(event.user_id)

    def invalidate_user(self, user_id: str) -> None:
        self.usage_limits.invalidate_user_cache(user_id)
        self.message_limits.invalidate(user_id)

    def start(self) -> None:
        """Start the background cache sweeper on the running loop."""
        self.sweeper.start()

    async def aclose(self) -> None:
        await self.sweeper.stop()
        await self.ledger.aclose()
