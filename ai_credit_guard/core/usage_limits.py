"""
Cached usage-versus-limits snapshots.

Combines the aggregator and the limit resolver behind a 60 second
per-user cache. Token and cost caps fail open: if either lookup errors,
the snapshot reports zero usage against default limits.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .aggregator import UsageAggregator, UsageTotals
from .limits import LimitConfigResolver
from .result import capture
from .ttl_cache import TTLCache
from ai_credit_guard.storage.models import DEFAULT_USAGE_LIMIT, UsageLimit

logger = logging.getLogger(__name__)

DAILY_TOKENS = "daily_tokens"
MONTHLY_TOKENS = "monthly_tokens"
DAILY_COST = "daily_cost"
MONTHLY_COST = "monthly_cost"


@dataclass(frozen=True)
class UsageSnapshot:
    """Usage totals, the limits they were checked against, and the verdict."""
    usage: UsageTotals
    limits: UsageLimit
    exceeded_limits: List[str] = field(default_factory=list)

    @property
    def is_over_limit(self) -> bool:
        return len(self.exceeded_limits) > 0

    @property
    def daily_tokens(self) -> int:
        return self.usage.daily_tokens

    @property
    def monthly_tokens(self) -> int:
        return self.usage.monthly_tokens

    @property
    def daily_cost(self):
        return self.usage.daily_cost

    @property
    def monthly_cost(self):
        return self.usage.monthly_cost


def find_exceeded_limits(usage: UsageTotals, limits: UsageLimit) -> List[str]:
    """Names of the caps ``usage`` strictly exceeds."""
    exceeded = []
    if usage.daily_tokens > limits.daily_token_limit:
        exceeded.append(DAILY_TOKENS)
    if usage.monthly_tokens > limits.monthly_token_limit:
        exceeded.append(MONTHLY_TOKENS)
    if usage.daily_cost > limits.daily_cost_limit:
        exceeded.append(DAILY_COST)
    if usage.monthly_cost > limits.monthly_cost_limit:
        exceeded.append(MONTHLY_COST)
    return exceeded


def exceeded_limit_messages(snapshot: UsageSnapshot) -> List[str]:
    """Human-readable lines for each exceeded cap."""
    limits = snapshot.limits
    messages = []
    for name in snapshot.exceeded_limits:
        if name == DAILY_TOKENS:
            messages.append(f"Daily token limit ({limits.daily_token_limit:,}) exceeded")
        elif name == MONTHLY_TOKENS:
            messages.append(f"Monthly token limit ({limits.monthly_token_limit:,}) exceeded")
        elif name == DAILY_COST:
            messages.append(f"Daily cost limit (${limits.daily_cost_limit:,.2f}) exceeded")
        elif name == MONTHLY_COST:
            messages.append(f"Monthly cost limit (${limits.monthly_cost_limit:,.2f}) exceeded")
        else:
            messages.append(f"Usage limit exceeded: {name}")
    return messages


class OptimizedUsageLimitsService:
    """Serves UsageSnapshots from a process-wide TTL cache.

    The cache is injected so one instance can be shared by every request
    in the process and swept by the engine's CacheSweeper.
    """

    def __init__(
        self,
        aggregator: UsageAggregator,
        resolver: LimitConfigResolver,
        cache: Optional[TTLCache] = None,
        default_limit: UsageLimit = DEFAULT_USAGE_LIMIT,
    ):
        self.aggregator = aggregator
        self.resolver = resolver
        if cache is None:
            cache = TTLCache(60, name="usage_limits")
        self.cache: TTLCache[str, UsageSnapshot] = cache
        self.default_limit = default_limit

    def safe_snapshot(self) -> UsageSnapshot:
        return UsageSnapshot(usage=UsageTotals(), limits=self.default_limit, exceeded_limits=[])

    async def _compute(self, user_id: str) -> UsageSnapshot:
        usage = await self.aggregator.aggregate(user_id)
        limits = await self.resolver.resolve(user_id)
        return UsageSnapshot(
            usage=usage,
            limits=limits,
            exceeded_limits=find_exceeded_limits(usage, limits),
        )

    async def get_user_usage_and_limits(self, user_id: str) -> UsageSnapshot:
        """Usage and limits for ``user_id``; never raises.

        Fresh cached snapshots are returned as-is. Failed computations are
        not cached, so the next call retries the store.
        """
        cached = self.cache.get(user_id)
        if cached is not None:
            return cached

        result = await capture("usage snapshot", self._compute(user_id))
        if not result.ok:
            return result.unwrap_or(self.safe_snapshot())

        snapshot = result.value
        self.cache.set(user_id, snapshot)
        if snapshot.is_over_limit:
            logger.info(f"User {user_id} over usage limits: {', '.join(snapshot.exceeded_limits)}")
        return snapshot

    async def quick_usage_check(self, user_id: str) -> Tuple[bool, List[str]]:
        snapshot = await self.get_user_usage_and_limits(user_id)
        return snapshot.is_over_limit, list(snapshot.exceeded_limits)

    def invalidate_user_cache(self, user_id: str) -> None:
        """Forget ``user_id``'s snapshot after new usage is written."""
        self.cache.invalidate(user_id)

    def cleanup_cache(self) -> int:
        return self.cache.sweep()
