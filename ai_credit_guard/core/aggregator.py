"""
Usage aggregation over calendar windows.

Daily and monthly windows start at UTC midnight and the first of the
month respectively.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from ai_credit_guard.storage.models import utcnow
from ai_credit_guard.storage.repository import UsageRepository


@dataclass(frozen=True)
class UsageTotals:
    """A user's consumed tokens and cost per window."""
    daily_tokens: int = 0
    monthly_tokens: int = 0
    daily_cost: Decimal = Decimal("0")
    monthly_cost: Decimal = Decimal("0")


def _as_utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def start_of_day(now: datetime) -> datetime:
    """UTC midnight of the day containing ``now``."""
    return _as_utc(now).replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_month(now: datetime) -> datetime:
    """UTC midnight on the first day of the month containing ``now``."""
    return start_of_day(now).replace(day=1)


class UsageAggregator:
    """Computes UsageTotals with a single aggregation query per call."""

    def __init__(self, repository: UsageRepository, now: Callable[[], datetime] = utcnow):
        self.repository = repository
        self._now = now

    async def aggregate(self, user_id: str, now: Optional[datetime] = None) -> UsageTotals:
        """Sum ``user_id``'s usage for the windows containing ``now``.

        Returns:
            UsageTotals, all zero when the user has no events
        """
        now = now or self._now()
        stats = await self.repository.aggregate_usage(
            user_id,
            day_start=start_of_day(now),
            month_start=start_of_month(now),
        )
        return UsageTotals(
            daily_tokens=stats["daily_tokens"],
            monthly_tokens=stats["monthly_tokens"],
            daily_cost=stats["daily_cost"],
            monthly_cost=stats["monthly_cost"],
        )
