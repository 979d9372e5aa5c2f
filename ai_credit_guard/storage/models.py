"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one completed model call.

    Append-only facts that feed the daily and monthly usage windows.
    Once written, these records must never be modified.
    """
    user_id: str
    model_id: str
    provider: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    estimated_cost: Decimal
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        """Validate token accounting."""
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("token counts cannot be negative")
        if self.total_tokens != self.input_tokens + self.output_tokens:
            raise ValueError("total_tokens must equal input_tokens + output_tokens")
        if self.estimated_cost < 0:
            raise ValueError("estimated_cost cannot be negative")


@dataclass(frozen=True)
class UsageLimit:
    """Token and cost caps for a scope.

    Scope is a user (user_id), a model (model_id + provider), or neither
    for the global row.
    """
    daily_token_limit: int
    monthly_token_limit: int
    daily_cost_limit: Decimal
    monthly_cost_limit: Decimal
    request_rate_limit: int = 60
    currency: str = "USD"
    is_active: bool = True
    id: Optional[int] = None
    user_id: Optional[str] = None
    model_id: Optional[str] = None
    provider: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate limits are positive and the scope is well formed."""
        if self.daily_token_limit <= 0:
            raise ValueError("daily_token_limit must be > 0")
        if self.monthly_token_limit <= 0:
            raise ValueError("monthly_token_limit must be > 0")
        if self.daily_cost_limit <= 0:
            raise ValueError("daily_cost_limit must be > 0")
        if self.monthly_cost_limit <= 0:
            raise ValueError("monthly_cost_limit must be > 0")
        if self.user_id is not None and (self.model_id is not None or self.provider is not None):
            raise ValueError("a limit is scoped to a user or to a model, not both")
        if (self.model_id is None) != (self.provider is None):
            raise ValueError("model scoped limits need both model_id and provider")

    @property
    def is_global(self) -> bool:
        return self.user_id is None and self.model_id is None


# Built-in fallback when neither a user row nor a global row is active
DEFAULT_USAGE_LIMIT = UsageLimit(
    daily_token_limit=50_000,
    monthly_token_limit=1_000_000,
    daily_cost_limit=Decimal("10"),
    monthly_cost_limit=Decimal("100"),
    request_rate_limit=60,
    currency="USD",
)
