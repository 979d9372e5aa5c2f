"""
Pricing calculations and credit tiers.

Maps model pricing metadata to a per-message credit cost and to the
dollar cost of a completed call.

Credit tiers (per-million-token prices):
- Non-premium models: 1 credit
- Premium, $3+/M input or $5+/M output: 2 credits
- Premium, $15+/M: 5 credits
- Premium, $50+/M: 15 credits
- Premium, $100+/M: 30 credits
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Dict, Iterable, Optional

from .token_counter import TokenUsage

PER_MILLION = Decimal("1000000")
COST_QUANTUM = Decimal("0.000001")

# (minimum max_price per million, credits), highest first
CREDIT_TIERS = (
    (Decimal("100"), 30),
    (Decimal("50"), 15),
    (Decimal("15"), 5),
)


@dataclass(frozen=True)
class ModelInfo:
    """Model metadata relevant to metering.

    Prices are USD per single token; either may be unknown.
    """
    model_id: str
    premium: bool = False
    input_price: Optional[Decimal] = None
    output_price: Optional[Decimal] = None
    name: Optional[str] = None
    provider: Optional[str] = None

    def __post_init__(self):
        if self.provider is None:
            object.__setattr__(self, "provider", provider_of(self.model_id))

    @property
    def input_price_per_million(self) -> Decimal:
        return (self.input_price or Decimal("0")) * PER_MILLION

    @property
    def output_price_per_million(self) -> Decimal:
        return (self.output_price or Decimal("0")) * PER_MILLION


def provider_of(model_id: str) -> str:
    """Provider prefix of a ``provider/model`` id ("unknown" when absent)."""
    if "/" not in model_id:
        return "unknown"
    return model_id.split("/", 1)[0]


def calculate_credit_cost(model_info: Optional[ModelInfo]) -> int:
    """Credits charged per message for a model.

    Output price is weighted at half when picking the tier. Missing
    metadata or pricing falls to the cheapest tier allowed by the premium
    flag; this never raises.

    Args:
        model_info: Model metadata, or None when the model is unknown

    Returns:
        One of 1, 2, 5, 15 or 30
    """
    if model_info is None or not model_info.premium:
        return 1

    input_per_million = model_info.input_price_per_million
    output_per_million = model_info.output_price_per_million
    max_price = max(input_per_million, output_per_million * Decimal("0.5"))

    for threshold, credits in CREDIT_TIERS:
        if max_price >= threshold:
            return credits
    if input_per_million >= 3 or output_per_million >= 5:
        return 2
    return 1


def estimate_cost(model_info: Optional[ModelInfo], usage: TokenUsage) -> Decimal:
    """Dollar cost of a call with conservative rounding.

    Args:
        model_info: Model metadata; unknown models cost nothing
        usage: Token usage data

    Returns:
        Total cost rounded UP to 6 decimal places
    """
    if model_info is None:
        return Decimal("0").quantize(COST_QUANTUM)

    input_cost = Decimal(usage.input_tokens) * (model_info.input_price or Decimal("0"))
    output_cost = Decimal(usage.output_tokens) * (model_info.output_price or Decimal("0"))
    return (input_cost + output_cost).quantize(COST_QUANTUM, rounding=ROUND_UP)


class ModelCatalog:
    """Static model metadata provider.

    Built from configuration; lookups are async so it can stand in for
    a remote catalog.
    """

    def __init__(self, models: Iterable[ModelInfo] = ()):
        self._models: Dict[str, ModelInfo] = {m.model_id: m for m in models}

    async def get_model_details(self, model_id: str) -> Optional[ModelInfo]:
        """Return metadata for ``model_id``, or None when it isn't listed."""
        return self._models.get(model_id)

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models

    def __len__(self) -> int:
        return len(self._models)
