"""
Provider-reported token counts.

Feeds both the dollar estimate of a call and the usage event recorded
after it.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenUsage:
    """Input and output tokens reported for one completed call."""
    input_tokens: int
    output_tokens: int

    def __post_init__(self):
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("token counts cannot be negative")

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens
