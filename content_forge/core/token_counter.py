"""
Token counting and usage tracking.

Holds exact provider-reported counts and the rough estimate used before a call.
"""

from dataclasses import dataclass
import math

CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.
    
    Contains exact token counts as reported by the provider.
    """
    prompt_tokens: int
    completion_tokens: int
    
    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


def estimate_tokens(text: str) -> int:
    """Rough token estimate for English text (1 token per 4 characters)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)
