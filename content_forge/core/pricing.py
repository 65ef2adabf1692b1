"""
Pricing calculations and rate management.

Handles cost computations for text models and fixed-price operations.
"""

from dataclasses import dataclass
from typing import Dict
from decimal import Decimal, ROUND_UP

from .token_counter import TokenUsage, estimate_tokens

COST_QUANTUM = Decimal("0.0001")

# Fixed per-operation prices
IMAGE_GENERATION_COST = Decimal("0.04")
TRANSCRIPTION_COST_PER_MINUTE = Decimal("0.006")
IMPROVE_POST_ESTIMATE = Decimal("0.05")
# Stock photo search is free-tier; entries are kept for call counts
PHOTO_SEARCH_COST = Decimal("0")

# Expected completion size used for pre-call estimates
ESTIMATED_COMPLETION_TOKENS = 800


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    prompt_cost_per_1k: Decimal  # Cost per 1K prompt tokens
    completion_cost_per_1k: Decimal  # Cost per 1K completion tokens


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.
        
        Args:
            model: Model identifier
            
        Returns:
            ModelPricing for the model
            
        Raises:
            ValueError: If model is not supported
        """
        if model not in self.prices:
            raise ValueError(f"Unsupported model: {model}")
        return self.prices[model]

    def supports(self, model: str) -> bool:
        return model in self.prices


# Fixed pricing table - no dynamic fetching, no defaults
PRICING_TABLE = PricingTable({
    "gpt-4o-mini": ModelPricing(
        prompt_cost_per_1k=Decimal("0.00015"),
        completion_cost_per_1k=Decimal("0.0006")
    ),
    "gpt-4o": ModelPricing(
        prompt_cost_per_1k=Decimal("0.0025"),
        completion_cost_per_1k=Decimal("0.01")
    ),
    "gpt-4-turbo-preview": ModelPricing(
        prompt_cost_per_1k=Decimal("0.01"),
        completion_cost_per_1k=Decimal("0.03")
    ),
    "gpt-4": ModelPricing(
        prompt_cost_per_1k=Decimal("0.03"),
        completion_cost_per_1k=Decimal("0.06")
    ),
    "gpt-3.5-turbo": ModelPricing(
        prompt_cost_per_1k=Decimal("0.0005"),
        completion_cost_per_1k=Decimal("0.0015")
    ),
})


def _round_up(amount: Decimal) -> Decimal:
    return amount.quantize(COST_QUANTUM, rounding=ROUND_UP)


def calculate_cost(model: str, usage: TokenUsage) -> Decimal:
    """Calculate total cost for model usage with conservative rounding.
    
    Args:
        model: Model identifier
        usage: Token usage data
        
    Returns:
        Total cost rounded UP to four decimal places
        
    Raises:
        ValueError: If model is not supported
    """
    pricing = PRICING_TABLE.get_pricing(model)
    
    prompt_cost = (Decimal(usage.prompt_tokens) / Decimal("1000")) * pricing.prompt_cost_per_1k
    completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * pricing.completion_cost_per_1k
    
    return _round_up(prompt_cost + completion_cost)


def estimate_text_cost(model: str, prompt: str) -> Decimal:
    """Estimate the cost of one text generation before making the call."""
    usage = TokenUsage(
        prompt_tokens=estimate_tokens(prompt),
        completion_tokens=ESTIMATED_COMPLETION_TOKENS
    )
    return calculate_cost(model, usage)


def transcription_cost(duration_seconds: float) -> Decimal:
    """Per-minute transcription price for a clip of the given length."""
    seconds = Decimal(str(max(duration_seconds, 0)))
    return _round_up(seconds * TRANSCRIPTION_COST_PER_MINUTE / Decimal("60"))
