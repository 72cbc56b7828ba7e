"""Token and cost tracking per provider."""

from dataclasses import dataclass, replace
from datetime import datetime

from ..models.verification import UsageMetadata


class ModelPricing:
    """Published API pricing per million tokens, in USD.

    Models are matched by substring so dated snapshots resolve to their
    family. Unknown models are priced at zero and flagged in the summary.
    """

    # (input, output) per MTok; more specific keys first
    PRICES: dict[str, tuple[float, float]] = {
        "opus": (5.00, 25.00),
        "sonnet": (3.00, 15.00),
        "haiku": (1.00, 5.00),
        "gpt-4o-mini": (0.15, 0.60),
        "gpt-4o": (2.50, 10.00),
        "gpt-4.1-mini": (0.40, 1.60),
        "gpt-4.1": (2.00, 8.00),
    }

    @classmethod
    def get_prices(cls, model: str | None) -> tuple[float, float] | None:
        if not model:
            return None
        model_lower = model.lower()
        for key, prices in cls.PRICES.items():
            if key in model_lower:
                return prices
        return None

    @classmethod
    def cost(cls, model: str | None, input_tokens: int, output_tokens: int) -> float | None:
        prices = cls.get_prices(model)
        if prices is None:
            return None
        input_price, output_price = prices
        return (input_tokens / 1_000_000) * input_price + (output_tokens / 1_000_000) * output_price


@dataclass
class ProviderUsage:
    """Accumulated usage for one provider."""

    input_tokens: int = 0
    output_tokens: int = 0
    calls: int = 0
    estimated_calls: int = 0
    cost_usd: float = 0.0
    unpriced_calls: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "calls": self.calls,
            "estimated_calls": self.estimated_calls,
            "unpriced_calls": self.unpriced_calls,
            "cost_usd": round(self.cost_usd, 6),
        }


class CostTracker:
    """Tracks provider token usage and cost for the service lifetime.

    Providers that report no token counts are estimated at ~4 characters
    per token (rough average for English text).
    """

    CHARS_PER_TOKEN = 4

    def __init__(self):
        self._usage: dict[str, ProviderUsage] = {}
        self.started_at = datetime.now()

    @classmethod
    def estimate_tokens(cls, text: str) -> int:
        """Estimate token count from text."""
        if not text:
            return 0
        return max(1, len(text) // cls.CHARS_PER_TOKEN)

    def resolve_usage(
        self,
        usage: UsageMetadata,
        input_text: str,
        output_text: str,
        model: str | None = None,
    ) -> UsageMetadata:
        """Fill in estimated tokens and cost where the provider reported none."""
        resolved = usage
        if not usage.input_tokens and not usage.output_tokens:
            resolved = replace(
                resolved,
                input_tokens=self.estimate_tokens(input_text),
                output_tokens=self.estimate_tokens(output_text),
                estimated=True,
            )
        if resolved.model is None and model:
            resolved = replace(resolved, model=model)
        if resolved.cost_usd is None:
            cost = ModelPricing.cost(resolved.model, resolved.input_tokens, resolved.output_tokens)
            if cost is not None:
                resolved = replace(resolved, cost_usd=cost)
        return resolved

    def track(self, provider: str, usage: UsageMetadata) -> None:
        """Add one call's usage to the provider totals."""
        totals = self._usage.setdefault(provider, ProviderUsage())
        totals.input_tokens += usage.input_tokens
        totals.output_tokens += usage.output_tokens
        totals.calls += 1
        if usage.estimated:
            totals.estimated_calls += 1
        if usage.cost_usd is None:
            totals.unpriced_calls += 1
        else:
            totals.cost_usd += usage.cost_usd

    def usage_for(self, provider: str) -> ProviderUsage:
        return self._usage.get(provider, ProviderUsage())

    @property
    def total_cost(self) -> float:
        return sum(u.cost_usd for u in self._usage.values())

    @property
    def total_tokens(self) -> int:
        return sum(u.total_tokens for u in self._usage.values())

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "providers": {name: usage.to_dict() for name, usage in self._usage.items()},
            "totals": {
                "total_tokens": self.total_tokens,
                "api_calls": sum(u.calls for u in self._usage.values()),
                "total_cost_usd": round(self.total_cost, 6),
            },
            "started_at": self.started_at.isoformat(),
        }

    def reset(self) -> None:
        self._usage = {}
        self.started_at = datetime.now()
