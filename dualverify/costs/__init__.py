"""Cost tracking for provider usage."""

from .tracker import CostTracker, ModelPricing, ProviderUsage

__all__ = ["CostTracker", "ModelPricing", "ProviderUsage"]
