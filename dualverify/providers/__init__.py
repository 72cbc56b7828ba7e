"""Provider adapters for the primary and verification providers."""

from .base import CallableProvider, Provider, split_system
from .claude import ClaudeAgentProvider
from .client import ProviderClient
from .openai_compat import OpenAICompatibleProvider

__all__ = [
    "Provider",
    "CallableProvider",
    "ProviderClient",
    "ClaudeAgentProvider",
    "OpenAICompatibleProvider",
    "split_system",
]
