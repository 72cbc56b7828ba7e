"""Provider contract shared by the primary and verification providers."""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any

from ..models.verification import Message, ProviderResponse

GenerateFn = Callable[[Sequence[Message], Mapping[str, Any]], Awaitable["str | ProviderResponse"]]


class Provider(ABC):
    """A text-generation service reachable over the network.

    Implementations raise ``ProviderError`` subclasses on failure so the
    orchestrator can decide what to retry.
    """

    name: str = "provider"
    model: str | None = None

    @abstractmethod
    async def generate(
        self,
        messages: Sequence[Message],
        params: Mapping[str, Any] | None = None,
    ) -> ProviderResponse:
        """Generate a completion for ``messages``.

        Args:
            messages: Chat-style prompt
            params: Optional generation parameters (temperature, max_tokens, ...)

        Returns:
            ProviderResponse with the text and usage metadata
        """

    async def aclose(self) -> None:
        """Release network resources held by the provider."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, model={self.model!r})"


class CallableProvider(Provider):
    """Wrap an async ``(messages, params) -> str | ProviderResponse`` callback.

    Used to plug in any client library, and by the test suite.
    """

    def __init__(self, name: str, callback: GenerateFn, model: str | None = None):
        self.name = name
        self.model = model
        self._callback = callback

    async def generate(
        self,
        messages: Sequence[Message],
        params: Mapping[str, Any] | None = None,
    ) -> ProviderResponse:
        result = await self._callback(messages, params or {})
        if isinstance(result, ProviderResponse):
            return result
        return ProviderResponse(text=str(result))


def split_system(messages: Sequence[Message]) -> tuple[str, list[Message]]:
    """Separate system messages from the conversation turns."""
    system = "\n\n".join(m.content for m in messages if m.role == "system")
    turns = [m for m in messages if m.role != "system"]
    return system, turns
