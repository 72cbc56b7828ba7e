"""Primary provider backed by the Claude Agent SDK."""

import asyncio
import os
from collections.abc import Mapping, Sequence
from typing import Any

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKError,
    CLINotFoundError,
    ResultMessage,
    TextBlock,
    query,
)

from ..errors import ProviderClientError, ProviderServerError, ProviderTimeoutError
from ..logging_config import get_logger
from ..models.verification import Message, ProviderResponse, UsageMetadata
from .base import Provider, split_system

logger = get_logger(__name__)


def _render_prompt(turns: Sequence[Message]) -> str:
    """Flatten a multi-turn conversation into a single prompt string."""
    if len(turns) == 1:
        return turns[0].content
    lines = []
    for m in turns:
        lines.append(f"{m.role.upper()}: {m.content}")
    return "\n\n".join(lines)


class ClaudeAgentProvider(Provider):
    """Single-turn, tool-less Claude call through ``claude_agent_sdk.query``."""

    def __init__(
        self,
        model: str = "sonnet",
        name: str = "claude",
        api_key: str | None = None,
        timeout_seconds: float = 60.0,
    ):
        self.name = name
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")

    async def generate(
        self,
        messages: Sequence[Message],
        params: Mapping[str, Any] | None = None,
    ) -> ProviderResponse:
        params = params or {}
        system, turns = split_system(messages)
        prompt = _render_prompt(turns)

        env = {}
        if self._api_key:
            env["ANTHROPIC_API_KEY"] = self._api_key

        options = ClaudeAgentOptions(
            model=params.get("model", self.model),
            max_turns=1,
            allowed_tools=[],
            system_prompt=system or None,
            env=env,
        )

        try:
            return await asyncio.wait_for(
                self._collect(prompt, options),
                timeout=params.get("timeout_seconds", self.timeout_seconds),
            )
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(self.name, "Claude call timed out") from e
        except CLINotFoundError as e:
            raise ProviderClientError(self.name, f"Claude CLI not available: {e}") from e
        except ClaudeSDKError as e:
            raise ProviderServerError(self.name, str(e)) from e

    async def _collect(self, prompt: str, options: ClaudeAgentOptions) -> ProviderResponse:
        response_text = ""
        usage = UsageMetadata(model=options.model)
        async for message in query(prompt=prompt, options=options):
            if isinstance(message, AssistantMessage):
                for block in message.content:
                    if isinstance(block, TextBlock):
                        response_text += block.text
            elif isinstance(message, ResultMessage):
                reported = message.usage or {}
                usage = UsageMetadata(
                    input_tokens=int(reported.get("input_tokens", 0) or 0),
                    output_tokens=int(reported.get("output_tokens", 0) or 0),
                    cost_usd=message.total_cost_usd,
                    model=options.model,
                )
                if message.is_error:
                    raise ProviderServerError(self.name, message.result or "Claude returned an error result")
        return ProviderResponse(text=response_text, usage=usage)
