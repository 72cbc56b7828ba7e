"""Verification provider for any OpenAI-compatible chat completions API."""

import os
from collections.abc import Mapping, Sequence
from typing import Any

import httpx

from ..errors import (
    ProviderClientError,
    ProviderRateLimitedError,
    ProviderServerError,
    ProviderTimeoutError,
)
from ..logging_config import get_logger
from ..models.verification import Message, ProviderResponse, UsageMetadata
from .base import Provider

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"


def _retry_after(response: httpx.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


class OpenAICompatibleProvider(Provider):
    """POSTs to ``{base_url}/chat/completions`` and classifies failures.

    Retries are not done here; 429, 5xx, timeouts and connection errors are
    raised as transient ``ProviderError`` subclasses and retried by the
    orchestrator. Other 4xx responses are raised as ``ProviderClientError``.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        name: str = "openai",
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.name = name
        self.model = model
        self.base_url = (base_url or os.environ.get("OPENAI_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        self._api_key = api_key or os.environ.get("OPENAI_API_KEY")
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def generate(
        self,
        messages: Sequence[Message],
        params: Mapping[str, Any] | None = None,
    ) -> ProviderResponse:
        params = params or {}
        payload: dict[str, Any] = {
            "model": params.get("model", self.model),
            "messages": [m.to_dict() for m in messages],
            "temperature": params.get("temperature", 0.1),
        }
        if "max_tokens" in params:
            payload["max_tokens"] = params["max_tokens"]
        if params.get("json_mode"):
            payload["response_format"] = {"type": "json_object"}

        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        url = f"{self.base_url}/chat/completions"
        try:
            response = await self._get_client().post(url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(self.name, f"request timed out: {type(e).__name__}") from e
        except httpx.TransportError as e:
            raise ProviderServerError(self.name, f"connection error: {type(e).__name__}") from e

        if response.status_code == 429:
            raise ProviderRateLimitedError(
                self.name, "rate limited (429)", retry_after=_retry_after(response)
            )
        if response.status_code >= 500:
            raise ProviderServerError(self.name, f"server error ({response.status_code})")
        if response.status_code >= 400:
            logger.error(
                "%s request failed with status %d (not retryable)",
                self.name,
                response.status_code,
            )
            raise ProviderClientError(self.name, f"request rejected ({response.status_code})")

        try:
            body = response.json()
            text = body["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderServerError(self.name, "malformed completion payload") from e

        reported = body.get("usage") or {}
        usage = UsageMetadata(
            input_tokens=int(reported.get("prompt_tokens", 0) or 0),
            output_tokens=int(reported.get("completion_tokens", 0) or 0),
            model=body.get("model") or payload["model"],
        )
        return ProviderResponse(text=text, usage=usage)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
