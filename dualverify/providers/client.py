"""Provider calls with provider-level retry, cost tracking and reachability."""

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any

from ..costs.tracker import CostTracker
from ..errors import (
    ProviderError,
    ProviderRateLimitedError,
    ProviderServerError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from ..logging_config import get_logger
from ..models.verification import Message, ProviderCallResult
from .base import Provider

logger = get_logger(__name__)

CallReporter = Callable[[str, bool, str | None], None]


def _classify(provider: str, error: Exception) -> ProviderError:
    """Map raw exceptions from ad-hoc providers onto the provider taxonomy."""
    if isinstance(error, ProviderError):
        return error
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ProviderTimeoutError(provider, "call timed out")
    return ProviderServerError(provider, f"{type(error).__name__}: {error}")


class ProviderClient:
    """Calls one provider, retrying transient failures with backoff.

    These retries are independent of verification retries: a call that
    eventually succeeds counts as a single attempt.
    """

    def __init__(
        self,
        provider: Provider,
        max_retries: int = 2,
        backoff: Callable[[int], float] | None = None,
        cost_tracker: CostTracker | None = None,
        on_call: CallReporter | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.max_retries = max_retries
        self._backoff = backoff or (lambda attempt: min(30.0, 2.0 ** attempt))
        self.costs = cost_tracker or CostTracker()
        self._on_call = on_call
        self._sleep = sleep

    @property
    def name(self) -> str:
        return self.provider.name

    def _report(self, ok: bool, error: str | None = None) -> None:
        if self._on_call is not None:
            self._on_call(self.provider.name, ok, error)

    async def call(
        self,
        messages: Sequence[Message],
        params: Mapping[str, Any] | None = None,
    ) -> ProviderCallResult:
        """Generate a completion, retrying transient provider errors.

        Raises:
            ProviderUnavailableError: Retries exhausted or a non-transient error
        """
        attempts = self.max_retries + 1
        last_error: ProviderError | None = None

        for attempt in range(attempts):
            started = time.monotonic()
            try:
                response = await self.provider.generate(messages, params or {})
            except Exception as e:
                error = _classify(self.provider.name, e)
                last_error = error
                self._report(False, str(error))

                if not error.transient:
                    logger.error("%s call failed (not retryable): %s", self.provider.name, error)
                    raise ProviderUnavailableError(self.provider.name, attempt + 1, error) from e
                if attempt + 1 >= attempts:
                    break

                delay = self._backoff(attempt)
                if isinstance(error, ProviderRateLimitedError) and error.retry_after is not None:
                    delay = max(delay, error.retry_after)
                logger.warning(
                    "%s call failed: %s, retrying in %.1fs (attempt %d/%d)",
                    self.provider.name,
                    error,
                    delay,
                    attempt + 1,
                    attempts,
                )
                await self._sleep(delay)
                continue

            latency_ms = (time.monotonic() - started) * 1000
            input_text = "\n".join(m.content for m in messages)
            usage = self.costs.resolve_usage(
                response.usage, input_text, response.text, model=self.provider.model
            )
            self.costs.track(self.provider.name, usage)
            self._report(True)
            return ProviderCallResult(
                provider=self.provider.name,
                text=response.text,
                latency_ms=latency_ms,
                usage=usage,
                calls=attempt + 1,
            )

        logger.error("%s unavailable after %d call(s): %s", self.provider.name, attempts, last_error)
        raise ProviderUnavailableError(self.provider.name, attempts, last_error) from last_error
