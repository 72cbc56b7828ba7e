"""Provider adapters, provider-level retry and cost tracking."""

import asyncio
import json

import httpx
import pytest

from conftest import ScriptedProvider, usage_response
from dualverify.costs import CostTracker, ModelPricing
from dualverify.errors import (
    ProviderClientError,
    ProviderRateLimitedError,
    ProviderServerError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from dualverify.models import Message, ProviderResponse, UsageMetadata
from dualverify.providers import CallableProvider, OpenAICompatibleProvider, ProviderClient, split_system
from dualverify.providers import claude as claude_module

MESSAGES = [Message("system", "Be brief."), Message("user", "Capital of France?")]


def completion(text="Paris.", usage=None, model="gpt-4o-mini-2024-07-18"):
    body = {"model": model, "choices": [{"message": {"role": "assistant", "content": text}}]}
    if usage is not None:
        body["usage"] = usage
    return body


def openai_provider(handler) -> OpenAICompatibleProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAICompatibleProvider(
        model="gpt-4o-mini", base_url="https://llm.internal/v1/", api_key="test-key", client=client
    )


# ---------------------------------------------------------------------------
# OpenAI-compatible adapter
# ---------------------------------------------------------------------------


class TestOpenAICompatibleProvider:
    @pytest.mark.asyncio
    async def test_successful_completion(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=completion(usage={"prompt_tokens": 12, "completion_tokens": 3}))

        provider = openai_provider(handler)
        response = await provider.generate(MESSAGES, {"json_mode": True, "max_tokens": 50})

        assert response.text == "Paris."
        assert response.usage.input_tokens == 12
        assert response.usage.output_tokens == 3
        assert response.usage.model == "gpt-4o-mini-2024-07-18"
        assert seen["url"] == "https://llm.internal/v1/chat/completions"
        assert seen["auth"] == "Bearer test-key"
        assert seen["body"]["messages"][0] == {"role": "system", "content": "Be brief."}
        assert seen["body"]["response_format"] == {"type": "json_object"}
        assert seen["body"]["max_tokens"] == 50
        assert seen["body"]["temperature"] == 0.1

    @pytest.mark.asyncio
    async def test_missing_usage_is_left_for_estimation(self):
        provider = openai_provider(lambda request: httpx.Response(200, json=completion()))

        response = await provider.generate(MESSAGES)

        assert response.usage.input_tokens == 0
        assert response.usage.output_tokens == 0

    @pytest.mark.asyncio
    async def test_429_carries_retry_after(self):
        provider = openai_provider(
            lambda request: httpx.Response(429, headers={"Retry-After": "7"}, json={"error": "slow down"})
        )

        with pytest.raises(ProviderRateLimitedError) as excinfo:
            await provider.generate(MESSAGES)

        assert excinfo.value.retry_after == 7.0
        assert excinfo.value.transient

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, error_type, transient",
        [(500, ProviderServerError, True), (503, ProviderServerError, True), (400, ProviderClientError, False)],
    )
    async def test_status_classification(self, status, error_type, transient):
        provider = openai_provider(lambda request: httpx.Response(status, json={"error": "nope"}))

        with pytest.raises(error_type) as excinfo:
            await provider.generate(MESSAGES)

        assert excinfo.value.transient is transient

    @pytest.mark.asyncio
    async def test_timeout_and_connection_errors_are_transient(self):
        def timeout(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        def refused(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderTimeoutError):
            await openai_provider(timeout).generate(MESSAGES)
        with pytest.raises(ProviderServerError):
            await openai_provider(refused).generate(MESSAGES)

    @pytest.mark.asyncio
    async def test_malformed_payload(self):
        provider = openai_provider(lambda request: httpx.Response(200, json={"choices": []}))

        with pytest.raises(ProviderServerError, match="malformed"):
            await provider.generate(MESSAGES)

    @pytest.mark.asyncio
    async def test_injected_client_is_not_closed(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json=completion())))
        provider = OpenAICompatibleProvider(client=client)

        await provider.aclose()

        assert not client.is_closed
        await client.aclose()


# ---------------------------------------------------------------------------
# Claude adapter
# ---------------------------------------------------------------------------


class TestClaudeAgentProvider:
    @pytest.mark.asyncio
    async def test_slow_call_times_out(self, monkeypatch):
        async def slow_query(prompt, options):
            await asyncio.sleep(5)
            yield None

        monkeypatch.setattr(claude_module, "query", slow_query)
        provider = claude_module.ClaudeAgentProvider()

        with pytest.raises(ProviderTimeoutError):
            await provider.generate(MESSAGES, {"timeout_seconds": 0.01})

    @pytest.mark.asyncio
    async def test_sdk_errors_are_classified(self, monkeypatch):
        captured = {}

        async def failing_query(prompt, options):
            captured["prompt"] = prompt
            captured["system"] = options.system_prompt
            raise claude_module.ClaudeSDKError("process exited")
            yield None

        monkeypatch.setattr(claude_module, "query", failing_query)
        provider = claude_module.ClaudeAgentProvider()

        with pytest.raises(ProviderServerError):
            await provider.generate(MESSAGES)

        assert captured == {"prompt": "Capital of France?", "system": "Be brief."}

    def test_multi_turn_prompt_is_flattened(self):
        turns = [Message("user", "Hi"), Message("assistant", "Hello"), Message("user", "Capital of France?")]

        assert claude_module._render_prompt(turns) == "USER: Hi\n\nASSISTANT: Hello\n\nUSER: Capital of France?"


def test_split_system_joins_system_messages():
    system, turns = split_system([Message("system", "A"), Message("user", "q"), Message("system", "B")])

    assert system == "A\n\nB"
    assert turns == [Message("user", "q")]


@pytest.mark.asyncio
async def test_callable_provider_wraps_plain_strings():
    async def echo(messages, params):
        return messages[-1].content.upper()

    provider = CallableProvider("echo", echo)
    response = await provider.generate([Message("user", "ping")])

    assert response == ProviderResponse(text="PING")


# ---------------------------------------------------------------------------
# ProviderClient
# ---------------------------------------------------------------------------


class TestProviderClient:
    def make_client(self, script, max_retries=2, **kwargs):
        sleeps = []

        async def record_sleep(seconds):
            sleeps.append(seconds)

        provider = ScriptedProvider("verifier", script, model="gpt-4o-mini")
        client = ProviderClient(
            provider,
            max_retries=max_retries,
            backoff=lambda attempt: 0.5 * (attempt + 1),
            sleep=record_sleep,
            **kwargs,
        )
        return client, provider, sleeps

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self):
        client, provider, sleeps = self.make_client(
            [ProviderServerError("verifier", "502"), ProviderTimeoutError("verifier", "slow"), "ok"]
        )

        result = await client.call(MESSAGES)

        assert result.text == "ok"
        assert result.calls == 3
        assert sleeps == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_retry_after_extends_backoff(self):
        client, _, sleeps = self.make_client(
            [ProviderRateLimitedError("verifier", "429", retry_after=4.0), "ok"]
        )

        await client.call(MESSAGES)

        assert sleeps == [4.0]

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self):
        client, provider, sleeps = self.make_client([ProviderClientError("verifier", "400")])

        with pytest.raises(ProviderUnavailableError) as excinfo:
            await client.call(MESSAGES)

        assert provider.call_count == 1
        assert excinfo.value.attempts == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_unavailable(self):
        reports = []
        client, provider, _ = self.make_client(
            [ConnectionResetError("reset")],
            on_call=lambda name, ok, error: reports.append((name, ok)),
        )

        with pytest.raises(ProviderUnavailableError) as excinfo:
            await client.call(MESSAGES)

        assert provider.call_count == 3
        assert isinstance(excinfo.value.cause, ProviderServerError)
        assert reports == [("verifier", False)] * 3

    @pytest.mark.asyncio
    async def test_unexpected_exceptions_are_classified_and_retried(self):
        client, provider, sleeps = self.make_client([RuntimeError("socket closed by peer"), "ok"])

        result = await client.call(MESSAGES)

        assert result.text == "ok"
        assert provider.call_count == 2
        assert sleeps == [0.5]

    @pytest.mark.asyncio
    async def test_usage_is_tracked(self):
        costs = CostTracker()
        client, _, _ = self.make_client([usage_response("Paris.", 1000, 500)], cost_tracker=costs)

        result = await client.call(MESSAGES)

        assert result.usage.cost_usd == pytest.approx(0.00045)
        usage = costs.usage_for("verifier")
        assert usage.calls == 1
        assert usage.total_tokens == 1500


# ---------------------------------------------------------------------------
# Costs
# ---------------------------------------------------------------------------


class TestCostTracker:
    def test_estimates_missing_token_counts(self):
        usage = CostTracker().resolve_usage(UsageMetadata(), "x" * 400, "y" * 40, model="claude-sonnet-4-5")

        assert usage.estimated
        assert (usage.input_tokens, usage.output_tokens) == (100, 10)
        assert usage.cost_usd == pytest.approx(100 / 1e6 * 3.0 + 10 / 1e6 * 15.0)

    def test_reported_cost_is_kept(self):
        usage = CostTracker().resolve_usage(
            UsageMetadata(input_tokens=10, output_tokens=10, cost_usd=0.5), "", "", model="sonnet"
        )

        assert usage.cost_usd == 0.5
        assert not usage.estimated

    def test_unknown_model_is_unpriced(self):
        tracker = CostTracker()
        usage = tracker.resolve_usage(UsageMetadata(input_tokens=5, output_tokens=5), "", "", model="llama-3")
        tracker.track("local", usage)

        summary = tracker.to_dict()
        assert summary["providers"]["local"]["unpriced_calls"] == 1
        assert summary["totals"]["total_cost_usd"] == 0.0

    def test_specific_model_keys_win(self):
        assert ModelPricing.get_prices("gpt-4o-mini-2024-07-18") == (0.15, 0.60)
        assert ModelPricing.get_prices("gpt-4o-2024-08-06") == (2.50, 10.00)
        assert ModelPricing.get_prices(None) is None
