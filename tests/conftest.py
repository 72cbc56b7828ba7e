"""Shared fixtures: scripted providers, a manual clock and a seeded RNG."""

import json
import os
import random
import tempfile

# Keep test runs out of the user's log directory
os.environ.setdefault(
    "DUALVERIFY_LOG_FILE", os.path.join(tempfile.gettempdir(), "dualverify-tests.log")
)

import pytest

from dualverify import VerificationService
from dualverify.config import AuditConfig, RateLimitConfig, VerificationConfig
from dualverify.models import ProviderResponse, STANDARD_CRITERIA, UsageMetadata
from dualverify.providers import CallableProvider

GOOD_RESPONSE = (
    "Paris is the capital of France. It sits on the Seine and is the "
    "country's largest city and cultural centre."
)
WEAK_RESPONSE = (
    "France has many cities and the capital question is hard to answer "
    "without more context from the user."
)


def scores_json(
    score: int = 90,
    confidence: float = 0.9,
    overrides: dict | None = None,
    issues: list | None = None,
    feedback: str | None = None,
    names=STANDARD_CRITERIA,
) -> str:
    """Verification-provider output rating every criterion ``score``.

    Safety is rated at least 90 unless overridden, so low scores exercise
    the retry path rather than the safety gate.
    """
    scores = {name: score for name in names}
    if "safety" in scores:
        scores["safety"] = max(score, 90)
    scores.update(overrides or {})
    payload = {"confidence": confidence, "detailedScores": scores, "issues": issues or []}
    if feedback:
        payload["feedback"] = feedback
    return json.dumps(payload)


class ScriptedProvider(CallableProvider):
    """Provider that replays a script of outputs.

    Each script item is a string, a ProviderResponse, an exception to raise,
    or an async callable taking (messages, params). The last item repeats
    once the script runs out.
    """

    def __init__(self, name: str, script: list, model: str | None = None):
        super().__init__(name, self._next, model=model)
        self.script = list(script)
        self.calls: list[list] = []
        self.params: list[dict] = []
        self.closed = False

    async def _next(self, messages, params):
        self.calls.append(list(messages))
        self.params.append(dict(params))
        index = min(len(self.calls), len(self.script)) - 1
        item = self.script[index]
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return await item(messages, params)
        return item

    async def aclose(self) -> None:
        self.closed = True

    @property
    def call_count(self) -> int:
        return len(self.calls)


class ManualClock:
    """Deterministic time source for the security monitor and metrics."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def config(tmp_path):
    """Fast config: no backoff delay and no incidental burst blocking."""
    return VerificationConfig(
        base_delay_seconds=0.0,
        max_delay_seconds=0.0,
        rate_limiting=RateLimitConfig(burst_limit=1000),
        audit=AuditConfig(
            fallback_path=str(tmp_path / "audit_fallback.jsonl"),
            flush_backoff_seconds=0.0,
        ),
    )


@pytest.fixture
def make_service(config, rng):
    """Factory for a VerificationService over scripted providers."""

    def _make(primary_script, verifier_script, service_config=None, **kwargs):
        primary = ScriptedProvider("primary", primary_script, model="sonnet")
        verifier = ScriptedProvider("verifier", verifier_script, model="gpt-4o-mini")
        service = VerificationService(
            primary,
            verifier,
            config=service_config or config,
            rng=rng,
            sleep=no_sleep,
            **kwargs,
        )
        return service, primary, verifier

    return _make


def usage_response(text: str, input_tokens: int, output_tokens: int, cost: float | None = None):
    return ProviderResponse(
        text=text,
        usage=UsageMetadata(input_tokens=input_tokens, output_tokens=output_tokens, cost_usd=cost),
    )
