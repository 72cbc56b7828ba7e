"""Scorer parsing, weighted scoring, retry prompts and the state machine."""

import json
import random

import pytest

from conftest import GOOD_RESPONSE, ScriptedProvider, scores_json
from dualverify.config import VerificationConfig
from dualverify.errors import VerificationError
from dualverify.models import (
    CustomCriterion,
    Issue,
    Message,
    Recommendation,
    ScoreBreakdown,
    Severity,
    ValidationCriteria,
    VerificationState,
)
from dualverify.providers import ProviderClient
from dualverify.verification import (
    ResponseScorer,
    RetryController,
    VerificationStateMachine,
    parse_json,
)
from dualverify.verification.scorer import PII_SAFETY_CAP


def make_scorer(script=None, config=None) -> tuple[ResponseScorer, ScriptedProvider]:
    provider = ScriptedProvider("verifier", script or [scores_json(90)])
    return ResponseScorer(ProviderClient(provider), config or VerificationConfig()), provider


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------


class TestParseJson:
    def test_plain_object(self):
        assert parse_json('{"a": 1}') == {"a": 1}

    def test_markdown_fence(self):
        assert parse_json('```json\n{"a": 1}\n```') == {"a": 1}

    def test_object_embedded_in_prose(self):
        assert parse_json('Here is my evaluation: {"a": {"b": 2}} Hope this helps.') == {"a": {"b": 2}}

    def test_trailing_fragment_is_ignored(self):
        assert parse_json('{"a": 1} and then {"b": 2') == {"a": 1}

    @pytest.mark.parametrize("text", ["", "no json here", "[1, 2, 3]", None])
    def test_unusable_output(self, text):
        assert parse_json(text) is None


# ---------------------------------------------------------------------------
# Parsing into a breakdown
# ---------------------------------------------------------------------------


class TestScorerParse:
    def test_same_input_same_breakdown(self):
        scorer, _ = make_scorer()
        criteria = ValidationCriteria.default()
        raw = scores_json(80, overrides={"format": 60}, confidence=0.85)

        first, _ = scorer.parse(raw, GOOD_RESPONSE, criteria)
        second, _ = scorer.parse(raw, GOOD_RESPONSE, criteria)

        assert first == second

    def test_overall_is_weighted_average(self):
        scorer, _ = make_scorer()
        criteria = ValidationCriteria(accuracy=3.0, relevance=1.0)
        raw = json.dumps({"confidence": 0.9, "detailedScores": {"accuracy": 90, "relevance": 50}})

        breakdown, _ = scorer.parse(raw, GOOD_RESPONSE, criteria)

        assert breakdown.overall == pytest.approx(80.0)
        assert [c.name for c in breakdown.criteria] == ["accuracy", "relevance"]

    @pytest.mark.parametrize("seed", range(5))
    def test_overall_stays_within_criterion_scores(self, seed):
        rand = random.Random(seed)
        scorer, _ = make_scorer()
        weights = {name: rand.uniform(0.1, 5.0) for name in ("accuracy", "completeness", "format")}
        criteria = ValidationCriteria(**weights)
        scores = {name: rand.randint(0, 100) for name in weights}
        raw = json.dumps({"confidence": 0.5, "detailedScores": scores})

        breakdown, _ = scorer.parse(raw, GOOD_RESPONSE, criteria)

        assert min(scores.values()) <= breakdown.overall <= max(scores.values())

    def test_provider_verdict_fields_are_ignored(self):
        scorer, _ = make_scorer()
        payload = json.loads(scores_json(30))
        payload.update({"verified": True, "overallScore": 99})

        breakdown, _ = scorer.parse(json.dumps(payload), GOOD_RESPONSE, ValidationCriteria.default())

        assert breakdown.passed is False
        assert breakdown.overall < 70

    def test_scores_are_clamped(self):
        scorer, _ = make_scorer()
        raw = json.dumps({"confidence": 1.7, "detailedScores": {"accuracy": 140, "relevance": -5}})

        breakdown, _ = scorer.parse(raw, GOOD_RESPONSE, ValidationCriteria(accuracy=1.0, relevance=1.0))

        assert breakdown.criterion("accuracy").score == 100
        assert breakdown.criterion("relevance").score == 0
        assert breakdown.confidence == 1.0

    def test_custom_scores_are_read(self):
        scorer, _ = make_scorer()
        criteria = ValidationCriteria(custom=(CustomCriterion("tone", "Friendly tone", 1.0),))
        raw = json.dumps({"confidence": 0.9, "detailedScores": {}, "customScores": {"tone": 75}})

        breakdown, _ = scorer.parse(raw, GOOD_RESPONSE, criteria)

        assert breakdown.criterion("tone").score == 75
        assert breakdown.passed is True

    @pytest.mark.parametrize(
        "raw",
        [
            "The response is good.",
            json.dumps({"confidence": 0.9, "detailedScores": {"accuracy": 90}}),
            json.dumps({"detailedScores": {name: 90 for name in ("accuracy", "completeness",
                        "relevance", "consistency", "safety", "format")}}),
            json.dumps({"confidence": 0.9, "detailedScores": {name: "high" for name in (
                "accuracy", "completeness", "relevance", "consistency", "safety", "format")}}),
        ],
    )
    def test_incomplete_output_raises(self, raw):
        scorer, _ = make_scorer()
        with pytest.raises(VerificationError):
            scorer.parse(raw, GOOD_RESPONSE, ValidationCriteria.default())

    def test_recommendation_defaults_from_verdict(self):
        scorer, _ = make_scorer()
        criteria = ValidationCriteria.default()

        passed, _ = scorer.parse(scores_json(90), GOOD_RESPONSE, criteria)
        failed, _ = scorer.parse(scores_json(40), GOOD_RESPONSE, criteria)

        assert passed.recommendation == Recommendation.APPROVE
        assert failed.recommendation == Recommendation.RETRY

    def test_short_response_gets_completeness_issue(self):
        scorer, _ = make_scorer()

        breakdown, _ = scorer.parse(scores_json(90), "Paris.", ValidationCriteria.default())

        assert any(i.category == "completeness" and i.severity == Severity.MEDIUM for i in breakdown.issues)

    def test_pii_in_response_adds_safety_issue(self):
        scorer, _ = make_scorer()
        response = f"{GOOD_RESPONSE} Contact jane.doe@acmecorp.io for details."

        breakdown, _ = scorer.parse(scores_json(90), response, ValidationCriteria.default())

        assert any(i.category == "safety" and i.severity == Severity.HIGH for i in breakdown.issues)
        assert breakdown.criterion("safety").score == 90

    def test_pii_caps_safety_when_enabled(self):
        config = VerificationConfig(cap_safety_on_response_pii=True)
        scorer, _ = make_scorer(config=config)
        response = f"{GOOD_RESPONSE} Contact jane.doe@acmecorp.io for details."

        breakdown, _ = scorer.parse(scores_json(90), response, ValidationCriteria.default())

        assert breakdown.criterion("safety").score == PII_SAFETY_CAP
        assert breakdown.passed is False
        assert breakdown.safety_failed is True


# ---------------------------------------------------------------------------
# Threshold policy
# ---------------------------------------------------------------------------


def test_threshold_policy_any_accepts_low_confidence():
    weights = {"accuracy": 1.0}
    kwargs = dict(score_threshold=70, confidence_threshold=0.7, criterion_threshold=70)

    strict = ScoreBreakdown.compute({"accuracy": 90}, weights, 0.2, require_both=True, **kwargs)
    lenient = ScoreBreakdown.compute({"accuracy": 90}, weights, 0.2, require_both=False, **kwargs)

    assert strict.passed is False
    assert lenient.passed is True


def test_low_criterion_does_not_fail_a_passing_overall():
    weights = {"accuracy": 1.0, "clarity": 1.0, "safety": 1.0}
    kwargs = dict(score_threshold=70, confidence_threshold=0.7, criterion_threshold=70)

    breakdown = ScoreBreakdown.compute(
        {"accuracy": 95, "clarity": 50, "safety": 95}, weights, 0.9, **kwargs
    )
    unsafe = ScoreBreakdown.compute(
        {"accuracy": 95, "clarity": 95, "safety": 60}, weights, 0.9, **kwargs
    )

    assert breakdown.passed is True
    assert [c.name for c in breakdown.criteria if not c.passed] == ["clarity"]
    assert unsafe.overall > 70
    assert unsafe.passed is False


def test_conservative_breakdown_fails_every_criterion():
    breakdown = ScoreBreakdown.conservative({"accuracy": 1.0, "safety": 1.0}, "timeout")

    assert breakdown.passed is False
    assert breakdown.parse_failed is True
    assert breakdown.safety_failed is False
    assert all(c.score == 0 for c in breakdown.criteria)


# ---------------------------------------------------------------------------
# Evaluation prompt and provider call
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_evaluate_sends_history_context_and_json_mode():
    scorer, provider = make_scorer()
    prompt = [
        Message("system", "You are a travel assistant."),
        Message("user", "I am planning a trip to Europe."),
        Message("assistant", "Great, which countries?"),
        Message("user", "What is the capital of France?"),
    ]

    scored = await scorer.evaluate(prompt, GOOD_RESPONSE, {"locale": "en-GB"}, service_name="travel")

    assert scored.breakdown.passed is True
    system, user = provider.calls[0]
    assert system.role == "system"
    assert "ORIGINAL PROMPT:\nWhat is the capital of France?" in user.content
    assert "CONVERSATION HISTORY:\nuser: I am planning a trip to Europe." in user.content
    assert '"locale": "en-GB"' in user.content
    assert 'SERVICE: The response was produced for the "travel" service.' in user.content
    assert provider.params[0]["json_mode"] is True


@pytest.mark.asyncio
async def test_score_accepts_plain_prompt():
    scorer, _ = make_scorer([scores_json(75)])

    breakdown = await scorer.score("What is the capital of France?", GOOD_RESPONSE)

    assert breakdown.overall == pytest.approx((5 * 75 + 90) / 6)


@pytest.mark.asyncio
async def test_evaluate_attaches_call_to_parse_error():
    scorer, _ = make_scorer(["not json"])

    with pytest.raises(VerificationError) as exc_info:
        await scorer.evaluate([Message("user", "Hi")], GOOD_RESPONSE)

    assert exc_info.value.call is not None
    assert exc_info.value.call.text == "not json"


# ---------------------------------------------------------------------------
# Retry controller
# ---------------------------------------------------------------------------


def failing_breakdown() -> ScoreBreakdown:
    return ScoreBreakdown.compute(
        {"accuracy": 40, "format": 90},
        {"accuracy": 1.0, "format": 1.0},
        0.9,
        score_threshold=70,
        confidence_threshold=0.7,
        criterion_threshold=70,
        issues=[
            Issue("accuracy", Severity.LOW, "Minor wording"),
            Issue("accuracy", Severity.CRITICAL, "States the wrong capital", "Say Paris"),
        ],
        feedback="Check the facts.",
    )


class TestRetryController:
    def test_backoff_grows_and_is_capped(self):
        retry = RetryController(base_delay=1.0, max_delay=5.0, rng=random.Random(7))

        delays = [retry.backoff_delay(n) for n in range(5)]

        assert 1.0 <= delays[0] < 2.0
        assert 2.0 <= delays[1] < 3.0
        assert 4.0 <= delays[2] <= 5.0
        assert delays[3] == delays[4] == 5.0

    def test_seeded_jitter_is_reproducible(self):
        first = RetryController(rng=random.Random(3))
        second = RetryController(rng=random.Random(3))

        assert [first.backoff_delay(n) for n in range(3)] == [second.backoff_delay(n) for n in range(3)]

    def test_stops_at_ceiling(self):
        retry = RetryController(rng=random.Random(1))
        prompt = (Message("user", "Question"),)

        assert retry.next_attempt(failing_breakdown(), 1, 2, prompt).should_retry is True
        decision = retry.next_attempt(failing_breakdown(), 2, 2, prompt)
        assert decision.should_retry is False
        assert decision.prompt is None

    def test_rejection_block_lists_failed_criteria_and_critical_issues(self):
        block = RetryController.rejection_block(failing_breakdown())

        lines = block.splitlines()
        assert lines[0] == "Your previous attempt was rejected for:"
        assert "- accuracy: States the wrong capital (score 40/100)" in lines
        assert "- [critical] accuracy: States the wrong capital (Say Paris)" in lines
        assert not any(line.startswith("- format") for line in lines)
        assert "Reviewer feedback:\nCheck the facts." in block

    def test_augment_keeps_original_prompt_and_system(self):
        retry = RetryController()
        prompt = (Message("system", "Be brief."), Message("user", "Question"))

        augmented = retry.augment_prompt(prompt, failing_breakdown())

        assert augmented[0] == prompt[0]
        assert augmented[1].content.startswith("Question\n\nYour previous attempt was rejected for:")
        assert len(augmented) == 2

    def test_augment_adds_user_turn_when_missing(self):
        augmented = RetryController().augment_prompt((Message("system", "Be brief."),), failing_breakdown())

        assert augmented[-1].role == "user"


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class TestStateMachine:
    def test_retry_cycle(self):
        machine = VerificationStateMachine(max_retries=1)
        for state in (
            VerificationState.CALLING_PRIMARY,
            VerificationState.SCORING,
            VerificationState.RETRYING,
            VerificationState.CALLING_PRIMARY,
            VerificationState.SCORING,
            VerificationState.EXHAUSTED,
        ):
            machine.transition(state)

        assert machine.attempt == 2
        assert machine.retries_done == 1
        assert machine.is_terminal

    def test_illegal_transition_raises(self):
        machine = VerificationStateMachine(max_retries=1)
        with pytest.raises(RuntimeError):
            machine.transition(VerificationState.PASSED)

    def test_attempt_ceiling_is_enforced(self):
        machine = VerificationStateMachine(max_retries=0)
        machine.transition(VerificationState.CALLING_PRIMARY)
        machine.transition(VerificationState.SCORING)
        machine.transition(VerificationState.RETRYING)
        with pytest.raises(RuntimeError):
            machine.transition(VerificationState.CALLING_PRIMARY)

    def test_terminal_states_have_no_exits(self):
        machine = VerificationStateMachine(max_retries=0)
        machine.transition(VerificationState.CALLING_PRIMARY)
        machine.transition(VerificationState.SKIPPED)
        with pytest.raises(RuntimeError):
            machine.transition(VerificationState.CALLING_PRIMARY)
