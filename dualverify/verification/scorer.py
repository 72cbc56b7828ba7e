"""Response scoring through the verification provider.

The verification provider rates the candidate response on each active
criterion; the overall score and verdict are then derived locally so the
provider's own "verified" or "overallScore" fields never decide a pass.
"""

import json
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Any

from ..config import VerificationConfig
from ..errors import VerificationError
from ..logging_config import get_logger
from ..models.verification import (
    CRITERION_DESCRIPTIONS,
    Criterion,
    Issue,
    Message,
    ProviderCallResult,
    Recommendation,
    ScoreBreakdown,
    Severity,
    ValidationCriteria,
)
from ..providers.client import ProviderClient
from ..security.pii import PIIDetector, get_pii_detector

logger = get_logger(__name__)

MIN_COMPLETE_RESPONSE_CHARS = 50
PII_SAFETY_CAP = 30

EVALUATION_SYSTEM_PROMPT = """You are an expert AI response validator. Your job is to evaluate the quality, accuracy, and appropriateness of AI-generated responses against specific criteria.

Requirements:
1. Be thorough and objective
2. Identify specific issues with concrete examples
3. Provide actionable feedback for improvement
4. Score each criterion as an integer from 0 to 100
5. Flag any safety or ethical concerns, including exposure of personal data
6. Assess whether the response adequately addresses the original prompt

Return ONLY valid JSON with the exact structure given in the user message."""


@dataclass(frozen=True)
class ScoredResponse:
    """A breakdown plus the verification call that produced it."""

    breakdown: ScoreBreakdown
    call: ProviderCallResult
    raw: dict


def parse_json(response: str) -> dict | None:
    """Parse a JSON object from model output with multiple fallbacks."""
    if not response or not isinstance(response, str):
        return None

    # Strip markdown code blocks
    cleaned = re.sub(r"```(?:json)?\s*", "", response).strip()
    cleaned = re.sub(r"```\s*$", "", cleaned).strip()

    # Strategy 1: the whole cleaned response
    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, dict):
            return parsed
    except (json.JSONDecodeError, ValueError):
        pass

    # Strategy 2: greedy match from first { to last }
    match = re.search(r"\{.*\}", cleaned, re.DOTALL)
    if match:
        try:
            parsed = json.loads(match.group())
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

    # Strategy 3: first balanced-brace object
    start = cleaned.find("{")
    if start >= 0:
        depth = 0
        for i in range(start, len(cleaned)):
            if cleaned[i] == "{":
                depth += 1
            elif cleaned[i] == "}":
                depth -= 1
                if depth == 0:
                    try:
                        parsed = json.loads(cleaned[start : i + 1])
                        return parsed if isinstance(parsed, dict) else None
                    except json.JSONDecodeError:
                        break

    return None


def clamp_score(value: Any) -> int:
    """Coerce a provider score to an int in [0, 100]."""
    if isinstance(value, bool):
        raise ValueError("boolean is not a score")
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"non-finite score {value!r}")
    return int(round(min(100.0, max(0.0, number))))


def clamp_confidence(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError("boolean is not a confidence")
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"non-finite confidence {value!r}")
    return min(1.0, max(0.0, number))


class ResponseScorer:
    """Rates a candidate response on the active criteria.

    Each ``evaluate`` call issues exactly one verification-provider call
    (plus any provider-level retries) and raises ``VerificationError``
    when the output cannot be turned into a complete breakdown.
    """

    def __init__(
        self,
        client: ProviderClient,
        config: VerificationConfig | None = None,
        pii_detector: PIIDetector | None = None,
    ):
        self.client = client
        self.config = config or VerificationConfig()
        self.pii = pii_detector or get_pii_detector()

    # ------------------------------------------------------------------
    # Prompt
    # ------------------------------------------------------------------

    def build_messages(
        self,
        prompt: Sequence[Message],
        response: str,
        context: Mapping[str, Any] | None,
        criteria: ValidationCriteria,
        service_name: str = "",
    ) -> list[Message]:
        """Evaluation prompt: original request, history, context and criteria."""
        turns = [m for m in prompt if m.role != "system"]
        final = turns[-1].content if turns else ""
        history = turns[:-1]

        sections = ["TASK: Evaluate the quality and appropriateness of an AI-generated response."]
        if service_name:
            sections.append(f'SERVICE: The response was produced for the "{service_name}" service.')
        sections.append(f"ORIGINAL PROMPT:\n{final}")
        if history:
            sections.append(
                "CONVERSATION HISTORY:\n" + "\n".join(f"{m.role}: {m.content}" for m in history)
            )
        if context:
            sections.append("CONTEXT:\n" + json.dumps(dict(context), indent=2, default=str))
        sections.append(f"RESPONSE TO EVALUATE:\n{response}")

        weights = criteria.active_weights()
        custom = criteria.custom_descriptions()
        lines = []
        for name, weight in weights.items():
            description = CRITERION_DESCRIPTIONS.get(name) or custom.get(name, "")
            lines.append(f"- {name.upper()} (weight {weight:g}): {description}")
        sections.append("EVALUATION CRITERIA:\n" + "\n".join(lines))

        score_fields = ",\n".join(f'    "{name}": integer (0-100)' for name in weights)
        sections.append(
            "Return a JSON object with this exact structure:\n"
            "{\n"
            '  "confidence": number (0-1),\n'
            '  "detailedScores": {\n'
            f"{score_fields}\n"
            "  },\n"
            '  "issues": [\n'
            "    {\n"
            '      "category": "criterion name",\n'
            '      "severity": "low|medium|high|critical",\n'
            '      "description": "What is wrong",\n'
            '      "location": "Where in the response (optional)",\n'
            '      "suggestion": "How to fix it"\n'
            "    }\n"
            "  ],\n"
            '  "recommendation": "approve|retry|manual_review",\n'
            '  "feedback": "Concrete guidance for improving the response"\n'
            "}"
        )

        return [
            Message(role="system", content=EVALUATION_SYSTEM_PROMPT),
            Message(role="user", content="\n\n".join(sections)),
        ]

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse(
        self,
        raw_text: str,
        response: str,
        criteria: ValidationCriteria,
    ) -> tuple[ScoreBreakdown, dict]:
        """Turn provider output into a breakdown.

        Raises:
            VerificationError: Output is not JSON, or a score/confidence is missing or invalid
        """
        data = parse_json(raw_text)
        if data is None:
            raise VerificationError("verification output is not a JSON object")

        weights = criteria.active_weights()
        reported = data.get("detailedScores") or data.get("scores") or {}
        custom_reported = data.get("customScores") or {}
        if not isinstance(reported, dict) or not isinstance(custom_reported, dict):
            raise VerificationError("detailedScores must be an object")

        scores: dict[str, int] = {}
        for name in weights:
            value = reported.get(name, custom_reported.get(name))
            if value is None:
                raise VerificationError(f"missing score for criterion {name!r}")
            try:
                scores[name] = clamp_score(value)
            except (TypeError, ValueError) as e:
                raise VerificationError(f"invalid score for criterion {name!r}: {value!r}") from e

        if "confidence" not in data:
            raise VerificationError("missing confidence")
        try:
            confidence = clamp_confidence(data["confidence"])
        except (TypeError, ValueError) as e:
            raise VerificationError(f"invalid confidence: {data['confidence']!r}") from e

        issues = self._parse_issues(data.get("issues"))
        issues, scores = self._post_checks(response, issues, scores)

        try:
            recommendation = Recommendation(str(data.get("recommendation", "")).strip().lower())
        except ValueError:
            recommendation = None

        feedback = data.get("feedback")
        breakdown = ScoreBreakdown.compute(
            scores,
            weights,
            confidence,
            score_threshold=self.config.score_threshold,
            confidence_threshold=self.config.confidence_threshold,
            criterion_threshold=self.config.effective_criterion_threshold,
            require_both=self.config.require_both_thresholds,
            issues=issues,
            feedback=str(feedback) if feedback else None,
        )
        if recommendation is None:
            recommendation = Recommendation.APPROVE if breakdown.passed else Recommendation.RETRY
        return replace(breakdown, recommendation=recommendation), data

    @staticmethod
    def _parse_issues(raw_issues: Any) -> list[Issue]:
        issues = []
        if not isinstance(raw_issues, list):
            return issues
        for item in raw_issues:
            if not isinstance(item, dict):
                continue
            try:
                severity = Severity(str(item.get("severity", "medium")).strip().lower())
            except ValueError:
                severity = Severity.MEDIUM
            issues.append(
                Issue(
                    category=str(item.get("category") or "general"),
                    severity=severity,
                    description=str(item.get("description") or ""),
                    suggestion=item.get("suggestion"),
                    location=item.get("location"),
                )
            )
        return issues

    def _post_checks(
        self,
        response: str,
        issues: list[Issue],
        scores: dict[str, int],
    ) -> tuple[list[Issue], dict[str, int]]:
        """Local heuristics layered on top of the provider's critique."""
        if len(response.strip()) < MIN_COMPLETE_RESPONSE_CHARS:
            issues.append(
                Issue(
                    category=Criterion.COMPLETENESS.value,
                    severity=Severity.MEDIUM,
                    description="Response appears too short to be complete",
                    suggestion="Provide a more detailed answer",
                )
            )

        kinds = self.pii.kinds(response)
        if kinds:
            issues.append(
                Issue(
                    category=Criterion.SAFETY.value,
                    severity=Severity.HIGH,
                    description=f"Potential PII detected in response ({', '.join(sorted(kinds))})",
                    suggestion="Remove or redact sensitive information",
                )
            )
            safety = Criterion.SAFETY.value
            if self.config.cap_safety_on_response_pii and safety in scores:
                scores[safety] = min(scores[safety], PII_SAFETY_CAP)

        return issues, scores

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    async def evaluate(
        self,
        prompt: Sequence[Message],
        response: str,
        context: Mapping[str, Any] | None = None,
        criteria: ValidationCriteria | None = None,
        service_name: str = "",
    ) -> ScoredResponse:
        """One verification call, parsed into a breakdown.

        Raises:
            VerificationError: Unparseable or incomplete verification output
            ProviderUnavailableError: Verification provider unreachable
        """
        criteria = criteria or ValidationCriteria.default()
        messages = self.build_messages(prompt, response, context, criteria, service_name)
        call = await self.client.call(
            messages, {"temperature": 0.1, "max_tokens": 2000, "json_mode": True}
        )
        try:
            breakdown, raw = self.parse(call.text, response, criteria)
        except VerificationError as e:
            raise VerificationError(str(e), call=call) from e
        logger.debug(
            "Scored response: overall=%.1f confidence=%.2f passed=%s",
            breakdown.overall,
            breakdown.confidence,
            breakdown.passed,
        )
        return ScoredResponse(breakdown=breakdown, call=call, raw=raw)

    async def score(
        self,
        prompt: Sequence[Message] | str,
        response: str,
        context: Mapping[str, Any] | None = None,
        criteria: ValidationCriteria | None = None,
    ) -> ScoreBreakdown:
        """Score ``response`` against ``prompt`` on the active criteria."""
        if isinstance(prompt, str):
            prompt = [Message(role="user", content=prompt)]
        scored = await self.evaluate(prompt, response, context, criteria)
        return scored.breakdown
