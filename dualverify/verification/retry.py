"""Retry decisions: exponential backoff with jitter and prompt augmentation."""

import random
from collections.abc import Sequence
from dataclasses import dataclass

from ..models.verification import Message, ScoreBreakdown, Severity

_SEVERITY_ORDER = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
}


@dataclass(frozen=True)
class RetryDecision:
    """What the orchestrator should do after a failed attempt."""

    should_retry: bool
    prompt: tuple[Message, ...] | None = None
    delay: float = 0.0
    retries_done: int = 0


class RetryController:
    """Decides whether and how to re-issue a failed attempt.

    delay = min(base_delay * 2^n + jitter, max_delay), jitter uniform in
    [0, base_delay), where n is the number of retries already made.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        rng: random.Random | None = None,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._rng = rng or random.Random()

    def backoff_delay(self, attempt_number: int) -> float:
        jitter = self._rng.uniform(0, self.base_delay) if self.base_delay > 0 else 0.0
        return min(self.base_delay * (2 ** attempt_number) + jitter, self.max_delay)

    def next_attempt(
        self,
        previous: ScoreBreakdown,
        retries_done: int,
        max_retries: int,
        original_prompt: Sequence[Message],
    ) -> RetryDecision:
        """Augmented prompt and delay for the next attempt, or a stop signal.

        Args:
            previous: Breakdown of the attempt that just failed
            retries_done: Retries already issued (0 after the first attempt)
            max_retries: Ceiling on retries for this request
            original_prompt: The caller's prompt; augmentation always starts from it

        Returns:
            RetryDecision; ``should_retry`` is False once the ceiling is reached
        """
        if retries_done >= max_retries:
            return RetryDecision(should_retry=False, retries_done=retries_done)
        return RetryDecision(
            should_retry=True,
            prompt=self.augment_prompt(original_prompt, previous),
            delay=self.backoff_delay(retries_done),
            retries_done=retries_done,
        )

    @staticmethod
    def rejection_block(breakdown: ScoreBreakdown) -> str:
        """Structured summary of why the previous attempt was rejected."""
        lines = ["Your previous attempt was rejected for:"]

        issues_by_category: dict[str, str] = {}
        for issue in sorted(breakdown.issues, key=lambda i: _SEVERITY_ORDER[i.severity]):
            issues_by_category.setdefault(issue.category, issue.description)

        failed = breakdown.failed_criteria
        for criterion in failed:
            reason = issues_by_category.get(criterion.name) or "scored below the pass threshold"
            lines.append(f"- {criterion.name}: {reason} (score {criterion.score}/100)")
        if not failed:
            lines.append(
                f"- overall: score {breakdown.overall:.0f}/100 with confidence "
                f"{breakdown.confidence:.2f} did not meet the acceptance thresholds"
            )

        must_fix = [i for i in breakdown.issues if i.severity in (Severity.CRITICAL, Severity.HIGH)]
        if must_fix:
            lines.append("")
            lines.append("Issues that must be fixed:")
            for issue in sorted(must_fix, key=lambda i: _SEVERITY_ORDER[i.severity]):
                suggestion = f" ({issue.suggestion})" if issue.suggestion else ""
                lines.append(f"- [{issue.severity.value}] {issue.category}: {issue.description}{suggestion}")

        if breakdown.feedback:
            lines.append("")
            lines.append(f"Reviewer feedback:\n{breakdown.feedback}")

        lines.append("")
        lines.append(
            "Provide a corrected response that addresses every point above "
            "while keeping the parts that were accurate."
        )
        return "\n".join(lines)

    def augment_prompt(
        self,
        prompt: Sequence[Message],
        breakdown: ScoreBreakdown,
    ) -> tuple[Message, ...]:
        """Append the rejection block to the last user turn (or add one)."""
        block = self.rejection_block(breakdown)
        messages = list(prompt)
        for index in range(len(messages) - 1, -1, -1):
            if messages[index].role == "user":
                original = messages[index]
                messages[index] = Message(role="user", content=f"{original.content}\n\n{block}")
                return tuple(messages)
        messages.append(Message(role="user", content=block))
        return tuple(messages)
