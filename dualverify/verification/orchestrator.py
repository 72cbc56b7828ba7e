"""Verification orchestrator: primary call, scoring, retries, deadline.

Attempts within one Verify call are strictly sequential. Every attempt
that reaches the primary provider produces exactly one audit entry and
every call produces exactly one metrics event.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from ..audit.entry import AuditOutcome, new_entry
from ..audit.log import AuditLog
from ..config import VerificationConfig
from ..errors import (
    ProviderUnavailableError,
    RateLimitError,
    SafetyViolationError,
    VerificationError,
    VerificationTimeoutError,
)
from ..logging_config import get_logger
from ..metrics.service import MetricsService, Outcome
from ..models.events import ProgressEvent, StreamEvent, VerificationEvent
from ..models.verification import (
    Message,
    ProviderCallResult,
    ScoreBreakdown,
    ValidationCriteria,
    VerificationRequest,
    VerificationResult,
    VerificationState,
    utcnow,
)
from ..providers.client import ProviderClient
from ..security.monitor import SecurityMonitor
from .retry import RetryController
from .scorer import ResponseScorer
from .state import VerificationStateMachine

logger = get_logger(__name__)

EventCallback = Callable[[StreamEvent], Awaitable[None]]

WARNING_EXHAUSTED = "max retries exhausted, returning best-effort result"
WARNING_DISABLED = "verification disabled"


@dataclass
class _Attempt:
    number: int
    response: str
    breakdown: ScoreBreakdown
    latency_ms: float


@dataclass
class _Run:
    """Mutable bookkeeping for one Verify call."""

    request: VerificationRequest
    criteria: ValidationCriteria
    max_retries: int
    deadline_seconds: float
    started: float
    deadline: float
    machine: VerificationStateMachine
    on_event: EventCallback | None = None
    attempts: list[_Attempt] = field(default_factory=list)

    @property
    def weights(self) -> dict[str, float]:
        return self.criteria.active_weights()


def _usage_dict(calls: Sequence[ProviderCallResult]) -> dict:
    if not calls:
        return {}
    cost = [c.usage.cost_usd for c in calls if c.usage.cost_usd is not None]
    return {
        "provider": calls[0].provider,
        "calls": sum(c.calls for c in calls),
        "input_tokens": sum(c.usage.input_tokens for c in calls),
        "output_tokens": sum(c.usage.output_tokens for c in calls),
        "cost_usd": round(sum(cost), 6) if cost else None,
        "estimated": any(c.usage.estimated for c in calls),
    }


class VerificationOrchestrator:
    """Coordinates one Verify call end to end."""

    def __init__(
        self,
        primary: ProviderClient,
        scorer: ResponseScorer,
        retry: RetryController,
        security: SecurityMonitor,
        audit: AuditLog,
        metrics: MetricsService,
        config: VerificationConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.primary = primary
        self.scorer = scorer
        self.retry = retry
        self.security = security
        self.audit = audit
        self.metrics = metrics
        self.config = config or VerificationConfig()
        self._sleep = sleep
        self._clock = clock

    def _elapsed_ms(self, run: _Run) -> float:
        return (self._clock() - run.started) * 1000

    async def verify(
        self,
        request: VerificationRequest,
        on_event: EventCallback | None = None,
    ) -> VerificationResult:
        """Verify one request.

        Raises:
            RequestValidationError: Malformed request
            RateLimitError: Source blocked or over its rate limit
            SafetyViolationError: Safety failed and retries could not fix it
            VerificationTimeoutError: Deadline hit before any attempt was scored
            ProviderUnavailableError: A provider stayed unreachable
        """
        started = self._clock()
        try:
            result = await self._verify(request, on_event, started)
        except Exception as e:
            latency_ms = (self._clock() - started) * 1000
            await self.metrics.record_event(Outcome.ERROR, latency_ms, getattr(e, "kind", "internal"))
            raise

        outcome = Outcome.VERIFIED if result.verified else Outcome.UNVERIFIED
        await self.metrics.record_event(
            outcome, result.total_latency_ms, "timeout" if result.timed_out else None
        )
        return result

    async def _verify(
        self,
        request: VerificationRequest,
        on_event: EventCallback | None,
        started: float,
    ) -> VerificationResult:
        request.validate()
        criteria = request.validation_criteria
        if criteria is None or criteria.is_empty():
            criteria = ValidationCriteria.default()
        max_retries = self.config.max_retries if request.max_retries is None else request.max_retries
        deadline_seconds = request.timeout_seconds or self.config.timeout_seconds

        run = _Run(
            request=request,
            criteria=criteria,
            max_retries=max_retries,
            deadline_seconds=deadline_seconds,
            started=started,
            deadline=started + deadline_seconds,
            machine=VerificationStateMachine(max_retries),
            on_event=on_event,
        )
        logger.info(
            "Verify start: request=%s service=%s max_retries=%d deadline=%.1fs",
            request.request_id,
            request.service_name,
            max_retries,
            deadline_seconds,
        )
        logger.debug("Prompt for %s: %s", request.request_id, self.security.sanitize_for_log(request.prompt_text))

        if not self.config.verification_enabled:
            return await self._passthrough(run)

        prompt: tuple[Message, ...] = request.prompt
        while True:
            self._admit(run)
            run.machine.transition(VerificationState.CALLING_PRIMARY)
            attempt_no = run.machine.attempt
            attempt_started = utcnow()
            attempt_clock = self._clock()
            await self._emit(run, ProgressEvent(
                request.request_id, attempt_no, "calling_primary",
                f"Attempt {attempt_no}: calling primary provider",
            ))

            remaining = run.deadline - self._clock()
            try:
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                call, breakdown, verification_calls = await asyncio.wait_for(
                    self._run_attempt(run, prompt, attempt_no), timeout=remaining
                )
            except asyncio.TimeoutError:
                await self._audit(
                    run, attempt_no, AuditOutcome.TIMED_OUT, attempt_started,
                    prompt, "", None, (self._clock() - attempt_clock) * 1000,
                    abort_reason=f"deadline of {deadline_seconds:.2f}s exceeded during attempt {attempt_no}",
                )
                return self._timed_out(run)
            except ProviderUnavailableError as e:
                await self._audit(
                    run, attempt_no, AuditOutcome.PROVIDER_ERROR, attempt_started,
                    prompt, "", None, (self._clock() - attempt_clock) * 1000,
                    abort_reason=str(e),
                )
                logger.error("Verify %s aborted: %s", request.request_id, e)
                raise

            latency_ms = (self._clock() - attempt_clock) * 1000
            attempt = _Attempt(attempt_no, call.text, breakdown, latency_ms)
            run.attempts.append(attempt)
            costs = {"primary": _usage_dict([call]), "verification": _usage_dict(verification_calls)}
            await self._emit(run, VerificationEvent(request.request_id, attempt_no, breakdown))

            if breakdown.passed:
                run.machine.transition(VerificationState.PASSED)
                await self._audit(
                    run, attempt_no, AuditOutcome.PASSED, attempt_started,
                    prompt, call.text, breakdown, latency_ms, costs=costs,
                )
                logger.info(
                    "Verify passed: request=%s attempt=%d overall=%.1f",
                    request.request_id, attempt_no, breakdown.overall,
                )
                return self._result(run, attempt, verified=True, state=VerificationState.PASSED)

            decision = self.retry.next_attempt(
                breakdown, run.machine.retries_done, run.max_retries, request.prompt
            )
            if decision.should_retry:
                if decision.delay >= run.deadline - self._clock():
                    run.machine.transition(VerificationState.TIMED_OUT)
                    await self._audit(
                        run, attempt_no, AuditOutcome.TIMED_OUT, attempt_started,
                        prompt, call.text, breakdown, latency_ms, costs=costs,
                        abort_reason=(
                            f"deadline of {deadline_seconds:.2f}s leaves no room for "
                            f"a {decision.delay:.2f}s retry backoff"
                        ),
                    )
                    return self._timed_out(run, transitioned=True)

                run.machine.transition(VerificationState.RETRYING)
                await self._audit(
                    run, attempt_no, AuditOutcome.RETRYING, attempt_started,
                    prompt, call.text, breakdown, latency_ms, costs=costs,
                )
                logger.info(
                    "Verify retrying: request=%s attempt=%d overall=%.1f failed=%s delay=%.2fs",
                    request.request_id, attempt_no, breakdown.overall,
                    [c.name for c in breakdown.failed_criteria], decision.delay,
                )
                await self._emit(run, ProgressEvent(
                    request.request_id, attempt_no, "retrying",
                    f"Attempt {attempt_no} rejected; retrying in {decision.delay:.2f}s",
                ))
                await self._sleep(decision.delay)
                prompt = decision.prompt
                continue

            if any(a.breakdown.safety_failed for a in run.attempts):
                run.machine.transition(VerificationState.SAFETY_FAILED)
                await self._audit(
                    run, attempt_no, AuditOutcome.SAFETY_FAILED, attempt_started,
                    prompt, call.text, breakdown, latency_ms, costs=costs,
                )
                raise self._safety_error(run)

            run.machine.transition(VerificationState.EXHAUSTED)
            await self._audit(
                run, attempt_no, AuditOutcome.EXHAUSTED, attempt_started,
                prompt, call.text, breakdown, latency_ms, costs=costs,
            )
            best = self._best(run.attempts)
            logger.warning(
                "Verify exhausted: request=%s attempts=%d best_attempt=%d overall=%.1f",
                request.request_id, attempt_no, best.number, best.breakdown.overall,
            )
            return self._result(
                run, best, verified=False, state=VerificationState.EXHAUSTED,
                warnings=(WARNING_EXHAUSTED,),
            )

    # ------------------------------------------------------------------
    # Attempt steps
    # ------------------------------------------------------------------

    def _admit(self, run: _Run) -> None:
        """Security pre-check before each attempt. Only the first one scans the prompt."""
        request = run.request
        metadata = {"service_name": request.service_name, "attempt": run.machine.attempt + 1}
        if run.machine.attempt == 0:
            metadata["text"] = request.prompt_text
        decision = self.security.check_and_record(request.effective_source_key, metadata)
        if not decision.allowed:
            logger.warning(
                "Verify denied: request=%s source=%s reason=%s",
                request.request_id, request.effective_source_key, decision.reason,
            )
            raise RateLimitError(
                request.effective_source_key, decision.blocked_until, decision.reason or "rate limit exceeded"
            )

    async def _run_attempt(
        self,
        run: _Run,
        prompt: Sequence[Message],
        attempt_no: int,
    ) -> tuple[ProviderCallResult, ScoreBreakdown, list[ProviderCallResult]]:
        call = await self.primary.call(prompt)
        run.machine.transition(VerificationState.SCORING)
        await self._emit(run, ProgressEvent(
            run.request.request_id, attempt_no, "scoring",
            f"Attempt {attempt_no}: scoring response",
        ))
        breakdown, verification_calls = await self._score_with_retries(run, call.text)
        return call, breakdown, verification_calls

    async def _score_with_retries(
        self,
        run: _Run,
        response: str,
    ) -> tuple[ScoreBreakdown, list[ProviderCallResult]]:
        """Retry the verification call on unparseable output, then fail conservatively."""
        request = run.request
        calls: list[ProviderCallResult] = []
        attempts = self.config.verification_parse_retries + 1
        last_error: VerificationError | None = None

        for attempt in range(attempts):
            try:
                scored = await self.scorer.evaluate(
                    request.prompt, response, request.context, run.criteria, request.service_name
                )
            except VerificationError as e:
                last_error = e
                if e.call is not None:
                    calls.append(e.call)
                logger.warning(
                    "Unparseable verification output for %s (attempt %d/%d): %s",
                    request.request_id, attempt + 1, attempts, e,
                )
                continue
            calls.append(scored.call)
            return scored.breakdown, calls

        logger.error(
            "Verification output unusable for %s after %d calls; using conservative score",
            request.request_id, attempts,
        )
        reason = f"Verification output could not be parsed: {last_error}"
        return ScoreBreakdown.conservative(run.weights, reason), calls

    async def _passthrough(self, run: _Run) -> VerificationResult:
        """Verification disabled: one primary call, returned unverified."""
        request = run.request
        self._admit(run)
        run.machine.transition(VerificationState.CALLING_PRIMARY)
        attempt_started = utcnow()
        remaining = run.deadline - self._clock()
        try:
            call = await asyncio.wait_for(self.primary.call(request.prompt), timeout=max(remaining, 0.0))
        except asyncio.TimeoutError:
            run.machine.transition(VerificationState.TIMED_OUT)
            await self._audit(
                run, 1, AuditOutcome.TIMED_OUT, attempt_started, request.prompt, "", None,
                self._elapsed_ms(run),
                abort_reason=f"deadline of {run.deadline_seconds:.2f}s exceeded",
            )
            raise VerificationTimeoutError(run.deadline_seconds, 0) from None
        except ProviderUnavailableError as e:
            await self._audit(
                run, 1, AuditOutcome.PROVIDER_ERROR, attempt_started, request.prompt, "", None,
                self._elapsed_ms(run), abort_reason=str(e),
            )
            raise

        run.machine.transition(VerificationState.SKIPPED)
        breakdown = ScoreBreakdown.conservative(run.weights, WARNING_DISABLED)
        attempt = _Attempt(1, call.text, breakdown, self._elapsed_ms(run))
        await self._audit(
            run, 1, AuditOutcome.UNVERIFIED, attempt_started, request.prompt, call.text,
            breakdown, attempt.latency_ms, costs={"primary": _usage_dict([call])},
        )
        return self._result(
            run, attempt, verified=False, state=VerificationState.SKIPPED,
            warnings=(WARNING_DISABLED,),
        )

    # ------------------------------------------------------------------
    # Terminal results
    # ------------------------------------------------------------------

    @staticmethod
    def _best(attempts: Sequence[_Attempt]) -> _Attempt:
        """Highest overall score; the earliest attempt wins ties."""
        best = attempts[0]
        for attempt in attempts[1:]:
            if attempt.breakdown.overall > best.breakdown.overall:
                best = attempt
        return best

    def _result(
        self,
        run: _Run,
        attempt: _Attempt,
        verified: bool,
        state: VerificationState,
        warnings: tuple[str, ...] = (),
        timed_out: bool = False,
        withhold: bool = False,
    ) -> VerificationResult:
        return VerificationResult(
            request_id=run.request.request_id,
            service_name=run.request.service_name,
            response="" if withhold else attempt.response,
            verified=verified,
            breakdown=attempt.breakdown,
            attempts_used=run.machine.attempt,
            total_latency_ms=self._elapsed_ms(run),
            warnings=warnings,
            state=state,
            timed_out=timed_out,
            selected_attempt=attempt.number,
        )

    def _safety_error(self, run: _Run) -> SafetyViolationError:
        failing = [a for a in run.attempts if a.breakdown.safety_failed]
        shown = self._best(failing) if failing else self._best(run.attempts)
        result = self._result(
            run, shown, verified=False, state=VerificationState.SAFETY_FAILED, withhold=True,
        )
        logger.error(
            "Verify failed closed on safety: request=%s attempts=%d",
            run.request.request_id, run.machine.attempt,
        )
        return SafetyViolationError(result)

    def _timed_out(self, run: _Run, transitioned: bool = False) -> VerificationResult:
        """Best-effort result after the deadline; raises if nothing was scored."""
        if not transitioned:
            run.machine.transition(VerificationState.TIMED_OUT)
        if not run.attempts:
            logger.error(
                "Verify timed out with no scored attempt: request=%s deadline=%.2fs",
                run.request.request_id, run.deadline_seconds,
            )
            raise VerificationTimeoutError(run.deadline_seconds, 0)
        if any(a.breakdown.safety_failed for a in run.attempts):
            raise self._safety_error(run)

        best = self._best(run.attempts)
        logger.warning(
            "Verify timed out: request=%s attempts=%d returning attempt %d",
            run.request.request_id, run.machine.attempt, best.number,
        )
        return self._result(
            run, best, verified=False, state=VerificationState.TIMED_OUT,
            warnings=(f"deadline of {run.deadline_seconds:.2f}s exceeded; returning best-scoring attempt",),
            timed_out=True,
        )

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    async def _emit(self, run: _Run, event: StreamEvent) -> None:
        if run.on_event is not None:
            await run.on_event(event)

    async def _audit(
        self,
        run: _Run,
        attempt_no: int,
        outcome: AuditOutcome,
        started_at: datetime,
        prompt: Sequence[Message],
        response: str,
        breakdown: ScoreBreakdown | None,
        latency_ms: float,
        abort_reason: str | None = None,
        costs: dict | None = None,
    ) -> None:
        request = run.request
        entry = new_entry(
            request.request_id,
            request.service_name,
            attempt_no,
            outcome,
            started_at,
            source_key=request.effective_source_key,
            prompt_excerpt="\n".join(f"{m.role}: {m.content}" for m in prompt),
            response_excerpt=response,
            breakdown=breakdown.to_dict() if breakdown is not None else None,
            latency_ms=latency_ms,
            abort_reason=abort_reason,
            costs=costs or {},
        )
        await self.audit.record(entry)
