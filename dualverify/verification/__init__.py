"""Dual-provider verification: scoring, retries and orchestration.

Flow per attempt:
1. Security pre-check for the caller's source key
2. Primary provider call (transient failures retried at provider level)
3. Verification provider scores the response on the active criteria
4. Pass -> return; fail -> augmented prompt and backoff, up to max_retries
"""

from .orchestrator import VerificationOrchestrator
from .retry import RetryController, RetryDecision
from .scorer import ResponseScorer, ScoredResponse, parse_json
from .state import TERMINAL_STATES, TRANSITIONS, VerificationStateMachine

__all__ = [
    "VerificationOrchestrator",
    "ResponseScorer",
    "ScoredResponse",
    "parse_json",
    "RetryController",
    "RetryDecision",
    "VerificationStateMachine",
    "TRANSITIONS",
    "TERMINAL_STATES",
]
