"""Explicit state machine for one Verify call."""

from ..models.verification import VerificationState

S = VerificationState

TRANSITIONS: dict[VerificationState, frozenset[VerificationState]] = {
    S.PENDING: frozenset({S.CALLING_PRIMARY, S.TIMED_OUT}),
    S.CALLING_PRIMARY: frozenset({S.SCORING, S.SKIPPED, S.TIMED_OUT}),
    S.SCORING: frozenset({S.PASSED, S.RETRYING, S.EXHAUSTED, S.SAFETY_FAILED, S.TIMED_OUT}),
    S.RETRYING: frozenset({S.CALLING_PRIMARY, S.TIMED_OUT}),
}

TERMINAL_STATES = frozenset({S.PASSED, S.EXHAUSTED, S.SAFETY_FAILED, S.TIMED_OUT, S.SKIPPED})


class VerificationStateMachine:
    """Tracks state and the attempt counter; rejects illegal transitions.

    Entering CALLING_PRIMARY starts a new attempt, so ``attempt`` is the
    1-based number of the current (or last) primary call.
    """

    def __init__(self, max_retries: int):
        self.max_retries = max_retries
        self.state = S.PENDING
        self.attempt = 0
        self.history: list[VerificationState] = [S.PENDING]

    def transition(self, new_state: VerificationState) -> None:
        allowed = TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise RuntimeError(f"Illegal verification transition {self.state.value} -> {new_state.value}")
        if new_state == S.CALLING_PRIMARY:
            if self.attempt > self.max_retries:
                raise RuntimeError(
                    f"Attempt {self.attempt + 1} exceeds max_retries={self.max_retries}"
                )
            self.attempt += 1
        self.state = new_state
        self.history.append(new_state)

    @property
    def retries_done(self) -> int:
        return max(0, self.attempt - 1)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES
