"""Shared error types for the epicflow package."""


class EpicflowError(Exception):
    """Base exception for epicflow errors.

    Use this for user-facing errors that should have actionable messages.
    """

    pass


class HumanInterventionRequired(EpicflowError):
    """A precondition is missing and must not be guessed.

    Raised for epics without a target repository, missing branch names or
    missing architecture output.
    """

    def __init__(self, message: str, entity_id: str | None = None) -> None:
        super().__init__(f"Human intervention required: {message}")
        self.entity_id = entity_id


class RuleViolation(EpicflowError):
    """A retryable rule violation with structured feedback.

    The feedback is threaded into the next attempt so the unit of work
    can correct itself.
    """

    def __init__(self, violation_type: str, feedback: str) -> None:
        super().__init__(f"{violation_type}: {feedback}")
        self.violation_type = violation_type
        self.feedback = feedback


class RuleViolationRetriesExhausted(EpicflowError):
    """A phase kept producing rule violations after its last attempt."""

    def __init__(self, attempts: int, last_violation: RuleViolation) -> None:
        super().__init__(
            f"Rule violation persisted after {attempts} attempts: {last_violation}"
        )
        self.attempts = attempts
        self.last_violation = last_violation


class AgentInvocationError(EpicflowError):
    """Agent backend reported an error or exited abnormally.

    Retried only when the message matches a transient pattern.
    """

    pass


class AgentTimeoutError(EpicflowError):
    """Agent invocation exceeded its timeout."""

    def __init__(self, agent_type: str, timeout_seconds: float) -> None:
        super().__init__(f"Agent {agent_type} timed out after {timeout_seconds}s")
        self.agent_type = agent_type
        self.timeout_seconds = timeout_seconds


class AgentValidationError(EpicflowError):
    """Agent output or an event payload failed validation."""

    def __init__(self, message: str, missing_fields: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing_fields = missing_fields or []


class CostBudgetExceededError(EpicflowError):
    """A task or phase exceeded its configured cost budget."""

    def __init__(self, task_id: str, scope: str, spent: float, limit: float) -> None:
        super().__init__(
            f"Cost budget exceeded for {scope} of task {task_id}: "
            f"${spent:.2f} > ${limit:.2f}"
        )
        self.task_id = task_id
        self.scope = scope
        self.spent = spent
        self.limit = limit


class CircuitBreakerError(EpicflowError):
    """Cumulative team failure rate crossed the threshold; the run is aborted."""

    def __init__(self, failed: int, total: int, threshold: float) -> None:
        rate = failed / total if total else 0.0
        super().__init__(
            f"Circuit breaker tripped: {failed}/{total} teams failed "
            f"({rate:.0%} > {threshold:.0%})"
        )
        self.failed = failed
        self.total = total
        self.threshold = threshold


class PhaseCancelledError(EpicflowError):
    """Raised when a cancellation request is observed during a phase."""

    def __init__(
        self,
        phase_name: str,
        task_id: str | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(
            f"Phase {phase_name} cancelled: {reason or 'Task cancelled by user'}"
        )
        self.phase_name = phase_name
        self.task_id = task_id
        self.reason = reason


class StateValidationError(EpicflowError):
    """Folded event state broke an invariant."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("State validation failed: " + "; ".join(errors))
        self.errors = errors


class GitError(EpicflowError):
    """A git command exited non-zero or timed out."""

    def __init__(self, command: list[str], returncode: int, stderr: str) -> None:
        super().__init__(f"git {' '.join(command)} failed ({returncode}): {stderr}")
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class LockHeldError(EpicflowError):
    """Another process is already running the task."""

    def __init__(
        self,
        task_id: str,
        holder_pid: int | None = None,
        acquired_at: str | None = None,
    ) -> None:
        since = f" since {acquired_at}" if acquired_at else ""
        super().__init__(f"Task {task_id} already running (PID: {holder_pid}){since}")
        self.task_id = task_id
        self.holder_pid = holder_pid
        self.acquired_at = acquired_at
