from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for marketing pipeline failures."""


class InvalidTask(PipelineError):
    """Raised when a submitted task cannot be executed as described."""


class TaskNotFound(PipelineError):
    """Raised when a task handle does not belong to the task manager."""


class DataUnavailable(PipelineError):
    """Raised when historical series needed for analysis are missing."""


class BudgetCapExceeded(PipelineError):
    """Raised when a proposal breaches the variance cap; callers recover with ``applied``."""

    def __init__(self, channel: str, *, proposed: float, applied: float) -> None:
        super().__init__(f"{channel} delta {proposed:.2f} exceeds cap, clamped to {applied:.2f}")
        self.channel = channel
        self.proposed = proposed
        self.applied = applied


class ComplianceViolation(PipelineError):
    """A creative needs a rewrite before it can be published."""


class HardPolicyViolation(ComplianceViolation):
    """A creative hit the hard blocklist and is locked from publishing."""


class ReviewClosed(PipelineError):
    """Raised when a review ticket that was already resolved or dismissed is closed again."""


class NegotiationExhausted(PipelineError):
    """The Creative/Audit loop ran out of rounds without a passing verdict."""


class InferenceError(PipelineError):
    """Base class for failures of the external text-generation capability."""


class InferenceTimeout(InferenceError):
    """Raised when every inference attempt exceeded the per-call timeout."""


class InferenceUnavailable(InferenceError):
    """Raised when the inference client errored or returned unusable output."""


class PersistenceFailure(PipelineError):
    """Raised when a decision log entry could not be durably written."""

    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id
