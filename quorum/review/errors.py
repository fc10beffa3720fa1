"""Error taxonomy for the review engine.

Partial task failures are never raised; they travel as ``TaskFailure``
values. Everything defined here propagates to the caller.
"""

from __future__ import annotations


class QuorumError(Exception):
    """Base exception for all Quorum errors."""


class ConfigurationError(QuorumError):
    """Invalid configuration detected before any model call is dispatched.

    Attributes:
        problems: Every individual problem found, so callers can report
            all of them at once.
    """

    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        super().__init__(message)
        self.problems = problems or []


class TotalPipelineFailure(QuorumError):
    """The run cannot produce a validated review and must halt."""


class NoSuccessfulReviewsError(TotalPipelineFailure):
    """Every reviewer task failed or was excluded."""

    def __init__(self, failed: int) -> None:
        super().__init__(f"No successful reviews to validate ({failed} task(s) failed)")
        self.failed = failed


class ValidationFailedError(TotalPipelineFailure):
    """The validator call failed or its output could not be parsed."""


class DiffBudgetExceededError(TotalPipelineFailure):
    """The diff still exceeds the token budget after every compaction step."""

    def __init__(self, token_count: int, budget: int) -> None:
        super().__init__(
            f"Diff is ~{token_count} tokens after compaction, "
            f"over the {budget} token budget"
        )
        self.token_count = token_count
        self.budget = budget


class ModelInvocationError(QuorumError):
    """A model call failed after the provider's own retries.

    Attributes:
        model: LiteLLM model identifier of the failed call.
        attempts: Number of attempts made before giving up.
    """

    def __init__(self, message: str, model: str = "", attempts: int = 0) -> None:
        super().__init__(message)
        self.model = model
        self.attempts = attempts


class RunCancelledError(QuorumError):
    """The run was cancelled through its cancellation token."""
