"""Review orchestration engine: scheduler, compactor, pipeline, aggregator."""

from quorum.review.cancellation import CancellationToken
from quorum.review.errors import (
    ConfigurationError,
    DiffBudgetExceededError,
    ModelInvocationError,
    NoSuccessfulReviewsError,
    QuorumError,
    RunCancelledError,
    TotalPipelineFailure,
    ValidationFailedError,
)

__all__ = [
    "CancellationToken",
    "ConfigurationError",
    "DiffBudgetExceededError",
    "ModelInvocationError",
    "NoSuccessfulReviewsError",
    "QuorumError",
    "RunCancelledError",
    "TotalPipelineFailure",
    "ValidationFailedError",
]
