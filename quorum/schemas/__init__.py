"""Quorum schema definitions.

All Pydantic v2 models used across configuration, the review pipeline and
the output collaborators.
"""

from quorum.schemas.config import (
    UNBOUNDED,
    CompactionStepConfig,
    ModelConfig,
    QuorumConfig,
    ReviewSettings,
    ReviewSetup,
    SetupConfig,
)
from quorum.schemas.review import (
    CallTrace,
    HumanComment,
    IssueCategory,
    IssueLocation,
    ModelReply,
    PartitionResult,
    PromptInputs,
    ProviderPartition,
    ReviewIssue,
    ReviewTask,
    TaskFailure,
    TaskId,
    TaskKind,
    TaskResult,
    TaskSuccess,
    TokenUsage,
    ValidatedReview,
    ValidatorOutput,
)

__all__ = [
    "UNBOUNDED",
    "CallTrace",
    "CompactionStepConfig",
    "HumanComment",
    "IssueCategory",
    "IssueLocation",
    "ModelConfig",
    "ModelReply",
    "PartitionResult",
    "PromptInputs",
    "ProviderPartition",
    "QuorumConfig",
    "ReviewIssue",
    "ReviewSettings",
    "ReviewSetup",
    "ReviewTask",
    "SetupConfig",
    "TaskFailure",
    "TaskId",
    "TaskKind",
    "TaskResult",
    "TaskSuccess",
    "TokenUsage",
    "ValidatedReview",
    "ValidatorOutput",
]
