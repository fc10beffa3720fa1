"""Review pipeline schemas.

Defines task identity, prompt inputs, token usage, the per-task result
union, structured review issues and the validated review produced by the
validator stage.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from quorum.schemas.config import UNBOUNDED, ModelConfig

PREVIOUS_CHECK_LABEL = "previous-check"


class TaskKind(StrEnum):
    """Kinds of tasks dispatched by the review pipeline."""

    REVIEWER = "reviewer"
    PREVIOUS_CHECK = "previous_check"


class TaskId(BaseModel):
    """Identity of a task within one pipeline run.

    Either a numbered reviewer (``TaskId.reviewer(2)``) or the single
    previous-issue check (``TaskId.previous_check()``).
    """

    model_config = ConfigDict(frozen=True)

    kind: TaskKind
    number: int | None = Field(default=None, ge=1)

    @classmethod
    def reviewer(cls, number: int) -> TaskId:
        return cls(kind=TaskKind.REVIEWER, number=number)

    @classmethod
    def previous_check(cls) -> TaskId:
        return cls(kind=TaskKind.PREVIOUS_CHECK)

    @property
    def is_previous_check(self) -> bool:
        return self.kind == TaskKind.PREVIOUS_CHECK

    def sort_key(self) -> tuple[int, int, str]:
        """Previous check first, then reviewers by number, then by label."""
        if self.is_previous_check:
            return (0, 0, str(self))
        return (1, self.number or 0, str(self))

    def __str__(self) -> str:
        if self.is_previous_check:
            return PREVIOUS_CHECK_LABEL
        return str(self.number)


class TokenUsage(BaseModel):
    """Token consumption for one or more model calls.

    Summable: ``TokenUsage.zero()`` is the identity for ``+``.
    """

    prompt_tokens: int = Field(default=0, ge=0, description="Input tokens consumed")
    completion_tokens: int = Field(default=0, ge=0, description="Output tokens generated")
    total_tokens: int = Field(default=0, ge=0, description="Total tokens reported by the provider")
    reasoning_tokens: int | None = Field(
        default=None, ge=0, description="Reasoning tokens, when the provider reports them"
    )
    model: str = Field(default="none", description="Model label for this usage")
    cost: float = Field(default=0.0, ge=0.0, description="Estimated cost in USD")

    @classmethod
    def zero(cls, model: str = "none") -> TokenUsage:
        return cls(model=model)

    def __add__(self, other: TokenUsage) -> TokenUsage:
        if self.reasoning_tokens is None and other.reasoning_tokens is None:
            reasoning = None
        else:
            reasoning = (self.reasoning_tokens or 0) + (other.reasoning_tokens or 0)
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            reasoning_tokens=reasoning,
            model=self.model,
            cost=self.cost + other.cost,
        )


class CallTrace(BaseModel):
    """Debug trace of a single model invocation, persisted in run logs."""

    started_at: str = Field(description="ISO-8601 start time")
    ended_at: str = Field(description="ISO-8601 end time")
    duration_ms: int = Field(ge=0, description="Wall-clock duration in milliseconds")
    model_id: str = Field(description="LiteLLM model identifier")
    provider: str = Field(description="Provider identity from the model config")
    finish_reason: str = Field(default="", description="Finish reason of the final response")
    tool_calls: list[dict[str, Any]] = Field(
        default_factory=list, description="Tool calls made during the invocation"
    )
    provider_options: dict[str, Any] = Field(
        default_factory=dict, description="Provider options used for the call"
    )


class HumanComment(BaseModel):
    """A human discussion comment passed to the validator as extra context."""

    author: str
    body: str
    created_at: str = ""


class PromptInputs(BaseModel):
    """Inputs shared by every task in a run.

    Reviewers receive identical inputs; only the model configuration
    differs between them.
    """

    context_label: str = Field(description="Branch or PR being reviewed")
    changed_files: list[str] = Field(default_factory=list)
    diff: str = Field(description="Unified diff under review")
    review_instructions: str = Field(default="", description="Effective review instructions")
    supplementary_context: str = Field(
        default="", description="AGENTS.md style project guidance (may be dropped by compaction)"
    )
    supplementary_source: str = Field(default="", description="Where supplementary_context came from")
    previous_issues: str = Field(
        default="", description="Issues from the prior review (previous check only)"
    )


class ReviewTask(BaseModel):
    """A single unit of work dispatched through the scheduler."""

    task_id: TaskId
    provider_id: str = Field(description="Explicit provider identity used for partitioning")
    model: ModelConfig
    inputs: PromptInputs


@dataclass(frozen=True)
class TaskSuccess:
    """A task that completed with model output."""

    task_id: TaskId
    content: str
    usage: TokenUsage
    trace: CallTrace | None = None


@dataclass(frozen=True)
class TaskFailure:
    """A task whose model call failed; the error is carried as a value."""

    task_id: TaskId
    error: Exception


TaskResult = TaskSuccess | TaskFailure


class IssueCategory(StrEnum):
    """Validator issue categories. DISCARD never reaches the output."""

    CRITICAL = "critical"
    POSSIBLE = "possible"
    SUGGESTION = "suggestion"
    DISCARD = "not-applicable-or-false-positive"


class IssueLocation(BaseModel):
    """A file (and optional line) an issue refers to."""

    path: str
    line: int | None = Field(default=None, ge=1)


class ReviewIssue(BaseModel):
    """A single validated, categorized review issue."""

    model_config = ConfigDict(populate_by_name=True)

    category: IssueCategory
    files: list[IssueLocation] = Field(default_factory=list)
    description: str
    current_code: str | None = Field(
        default=None, validation_alias=AliasChoices("current_code", "currentCode")
    )
    suggested_fix: str | None = Field(
        default=None, validation_alias=AliasChoices("suggested_fix", "suggestedFix")
    )


class ValidatorOutput(BaseModel):
    """Raw structured output expected from the validator model."""

    summary: str
    issues: list[ReviewIssue] = Field(default_factory=list)


class ValidatedReview(BaseModel):
    """Validator result after discard filtering."""

    summary: str
    issues: list[ReviewIssue] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage.zero)
    trace: CallTrace | None = None


class ProviderPartition(BaseModel):
    """Tasks sharing one provider identity plus that provider's ceiling.

    The ceiling is kept raw (``Any``) so malformed values survive until the
    scheduler validates every partition at once.
    """

    provider_id: str
    tasks: list[ReviewTask] = Field(default_factory=list)
    ceiling: Any = UNBOUNDED


@dataclass
class PartitionResult:
    """Successes and failures of one provider partition.

    Written only by the coroutines dispatching that partition.
    """

    provider_id: str
    successes: list[TaskSuccess]
    failures: list[TaskFailure]

    @property
    def task_ids(self) -> list[TaskId]:
        return [r.task_id for r in self.successes] + [r.task_id for r in self.failures]


class ModelReply(BaseModel):
    """What a model provider returns for one completion call."""

    content: str = Field(default="", description="Final text content of the reply")
    usage: TokenUsage = Field(default_factory=TokenUsage.zero)
    trace: CallTrace | None = None
