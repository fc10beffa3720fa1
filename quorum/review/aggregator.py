"""Usage aggregation and stable issue numbering.

Pure functions over a finished PipelineRun; nothing here performs I/O.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from pydantic import BaseModel, Field

from quorum.review.pipeline import PipelineRun
from quorum.schemas.review import (
    IssueCategory,
    ReviewIssue,
    TaskSuccess,
    TokenUsage,
    ValidatedReview,
)

# Output order and numbering prefix per category
CATEGORY_PREFIXES: dict[IssueCategory, str] = {
    IssueCategory.CRITICAL: "C",
    IssueCategory.POSSIBLE: "P",
    IssueCategory.SUGGESTION: "S",
}

VALIDATOR_LABEL = "validator"


class UsageEntry(BaseModel):
    """Usage of a single executed call."""

    label: str = Field(description="Row label, e.g. 'Reviewer 1' or 'Validator'")
    task_id: str = Field(description="Task id, or 'validator'")
    model: str = Field(default="", description="Display name of the model")
    effort: str = Field(default="default effort", description="Configured reasoning effort")
    usage: TokenUsage


class NumberedIssue(BaseModel):
    code: str = Field(description="Stable per-category code, e.g. 'C1'")
    issue: ReviewIssue


class IssueStats(BaseModel):
    critical: int = 0
    possible: int = 0
    suggestion: int = 0
    files: int = Field(default=0, description="Distinct files referenced by issues")

    @property
    def total(self) -> int:
        return self.critical + self.possible + self.suggestion


class ReviewOutcome(BaseModel):
    """What the output collaborators receive from a run."""

    validated_review: ValidatedReview
    total_usage: TokenUsage
    reviewers_usage: TokenUsage
    breakdown: list[UsageEntry] = Field(default_factory=list)
    numbered_issues: list[NumberedIssue] = Field(default_factory=list)
    stats: IssueStats = Field(default_factory=IssueStats)


def sum_usage(usages: Iterable[TokenUsage], model: str = "total") -> TokenUsage:
    """Fold usages with ``TokenUsage.zero`` as the identity."""
    total = TokenUsage.zero(model)
    for usage in usages:
        total = total + usage
    return total


def _distinct(labels: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for label in labels:
        if label and label not in seen:
            seen.append(label)
    return seen


def reviewers_usage(successes: Sequence[TaskSuccess]) -> TokenUsage:
    """Sum of reviewer and previous-check usage, labelled by their models."""
    label = ", ".join(_distinct(s.usage.model for s in successes)) or "none"
    return sum_usage((s.usage for s in successes), model=label)


def number_issues(issues: Sequence[ReviewIssue]) -> list[NumberedIssue]:
    """Assign C1.., P1.., S1.. codes grouped critical, possible, suggestion.

    Input order is kept within a category, so identical input always gets
    identical numbering. Discarded issues get no code.
    """
    numbered: list[NumberedIssue] = []
    for category, prefix in CATEGORY_PREFIXES.items():
        in_category = [issue for issue in issues if issue.category == category]
        numbered.extend(
            NumberedIssue(code=f"{prefix}{index}", issue=issue)
            for index, issue in enumerate(in_category, start=1)
        )
    return numbered


def issue_stats(issues: Sequence[ReviewIssue]) -> IssueStats:
    files = {loc.path for issue in issues for loc in issue.files}
    return IssueStats(
        critical=sum(1 for i in issues if i.category == IssueCategory.CRITICAL),
        possible=sum(1 for i in issues if i.category == IssueCategory.POSSIBLE),
        suggestion=sum(1 for i in issues if i.category == IssueCategory.SUGGESTION),
        files=len(files),
    )


def _entry(run: PipelineRun, success: TaskSuccess) -> UsageEntry:
    model = run.model_for(success.task_id)
    if success.task_id.is_previous_check:
        label = "Previous check"
    else:
        label = f"Reviewer {success.task_id}"
    return UsageEntry(
        label=label,
        task_id=str(success.task_id),
        model=model.name if model else "",
        effort=model.effort if model else "default effort",
        usage=success.usage,
    )


def aggregate(run: PipelineRun) -> ReviewOutcome:
    """Build the output contract for a finished run.

    Totals cover every executed call: retained reviewers, a previous check
    that was executed but excluded, and the validator.
    """
    executed = sorted([*run.successes, *run.excluded], key=lambda r: r.task_id.sort_key())
    review = run.validated_review

    breakdown = [_entry(run, success) for success in executed]
    breakdown.append(
        UsageEntry(
            label="Validator",
            task_id=VALIDATOR_LABEL,
            model=run.validator_model.name,
            effort=run.validator_model.effort,
            usage=review.usage,
        )
    )

    return ReviewOutcome(
        validated_review=review,
        total_usage=sum_usage(entry.usage for entry in breakdown),
        reviewers_usage=reviewers_usage(executed),
        breakdown=breakdown,
        numbered_issues=number_issues(review.issues),
        stats=issue_stats(review.issues),
    )
