"""Multi-stage review pipeline.

Drives one review run:

1. Fan-out: one task per reviewer, plus a previous-issue check when a
   prior review exists and the check is enabled.
2. Dispatch: tasks are partitioned by their configured provider and run
   through the ProviderScheduler.
3. Collect: failures are logged and dropped; a previous check that found
   nothing is dropped too.
4. Gate: no retained output means the run fails before validation.
5. Validate: a single validator call merges and categorizes findings.
6. Normalize: discarded issues are removed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field

from pydantic import BaseModel, Field

from quorum.prompts import render_prompt
from quorum.providers.base import ModelProvider
from quorum.providers.tools import RepositoryTools
from quorum.review.cancellation import CancellationToken
from quorum.review.compactor import CompactionResult, compact, ensure_within_budget
from quorum.review.errors import (
    ConfigurationError,
    ModelInvocationError,
    NoSuccessfulReviewsError,
    RunCancelledError,
    ValidationFailedError,
)
from quorum.review.events import EventType, ReviewEventEmitter
from quorum.review.interfaces import CompactionStep, DiffProvider, DiffSnapshot, PriorReviewLookup
from quorum.review.parsing import ParseFailure, parse_validated_review
from quorum.review.scheduler import ProviderScheduler
from quorum.schemas.config import ModelConfig, ReviewSettings, ReviewSetup
from quorum.schemas.review import (
    HumanComment,
    IssueCategory,
    ModelReply,
    PartitionResult,
    PromptInputs,
    ProviderPartition,
    ReviewTask,
    TaskFailure,
    TaskId,
    TaskSuccess,
    ValidatedReview,
    ValidatorOutput,
)

logger = logging.getLogger(__name__)

# A previous check answering with any of these found nothing left to report
NO_ISSUES_SENTINELS = ("no issues found", "no issues identified in this review")

ProviderFactory = Callable[[ModelConfig], ModelProvider]


class ReviewRequest(BaseModel):
    """Everything a run needs to know about the change under review."""

    context_label: str = Field(description="Branch or PR being reviewed")
    files: list[str] = Field(default_factory=list)
    diff: str
    review_instructions: str = ""
    supplementary_context: str = ""
    supplementary_source: str = ""
    exclude_supplementary_context: bool = False
    review_marker: str = Field(default="", description="Identity of this review for prior lookups")
    human_comments: list[HumanComment] = Field(default_factory=list)

    def prompt_inputs(self, previous_issues: str = "") -> PromptInputs:
        include_context = not self.exclude_supplementary_context
        return PromptInputs(
            context_label=self.context_label,
            changed_files=list(self.files),
            diff=self.diff,
            review_instructions=self.review_instructions,
            supplementary_context=self.supplementary_context if include_context else "",
            supplementary_source=self.supplementary_source if include_context else "",
            previous_issues=previous_issues,
        )


@dataclass
class PipelineRun:
    """Everything a finished run produced, for aggregation and logging.

    ``successes`` holds the retained outputs in validator order;
    ``excluded`` holds executed tasks that were dropped before validation.
    """

    request: ReviewRequest
    setup_id: str
    tasks: list[ReviewTask]
    successes: list[TaskSuccess]
    failures: list[TaskFailure]
    validated_review: ValidatedReview
    validator_model: ModelConfig
    excluded: list[TaskSuccess] = field(default_factory=list)

    def model_for(self, task_id: TaskId) -> ModelConfig | None:
        for task in self.tasks:
            if task.task_id == task_id:
                return task.model
        return None


# ── Pure helpers ────────────────────────────────────────────────


def order_successes(results: Iterable[TaskSuccess]) -> list[TaskSuccess]:
    """Previous check first, then ascending reviewer number, ties lexical."""
    return sorted(results, key=lambda r: r.task_id.sort_key())


def is_empty_previous_check(result: TaskSuccess) -> bool:
    """True for a previous-check result that carries nothing forward."""
    if not result.task_id.is_previous_check:
        return False
    if result.usage.total_tokens == 0:
        return True
    content = result.content.lower()
    return any(sentinel in content for sentinel in NO_ISSUES_SENTINELS)


def partition_tasks(
    tasks: Sequence[ReviewTask], settings: ReviewSettings
) -> dict[str, ProviderPartition]:
    """Group tasks by their explicit provider id, in first-seen order."""
    partitions: dict[str, ProviderPartition] = {}
    for task in tasks:
        if task.provider_id not in partitions:
            partitions[task.provider_id] = ProviderPartition(
                provider_id=task.provider_id,
                ceiling=settings.ceiling_for(task.provider_id),
            )
        partitions[task.provider_id].tasks.append(task)
    return partitions


def collect_results(
    results: dict[str, PartitionResult],
) -> tuple[list[TaskSuccess], list[TaskFailure]]:
    successes: list[TaskSuccess] = []
    failures: list[TaskFailure] = []
    for result in results.values():
        successes.extend(result.successes)
        failures.extend(result.failures)
    return successes, failures


def drop_discarded(output: ValidatorOutput) -> ValidatorOutput:
    kept = [issue for issue in output.issues if issue.category != IssueCategory.DISCARD]
    dropped = len(output.issues) - len(kept)
    if dropped:
        logger.info("Validator discarded %d issue(s) as not applicable", dropped)
    return ValidatorOutput(summary=output.summary, issues=kept)


async def prepare_diff(
    snapshot: DiffSnapshot,
    budget: int,
    steps: Sequence[CompactionStep],
    diff_provider: DiffProvider,
    emitter: ReviewEventEmitter | None = None,
) -> CompactionResult:
    """Compact the diff if needed and fail when it still does not fit.

    Raises:
        DiffBudgetExceededError: If the budget is exceeded after every step.
    """
    result = await compact(snapshot.files, snapshot.diff, budget, steps, diff_provider, emitter)
    return ensure_within_budget(result, budget)


# ── Pipeline ────────────────────────────────────────────────────


class ReviewPipeline:
    """Runs reviewers, the optional previous check and the validator.

    Args:
        provider_factory: Builds a ModelProvider for a model config.
        prior_lookup: Finds issues of the previous review, if any.
        tools: Read-only repository tools offered to tool-capable reviewers.
        emitter: Optional progress event emitter.
        timeout: Per-request timeout in seconds passed to providers.
    """

    def __init__(
        self,
        provider_factory: ProviderFactory,
        *,
        prior_lookup: PriorReviewLookup | None = None,
        tools: RepositoryTools | None = None,
        emitter: ReviewEventEmitter | None = None,
        timeout: int = 600,
    ) -> None:
        self._provider_factory = provider_factory
        self._prior_lookup = prior_lookup
        self._tools = tools
        self._emitter = emitter
        self._timeout = timeout

    async def run(
        self,
        request: ReviewRequest,
        setup: ReviewSetup,
        settings: ReviewSettings,
        cancel: CancellationToken,
    ) -> PipelineRun:
        """Execute the full review pipeline.

        Raises:
            ConfigurationError: No reviewers, or a malformed ceiling.
            NoSuccessfulReviewsError: Nothing survived collection.
            ValidationFailedError: The validator call or its parsing failed.
            RunCancelledError: The run was cancelled.
        """
        if not setup.reviewers:
            raise ConfigurationError(f"Setup '{setup.id}' has no reviewers configured")

        tasks = self.build_tasks(request, setup, settings)
        await self._emit(EventType.RUN_STARTED, setup=setup.id, tasks=len(tasks))

        scheduler = ProviderScheduler(self._run_task, self._emitter)
        results = await scheduler.run(partition_tasks(tasks, settings), cancel)
        successes, failures = collect_results(results)

        for failure in failures:
            logger.error("Excluding task %s: %s", failure.task_id, failure.error)

        retained: list[TaskSuccess] = []
        excluded: list[TaskSuccess] = []
        for success in successes:
            if is_empty_previous_check(success):
                logger.info("Previous check reported no outstanding issues; excluding it")
                excluded.append(success)
                await self._emit(EventType.TASK_EXCLUDED, task_id=str(success.task_id))
            else:
                retained.append(success)
        retained = order_successes(retained)

        if not retained:
            raise NoSuccessfulReviewsError(failed=len(failures))

        validated = await self._validate(request, setup.validator, retained, cancel)
        await self._emit(
            EventType.RUN_COMPLETED,
            succeeded=len(retained),
            failed=len(failures),
            issues=len(validated.issues),
        )

        return PipelineRun(
            request=request,
            setup_id=setup.id,
            tasks=tasks,
            successes=retained,
            failures=failures,
            excluded=excluded,
            validated_review=validated,
            validator_model=setup.validator,
        )

    def build_tasks(
        self, request: ReviewRequest, setup: ReviewSetup, settings: ReviewSettings
    ) -> list[ReviewTask]:
        """One task per reviewer, plus the previous check when it applies."""
        inputs = request.prompt_inputs()
        tasks = [
            ReviewTask(
                task_id=TaskId.reviewer(number),
                provider_id=model.provider,
                model=model,
                inputs=inputs,
            )
            for number, model in enumerate(setup.reviewers, start=1)
        ]

        previous_issues = self._find_previous_issues(request, settings)
        if previous_issues:
            tasks.append(
                ReviewTask(
                    task_id=TaskId.previous_check(),
                    provider_id=setup.validator.provider,
                    model=setup.validator,
                    inputs=request.prompt_inputs(previous_issues=previous_issues),
                )
            )
        return tasks

    def _find_previous_issues(self, request: ReviewRequest, settings: ReviewSettings) -> str:
        if not settings.previous_check or self._prior_lookup is None:
            return ""
        return (self._prior_lookup.find_previous_issues(request.review_marker) or "").strip()

    # ── Task execution ──────────────────────────────────────────

    def _tools_for(self, model: ModelConfig) -> RepositoryTools | None:
        return self._tools if model.supports_tools else None

    async def _run_task(self, task: ReviewTask, cancel: CancellationToken) -> ModelReply:
        provider = self._provider_factory(task.model)
        tools = self._tools_for(task.model)
        inputs = task.inputs
        review_format = render_prompt("review_format")

        if task.task_id.is_previous_check:
            system = render_prompt(
                "previous_check",
                context_label=inputs.context_label,
                previous_issues=inputs.previous_issues,
                tools_enabled=tools is not None,
                review_format=review_format,
            )
        else:
            system = render_prompt(
                "reviewer",
                context_label=inputs.context_label,
                review_instructions=inputs.review_instructions,
                supplementary_context=inputs.supplementary_context,
                supplementary_source=inputs.supplementary_source,
                tools_enabled=tools is not None,
                review_format=review_format,
            )
        user = render_prompt(
            "review_request",
            context_label=inputs.context_label,
            changed_files=inputs.changed_files,
            diff=inputs.diff,
        )
        return await provider.complete(
            [{"role": "user", "content": user}],
            system,
            tools=tools,
            timeout=self._timeout,
            cancel=cancel,
        )

    async def _validate(
        self,
        request: ReviewRequest,
        validator: ModelConfig,
        retained: list[TaskSuccess],
        cancel: CancellationToken,
    ) -> ValidatedReview:
        reviews = [
            {
                "title": (
                    "Previous issues still present"
                    if r.task_id.is_previous_check
                    else f"Reviewer {r.task_id}"
                ),
                "content": r.content,
            }
            for r in retained
        ]
        system = render_prompt(
            "validator",
            context_label=request.context_label,
            has_previous_check=any(r.task_id.is_previous_check for r in retained),
            has_human_comments=bool(request.human_comments),
        )
        user = render_prompt(
            "validation_request",
            context_label=request.context_label,
            changed_files=request.files,
            reviews=reviews,
            human_comments=request.human_comments,
            diff=request.diff,
        )

        await self._emit(
            EventType.VALIDATION_STARTED, model=validator.model, reviews=len(retained)
        )
        provider = self._provider_factory(validator)
        try:
            reply = await provider.complete(
                [{"role": "user", "content": user}],
                system,
                output_schema=ValidatorOutput,
                timeout=self._timeout,
                cancel=cancel,
            )
        except RunCancelledError:
            raise
        except ModelInvocationError as e:
            raise ValidationFailedError(f"Validator call failed: {e}") from e
        except Exception as e:
            logger.exception("Validator %s raised an unexpected error", validator.display_name)
            raise ValidationFailedError(
                f"Validator call failed: {type(e).__name__}: {e}"
            ) from e

        parsed = parse_validated_review(reply.content)
        if isinstance(parsed, ParseFailure):
            raise ValidationFailedError(f"Validator output could not be parsed: {parsed.reason}")

        output = drop_discarded(parsed.output)
        await self._emit(EventType.VALIDATION_COMPLETED, issues=len(output.issues))
        return ValidatedReview(
            summary=output.summary,
            issues=output.issues,
            usage=reply.usage,
            trace=reply.trace,
        )

    async def _emit(self, event_type: EventType, **data: object) -> None:
        if self._emitter is not None:
            await self._emitter.emit(event_type, **data)
