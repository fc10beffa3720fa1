"""Diff compaction under a token budget.

When a diff is too large, ordered compaction steps shrink the reviewed
file set and the diff is regenerated for the smaller set. Diff text is
never truncated; only whole files are removed.
"""

from __future__ import annotations

import fnmatch
import inspect
import logging
import math
from collections.abc import Sequence

from pydantic import BaseModel, Field

from quorum.review.errors import DiffBudgetExceededError
from quorum.review.events import EventType, ReviewEventEmitter
from quorum.review.interfaces import CompactionStep, DiffProvider
from quorum.schemas.config import CompactionStepConfig

logger = logging.getLogger(__name__)

# Rough estimate: 1 token ≈ 4 characters
_CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Deterministic token estimate, monotonic in text length."""
    return math.ceil(len(text) / _CHARS_PER_TOKEN)


class CompactionResult(BaseModel):
    """Outcome of compaction: the file set and diff to review."""

    files: list[str] = Field(default_factory=list)
    diff: str = ""
    exclude_supplementary_context: bool = False
    token_count: int = 0
    applied_steps: list[str] = Field(default_factory=list)
    within_budget: bool = True


class GlobCompactionStep:
    """Compaction step built from include/exclude fnmatch globs.

    A pattern matches a path if it matches the full path or its basename.
    With a non-empty include list only matching files are kept; exclude
    then drops matching files.
    """

    def __init__(
        self,
        name: str,
        include: Sequence[str] = (),
        exclude: Sequence[str] = (),
        exclude_supplementary_context: bool = False,
    ) -> None:
        self.name = name
        self.include = list(include)
        self.exclude = list(exclude)
        self.exclude_supplementary_context = exclude_supplementary_context

    @classmethod
    def from_config(cls, config: CompactionStepConfig) -> GlobCompactionStep:
        return cls(
            name=config.name,
            include=config.include,
            exclude=config.exclude,
            exclude_supplementary_context=config.exclude_supplementary_context,
        )

    def filter_files(self, files: Sequence[str]) -> list[str]:
        kept = list(files)
        if self.include:
            kept = [f for f in kept if matches_any(f, self.include)]
        if self.exclude:
            kept = [f for f in kept if not matches_any(f, self.exclude)]
        return kept

    def __repr__(self) -> str:
        return f"GlobCompactionStep({self.name!r})"


def matches_any(path: str, patterns: Sequence[str]) -> bool:
    """True when ``path`` or its basename matches any fnmatch pattern."""
    basename = path.rsplit("/", 1)[-1]
    return any(
        fnmatch.fnmatch(path, pattern) or fnmatch.fnmatch(basename, pattern)
        for pattern in patterns
    )


def build_steps(configs: Sequence[CompactionStepConfig]) -> list[GlobCompactionStep]:
    """Build compaction steps from configuration, keeping their order."""
    return [GlobCompactionStep.from_config(config) for config in configs]


async def _filter(step: CompactionStep, files: list[str]) -> list[str]:
    filtered = step.filter_files(files)
    if inspect.isawaitable(filtered):
        filtered = await filtered
    return list(filtered)


async def compact(
    files: Sequence[str],
    diff: str,
    budget: int,
    steps: Sequence[CompactionStep],
    diff_provider: DiffProvider,
    emitter: ReviewEventEmitter | None = None,
) -> CompactionResult:
    """Shrink the reviewed file set until the diff fits the token budget.

    Steps run in order. A step whose filter yields no files, or the same
    file set, is skipped without regenerating the diff. A regenerated
    diff that came out larger than the current one is rejected, so the
    token count never increases from one applied step to the next.
    Compaction stops as soon as the budget is met.

    Args:
        files: Files currently under review.
        diff: Diff for those files.
        budget: Maximum estimated tokens.
        steps: Ordered compaction steps.
        diff_provider: Regenerates the diff for a file subset.
        emitter: Optional progress event emitter.

    Returns:
        The resulting state. ``within_budget`` is False when steps ran out
        before the budget was met; pass the result to
        ``ensure_within_budget`` to turn that into a failure.
    """
    current_files = list(files)
    current_diff = diff
    tokens = estimate_tokens(diff)
    exclude_context = False
    applied: list[str] = []

    if tokens <= budget:
        return CompactionResult(files=current_files, diff=current_diff, token_count=tokens)

    logger.info("Diff is ~%d tokens, over the %d token budget; compacting", tokens, budget)

    for step in steps:
        filtered = await _filter(step, current_files)

        if not filtered:
            await _skip(step.name, "filter removed every file", emitter)
            continue
        if len(filtered) == len(current_files) and set(filtered) == set(current_files):
            await _skip(step.name, "file set unchanged", emitter)
            continue

        snapshot = await diff_provider.get_diff(filtered)
        new_tokens = estimate_tokens(snapshot.diff)
        if new_tokens > tokens:
            await _skip(step.name, f"regenerated diff grew to ~{new_tokens} tokens", emitter)
            continue

        current_files = list(snapshot.files) if snapshot.files else filtered
        current_diff = snapshot.diff
        logger.info(
            "Compaction step '%s': %d file(s), ~%d -> ~%d tokens",
            step.name, len(current_files), tokens, new_tokens,
        )
        tokens = new_tokens
        exclude_context = exclude_context or step.exclude_supplementary_context
        applied.append(step.name)
        if emitter is not None:
            await emitter.emit(
                EventType.COMPACTION_STEP_APPLIED,
                step=step.name,
                files=len(current_files),
                tokens=tokens,
            )

        if tokens <= budget:
            break

    return CompactionResult(
        files=current_files,
        diff=current_diff,
        exclude_supplementary_context=exclude_context,
        token_count=tokens,
        applied_steps=applied,
        within_budget=tokens <= budget,
    )


async def _skip(name: str, reason: str, emitter: ReviewEventEmitter | None) -> None:
    logger.info("Skipping compaction step '%s': %s", name, reason)
    if emitter is not None:
        await emitter.emit(EventType.COMPACTION_STEP_SKIPPED, step=name, reason=reason)


def ensure_within_budget(result: CompactionResult, budget: int) -> CompactionResult:
    """Return ``result`` unchanged, or fail when it is still over budget.

    Raises:
        DiffBudgetExceededError: If the diff exceeds the budget.
    """
    if result.token_count > budget:
        raise DiffBudgetExceededError(result.token_count, budget)
    return result
