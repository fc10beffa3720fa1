"""Provider-aware concurrency scheduler.

Runs review tasks grouped into provider partitions. Each partition is
bounded by its own concurrency ceiling; partitions run concurrently with
no ordering between them. A task failure is recorded as a value and never
affects sibling tasks.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from quorum.review.cancellation import CancellationToken
from quorum.review.errors import ConfigurationError, RunCancelledError
from quorum.review.events import EventType, ReviewEventEmitter
from quorum.schemas.config import UNBOUNDED
from quorum.schemas.review import (
    ModelReply,
    PartitionResult,
    ProviderPartition,
    ReviewTask,
    TaskFailure,
    TaskSuccess,
)

logger = logging.getLogger(__name__)

TaskRunner = Callable[[ReviewTask, CancellationToken], Awaitable[ModelReply]]


def is_valid_ceiling(value: Any) -> bool:
    """A ceiling is a positive int (bools excluded) or the UNBOUNDED sentinel."""
    if isinstance(value, str):
        return value == UNBOUNDED
    if isinstance(value, bool) or not isinstance(value, int):
        return False
    return value > 0


def validate_ceilings(partitions: Mapping[str, ProviderPartition]) -> None:
    """Check every partition's ceiling before anything is dispatched.

    Raises:
        ConfigurationError: Listing every malformed ceiling found.
    """
    problems = [
        f"{provider_id}: {partition.ceiling!r}"
        for provider_id, partition in partitions.items()
        if not is_valid_ceiling(partition.ceiling)
    ]
    if problems:
        raise ConfigurationError(
            "Invalid concurrency ceiling(s), expected a positive integer or "
            f"'{UNBOUNDED}': " + ", ".join(problems),
            problems=problems,
        )


class ProviderScheduler:
    """Dispatches partitions of review tasks under per-provider ceilings.

    Args:
        runner: Executes one task and returns the model reply. Any exception
            other than RunCancelledError becomes a TaskFailure.
        emitter: Optional progress event emitter.
    """

    def __init__(self, runner: TaskRunner, emitter: ReviewEventEmitter | None = None) -> None:
        self._runner = runner
        self._emitter = emitter

    async def run(
        self,
        partitions: Mapping[str, ProviderPartition],
        cancel: CancellationToken,
    ) -> dict[str, PartitionResult]:
        """Run every partition and wait until all of them are idle.

        Args:
            partitions: Provider id to partition.
            cancel: Run cancellation token, threaded into every task.

        Returns:
            Provider id to that partition's successes and failures.

        Raises:
            ConfigurationError: If any ceiling is malformed (nothing runs).
            RunCancelledError: If the run was cancelled; no partial results.
        """
        validate_ceilings(partitions)
        cancel.raise_if_cancelled()

        results = await asyncio.gather(
            *(self._run_partition(partition, cancel) for partition in partitions.values())
        )

        cancel.raise_if_cancelled()
        return {result.provider_id: result for result in results}

    async def _run_partition(
        self, partition: ProviderPartition, cancel: CancellationToken
    ) -> PartitionResult:
        result = PartitionResult(provider_id=partition.provider_id, successes=[], failures=[])
        ceiling = partition.ceiling
        semaphore = None if ceiling == UNBOUNDED else asyncio.Semaphore(ceiling)

        logger.info(
            "Dispatching %d task(s) to %s (concurrency: %s)",
            len(partition.tasks), partition.provider_id, ceiling,
        )
        await self._emit(
            EventType.PARTITION_STARTED,
            provider_id=partition.provider_id,
            size=len(partition.tasks),
            ceiling=ceiling,
        )

        await asyncio.gather(
            *(self._run_task(task, semaphore, result, cancel) for task in partition.tasks)
        )

        await self._emit(
            EventType.PARTITION_IDLE,
            provider_id=partition.provider_id,
            succeeded=len(result.successes),
            failed=len(result.failures),
        )
        return result

    async def _run_task(
        self,
        task: ReviewTask,
        semaphore: asyncio.Semaphore | None,
        result: PartitionResult,
        cancel: CancellationToken,
    ) -> None:
        if semaphore is None:
            await self._execute(task, result, cancel)
            return
        async with semaphore:
            await self._execute(task, result, cancel)

    async def _execute(
        self, task: ReviewTask, result: PartitionResult, cancel: CancellationToken
    ) -> None:
        # Queued tasks never start once the run is cancelled
        if cancel.cancelled:
            return

        task_label = str(task.task_id)
        await self._emit(
            EventType.TASK_STARTED,
            provider_id=task.provider_id,
            task_id=task_label,
            model=task.model.model,
        )
        try:
            reply = await self._runner(task, cancel)
        except RunCancelledError as e:
            if cancel.cancelled:
                # run() raises once every partition is idle
                return
            self._record_failure(task, result, e)
            await self._emit(
                EventType.TASK_FAILED, provider_id=task.provider_id, task_id=task_label, error=str(e)
            )
            return
        except Exception as e:
            self._record_failure(task, result, e)
            await self._emit(
                EventType.TASK_FAILED,
                provider_id=task.provider_id,
                task_id=task_label,
                error=str(e),
            )
            return

        result.successes.append(
            TaskSuccess(
                task_id=task.task_id,
                content=reply.content,
                usage=reply.usage,
                trace=reply.trace,
            )
        )
        await self._emit(
            EventType.TASK_COMPLETED,
            provider_id=task.provider_id,
            task_id=task_label,
            total_tokens=reply.usage.total_tokens,
        )

    @staticmethod
    def _record_failure(task: ReviewTask, result: PartitionResult, error: Exception) -> None:
        logger.error("Task %s (%s) failed: %s", task.task_id, task.model.display_name, error)
        result.failures.append(TaskFailure(task_id=task.task_id, error=error))

    async def _emit(self, event_type: EventType, **data: Any) -> None:
        if self._emitter is not None:
            await self._emitter.emit(event_type, **data)
