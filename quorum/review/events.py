"""Review progress events.

The scheduler, compactor and pipeline report progress through an optional
emitter. Listeners are observational: their exceptions are logged and
never reach the review run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of review progress events."""

    RUN_STARTED = "run_started"
    COMPACTION_STEP_APPLIED = "compaction_step_applied"
    COMPACTION_STEP_SKIPPED = "compaction_step_skipped"
    PARTITION_STARTED = "partition_started"
    PARTITION_IDLE = "partition_idle"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_EXCLUDED = "task_excluded"
    VALIDATION_STARTED = "validation_started"
    VALIDATION_COMPLETED = "validation_completed"
    RUN_COMPLETED = "run_completed"


class ReviewEvent(BaseModel):
    """A single review progress event."""

    type: EventType = Field(description="Event type")
    timestamp: float = Field(
        default_factory=time.time,
        description="Unix timestamp when the event occurred",
    )
    data: dict[str, Any] = Field(
        default_factory=dict,
        description="Event payload, varies by event type",
    )


EventListener = Callable[[ReviewEvent], Any]


class ReviewEventEmitter:
    """Progress channel for a single review run.

    One emitter is created per run and shared by the compactor, the
    scheduler and the pipeline. Listeners (the CLI progress printer, tests)
    see events as they happen; the emitter also keeps the run's timeline so
    compaction decisions and per-task outcomes can be written next to the
    run logs once the review is finished.

    Listeners can be sync or async. A listener that raises is logged and
    skipped; progress reporting never fails a review.
    """

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []
        self._timeline: list[ReviewEvent] = []

    @property
    def history(self) -> list[ReviewEvent]:
        """Copy of the run's timeline, oldest first."""
        return list(self._timeline)

    def task_events(self, task_id: str) -> list[ReviewEvent]:
        """Timeline entries for one reviewer or the previous check."""
        return [e for e in self._timeline if e.data.get("task_id") == task_id]

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        # Equality, not identity: bound methods are rebuilt on every access
        self._listeners = [ln for ln in self._listeners if ln != listener]

    async def emit(self, event_type: EventType, **data: Any) -> None:
        """Record an event on the timeline and notify every listener."""
        event = ReviewEvent(type=event_type, data=data)
        self._timeline.append(event)

        for listener in self._listeners:
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception(
                    "Progress listener failed on %s (task %s)",
                    event_type,
                    data.get("task_id", "-"),
                )
