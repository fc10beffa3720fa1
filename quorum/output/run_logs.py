"""Per-run log persistence.

Writes everything a run produced into its own directory:

    <logs_dir>/<command>/<branch>-<timestamp>-<random>/
    ├── changed-files.txt
    ├── diff.diff
    ├── final-review.md
    ├── context.json
    ├── validator.json
    ├── summary.json
    ├── events.json
    └── reviewers/
        ├── reviewer-<id>.md
        └── reviewer-<id>-debug.json
"""

from __future__ import annotations

import json
import logging
import re
import secrets
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from quorum.review.aggregator import ReviewOutcome
from quorum.review.events import ReviewEvent
from quorum.review.pipeline import PipelineRun
from quorum.schemas.review import TaskSuccess

logger = logging.getLogger(__name__)

_UNSAFE_SEGMENT_RE = re.compile(r"[^a-zA-Z0-9._-]+")


def sanitize_segment(value: str) -> str:
    """Make ``value`` safe to use as a single path segment."""
    cleaned = _UNSAFE_SEGMENT_RE.sub("-", value.strip())
    cleaned = re.sub(r"-+", "-", cleaned).strip("-")
    return cleaned or "unknown"


def _timestamp_segment(moment: datetime) -> str:
    return moment.astimezone(UTC).strftime("%Y-%m-%d_%H-%M-%S")


def _write_json(path: Path, data: Any) -> None:
    path.write_text(json.dumps(data, indent=2, default=str) + "\n", encoding="utf-8")


class RunLogWriter:
    """Writes run artifacts under a logs directory.

    Args:
        logs_dir: Root logs directory.
        command: Subdirectory naming the command (e.g. ``review``).
    """

    def __init__(self, logs_dir: Path, command: str = "review") -> None:
        self._logs_dir = logs_dir
        self._command = command

    def run_dir_for(self, branch: str, started_at: datetime) -> Path:
        folder = (
            f"{sanitize_segment(branch or 'local-review')}-"
            f"{_timestamp_segment(started_at)}-{secrets.token_hex(3)}"
        )
        return self._logs_dir / self._command / folder

    def write(
        self,
        *,
        run: PipelineRun,
        outcome: ReviewOutcome,
        markdown: str,
        branch: str,
        started_at: datetime,
        ended_at: datetime | None = None,
        output_path: str = "",
        scope: str = "",
        events: Sequence[ReviewEvent] = (),
    ) -> Path:
        """Persist a finished run and return its directory."""
        ended = ended_at or datetime.now(UTC)
        duration_ms = int((ended - started_at).total_seconds() * 1000)
        run_dir = self.run_dir_for(branch, started_at)
        run_dir.mkdir(parents=True, exist_ok=True)

        files = run.request.files
        (run_dir / "changed-files.txt").write_text("\n".join(files) + "\n", encoding="utf-8")
        (run_dir / "diff.diff").write_text(run.request.diff, encoding="utf-8")
        (run_dir / "final-review.md").write_text(markdown, encoding="utf-8")

        _write_json(
            run_dir / "context.json",
            {
                "command": self._command,
                "context": run.request.context_label,
                "setup_id": run.setup_id,
                "scope": scope or None,
                "branch": branch or None,
                "output_path": output_path,
                "changed_files_count": len(files),
                "changed_files": files,
                "diff_character_count": len(run.request.diff),
                "started_at": started_at.isoformat(),
                "ended_at": ended.isoformat(),
                "duration_ms": duration_ms,
            },
        )

        review = run.validated_review
        _write_json(
            run_dir / "validator.json",
            {
                "summary": review.summary,
                "issues": [i.model_dump(mode="json") for i in review.issues],
                "usage": review.usage.model_dump(mode="json"),
                "debug": review.trace.model_dump(mode="json") if review.trace else None,
            },
        )

        _write_json(
            run_dir / "summary.json",
            {
                "started_at": started_at.isoformat(),
                "ended_at": ended.isoformat(),
                "duration_ms": duration_ms,
                "reviews_count": len(run.successes),
                "failed_count": len(run.failures),
                "failures": [
                    {"task_id": str(f.task_id), "error": str(f.error)} for f in run.failures
                ],
                "validated_issues_count": len(review.issues),
                "token_usage": {
                    "breakdown": [e.model_dump(mode="json") for e in outcome.breakdown],
                    "total": outcome.total_usage.model_dump(mode="json"),
                },
            },
        )

        if events:
            _write_json(run_dir / "events.json", [e.model_dump(mode="json") for e in events])

        self._write_reviewers(run_dir, [*run.successes, *run.excluded])
        logger.info("Run logs written to %s", run_dir)
        return run_dir

    def _write_reviewers(self, run_dir: Path, results: list[TaskSuccess]) -> None:
        reviewers_dir = run_dir / "reviewers"
        reviewers_dir.mkdir(parents=True, exist_ok=True)
        for result in results:
            name = f"reviewer-{result.task_id}"
            (reviewers_dir / f"{name}.md").write_text(result.content, encoding="utf-8")
            _write_json(
                reviewers_dir / f"{name}-debug.json",
                {
                    "task_id": str(result.task_id),
                    "usage": result.usage.model_dump(mode="json"),
                    "debug": result.trace.model_dump(mode="json") if result.trace else None,
                },
            )
