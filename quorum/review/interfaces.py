"""Collaborator interfaces consumed by the review engine.

The engine only depends on these protocols; concrete implementations live
in ``quorum.git``, ``quorum.providers`` and ``quorum.output``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Sequence
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field


class DiffSnapshot(BaseModel):
    """Diff text together with the files it covers."""

    diff: str = ""
    files: list[str] = Field(default_factory=list)


@runtime_checkable
class DiffProvider(Protocol):
    """Produces a unified diff restricted to a selection of files."""

    async def get_diff(self, files: Sequence[str]) -> DiffSnapshot: ...


@runtime_checkable
class CompactionStep(Protocol):
    """An ordered file-set filter used to shrink an oversized diff.

    ``filter_files`` may be sync or async.
    """

    name: str
    exclude_supplementary_context: bool

    def filter_files(self, files: Sequence[str]) -> Sequence[str] | Awaitable[Sequence[str]]: ...


@runtime_checkable
class PriorReviewLookup(Protocol):
    """Finds the issues of a previous review identified by a marker."""

    def find_previous_issues(self, marker: str) -> str | None: ...

