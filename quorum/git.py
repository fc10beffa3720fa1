"""Git-backed diff provider.

Lists changed files and produces unified diffs for a file selection,
either against the merge base with a base branch or for staged changes.
Uses subprocess directly rather than a git library.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
from collections.abc import Sequence
from enum import StrEnum
from pathlib import Path

from quorum.review.errors import ConfigurationError
from quorum.review.interfaces import DiffSnapshot

logger = logging.getLogger(__name__)


class DiffScope(StrEnum):
    """Which changes to review."""

    ALL = "all"
    STAGED = "staged"


class GitDiffProvider:
    """Diffs from a local git checkout.

    Args:
        repo_dir: Any directory inside the repository.
        scope: ``all`` diffs the working tree against the merge base with
            ``base_branch``; ``staged`` diffs the index against HEAD.
        base_branch: Branch to compare against for the ``all`` scope.
    """

    def __init__(
        self,
        repo_dir: Path,
        scope: DiffScope = DiffScope.ALL,
        base_branch: str = "main",
    ) -> None:
        self._cwd = str(repo_dir)
        self._scope = scope
        self._base_branch = base_branch
        self._merge_base: str | None = None

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run a git command and return the result."""
        return subprocess.run(
            ["git", *args],
            cwd=self._cwd,
            capture_output=True,
            text=True,
            check=check,
            timeout=60,
        )

    def _git(self, *args: str) -> str:
        try:
            return self._run(*args).stdout
        except FileNotFoundError as e:
            raise ConfigurationError("git executable not found on PATH") from e
        except subprocess.CalledProcessError as e:
            message = (e.stderr or "").strip() or f"exit code {e.returncode}"
            raise ConfigurationError(f"git {' '.join(args)} failed: {message}") from e

    # ── Repository info ───────────────────────────────────────

    def repo_root(self) -> Path:
        return Path(self._git("rev-parse", "--show-toplevel").strip())

    def current_branch(self) -> str:
        result = self._run("rev-parse", "--abbrev-ref", "HEAD", check=False)
        branch = result.stdout.strip() if result.returncode == 0 else ""
        return branch or "HEAD"

    def head_commit(self) -> str:
        result = self._run("rev-parse", "HEAD", check=False)
        return result.stdout.strip() if result.returncode == 0 else ""

    def context_label(self) -> str:
        if self._scope == DiffScope.STAGED:
            return f"staged changes on {self.current_branch()}"
        return f"{self.current_branch()} (vs {self._base_branch})"

    def _diff_range(self) -> list[str]:
        if self._scope == DiffScope.STAGED:
            return ["--cached"]
        if self._merge_base is None:
            self._merge_base = self._git("merge-base", self._base_branch, "HEAD").strip()
        return [self._merge_base]

    # ── DiffProvider ──────────────────────────────────────────

    def changed_files(self) -> list[str]:
        """Paths changed in the configured scope, deletions excluded."""
        output = self._git("diff", "--name-only", "--diff-filter=d", *self._diff_range())
        return [line.strip() for line in output.splitlines() if line.strip()]

    def diff_for(self, files: Sequence[str]) -> DiffSnapshot:
        if not files:
            return DiffSnapshot(diff="", files=[])
        diff = self._git("diff", "--no-color", *self._diff_range(), "--", *files)
        return DiffSnapshot(diff=diff, files=list(files))

    async def get_diff(self, files: Sequence[str]) -> DiffSnapshot:
        """Unified diff restricted to ``files``; an empty selection gives an empty diff."""
        return await asyncio.to_thread(self.diff_for, list(files))
