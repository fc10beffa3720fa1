"""Review instruction and project guidance resolution.

Instructions come from the first source that exists: an explicitly
configured file, ``.agents/CODE_REVIEW.md``, the code-review skill file,
then the built-in defaults. ``AGENTS.md`` is loaded separately as
supplementary context.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from pydantic import BaseModel

from quorum.prompts import load_template
from quorum.review.errors import ConfigurationError

logger = logging.getLogger(__name__)

_FRONT_MATTER_RE = re.compile(r"\A---\s*\n.*?\n---\s*(?:\n|\Z)", re.DOTALL)

INSTRUCTION_CANDIDATES = (
    Path(".agents/CODE_REVIEW.md"),
    Path(".agents/skills/code-review/SKILL.md"),
)
AGENTS_FILE = Path("AGENTS.md")


class ResolvedInstructions(BaseModel):
    text: str
    source: str


class ProjectGuidance(BaseModel):
    text: str = ""
    source: str = ""


def strip_front_matter(text: str) -> str:
    """Remove a leading YAML front matter block, if present."""
    return _FRONT_MATTER_RE.sub("", text, count=1).lstrip("\n")


def resolve_instructions(
    repo_root: Path,
    configured_path: str = "",
    extra_focus: str = "",
) -> ResolvedInstructions:
    """Find the review instructions for a repository.

    Args:
        repo_root: Repository root directory.
        configured_path: Explicit instructions file (absolute or relative
            to the repo root). Must exist when given.
        extra_focus: Per-run instructions appended to the result.

    Returns:
        The instruction text and where it came from.

    Raises:
        ConfigurationError: If a configured path does not exist.
    """
    if configured_path:
        path = Path(configured_path)
        if not path.is_absolute():
            path = repo_root / path
        if not path.is_file():
            raise ConfigurationError(f"Review instructions file not found: {path}")
        text, source = strip_front_matter(path.read_text(encoding="utf-8")), str(path)
    else:
        for candidate in INSTRUCTION_CANDIDATES:
            path = repo_root / candidate
            if path.is_file():
                text, source = strip_front_matter(path.read_text(encoding="utf-8")), str(candidate)
                break
        else:
            text, source = load_template("default_instructions"), "built-in defaults"

    logger.debug("Using review instructions from %s", source)
    if extra_focus.strip():
        text = f"{text.rstrip()}\n\n## Additional focus for this review\n\n{extra_focus.strip()}\n"
    return ResolvedInstructions(text=text, source=source)


def load_project_guidance(repo_root: Path, enabled: bool = True) -> ProjectGuidance:
    """Load AGENTS.md from the repo root when enabled and present."""
    path = repo_root / AGENTS_FILE
    if not enabled or not path.is_file():
        return ProjectGuidance()
    return ProjectGuidance(text=path.read_text(encoding="utf-8"), source=str(AGENTS_FILE))
