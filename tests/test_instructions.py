"""Tests for quorum.instructions: review instruction resolution."""

from __future__ import annotations

from pathlib import Path

import pytest

from quorum.instructions import (
    load_project_guidance,
    resolve_instructions,
    strip_front_matter,
)
from quorum.prompts import load_template
from quorum.review.errors import ConfigurationError


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


class TestStripFrontMatter:
    def test_removes_front_matter(self):
        text = "---\nname: code-review\n---\n# Rules\nBe strict.\n"
        assert strip_front_matter(text) == "# Rules\nBe strict.\n"

    def test_no_front_matter(self):
        assert strip_front_matter("# Rules\n") == "# Rules\n"


class TestResolveInstructions:
    def test_built_in_defaults(self, tmp_path):
        resolved = resolve_instructions(tmp_path)
        assert resolved.source == "built-in defaults"
        assert resolved.text == load_template("default_instructions")

    def test_agents_code_review_file(self, tmp_path):
        _write(tmp_path / ".agents" / "CODE_REVIEW.md", "Project rules.\n")
        _write(tmp_path / ".agents" / "skills" / "code-review" / "SKILL.md", "Skill rules.\n")
        resolved = resolve_instructions(tmp_path)
        assert resolved.text == "Project rules.\n"
        assert resolved.source == ".agents/CODE_REVIEW.md"

    def test_skill_file_with_front_matter(self, tmp_path):
        _write(
            tmp_path / ".agents" / "skills" / "code-review" / "SKILL.md",
            "---\nname: code-review\n---\nSkill rules.\n",
        )
        assert resolve_instructions(tmp_path).text == "Skill rules.\n"

    def test_configured_path_wins(self, tmp_path):
        _write(tmp_path / ".agents" / "CODE_REVIEW.md", "Project rules.\n")
        _write(tmp_path / "docs" / "review.md", "Configured rules.\n")
        resolved = resolve_instructions(tmp_path, "docs/review.md")
        assert resolved.text == "Configured rules.\n"

    def test_configured_path_missing(self, tmp_path):
        with pytest.raises(ConfigurationError, match="instructions file not found"):
            resolve_instructions(tmp_path, "missing.md")

    def test_extra_focus_appended(self, tmp_path):
        resolved = resolve_instructions(tmp_path, extra_focus="  Check SQL queries.  ")
        assert resolved.text.endswith(
            "## Additional focus for this review\n\nCheck SQL queries.\n"
        )


class TestProjectGuidance:
    def test_loads_agents_file(self, tmp_path):
        _write(tmp_path / "AGENTS.md", "Use tabs.\n")
        guidance = load_project_guidance(tmp_path)
        assert guidance.text == "Use tabs.\n"
        assert guidance.source == "AGENTS.md"

    def test_disabled(self, tmp_path):
        _write(tmp_path / "AGENTS.md", "Use tabs.\n")
        assert load_project_guidance(tmp_path, enabled=False).text == ""

    def test_missing(self, tmp_path):
        assert load_project_guidance(tmp_path).text == ""
