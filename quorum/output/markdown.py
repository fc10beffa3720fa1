"""Markdown rendering of a review outcome.

Produces the review document written to disk: summary, findings snapshot,
numbered issues and a token usage appendix. The document starts with a
review marker so a later run can find it, and everything after the
extra-details marker is ignored when previous issues are extracted.
"""

from __future__ import annotations

import re
from datetime import date

from quorum.review.aggregator import NumberedIssue, ReviewOutcome
from quorum.schemas.review import IssueCategory, IssueLocation, TokenUsage

REVIEW_MARKER = "QUORUM_REVIEW"
EXTRA_DETAILS_MARKER = "<!-- EXTRA_DETAILS -->"
NO_ISSUES_TEXT = "No issues identified in this review."

_HEADING_RE = re.compile(r"^#{1,6}\s+", re.MULTILINE)

_SECTION_HEADERS: dict[IssueCategory, tuple[str, str]] = {
    IssueCategory.CRITICAL: (
        "🔴 Critical Problems",
        "These issues have a high probability of causing bugs or security vulnerabilities:",
    ),
    IssueCategory.POSSIBLE: (
        "🟠 Possible Problems",
        "Issues that might cause problems or reduce maintainability, and should be carefully considered:",
    ),
    IssueCategory.SUGGESTION: (
        "🟡 Suggestions",
        "Minor improvements that could enhance code quality:",
    ),
}


def marker_comment(marker: str = REVIEW_MARKER) -> str:
    return f"<!-- {marker} -->"


def _fmt(num: int | None) -> str:
    return f"{num or 0:,}"


def _extension(path: str) -> str:
    name = path.rsplit("/", 1)[-1]
    return name.rsplit(".", 1)[-1] if "." in name else "txt"


def _code_block(code: str, extension: str) -> str:
    if "```" in code:
        return code.strip()
    return f"```{extension}\n{code.rstrip()}\n```\n"


def _location(loc: IssueLocation) -> str:
    return f"`{loc.path}:{loc.line}`" if loc.line else f"`{loc.path}`"


def _format_issue(numbered: NumberedIssue) -> str:
    issue = numbered.issue
    parts = [f"#### {numbered.code}\n"]

    if len(issue.files) == 1:
        parts.append(f"**File:** {_location(issue.files[0])}\n")
    elif issue.files:
        parts.append(f"**Files:** {', '.join(_location(f) for f in issue.files)}\n")
    parts.append(f"{issue.description.strip()}\n")

    extension = _extension(issue.files[0].path) if issue.files else ""
    if issue.current_code:
        parts.append(f"**Current Code:**\n\n{_code_block(issue.current_code, extension)}")
    if issue.suggested_fix:
        parts.append(f"**Suggested Fix:**\n\n{_HEADING_RE.sub('', issue.suggested_fix).strip()}\n")

    parts.append("---\n")
    return "\n".join(parts)


def _usage_lines(usage: TokenUsage) -> list[str]:
    return [
        f"- Input Tokens: {_fmt(usage.prompt_tokens)}",
        f"- Output Tokens: {_fmt(usage.completion_tokens)}",
        f"- Total Tokens: {_fmt(usage.total_tokens)}",
        f"- Reasoning Tokens: {_fmt(usage.reasoning_tokens)}",
    ]


def format_token_usage(outcome: ReviewOutcome) -> str:
    lines = ["**Total Token Usage:**", *_usage_lines(outcome.total_usage)]
    if outcome.total_usage.cost:
        lines.append(f"- Estimated Cost: ${outcome.total_usage.cost:.4f}")
    lines.append("")
    for entry in outcome.breakdown:
        lines.append(f"**{entry.label}:**")
        lines.append(f"- Model: {entry.model or entry.usage.model}")
        lines.append(f"- Effort: {entry.effort}")
        lines.extend(_usage_lines(entry.usage))
        lines.append("")
    return "\n".join(lines)


def normalize_spacing(markdown: str) -> str:
    """Strip trailing whitespace and collapse blank runs outside code fences."""
    normalized: list[str] = []
    blank_run = 0
    in_fence = False
    for raw in markdown.split("\n"):
        line = raw.rstrip()
        if line.strip().startswith("```"):
            in_fence = not in_fence
            blank_run = 0
            normalized.append(line)
            continue
        if not in_fence and not line.strip():
            blank_run += 1
            if blank_run > 1:
                continue
            normalized.append("")
            continue
        blank_run = 0
        normalized.append(line)
    return "\n".join(normalized).strip() + "\n"


def format_review_markdown(
    outcome: ReviewOutcome,
    context_label: str,
    *,
    marker: str = REVIEW_MARKER,
    commit: str = "",
    reviewed_on: date | None = None,
) -> str:
    """Render a review outcome as a Markdown document.

    Args:
        outcome: Aggregated review outcome.
        context_label: What was reviewed, e.g. the branch name.
        marker: Review identity marker embedded as an HTML comment.
        commit: Optional commit hash shown in the header line.
        reviewed_on: Review date (defaults to today).

    Returns:
        The Markdown document.
    """
    review = outcome.validated_review
    stats = outcome.stats
    day = (reviewed_on or date.today()).isoformat()
    header = f"Review of {context_label} on {day}"
    if commit:
        header += f" - commit {commit}"

    sections = [
        marker_comment(marker),
        header,
        "## 📋 Review Summary",
        review.summary.strip(),
        "## 📊 Findings Snapshot",
        "\n".join(
            [
                f"- Total findings: {stats.total}",
                f"- Impacted files: {stats.files}",
                f"- 🔴 Critical: {stats.critical}",
                f"- 🟠 Possible: {stats.possible}",
                f"- 🟡 Suggestions: {stats.suggestion}",
            ]
        ),
        "## 🎯 Specific Feedback",
    ]

    if stats.total == 0:
        sections.append(NO_ISSUES_TEXT)

    for category, (title, blurb) in _SECTION_HEADERS.items():
        in_category = [n for n in outcome.numbered_issues if n.issue.category == category]
        if not in_category:
            continue
        sections.append(f"### {title} ({len(in_category)})")
        sections.append(blurb)
        sections.extend(_format_issue(n) for n in in_category)

    sections.extend(
        [
            EXTRA_DETAILS_MARKER,
            "### Stats",
            "<details>\n<summary>🤖 Token Usage Details</summary>",
            format_token_usage(outcome),
            "</details>",
        ]
    )
    return normalize_spacing("\n\n".join(sections))
