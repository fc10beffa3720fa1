"""Output collaborators: Markdown rendering, previous-review lookup, run logs."""

from quorum.output.markdown import (
    EXTRA_DETAILS_MARKER,
    REVIEW_MARKER,
    format_review_markdown,
)
from quorum.output.previous import FilePriorReviewLookup, extract_previous_issues
from quorum.output.run_logs import RunLogWriter

__all__ = [
    "EXTRA_DETAILS_MARKER",
    "REVIEW_MARKER",
    "FilePriorReviewLookup",
    "RunLogWriter",
    "extract_previous_issues",
    "format_review_markdown",
]
