"""Lookup of issues reported by a previous review.

The previous review is the Markdown document written by the last run.
Only the part before the extra-details marker is carried forward.
"""

from __future__ import annotations

import logging
from pathlib import Path

from quorum.output.markdown import EXTRA_DETAILS_MARKER, marker_comment

logger = logging.getLogger(__name__)


def extract_previous_issues(
    review_body: str,
    marker: str,
    extra_details_marker: str = EXTRA_DETAILS_MARKER,
) -> str | None:
    """Strip the review marker and everything from the extra-details marker on.

    Returns:
        The remaining review text, or None when nothing is left.
    """
    content = review_body.replace(marker_comment(marker), "").strip()
    index = content.find(extra_details_marker)
    if index != -1:
        content = content[:index].strip()
    return content or None


class FilePriorReviewLookup:
    """Reads the previous review from the review output file.

    A file that does not carry the expected marker is not a Quorum review
    and is ignored.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    def find_previous_issues(self, marker: str) -> str | None:
        if not self._path.is_file():
            return None
        body = self._path.read_text(encoding="utf-8")
        if marker_comment(marker) not in body:
            logger.debug("%s has no %s marker; not a previous review", self._path, marker)
            return None
        issues = extract_previous_issues(body, marker)
        if issues is None:
            logger.info("Could not parse issues from previous review at %s", self._path)
        return issues
