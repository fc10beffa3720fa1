"""Validated deserialization of validator output.

``parse_validated_review`` is the only place raw validator text becomes
structured data. It never raises; callers branch on the returned type.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass

from pydantic import ValidationError

from quorum.schemas.review import ValidatorOutput

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*\n(.*?)\n```", re.DOTALL)


@dataclass(frozen=True)
class ParsedReview:
    output: ValidatorOutput


@dataclass(frozen=True)
class ParseFailure:
    reason: str
    raw: str


def _candidates(content: str) -> list[str]:
    text = content.strip()
    candidates = [text]
    candidates.extend(m.group(1).strip() for m in _FENCED_JSON_RE.finditer(text))
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start : end + 1])
    return candidates


def parse_validated_review(content: str) -> ParsedReview | ParseFailure:
    """Parse validator output into a ValidatorOutput.

    Accepts a bare JSON object, a fenced ```json block, or the outermost
    ``{...}`` span of the text, in that order.

    Args:
        content: Raw validator reply.

    Returns:
        ParsedReview on success, ParseFailure with the last error otherwise.
    """
    if not content.strip():
        return ParseFailure(reason="empty validator output", raw=content)

    reason = "no JSON object found"
    for candidate in _candidates(content):
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError as e:
            reason = f"invalid JSON: {e}"
            continue
        try:
            return ParsedReview(output=ValidatorOutput.model_validate(data))
        except ValidationError as e:
            reason = f"schema mismatch: {e.error_count()} error(s): {e.errors()[0]['msg']}"
    return ParseFailure(reason=reason, raw=content)
