"""
Decoding of agent output that is expected to carry a JSON payload.

Agents wrap JSON in prose or code fences, so decoding tries a fenced block,
then the whole output, then the first balanced `{...}` object.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Union

from .models import IssueSeverity

_FENCED_JSON_RE = re.compile(r"```(?:json|jsonc)?\s*\n([\s\S]*?)\n?```", re.IGNORECASE)
_RAW_EXCERPT_CHARS = 500


def extract_balanced_object(text: str) -> Optional[str]:
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escape_next = False
    for index in range(start, len(text)):
        char = text[index]
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def iter_json_objects(raw_output: str) -> Iterator[dict[str, Any]]:
    """Yield every JSON object candidate found in the output, most explicit first."""
    text = (raw_output or "").strip()
    if not text:
        return
    candidates: list[str] = []
    fenced = _FENCED_JSON_RE.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    candidates.append(text)
    balanced = extract_balanced_object(text)
    if balanced:
        candidates.append(balanced)
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            yield parsed


@dataclass(frozen=True)
class ReviewFinding:
    file: str
    description: str
    severity: IssueSeverity = IssueSeverity.ERROR
    line: Optional[int] = None


@dataclass(frozen=True)
class ReviewPassed:
    findings: tuple[ReviewFinding, ...] = ()


@dataclass(frozen=True)
class ReviewFailed:
    findings: tuple[ReviewFinding, ...] = ()


@dataclass(frozen=True)
class ReviewUnparseable:
    reason: str
    raw_excerpt: str = ""

    def describe(self) -> str:
        message = f"Failed to parse review output: {self.reason}"
        if self.raw_excerpt:
            message += f"\n\nRaw output:\n{self.raw_excerpt}"
        return message


ReviewVerdict = Union[ReviewPassed, ReviewFailed, ReviewUnparseable]


class _InvalidReview(ValueError):
    pass


def _decode_finding(index: int, raw: Any) -> ReviewFinding:
    if not isinstance(raw, dict):
        raise _InvalidReview(f"issue at index {index} is not an object")
    file_path = raw.get("file")
    description = raw.get("description")
    if not isinstance(file_path, str):
        raise _InvalidReview(f"issue at index {index} is missing 'file'")
    if not isinstance(description, str) or not description.strip():
        raise _InvalidReview(f"issue at index {index} is missing 'description'")
    severity_raw = raw.get("severity") or IssueSeverity.ERROR.value
    try:
        severity = IssueSeverity(severity_raw)
    except ValueError as exc:
        raise _InvalidReview(
            f"issue at index {index} has invalid severity {severity_raw!r}"
        ) from exc
    line = raw.get("line")
    if isinstance(line, bool) or not isinstance(line, int):
        line = None
    return ReviewFinding(
        file=file_path, description=description.strip(), severity=severity, line=line
    )


def _decode_review(payload: dict[str, Any]) -> ReviewVerdict:
    result = payload.get("result")
    if result not in ("PASS", "FAIL"):
        raise _InvalidReview("'result' must be PASS or FAIL")
    issues = payload.get("issues")
    if not isinstance(issues, list):
        raise _InvalidReview("'issues' must be an array")
    findings = tuple(_decode_finding(i, item) for i, item in enumerate(issues))
    if result == "PASS":
        return ReviewPassed(findings=findings)
    return ReviewFailed(findings=findings)


def parse_review_output(raw_output: str) -> ReviewVerdict:
    excerpt = (raw_output or "").strip()[:_RAW_EXCERPT_CHARS]
    last_error: Optional[str] = None
    for payload in iter_json_objects(raw_output):
        try:
            return _decode_review(payload)
        except _InvalidReview as exc:
            last_error = str(exc)
    return ReviewUnparseable(
        reason=last_error or "no JSON review object found", raw_excerpt=excerpt
    )


__all__ = [
    "ReviewFailed",
    "ReviewFinding",
    "ReviewPassed",
    "ReviewUnparseable",
    "ReviewVerdict",
    "extract_balanced_object",
    "iter_json_objects",
    "parse_review_output",
]
