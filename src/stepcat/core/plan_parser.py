import re
from dataclasses import dataclass
from pathlib import Path
from typing import List

_STEP_HEADING_RE = re.compile(r"^##\s+Step\s+(\d+):\s+(.+)$", re.IGNORECASE | re.MULTILINE)
_PHASE_MARKER_RE = re.compile(r"\s*\[(?:done|review|implementation)\]\s*$", re.IGNORECASE)


class PlanParseError(Exception):
    pass


@dataclass(frozen=True)
class PlanStep:
    number: int
    title: str


def parse_plan_text(text: str) -> List[PlanStep]:
    steps: List[PlanStep] = []
    seen: set[int] = set()
    for match in _STEP_HEADING_RE.finditer(text):
        number = int(match.group(1))
        title = match.group(2).strip()
        while True:
            stripped = _PHASE_MARKER_RE.sub("", title)
            if stripped == title:
                break
            title = stripped.strip()
        if number in seen:
            raise PlanParseError(f"Duplicate step number: {number}")
        seen.add(number)
        steps.append(PlanStep(number=number, title=title))
    if not steps:
        raise PlanParseError(
            "No steps found in plan file; expected headings like '## Step 1: Title'"
        )
    return sorted(steps, key=lambda step: step.number)


def parse_plan_file(path: Path) -> List[PlanStep]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PlanParseError(f"Unable to read plan file {path}: {exc}") from exc
    return parse_plan_text(text)


__all__ = ["PlanParseError", "PlanStep", "parse_plan_file", "parse_plan_text"]
