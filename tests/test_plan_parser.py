from pathlib import Path

import pytest

from stepcat.core.plan_parser import (
    PlanParseError,
    PlanStep,
    parse_plan_file,
    parse_plan_text,
)


def test_parses_step_headings_in_order() -> None:
    text = (
        "# Plan\n\n"
        "## Step 2: Wire the API\n\nbody\n\n"
        "## Step 1: Add models\n\nbody\n"
    )
    assert parse_plan_text(text) == [
        PlanStep(number=1, title="Add models"),
        PlanStep(number=2, title="Wire the API"),
    ]


def test_strips_phase_markers_and_ignores_case() -> None:
    text = "## step 1: Add models [done]\n## STEP 2: Wire it [review] [implementation]\n"
    steps = parse_plan_text(text)
    assert [step.title for step in steps] == ["Add models", "Wire it"]


def test_ignores_other_headings() -> None:
    text = "## Overview\n### Step 9: nested\n## Step 1: Real\n"
    assert parse_plan_text(text) == [PlanStep(number=1, title="Real")]


def test_duplicate_numbers_rejected() -> None:
    with pytest.raises(PlanParseError, match="Duplicate step number: 1"):
        parse_plan_text("## Step 1: A\n## Step 1: B\n")


def test_no_steps_rejected() -> None:
    with pytest.raises(PlanParseError, match="No steps found"):
        parse_plan_text("# Just a title\n")


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(PlanParseError, match="Unable to read plan file"):
        parse_plan_file(tmp_path / "missing.md")


def test_parse_plan_file(plan_file: Path) -> None:
    steps = parse_plan_file(plan_file)
    assert [step.number for step in steps] == [1, 2]
