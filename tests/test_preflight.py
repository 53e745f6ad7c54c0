import json
import sys
from pathlib import Path
from typing import List

import pytest

from stepcat.agents import AgentExitError, AgentRunner
from stepcat.core.preflight import (
    DetectedCommand,
    PreflightError,
    PreflightReport,
    apply_preflight_recommendations,
    build_preflight_prompt,
    format_preflight_report,
    parse_preflight_output,
    run_preflight,
)

ANALYSIS = {
    "analysis": {
        "detected_commands": [
            {"command": "just build", "reason": "Build command from the plan"},
            {"command": "pytest", "reason": "Tests for widget.py"},
        ],
        "currently_allowed": ["Bash(git:*)"],
        "missing_permissions": ["just build", "pytest"],
    },
    "recommendations": {
        "settings_json": {
            "path": ".claude/settings.json",
            "content": {
                "permissions": {"allow": ["Bash(git:*)", "Bash(just:*)", "Bash(pytest:*)"]}
            },
        },
        "explanation": "The plan builds with just and tests with pytest.",
    },
}


class EchoRunner(AgentRunner):
    """Prints a fixed reply after consuming the prompt."""

    agent_id = "echo"
    display_name = "Echo agent"

    def __init__(self, reply: str, exit_code: int = 0) -> None:
        super().__init__(sys.executable)
        self.reply = reply
        self.exit_code = exit_code

    def build_command(self, work_dir: Path, *, continue_session: bool = False) -> List[str]:
        script = (
            "import sys; sys.stdin.read(); "
            f"sys.stdout.write({self.reply!r}); sys.exit({self.exit_code})"
        )
        return [self.binary, "-c", script]


def test_prompt_includes_plan_and_agent_settings(tmp_path: Path, plan_file: Path) -> None:
    (tmp_path / "CLAUDE.md").write_text("Run `just test` before committing.\n")
    (tmp_path / ".claude").mkdir()
    (tmp_path / ".claude" / "settings.json").write_text('{"permissions": {"allow": []}}')

    prompt = build_preflight_prompt(plan_file, tmp_path)
    assert "## Step 1: Add the widget model" in prompt
    assert "Run `just test` before committing." in prompt
    assert '{"permissions": {"allow": []}}' in prompt
    assert "(no .claude/settings.local.json found)" in prompt
    assert '"missing_permissions"' in prompt


def test_prompt_requires_readable_plan(tmp_path: Path) -> None:
    with pytest.raises(PreflightError, match="Could not read plan file"):
        build_preflight_prompt(tmp_path / "missing.md", tmp_path)


def test_parse_fenced_analysis() -> None:
    raw = "Here is the analysis:\n```json\n" + json.dumps(ANALYSIS) + "\n```\n"
    report = parse_preflight_output(raw)
    assert report.detected_commands[0] == DetectedCommand(
        "just build", "Build command from the plan"
    )
    assert report.currently_allowed == ("Bash(git:*)",)
    assert report.missing_permissions == ("just build", "pytest")
    assert report.recommended_allow == ("Bash(git:*)", "Bash(just:*)", "Bash(pytest:*)")
    assert report.needs_permissions is True


def test_parse_without_recommendations() -> None:
    raw = json.dumps(
        {"analysis": {"detected_commands": ["make"], "currently_allowed": ["Bash(make:*)"]}}
    )
    report = parse_preflight_output(raw)
    assert report.detected_commands == (DetectedCommand("make"),)
    assert report.missing_permissions == ()
    assert report.recommended_allow == ()
    assert report.needs_permissions is False


@pytest.mark.parametrize(
    "raw, reason",
    [
        ("no json here", "no JSON analysis found"),
        ('{"result": "PASS"}', "'analysis' must be an object"),
        ('{"analysis": {"missing_permissions": "pytest"}}', "array of strings"),
        ('{"analysis": {"detected_commands": [{"why": "x"}]}}', "missing 'command'"),
    ],
)
def test_parse_rejects_invalid_output(raw: str, reason: str) -> None:
    with pytest.raises(PreflightError, match=reason) as excinfo:
        parse_preflight_output(raw)
    assert excinfo.value.output == raw


def test_format_lists_missing_permissions() -> None:
    text = format_preflight_report(parse_preflight_output(json.dumps(ANALYSIS)))
    assert "DETECTED COMMANDS:\n  - just build (Build command from the plan)" in text
    assert "CURRENTLY ALLOWED:\n  - Bash(git:*)" in text
    assert "MISSING PERMISSIONS:\n  - just build\n  - pytest" in text
    assert "RECOMMENDED CONFIGURATION (.claude/settings.json):" in text
    assert "  - Bash(pytest:*)" in text
    assert text.endswith("The plan builds with just and tests with pytest.")


def test_format_when_everything_is_allowed() -> None:
    text = format_preflight_report(PreflightReport(currently_allowed=("Bash(just:*)",)))
    assert "DETECTED COMMANDS:\n  (none)" in text
    assert text.endswith("ALL REQUIRED PERMISSIONS ARE CONFIGURED")
    assert "MISSING PERMISSIONS" not in text


@pytest.mark.asyncio
async def test_run_preflight_parses_agent_reply(tmp_path: Path, plan_file: Path) -> None:
    runner = EchoRunner("Analysis complete.\n" + json.dumps(ANALYSIS) + "\n")
    report = await run_preflight(runner, plan_file, tmp_path, timeout_minutes=1)
    assert report.missing_permissions == ("just build", "pytest")


@pytest.mark.asyncio
async def test_run_preflight_surfaces_agent_failure(tmp_path: Path, plan_file: Path) -> None:
    with pytest.raises(AgentExitError):
        await run_preflight(EchoRunner("", exit_code=1), plan_file, tmp_path, timeout_minutes=1)
    with pytest.raises(PreflightError):
        await run_preflight(EchoRunner("I am not sure."), plan_file, tmp_path, timeout_minutes=1)


def test_apply_merges_into_local_settings(tmp_path: Path) -> None:
    settings_path = tmp_path / ".claude" / "settings.local.json"
    settings_path.parent.mkdir()
    settings_path.write_text(json.dumps({"permissions": {"allow": ["Bash(git:*)"]}}))

    report = parse_preflight_output(json.dumps(ANALYSIS))
    result = apply_preflight_recommendations(tmp_path, report)
    assert result.added == ["Bash(just:*)", "Bash(pytest:*)"]
    settings = json.loads(settings_path.read_text())
    assert settings["permissions"]["allow"] == [
        "Bash(git:*)",
        "Bash(just:*)",
        "Bash(pytest:*)",
    ]


def test_apply_without_recommendations_fails(tmp_path: Path) -> None:
    report = PreflightReport(missing_permissions=("pytest",))
    with pytest.raises(PreflightError, match="did not recommend"):
        apply_preflight_recommendations(tmp_path, report)
    assert not (tmp_path / ".claude").exists()
