import json
import subprocess
from pathlib import Path

import pytest
from typer.testing import CliRunner

from stepcat.core.events import Event, EventType
from stepcat.core.models import IssueType, IterationKind, StepStatus
from stepcat.core.store import ExecutionStore
from stepcat.surfaces.cli.cli import _format_event, app

runner = CliRunner()


@pytest.fixture(autouse=True)
def _no_ambient_token(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)


def _seed(work_dir: Path) -> int:
    with ExecutionStore(work_dir / ".stepcat" / "executions.db") as store:
        plan = store.create_plan(str(work_dir / "plan.md"), str(work_dir), "acme", "widgets")
        first = store.create_step(plan.id, 1, "Add the widget model")
        store.create_step(plan.id, 2, "Expose widgets over HTTP")
        store.update_step_status(first.id, StepStatus.COMPLETED)
        iteration = store.create_iteration(first.id, IterationKind.IMPLEMENTATION, "claude")
        store.update_iteration(iteration.id, commit_sha="c" * 40)
        store.create_issue(
            iteration.id,
            IssueType.CODEX_REVIEW,
            "Missing test\nmore detail",
            file_path="widget.py",
            line_number=4,
        )
        return plan.id


def test_cli_has_required_commands() -> None:
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for command in ("run", "status", "stop", "preflight", "serve"):
        assert command in result.stdout


def test_run_help_lists_options() -> None:
    result = runner.invoke(app, ["run", "--help"])
    assert result.exit_code == 0
    for option in ("--file", "--dir", "--execution-id", "--token", "--no-push", "--yes"):
        assert option in result.stdout


def test_status_without_executions(tmp_path: Path) -> None:
    result = runner.invoke(app, ["status", "--dir", str(tmp_path)])
    assert result.exit_code == 0
    assert "No executions found." in result.stdout


def test_status_lists_executions(tmp_path: Path) -> None:
    plan_id = _seed(tmp_path)
    result = runner.invoke(app, ["status", "--dir", str(tmp_path)])
    assert result.exit_code == 0
    assert f"{plan_id}\t" in result.stdout
    assert "1/2 steps" in result.stdout


def test_status_shows_execution_snapshot(tmp_path: Path) -> None:
    plan_id = _seed(tmp_path)
    result = runner.invoke(
        app, ["status", "--dir", str(tmp_path), "--execution-id", str(plan_id)]
    )
    assert result.exit_code == 0
    out = result.stdout
    assert "Repository: acme/widgets" in out
    assert "Step 1: Add the widget model [completed] iterations=1" in out
    assert "commit=cccccccccccc" in out
    assert "open codex_review widget.py:4: Missing test" in out
    assert "more detail" not in out
    assert "Step 2: Expose widgets over HTTP [pending] iterations=0" in out


def test_status_unknown_execution(tmp_path: Path) -> None:
    _seed(tmp_path)
    result = runner.invoke(app, ["status", "--dir", str(tmp_path), "--execution-id", "99"])
    assert result.exit_code == 1
    assert "Execution 99 not found" in result.output


def test_stop_records_request(tmp_path: Path) -> None:
    plan_id = _seed(tmp_path)
    result = runner.invoke(
        app, ["stop", "--dir", str(tmp_path), "--execution-id", str(plan_id)]
    )
    assert result.exit_code == 0
    assert f"Stop requested for execution {plan_id}" in result.stdout
    with ExecutionStore(tmp_path / ".stepcat" / "executions.db") as store:
        assert store.stop_requested(plan_id)


def test_stop_unknown_execution(tmp_path: Path) -> None:
    _seed(tmp_path)
    result = runner.invoke(app, ["stop", "--dir", str(tmp_path), "--execution-id", "7"])
    assert result.exit_code == 1


def test_run_requires_token(git_repo: Path, plan_file: Path) -> None:
    result = runner.invoke(app, ["run", "--file", str(plan_file), "--dir", str(git_repo)])
    assert result.exit_code == 1
    assert "GitHub token is required" in result.output


def test_run_rejects_unknown_agent(git_repo: Path, plan_file: Path) -> None:
    result = runner.invoke(
        app,
        [
            "run",
            "--file",
            str(plan_file),
            "--dir",
            str(git_repo),
            "--token",
            "t",
            "--review-agent",
            "gemini",
        ],
    )
    assert result.exit_code == 1
    assert "Unknown agent 'gemini'" in result.output


def test_run_missing_plan_file(git_repo: Path, tmp_path: Path) -> None:
    missing = tmp_path / "nope.md"
    result = runner.invoke(
        app, ["run", "--file", str(missing), "--dir", str(git_repo), "--token", "t"]
    )
    assert result.exit_code == 1
    assert "Plan file not found" in result.output


def test_run_rejects_plan_without_steps(git_repo: Path, tmp_path: Path) -> None:
    plan = tmp_path / "empty.md"
    plan.write_text("# Nothing to do\n", encoding="utf-8")
    result = runner.invoke(
        app, ["run", "--file", str(plan), "--dir", str(git_repo), "--token", "t"]
    )
    assert result.exit_code == 1
    assert "No steps found" in result.output


def test_run_requires_github_origin(git_repo: Path, plan_file: Path) -> None:
    subprocess.run(
        ["git", "remote", "set-url", "origin", "https://gitlab.com/acme/widgets.git"],
        cwd=str(git_repo),
        check=True,
    )
    result = runner.invoke(
        app, ["run", "--file", str(plan_file), "--dir", str(git_repo), "--token", "t"]
    )
    assert result.exit_code == 1
    assert "not a GitHub repository" in result.output


def test_run_unknown_execution_id(git_repo: Path, plan_file: Path) -> None:
    result = runner.invoke(
        app,
        [
            "run",
            "--file",
            str(plan_file),
            "--dir",
            str(git_repo),
            "--token",
            "t",
            "--execution-id",
            "12",
        ],
    )
    assert result.exit_code == 1
    assert "Execution 12 not found" in result.output


def test_format_event_renders_progress_lines() -> None:
    def event(event_type: EventType, **data) -> Event:
        return Event(seq=1, type=event_type, timestamp="t", data=data)

    assert _format_event(event(EventType.STEP_START, step_number=2, title="API")) == (
        "== Step 2: API"
    )
    assert _format_event(
        event(EventType.GITHUB_CHECK, status="running", sha="f" * 40, attempt=1, max_attempts=3)
    ) == "   CI running for ffffffffffff (attempt 1/3)"
    assert _format_event(event(EventType.LOG, level="warning", message="dirty")) == (
        "[warning] dirty"
    )
    assert _format_event(event(EventType.STATE_SYNC, state={})) is None


PREFLIGHT_REPLY = {
    "analysis": {
        "detected_commands": [{"command": "pytest", "reason": "Plan adds tests"}],
        "currently_allowed": [],
        "missing_permissions": ["pytest"],
    },
    "recommendations": {
        "settings_json": {
            "path": ".claude/settings.json",
            "content": {"permissions": {"allow": ["Bash(pytest:*)"]}},
        },
        "explanation": "Tests run with pytest.",
    },
}


def _install_fake_claude(work_dir: Path, reply: str, exit_code: int = 0) -> None:
    script = work_dir / "fake-claude"
    script.write_text(
        "#!/bin/sh\ncat > /dev/null\ncat <<'REPLY'\n" + reply + "\nREPLY\n"
        f"exit {exit_code}\n",
        encoding="utf-8",
    )
    script.chmod(0o755)
    config_dir = work_dir / ".stepcat"
    config_dir.mkdir(exist_ok=True)
    (config_dir / "config.yml").write_text(
        f"agents:\n  claude:\n    binary: {script}\n", encoding="utf-8"
    )


def test_preflight_reports_missing_permissions(tmp_path: Path, plan_file: Path) -> None:
    _install_fake_claude(tmp_path, json.dumps(PREFLIGHT_REPLY))
    result = runner.invoke(
        app, ["preflight", "--file", str(plan_file), "--dir", str(tmp_path)]
    )
    assert result.exit_code == 2
    assert "MISSING PERMISSIONS:\n  - pytest" in result.stdout
    assert "--apply" in result.stdout
    assert not (tmp_path / ".claude" / "settings.local.json").exists()


def test_preflight_apply_writes_local_settings(tmp_path: Path, plan_file: Path) -> None:
    _install_fake_claude(tmp_path, json.dumps(PREFLIGHT_REPLY))
    result = runner.invoke(
        app, ["preflight", "--file", str(plan_file), "--dir", str(tmp_path), "--apply"]
    )
    assert result.exit_code == 0
    assert "Added 1 permission(s)" in result.stdout
    settings = json.loads((tmp_path / ".claude" / "settings.local.json").read_text())
    assert settings["permissions"]["allow"] == ["Bash(pytest:*)"]


def test_preflight_all_configured(tmp_path: Path, plan_file: Path) -> None:
    reply = {"analysis": {"detected_commands": [], "missing_permissions": []}}
    _install_fake_claude(tmp_path, json.dumps(reply))
    result = runner.invoke(
        app, ["preflight", "--file", str(plan_file), "--dir", str(tmp_path)]
    )
    assert result.exit_code == 0
    assert "ALL REQUIRED PERMISSIONS ARE CONFIGURED" in result.stdout


def test_preflight_fails_on_unparseable_reply(tmp_path: Path, plan_file: Path) -> None:
    _install_fake_claude(tmp_path, "I could not analyze the plan.")
    result = runner.invoke(
        app, ["preflight", "--file", str(plan_file), "--dir", str(tmp_path)]
    )
    assert result.exit_code == 1
    assert "Preflight failed: Failed to parse preflight output" in result.output


def test_preflight_fails_when_agent_exits_nonzero(tmp_path: Path, plan_file: Path) -> None:
    _install_fake_claude(tmp_path, "boom", exit_code=3)
    result = runner.invoke(
        app, ["preflight", "--file", str(plan_file), "--dir", str(tmp_path)]
    )
    assert result.exit_code == 1
    assert "exited with code 3" in result.output
