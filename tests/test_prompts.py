import json

from stepcat.core import prompts
from stepcat.core.models import Issue, IssueSeverity, IssueType


def _issue(**overrides) -> Issue:
    values = dict(
        id=1,
        iteration_id=1,
        type=IssueType.CODEX_REVIEW,
        description="Handle empty input",
        file_path="src/app.py",
        line_number=10,
        severity=IssueSeverity.ERROR,
        created_at="2024-01-01T00:00:00Z",
    )
    values.update(overrides)
    return Issue(**values)


def test_implementation_prompt_carries_commit_contract() -> None:
    prompt = prompts.implementation_prompt(3, "plan.md")
    assert "Step 3 of the plan at plan.md" in prompt
    assert "Stage: implementation" in prompt
    assert "--allow-empty" in prompt
    assert "Do NOT use git commit --amend" in prompt
    assert "Do NOT push" in prompt
    assert "PERMISSION_REQUEST" in prompt


def test_build_fix_prompt_embeds_errors() -> None:
    prompt = prompts.build_fix_prompt(2, "plan.md", "test_foo failed: assert 1 == 2")
    assert "test_foo failed: assert 1 == 2" in prompt
    assert "Stage: build fix" in prompt


def test_review_fix_prompt_lists_issues_as_json() -> None:
    prompt = prompts.review_fix_prompt(1, "plan.md", [_issue()])
    assert '"file": "src/app.py"' in prompt
    assert "Stage: code review fix" in prompt


def test_issues_as_json_omits_missing_fields() -> None:
    payload = json.loads(
        prompts.issues_as_json([_issue(file_path=None, line_number=None, severity=None)])
    )
    assert payload == [
        {"file": "unknown", "severity": "error", "description": "Handle empty input"}
    ]


def test_recover_uncommitted_prompt() -> None:
    prompt = prompts.recover_uncommitted_prompt(4, "plan.md", "build_fix", " M app.py")
    assert " M app.py" in prompt
    assert "Stage: build fix" in prompt
    assert "create a NEW commit" in prompt
    fallback = prompts.recover_uncommitted_prompt(4, "plan.md", "implementation", None)
    assert "(git status unavailable)" in fallback


def test_permissions_granted_prompt() -> None:
    prompt = prompts.permissions_granted_prompt(["Bash(ls:*)", "Read(a)"])
    assert "- Bash(ls:*)\n- Read(a)" in prompt
    assert "never amend" in prompt


def test_review_prompts_reference_commit() -> None:
    implementation = prompts.review_implementation_prompt(1, "Add models", "## Step 1", "abc123")
    assert "Step 1: Add models" in implementation
    assert "git show abc123" in implementation
    assert '"result": "PASS" or "FAIL"' in implementation

    build_fix = prompts.review_build_fix_prompt("lint failed", "def456")
    assert "lint failed" in build_fix
    assert "build errors were properly fixed" in build_fix

    review_fix = prompts.review_review_fix_prompt([_issue()], "0a1b2c")
    assert "Handle empty input" in review_fix
    assert "git show 0a1b2c" in review_fix
