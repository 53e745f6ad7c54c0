from __future__ import annotations

import json
from typing import Iterable, Optional

from .models import Issue

PERMISSION_REQUEST_INSTRUCTIONS = """If you are blocked by a missing permission (for example a tool call is denied):
1. Stop working on the task right away.
2. Output ONLY the JSON object below, with no other text.
3. Do NOT create a commit in this case.

{
  "result": "PERMISSION_REQUEST",
  "permissions_to_add": ["Read(/path/to/file)", "Bash(tool command:*)"],
  "reason": "why the permission is needed",
  "settings_local_json": {
    "permissions": {
      "allow": ["Read(/path/to/file)", "Bash(tool command:*)"]
    }
  }
}
"""

COMMIT_REQUIREMENTS = """CRITICAL REQUIREMENTS:
- You MUST create a git commit; this is not optional.
- If no changes are needed, create an EMPTY commit:
  git commit --allow-empty -m "No changes needed: <brief explanation>"
- Do NOT ask for approval or confirmation.
- Do NOT use git commit --amend; always create a NEW commit.
- Do NOT push to the remote; pushing and CI verification are handled for you.
- Do NOT edit the plan file.
"""

IMPLEMENTATION_TEMPLATE = """You are implementing Step {step_number} of the plan at {plan_file}.

Implement Step {step_number} exactly as the plan describes it. Check first that the
preconditions the plan lists for this step are already in place.

When you are done:
1. Run the project's build, lint and test commands (see CLAUDE.md, justfile, Makefile,
   package.json, pyproject.toml or similar) and fix what fails.
2. Commit your changes with a message like:

Plan: {plan_file}
Step: {step_number}
Stage: implementation

<summary of your changes>

{commit_requirements}
{permission_instructions}"""

BUILD_FIX_TEMPLATE = """The CI build for Step {step_number} failed with the following errors:

---
{build_errors}
---

Analyze and fix these errors, then commit with a message like:

Plan: {plan_file}
Step: {step_number}
Stage: build fix

<summary of your changes>

{commit_requirements}
{permission_instructions}"""

REVIEW_FIX_TEMPLATE = """A code review of Step {step_number} reported these possible issues:

---
{review_issues}
---

For each issue, fix it if it is real, or note why it is a false positive. Then commit
with a message like:

Plan: {plan_file}
Step: {step_number}
Stage: code review fix

<summary of your changes, or why the issues are false positives>

{commit_requirements}
{permission_instructions}"""

RECOVER_UNCOMMITTED_TEMPLATE = """Your previous session for Step {step_number} ended before its work was committed.
The working tree still holds your uncommitted edits:

{status}

Review them, finish anything that is obviously incomplete, then stage everything and
create a NEW commit (do NOT use --amend) with a message like:

Plan: {plan_file}
Step: {step_number}
Stage: {stage}

<summary of your changes>

{commit_requirements}
{permission_instructions}"""

PERMISSIONS_GRANTED_TEMPLATE = """The permissions you requested have been added to .claude/settings.local.json:
{permissions}

Continue the task from where you stopped. All of the earlier requirements still apply:
you MUST finish by creating a NEW git commit, never amend, and never push.
{permission_instructions}"""

REVIEW_RESPONSE_FORMAT = """Respond with a JSON object in this format:
{
  "result": "PASS" or "FAIL",
  "issues": [
    {
      "file": "path/to/file",
      "line": 123,
      "severity": "error" or "warning",
      "description": "detailed description of the issue"
    }
  ]
}

If there are no issues, return:
{
  "result": "PASS",
  "issues": []
}

IMPORTANT:
- Output ONLY valid JSON, no other text or markdown.
- "line" is optional.
- Use "error" for defects and "warning" for suggestions.
- Make every description specific and actionable.
- Do NOT modify files, commit or push; this is a read-only review.
"""

REVIEW_IMPLEMENTATION_TEMPLATE = """This is the initial implementation of Step {step_number}: {step_title} from this plan:

---
{plan_content}
---

Review commit {commit_sha} for correctness, code quality and adherence to the plan.
Use `git show {commit_sha}` to see its changes.

{response_format}"""

REVIEW_BUILD_FIX_TEMPLATE = """This commit tries to fix the following CI failures:

---
{build_errors}
---

Review commit {commit_sha} and check that it really addresses them.
Use `git show {commit_sha}` to see its changes.

{response_format}
Focus on whether the build errors were properly fixed."""

REVIEW_REVIEW_FIX_TEMPLATE = """This commit tries to fix these issues from the previous review:

---
{review_issues}
---

Review commit {commit_sha} and check that it properly addresses them.
Use `git show {commit_sha}` to see its changes.

{response_format}
Focus on whether the previous issues were properly addressed."""


PREFLIGHT_TEMPLATE = """You are running a preflight check for an automated development workflow.

The workflow runs an agent unattended to implement a multi-step plan. The agent will
execute shell commands without anyone approving them, so every command it needs must
already be allowed in the .claude/ settings.

Read the plan below and list the shell commands an implementer will need: build, test,
lint and format commands, language toolchains the plan mentions, and anything else it
implies. Then compare them with the permissions already allowed.

## Plan
---
{plan_content}
---

## CLAUDE.md
---
{claude_md}
---

## .claude/settings.json
---
{settings_json}
---

## .claude/settings.local.json
---
{settings_local_json}
---

Respond with ONLY a JSON object in this exact shape (no other text):

{{
  "analysis": {{
    "detected_commands": [
      {{"command": "just build", "reason": "Build command named in the plan"}}
    ],
    "currently_allowed": ["Bash(git:*)"],
    "missing_permissions": ["just build", "just test"]
  }},
  "recommendations": {{
    "settings_json": {{
      "path": ".claude/settings.json",
      "content": {{
        "permissions": {{
          "allow": ["Bash(git:*)", "Bash(just:*)"]
        }}
      }}
    }},
    "explanation": "why these permissions are needed"
  }}
}}
"""


def _format(template: str, **values: object) -> str:
    return template.format(
        commit_requirements=COMMIT_REQUIREMENTS,
        permission_instructions=PERMISSION_REQUEST_INSTRUCTIONS,
        **values,
    )


def issues_as_json(issues: Iterable[Issue]) -> str:
    payload = []
    for issue in issues:
        item: dict[str, object] = {
            "file": issue.file_path or "unknown",
            "severity": issue.severity.value if issue.severity else "error",
            "description": issue.description,
        }
        if issue.line_number is not None:
            item["line"] = issue.line_number
        payload.append(item)
    return json.dumps(payload, indent=2)


def implementation_prompt(step_number: int, plan_file: str) -> str:
    return _format(IMPLEMENTATION_TEMPLATE, step_number=step_number, plan_file=plan_file)


def build_fix_prompt(step_number: int, plan_file: str, build_errors: str) -> str:
    return _format(
        BUILD_FIX_TEMPLATE,
        step_number=step_number,
        plan_file=plan_file,
        build_errors=build_errors,
    )


def review_fix_prompt(step_number: int, plan_file: str, issues: Iterable[Issue]) -> str:
    return _format(
        REVIEW_FIX_TEMPLATE,
        step_number=step_number,
        plan_file=plan_file,
        review_issues=issues_as_json(issues),
    )


def recover_uncommitted_prompt(
    step_number: int, plan_file: str, stage: str, status: Optional[str]
) -> str:
    return _format(
        RECOVER_UNCOMMITTED_TEMPLATE,
        step_number=step_number,
        plan_file=plan_file,
        stage=stage.replace("_", " "),
        status=status or "(git status unavailable)",
    )


def permissions_granted_prompt(permissions: Iterable[str]) -> str:
    listed = "\n".join(f"- {permission}" for permission in permissions)
    return _format(PERMISSIONS_GRANTED_TEMPLATE, permissions=listed or "- (none)")


def review_implementation_prompt(
    step_number: int, step_title: str, plan_content: str, commit_sha: str
) -> str:
    return REVIEW_IMPLEMENTATION_TEMPLATE.format(
        step_number=step_number,
        step_title=step_title,
        plan_content=plan_content,
        commit_sha=commit_sha,
        response_format=REVIEW_RESPONSE_FORMAT,
    )


def review_build_fix_prompt(build_errors: str, commit_sha: str) -> str:
    return REVIEW_BUILD_FIX_TEMPLATE.format(
        build_errors=build_errors,
        commit_sha=commit_sha,
        response_format=REVIEW_RESPONSE_FORMAT,
    )


def review_review_fix_prompt(issues: Iterable[Issue], commit_sha: str) -> str:
    return REVIEW_REVIEW_FIX_TEMPLATE.format(
        review_issues=issues_as_json(issues),
        commit_sha=commit_sha,
        response_format=REVIEW_RESPONSE_FORMAT,
    )


def preflight_prompt(
    plan_content: str,
    claude_md: Optional[str],
    settings_json: Optional[str],
    settings_local_json: Optional[str],
) -> str:
    return PREFLIGHT_TEMPLATE.format(
        plan_content=plan_content,
        claude_md=claude_md or "(no CLAUDE.md found)",
        settings_json=settings_json or "(no .claude/settings.json found)",
        settings_local_json=settings_local_json or "(no .claude/settings.local.json found)",
    )


__all__ = [
    "PERMISSION_REQUEST_INSTRUCTIONS",
    "build_fix_prompt",
    "implementation_prompt",
    "issues_as_json",
    "permissions_granted_prompt",
    "preflight_prompt",
    "recover_uncommitted_prompt",
    "review_build_fix_prompt",
    "review_fix_prompt",
    "review_implementation_prompt",
    "review_review_fix_prompt",
]
