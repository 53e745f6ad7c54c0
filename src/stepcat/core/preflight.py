"""
Preflight permission analysis.

Before an unattended run, an agent reads the plan together with CLAUDE.md and
the .claude/ settings, and reports which shell commands the plan will need
that are not yet allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from ..agents.base import AgentRunner
from . import prompts
from .logging_utils import log_event
from .permissions import (
    SETTINGS_LOCAL_PATH,
    PermissionMergeResult,
    PermissionRequest,
    apply_permission_request,
)
from .review import iter_json_objects

_logger = logging.getLogger(__name__)

PREFLIGHT_TIMEOUT_MINUTES = 5.0
CLAUDE_MD_PATH = Path("CLAUDE.md")
SETTINGS_PATH = Path(".claude") / "settings.json"

_RAW_EXCERPT_CHARS = 500


class PreflightError(Exception):
    def __init__(self, message: str, *, output: str = ""):
        super().__init__(message)
        self.output = output


@dataclass(frozen=True)
class DetectedCommand:
    command: str
    reason: str = ""


@dataclass(frozen=True)
class PreflightReport:
    detected_commands: tuple[DetectedCommand, ...] = ()
    currently_allowed: tuple[str, ...] = ()
    missing_permissions: tuple[str, ...] = ()
    recommended_allow: tuple[str, ...] = ()
    settings_path: str = str(SETTINGS_PATH)
    explanation: str = ""

    @property
    def needs_permissions(self) -> bool:
        return bool(self.missing_permissions)


class _InvalidPreflight(ValueError):
    pass


def _read_optional(path: Path) -> Optional[str]:
    if not path.is_file():
        return None
    return path.read_text(encoding="utf-8")


def build_preflight_prompt(plan_file: Path, work_dir: Path) -> str:
    """Render the analysis prompt from the plan and the repository's agent settings."""
    try:
        plan_content = plan_file.read_text(encoding="utf-8")
    except OSError as exc:
        raise PreflightError(f"Could not read plan file {plan_file}: {exc}") from exc
    return prompts.preflight_prompt(
        plan_content,
        _read_optional(work_dir / CLAUDE_MD_PATH),
        _read_optional(work_dir / SETTINGS_PATH),
        _read_optional(work_dir / SETTINGS_LOCAL_PATH),
    )


def _strings(value: Any, field_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise _InvalidPreflight(f"'{field_name}' must be an array of strings")
    return tuple(v.strip() for v in value if v.strip())


def _decode_command(index: int, raw: Any) -> DetectedCommand:
    if isinstance(raw, str):
        return DetectedCommand(command=raw)
    if not isinstance(raw, dict) or not isinstance(raw.get("command"), str):
        raise _InvalidPreflight(f"detected command at index {index} is missing 'command'")
    reason = raw.get("reason")
    return DetectedCommand(
        command=raw["command"], reason=reason if isinstance(reason, str) else ""
    )


def _decode_report(payload: dict[str, Any]) -> PreflightReport:
    analysis = payload.get("analysis")
    if not isinstance(analysis, dict):
        raise _InvalidPreflight("'analysis' must be an object")
    commands = analysis.get("detected_commands") or []
    if not isinstance(commands, list):
        raise _InvalidPreflight("'detected_commands' must be an array")
    recommendations = payload.get("recommendations") or {}
    if not isinstance(recommendations, dict):
        raise _InvalidPreflight("'recommendations' must be an object")
    settings = recommendations.get("settings_json") or {}
    if not isinstance(settings, dict):
        raise _InvalidPreflight("'settings_json' must be an object")
    content = settings.get("content") or {}
    permissions = content.get("permissions") if isinstance(content, dict) else None
    allow = permissions.get("allow") if isinstance(permissions, dict) else None
    path = settings.get("path")
    explanation = recommendations.get("explanation")
    return PreflightReport(
        detected_commands=tuple(_decode_command(i, c) for i, c in enumerate(commands)),
        currently_allowed=_strings(analysis.get("currently_allowed"), "currently_allowed"),
        missing_permissions=_strings(
            analysis.get("missing_permissions"), "missing_permissions"
        ),
        recommended_allow=_strings(allow, "allow"),
        settings_path=path if isinstance(path, str) and path else str(SETTINGS_PATH),
        explanation=explanation.strip() if isinstance(explanation, str) else "",
    )


def parse_preflight_output(raw_output: str) -> PreflightReport:
    """Decode the agent's analysis; raises PreflightError when none is usable."""
    last_error: Optional[str] = None
    for payload in iter_json_objects(raw_output):
        try:
            return _decode_report(payload)
        except _InvalidPreflight as exc:
            last_error = str(exc)
    excerpt = (raw_output or "").strip()[:_RAW_EXCERPT_CHARS]
    raise PreflightError(
        f"Failed to parse preflight output: {last_error or 'no JSON analysis found'}",
        output=excerpt,
    )


def format_preflight_report(report: PreflightReport) -> str:
    lines = ["DETECTED COMMANDS:"]
    if report.detected_commands:
        for detected in report.detected_commands:
            suffix = f" ({detected.reason})" if detected.reason else ""
            lines.append(f"  - {detected.command}{suffix}")
    else:
        lines.append("  (none)")
    lines.append("")
    lines.append("CURRENTLY ALLOWED:")
    lines.extend(f"  - {entry}" for entry in report.currently_allowed or ("(none)",))
    lines.append("")
    if not report.needs_permissions:
        lines.append("ALL REQUIRED PERMISSIONS ARE CONFIGURED")
        return "\n".join(lines)
    lines.append("MISSING PERMISSIONS:")
    lines.extend(f"  - {entry}" for entry in report.missing_permissions)
    lines.append("")
    lines.append(f"RECOMMENDED CONFIGURATION ({report.settings_path}):")
    lines.extend(f"  - {entry}" for entry in report.recommended_allow or ("(none)",))
    if report.explanation:
        lines.append("")
        lines.append(report.explanation)
    return "\n".join(lines)


async def run_preflight(
    runner: AgentRunner,
    plan_file: Path,
    work_dir: Path,
    *,
    timeout_minutes: float = PREFLIGHT_TIMEOUT_MINUTES,
    logger: Optional[logging.Logger] = None,
) -> PreflightReport:
    log = logger or _logger
    prompt = build_preflight_prompt(plan_file, work_dir)
    log_event(
        log,
        logging.INFO,
        "preflight.start",
        agent=runner.agent_id,
        plan_file=str(plan_file),
    )
    result = await runner.run(work_dir, prompt, timeout_minutes=timeout_minutes)
    report = parse_preflight_output(result.output)
    log_event(
        log,
        logging.INFO,
        "preflight.finished",
        detected=len(report.detected_commands),
        missing=list(report.missing_permissions),
    )
    return report


def apply_preflight_recommendations(
    work_dir: Path, report: PreflightReport
) -> PermissionMergeResult:
    """Merge the recommended allow list into the local agent settings."""
    permissions = report.recommended_allow
    if not permissions:
        raise PreflightError("Preflight analysis did not recommend any permissions")
    return apply_permission_request(
        work_dir,
        PermissionRequest(permissions=permissions, reason=report.explanation or None),
    )


__all__ = [
    "DetectedCommand",
    "PREFLIGHT_TIMEOUT_MINUTES",
    "PreflightError",
    "PreflightReport",
    "apply_preflight_recommendations",
    "build_preflight_prompt",
    "format_preflight_report",
    "parse_preflight_output",
    "run_preflight",
]
