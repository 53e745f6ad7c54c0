from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .logging_utils import log_event
from .review import iter_json_objects
from .utils import atomic_write, read_json

_logger = logging.getLogger(__name__)

MAX_PERMISSION_REQUEST_ATTEMPTS = 3
SETTINGS_LOCAL_PATH = Path(".claude") / "settings.local.json"

_REQUEST_MARKER = "PERMISSION_REQUEST"
_PERMISSION_FIELDS = ("permissions_to_add", "missing_permissions", "permissions")


@dataclass(frozen=True)
class PermissionRequest:
    permissions: tuple[str, ...]
    reason: Optional[str] = None
    settings_local_json: Optional[dict[str, Any]] = None


@dataclass
class PermissionMergeResult:
    settings: dict[str, Any]
    added: list[str] = field(default_factory=list)
    allow_list: list[str] = field(default_factory=list)


def _clean_strings(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [entry.strip() for entry in value if isinstance(entry, str) and entry.strip()]


def _decode_request(payload: dict[str, Any]) -> Optional[PermissionRequest]:
    marker = payload.get("result", payload.get("type"))
    if not isinstance(marker, str) or marker.strip().upper() != _REQUEST_MARKER:
        return None
    permissions: list[str] = []
    for key in _PERMISSION_FIELDS:
        permissions = _clean_strings(payload.get(key))
        if permissions:
            break
    if not permissions:
        return None
    reason = payload.get("reason")
    settings = payload.get("settings_local_json", payload.get("settingsLocalJson"))
    return PermissionRequest(
        permissions=tuple(permissions),
        reason=reason if isinstance(reason, str) else None,
        settings_local_json=settings if isinstance(settings, dict) else None,
    )


def parse_permission_request(raw_output: Optional[str]) -> Optional[PermissionRequest]:
    """Return the permission request carried by agent output, if any."""
    for payload in iter_json_objects(raw_output or ""):
        request = _decode_request(payload)
        if request is not None:
            return request
    return None


def merge_permission_allows(
    settings: dict[str, Any], permissions_to_add: list[str] | tuple[str, ...]
) -> PermissionMergeResult:
    raw_permissions = settings.get("permissions")
    permissions = dict(raw_permissions) if isinstance(raw_permissions, dict) else {}
    allow_list = _clean_strings(permissions.get("allow"))
    added: list[str] = []
    for permission in permissions_to_add:
        value = permission.strip()
        if not value or value in allow_list:
            continue
        allow_list.append(value)
        added.append(value)
    permissions["allow"] = allow_list
    merged = dict(settings)
    merged["permissions"] = permissions
    return PermissionMergeResult(settings=merged, added=added, allow_list=allow_list)


def apply_permission_request(
    work_dir: Path, request: PermissionRequest
) -> PermissionMergeResult:
    """Merge the requested permissions into the agent's local settings file."""
    path = work_dir / SETTINGS_LOCAL_PATH
    try:
        current = read_json(path) or {}
    except ValueError as exc:
        log_event(
            _logger,
            logging.WARNING,
            "permissions.settings.unreadable",
            path=str(path),
            exc=exc,
        )
        current = {}
    if not isinstance(current, dict):
        current = {}
    result = merge_permission_allows(current, request.permissions)
    atomic_write(path, json.dumps(result.settings, indent=2) + "\n")
    log_event(
        _logger,
        logging.INFO,
        "permissions.settings.updated",
        path=str(path),
        added=result.added,
    )
    return result


__all__ = [
    "MAX_PERMISSION_REQUEST_ATTEMPTS",
    "PermissionMergeResult",
    "PermissionRequest",
    "SETTINGS_LOCAL_PATH",
    "apply_permission_request",
    "merge_permission_allows",
    "parse_permission_request",
]
