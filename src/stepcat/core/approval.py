from __future__ import annotations

import asyncio
import sys
from typing import Callable, Optional, Protocol

from .permissions import PermissionRequest


class PermissionApprover(Protocol):
    async def approve(self, request: PermissionRequest, *, step_number: int) -> bool: ...


class StaticApprover:
    """Answers every permission request the same way (non-interactive runs)."""

    def __init__(self, approve_all: bool) -> None:
        self.approve_all = approve_all

    async def approve(self, request: PermissionRequest, *, step_number: int) -> bool:
        return self.approve_all


class ConsoleApprover:
    """Asks the operator on the terminal; declines when stdin is not a TTY."""

    def __init__(
        self,
        confirm: Callable[[str], bool],
        echo: Callable[[str], None],
        *,
        is_interactive: Optional[Callable[[], bool]] = None,
    ) -> None:
        self._confirm = confirm
        self._echo = echo
        self._is_interactive = is_interactive or sys.stdin.isatty

    async def approve(self, request: PermissionRequest, *, step_number: int) -> bool:
        self._echo(f"\nStep {step_number}: the agent is blocked on missing permissions:")
        for permission in request.permissions:
            self._echo(f"  - {permission}")
        if request.reason:
            self._echo(f"Reason: {request.reason}")
        if not self._is_interactive():
            self._echo("Not running interactively; declining the permission request.")
            return False
        return await asyncio.to_thread(
            self._confirm, "Add these permissions to .claude/settings.local.json?"
        )


__all__ = ["ConsoleApprover", "PermissionApprover", "StaticApprover"]
