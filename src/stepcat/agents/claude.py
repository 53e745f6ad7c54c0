from __future__ import annotations

from pathlib import Path
from typing import List

from .base import AgentRunner


class ClaudeRunner(AgentRunner):
    """Claude Code in print mode; edits are accepted, commands follow local settings."""

    agent_id = "claude"
    display_name = "Claude Code"
    supports_continuation = True

    def build_command(self, work_dir: Path, *, continue_session: bool = False) -> List[str]:
        cmd = [
            self.binary,
            "--print",
            "--verbose",
            "--add-dir",
            str(work_dir),
            "--permission-mode",
            "acceptEdits",
        ]
        if continue_session:
            cmd.append("--continue")
        cmd.extend(self.extra_args)
        return cmd
