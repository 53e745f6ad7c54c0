from __future__ import annotations

from pathlib import Path
from typing import List

from .base import AgentRunner


class CodexRunner(AgentRunner):
    """Codex CLI in non-interactive `exec` mode, reading the prompt from stdin."""

    agent_id = "codex"
    display_name = "Codex"

    def build_command(self, work_dir: Path, *, continue_session: bool = False) -> List[str]:
        # `codex exec` has no session continuation; every call starts fresh.
        return [self.binary, "exec", "--cd", str(work_dir), *self.extra_args]
