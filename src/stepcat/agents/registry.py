from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Type

from ..core.config import ConfigError, StepcatConfig
from .base import AgentRunner, OutputCallback
from .claude import ClaudeRunner
from .codex import CodexRunner


@dataclass(frozen=True)
class AgentDescriptor:
    id: str
    name: str
    runner_cls: Type[AgentRunner]


_REGISTERED_AGENTS: dict[str, AgentDescriptor] = {
    "claude": AgentDescriptor(id="claude", name="Claude Code", runner_cls=ClaudeRunner),
    "codex": AgentDescriptor(id="codex", name="Codex", runner_cls=CodexRunner),
}


def get_registered_agents() -> dict[str, AgentDescriptor]:
    return _REGISTERED_AGENTS.copy()


def validate_agent_id(agent_id: str) -> str:
    normalized = (agent_id or "").strip().lower()
    if normalized not in _REGISTERED_AGENTS:
        raise ConfigError(
            f"Unknown agent '{agent_id}'; expected one of: "
            f"{', '.join(sorted(_REGISTERED_AGENTS))}"
        )
    return normalized


def build_runner(
    agent_id: str,
    config: StepcatConfig,
    *,
    on_output: Optional[OutputCallback] = None,
    logger: Optional[logging.Logger] = None,
) -> AgentRunner:
    descriptor = _REGISTERED_AGENTS[validate_agent_id(agent_id)]
    command = config.agent_command(descriptor.id)
    return descriptor.runner_cls(
        command.binary, command.args, on_output=on_output, logger=logger
    )


__all__ = [
    "AgentDescriptor",
    "build_runner",
    "get_registered_agents",
    "validate_agent_id",
]
