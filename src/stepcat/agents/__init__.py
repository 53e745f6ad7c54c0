from .base import (
    AgentError,
    AgentExitError,
    AgentNotFoundError,
    AgentRunner,
    AgentRunResult,
    AgentTimeoutError,
)
from .claude import ClaudeRunner
from .codex import CodexRunner

__all__ = [
    "AgentError",
    "AgentExitError",
    "AgentNotFoundError",
    "AgentRunResult",
    "AgentRunner",
    "AgentTimeoutError",
    "ClaudeRunner",
    "CodexRunner",
]
