import dataclasses
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

CONFIG_FILENAME = ".stepcat/config.yml"
STATE_DIRNAME = ".stepcat"
AGENT_IDS = ("claude", "codex")

DEFAULT_CONFIG: Dict[str, Any] = {
    "execution": {
        "max_iterations_per_step": 3,
        "build_timeout_minutes": 30,
        "agent_timeout_minutes": 30,
        "implementation_agent": "claude",
        "review_agent": "codex",
        "push_commits": True,
    },
    "agents": {
        "claude": {"binary": "claude", "args": []},
        "codex": {"binary": "codex", "args": []},
    },
    "github": {
        "token_env": "GITHUB_TOKEN",
        "api_url": "https://api.github.com",
        "poll_interval_seconds": 5,
        "request_timeout_seconds": 30,
    },
    "storage": {
        "path": ".stepcat/executions.db",
    },
    "log": {
        "path": ".stepcat/stepcat.log",
        "max_bytes": 10_000_000,
        "backup_count": 3,
    },
    "server": {
        "host": "127.0.0.1",
        "port": 4180,
    },
}


class ConfigError(Exception):
    """Raised when configuration is invalid."""


@dataclasses.dataclass
class LogConfig:
    path: Path
    max_bytes: int
    backup_count: int


@dataclasses.dataclass
class AgentCommandConfig:
    binary: str
    args: List[str]


@dataclasses.dataclass
class GitHubConfig:
    token_env: str
    api_url: str
    poll_interval_seconds: float
    request_timeout_seconds: float
    token: Optional[str] = None


@dataclasses.dataclass
class StepcatConfig:
    raw: Dict[str, Any]
    root: Path
    max_iterations_per_step: int
    build_timeout_minutes: float
    agent_timeout_minutes: float
    implementation_agent: str
    review_agent: str
    push_commits: bool
    agents: Dict[str, AgentCommandConfig]
    github: GitHubConfig
    db_path: Path
    log: LogConfig
    server_host: str
    server_port: int

    def agent_command(self, agent_id: str) -> AgentCommandConfig:
        try:
            return self.agents[agent_id]
        except KeyError as exc:
            raise ConfigError(f"Unknown agent '{agent_id}'") from exc

    def require_token(self) -> str:
        if not self.github.token:
            raise ConfigError(
                f"GitHub token is required; pass --token or set {self.github.token_env}"
            )
        return self.github.token


def _merge_defaults(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(base))
    for key, value in overrides.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_dotenv_for_root(root: Path) -> None:
    """Best-effort load of .env files for this working directory."""
    try:
        for candidate in (root / ".env", root / STATE_DIRNAME / ".env"):
            if candidate.exists():
                load_dotenv(dotenv_path=candidate, override=True)
    except Exception:
        # Never fail config loading due to dotenv issues.
        pass


def _read_config_file(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        return {}
    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")
    return data


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _validate_config(cfg: Dict[str, Any]) -> None:
    execution = cfg.get("execution")
    if not isinstance(execution, dict):
        raise ConfigError("execution section must be a mapping")
    max_iterations = execution.get("max_iterations_per_step")
    if not _is_int(max_iterations) or max_iterations < 1:
        raise ConfigError("execution.max_iterations_per_step must be a positive integer")
    for key in ("build_timeout_minutes", "agent_timeout_minutes"):
        value = execution.get(key)
        if not _is_number(value) or value <= 0:
            raise ConfigError(f"execution.{key} must be a positive number")
    for key in ("implementation_agent", "review_agent"):
        if execution.get(key) not in AGENT_IDS:
            raise ConfigError(
                f"execution.{key} must be one of: {', '.join(AGENT_IDS)}"
            )
    if not isinstance(execution.get("push_commits"), bool):
        raise ConfigError("execution.push_commits must be boolean")

    agents = cfg.get("agents")
    if not isinstance(agents, dict):
        raise ConfigError("agents section must be a mapping")
    for agent_id in AGENT_IDS:
        agent_cfg = agents.get(agent_id)
        if not isinstance(agent_cfg, dict):
            raise ConfigError(f"agents.{agent_id} must be a mapping")
        if not isinstance(agent_cfg.get("binary"), str) or not agent_cfg["binary"]:
            raise ConfigError(f"agents.{agent_id}.binary is required")
        args = agent_cfg.get("args", [])
        if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
            raise ConfigError(f"agents.{agent_id}.args must be a list of strings")

    github = cfg.get("github")
    if not isinstance(github, dict):
        raise ConfigError("github section must be a mapping")
    if not isinstance(github.get("token_env"), str) or not github["token_env"]:
        raise ConfigError("github.token_env must be a non-empty string")
    if not isinstance(github.get("api_url"), str) or not github["api_url"]:
        raise ConfigError("github.api_url must be a non-empty string")
    for key in ("poll_interval_seconds", "request_timeout_seconds"):
        value = github.get(key)
        if not _is_number(value) or value < 0:
            raise ConfigError(f"github.{key} must be a non-negative number")

    storage = cfg.get("storage")
    if not isinstance(storage, dict) or not isinstance(storage.get("path"), str):
        raise ConfigError("storage.path must be a string path")

    log_cfg = cfg.get("log")
    if not isinstance(log_cfg, dict):
        raise ConfigError("log section must be a mapping")
    if not isinstance(log_cfg.get("path"), str):
        raise ConfigError("log.path must be a string path")
    for key in ("max_bytes", "backup_count"):
        if not _is_int(log_cfg.get(key)):
            raise ConfigError(f"log.{key} must be an integer")

    server = cfg.get("server")
    if not isinstance(server, dict):
        raise ConfigError("server section must be a mapping")
    if not isinstance(server.get("host"), str):
        raise ConfigError("server.host must be a string")
    if not _is_int(server.get("port")):
        raise ConfigError("server.port must be an integer")


def _build_config(root: Path, cfg: Dict[str, Any]) -> StepcatConfig:
    execution = cfg["execution"]
    github_cfg = cfg["github"]
    token_env = str(github_cfg["token_env"])
    log_cfg = cfg["log"]
    return StepcatConfig(
        raw=cfg,
        root=root,
        max_iterations_per_step=int(execution["max_iterations_per_step"]),
        build_timeout_minutes=float(execution["build_timeout_minutes"]),
        agent_timeout_minutes=float(execution["agent_timeout_minutes"]),
        implementation_agent=str(execution["implementation_agent"]),
        review_agent=str(execution["review_agent"]),
        push_commits=bool(execution["push_commits"]),
        agents={
            agent_id: AgentCommandConfig(
                binary=str(cfg["agents"][agent_id]["binary"]),
                args=list(cfg["agents"][agent_id].get("args", [])),
            )
            for agent_id in AGENT_IDS
        },
        github=GitHubConfig(
            token_env=token_env,
            api_url=str(github_cfg["api_url"]).rstrip("/"),
            poll_interval_seconds=float(github_cfg["poll_interval_seconds"]),
            request_timeout_seconds=float(github_cfg["request_timeout_seconds"]),
            token=os.environ.get(token_env) or None,
        ),
        db_path=root / cfg["storage"]["path"],
        log=LogConfig(
            path=root / log_cfg["path"],
            max_bytes=int(log_cfg["max_bytes"]),
            backup_count=int(log_cfg["backup_count"]),
        ),
        server_host=str(cfg["server"]["host"]),
        server_port=int(cfg["server"]["port"]),
    )


def load_config(
    work_dir: Path, overrides: Optional[Dict[str, Any]] = None
) -> StepcatConfig:
    """
    Load configuration for a working directory.

    The optional `.stepcat/config.yml` is merged over the defaults, then the
    given overrides (shaped like the YAML file) are merged on top.
    """
    root = work_dir.expanduser().resolve()
    if not root.is_dir():
        raise ConfigError(f"Working directory does not exist: {root}")
    _load_dotenv_for_root(root)
    data = _read_config_file(root / CONFIG_FILENAME)
    merged = _merge_defaults(DEFAULT_CONFIG, data)
    if overrides:
        merged = _merge_defaults(merged, overrides)
    _validate_config(merged)
    return _build_config(root, merged)


def apply_overrides(
    config: StepcatConfig,
    *,
    token: Optional[str] = None,
    build_timeout_minutes: Optional[float] = None,
    agent_timeout_minutes: Optional[float] = None,
    max_iterations_per_step: Optional[int] = None,
    implementation_agent: Optional[str] = None,
    review_agent: Optional[str] = None,
    push_commits: Optional[bool] = None,
) -> StepcatConfig:
    """Return a copy of config with CLI-provided values applied."""
    execution: Dict[str, Any] = {}
    if build_timeout_minutes is not None:
        execution["build_timeout_minutes"] = build_timeout_minutes
    if agent_timeout_minutes is not None:
        execution["agent_timeout_minutes"] = agent_timeout_minutes
    if max_iterations_per_step is not None:
        execution["max_iterations_per_step"] = max_iterations_per_step
    if implementation_agent is not None:
        execution["implementation_agent"] = implementation_agent
    if review_agent is not None:
        execution["review_agent"] = review_agent
    if push_commits is not None:
        execution["push_commits"] = push_commits
    merged = _merge_defaults(config.raw, {"execution": execution})
    _validate_config(merged)
    updated = _build_config(config.root, merged)
    updated.github.token = token or config.github.token
    return updated


__all__ = [
    "AGENT_IDS",
    "AgentCommandConfig",
    "CONFIG_FILENAME",
    "ConfigError",
    "DEFAULT_CONFIG",
    "GitHubConfig",
    "LogConfig",
    "StepcatConfig",
    "apply_overrides",
    "load_config",
]
