import asyncio
import importlib.metadata
import logging
import signal
from pathlib import Path
from typing import Any, NoReturn, Optional

import typer
import uvicorn

from ...agents.base import AgentError
from ...agents.registry import build_runner, validate_agent_id
from ...core.approval import ConsoleApprover, PermissionApprover, StaticApprover
from ...core.config import ConfigError, StepcatConfig, apply_overrides, load_config
from ...core.engine import (
    EngineError,
    EngineSettings,
    RunOutcome,
    RunResult,
    StepEngine,
    start_execution,
)
from ...core.events import Event, EventBus, EventType, StoreEventRecorder
from ...core.git_utils import GitError, GitRepo, parse_github_slug
from ...core.logging_utils import log_event, setup_rotating_logger
from ...core.models import ExecutionState, Plan, StepStatus
from ...core.permissions import SETTINGS_LOCAL_PATH
from ...core.plan_parser import PlanParseError, PlanStep, parse_plan_file
from ...core.preflight import (
    PREFLIGHT_TIMEOUT_MINUTES,
    PreflightError,
    apply_preflight_recommendations,
    format_preflight_report,
    run_preflight,
)
from ...core.stop import StopSignal
from ...core.store import ExecutionStore, StoreError
from ...integrations.github import (
    ChecksTimeoutError,
    ChecksTracker,
    GitHubApiError,
    GitHubClient,
    MergeConflictError,
)
from ..web.app import create_app

logger = logging.getLogger("stepcat.cli")

app = typer.Typer(add_completion=False)

_FATAL_ERRORS = (
    AgentError,
    ChecksTimeoutError,
    EngineError,
    GitError,
    GitHubApiError,
    MergeConflictError,
    StoreError,
)


def _version() -> str:
    try:
        return importlib.metadata.version("stepcat")
    except importlib.metadata.PackageNotFoundError:
        return "unknown"


def _version_callback(value: bool) -> None:
    if not value:
        return
    typer.echo(f"stepcat {_version()}")
    raise typer.Exit(code=0)


@app.callback()
def _root(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    # Subcommands implement behavior.
    return


def main() -> None:
    """Entrypoint for CLI execution."""
    app()


def _raise_exit(message: str, *, cause: Optional[BaseException] = None) -> NoReturn:
    typer.echo(message, err=True)
    if cause is not None:
        raise typer.Exit(code=1) from cause
    raise typer.Exit(code=1)


def _require_config(work_dir: Path, **overrides: Any) -> StepcatConfig:
    try:
        config = load_config(work_dir)
        return apply_overrides(config, **overrides)
    except ConfigError as exc:
        _raise_exit(str(exc), cause=exc)


def _open_store(config: StepcatConfig) -> ExecutionStore:
    store = ExecutionStore(config.db_path)
    try:
        store.initialize()
    except StoreError as exc:
        _raise_exit(str(exc), cause=exc)
    return store


def _resolve_github_slug(repo: GitRepo) -> tuple[str, str]:
    if not repo.is_repository():
        raise ConfigError(f"{repo.repo_root} is not a git repository")
    try:
        remote = repo.remote_url()
    except GitError as exc:
        raise ConfigError(f"Could not read the origin remote: {exc}") from exc
    slug = parse_github_slug(remote)
    if slug is None:
        raise ConfigError(f"Origin remote is not a GitHub repository: {remote}")
    return slug


def _resolve_plan_file(plan_file: Path, work_dir: Path) -> Path:
    path = plan_file.expanduser()
    if not path.is_absolute():
        path = (Path.cwd() / path).resolve()
    if not path.is_file():
        candidate = (work_dir / plan_file).resolve()
        if candidate.is_file():
            return candidate
        raise ConfigError(f"Plan file not found: {plan_file}")
    return path


def _format_event(event: Event) -> Optional[str]:
    data = event.data
    if event.type == EventType.LOG:
        return f"[{data.get('level', 'info')}] {data.get('message', '')}"
    if event.type == EventType.STEP_START:
        return f"== Step {data.get('step_number')}: {data.get('title', '')}"
    if event.type == EventType.ITERATION_START:
        return (
            f"-- Iteration {data.get('iteration_number')} "
            f"({data.get('kind')}, {data.get('agent')})"
        )
    if event.type == EventType.GITHUB_CHECK:
        return (
            f"   CI {data.get('status')} for {str(data.get('sha', ''))[:12]} "
            f"(attempt {data.get('attempt')}/{data.get('max_attempts')})"
        )
    if event.type == EventType.REVIEW_COMPLETE:
        return f"   Review {data.get('result')} ({data.get('issue_count', 0)} issue(s))"
    if event.type == EventType.ERROR:
        return f"[error] {data.get('message', '')}"
    if event.type == EventType.ALL_COMPLETE:
        return "All steps completed."
    return None


def _echo_event(event: Event) -> None:
    line = _format_event(event)
    if line is not None:
        typer.echo(line)


def _install_stop_handler(stop: StopSignal) -> None:
    def _handler(signum: int, frame: Any) -> None:
        if stop.requested:
            signal.signal(signal.SIGINT, signal.default_int_handler)
            raise KeyboardInterrupt
        stop.request()
        typer.echo(
            "\nStop requested; finishing the current step. Press Ctrl-C again to abort.",
            err=True,
        )

    signal.signal(signal.SIGINT, _handler)


def _format_state(state: ExecutionState) -> list[str]:
    plan = state.plan
    lines = [
        f"Execution {plan.id}: {plan.plan_file_path}",
        f"Repository: {plan.owner}/{plan.repo} ({plan.work_dir})",
        f"Created: {plan.created_at}",
    ]
    for step in state.steps:
        latest = step.latest_iteration()
        lines.append(
            f"  Step {step.step_number}: {step.title} [{step.status.value}] "
            f"iterations={len(step.iterations)}"
        )
        if latest is not None:
            lines.append(
                f"    latest: #{latest.iteration_number} {latest.kind.value} "
                f"{latest.status.value} commit={(latest.commit_sha or '-')[:12]} "
                f"build={latest.build_status.value if latest.build_status else '-'} "
                f"review={latest.review_status.value if latest.review_status else '-'}"
            )
        for issue in step.open_issues():
            where = f" {issue.file_path}" if issue.file_path else ""
            if issue.line_number is not None:
                where += f":{issue.line_number}"
            summary = issue.description.splitlines()[0] if issue.description else ""
            lines.append(f"    open {issue.type.value}{where}: {summary}")
    return lines


async def _run_engine(
    engine: StepEngine,
    plan_id: int,
    plan_steps: Optional[list[PlanStep]],
    client: GitHubClient,
) -> RunResult:
    try:
        return await engine.run(plan_id, plan_steps=plan_steps)
    finally:
        await client.close()


@app.command()
def run(
    file: Path = typer.Option(..., "--file", "-f", help="Plan document"),
    work_dir: Path = typer.Option(..., "--dir", "-d", help="Working directory (git repo)"),
    execution_id: Optional[int] = typer.Option(
        None, "--execution-id", help="Resume an existing execution"
    ),
    token: Optional[str] = typer.Option(None, "--token", help="GitHub token"),
    build_timeout: Optional[float] = typer.Option(
        None, "--build-timeout", help="Minutes to wait for CI per commit"
    ),
    agent_timeout: Optional[float] = typer.Option(
        None, "--agent-timeout", help="Minutes per agent invocation"
    ),
    max_iterations: Optional[int] = typer.Option(
        None, "--max-iterations", help="Iterations allowed per step"
    ),
    implementation_agent: Optional[str] = typer.Option(
        None, "--implementation-agent", help="claude or codex"
    ),
    review_agent: Optional[str] = typer.Option(
        None, "--review-agent", help="claude or codex"
    ),
    no_push: bool = typer.Option(False, "--no-push", help="Do not push commits"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Approve permission requests"),
):
    """Execute a plan step by step, or resume an execution."""
    try:
        if implementation_agent is not None:
            implementation_agent = validate_agent_id(implementation_agent)
        if review_agent is not None:
            review_agent = validate_agent_id(review_agent)
    except ConfigError as exc:
        _raise_exit(str(exc), cause=exc)
    config = _require_config(
        work_dir,
        token=token,
        build_timeout_minutes=build_timeout,
        agent_timeout_minutes=agent_timeout,
        max_iterations_per_step=max_iterations,
        implementation_agent=implementation_agent,
        review_agent=review_agent,
        push_commits=False if no_push else None,
    )
    repo = GitRepo(config.root)
    try:
        github_token = config.require_token()
        plan_file = _resolve_plan_file(file, config.root)
        owner, repo_name = _resolve_github_slug(repo)
        plan_steps = parse_plan_file(plan_file)
    except (ConfigError, PlanParseError) as exc:
        _raise_exit(str(exc), cause=exc)

    run_logger = setup_rotating_logger(f"stepcat[{config.root}]", config.log)
    store = _open_store(config)
    try:
        plan: Optional[Plan]
        if execution_id is None:
            plan = start_execution(
                store,
                plan_file=plan_file,
                work_dir=config.root,
                owner=owner,
                repo=repo_name,
                steps=plan_steps,
            )
            resume_steps: Optional[list[PlanStep]] = None
            typer.echo(f"Started execution {plan.id}")
        else:
            plan = store.get_plan(execution_id)
            if plan is None:
                _raise_exit(f"Execution {execution_id} not found")
            resume_steps = plan_steps
            typer.echo(f"Resuming execution {plan.id}")

        events = EventBus()
        events.subscribe(StoreEventRecorder(store))
        events.subscribe(_echo_event)
        stop = StopSignal()
        client = GitHubClient(
            owner,
            repo_name,
            github_token,
            api_url=config.github.api_url,
            timeout_seconds=config.github.request_timeout_seconds,
        )
        checks = ChecksTracker(
            client,
            repo,
            poll_interval_seconds=config.github.poll_interval_seconds,
            events=events,
            logger=run_logger,
        )
        approver: PermissionApprover = (
            StaticApprover(True) if yes else ConsoleApprover(typer.confirm, typer.echo)
        )
        engine = StepEngine(
            EngineSettings.from_config(config, plan_file),
            store=store,
            checks=checks,
            repo=repo,
            implementer=build_runner(config.implementation_agent, config, logger=run_logger),
            reviewer=build_runner(config.review_agent, config, logger=run_logger),
            events=events,
            stop=stop,
            approver=approver,
            logger=run_logger,
        )
        _install_stop_handler(stop)
        try:
            result = asyncio.run(_run_engine(engine, plan.id, resume_steps, client))
        except _FATAL_ERRORS as exc:
            log_event(run_logger, logging.ERROR, "cli.run.failed", plan_id=plan.id, exc=exc)
            _raise_exit(
                f"Execution {plan.id} failed: {exc}\n"
                f"Resume with: stepcat run --file {file} --dir {work_dir} "
                f"--execution-id {plan.id}",
                cause=exc,
            )
        except KeyboardInterrupt as exc:
            _raise_exit(
                f"Aborted. Resume with --execution-id {plan.id}", cause=exc
            )
    except StoreError as exc:
        _raise_exit(str(exc), cause=exc)
    finally:
        signal.signal(signal.SIGINT, signal.default_int_handler)
        store.close()

    if result.outcome == RunOutcome.STOPPED:
        typer.echo(
            f"Execution {plan.id} stopped. Resume with --execution-id {plan.id}"
        )
    else:
        typer.echo(f"Execution {plan.id} completed.")


@app.command()
def status(
    work_dir: Path = typer.Option(Path("."), "--dir", "-d", help="Working directory"),
    execution_id: Optional[int] = typer.Option(None, "--execution-id", help="Execution id"),
):
    """Show an execution snapshot, or list executions."""
    config = _require_config(work_dir)
    store = _open_store(config)
    try:
        if execution_id is None:
            plans = store.list_plans()
            if not plans:
                typer.echo("No executions found.")
                return
            for plan in plans:
                steps = store.get_steps(plan.id)
                done = sum(1 for step in steps if step.status == StepStatus.COMPLETED)
                typer.echo(
                    f"{plan.id}\t{plan.plan_file_path}\t{done}/{len(steps)} steps\t"
                    f"{plan.created_at}"
                )
            return
        try:
            state = store.get_execution_state(execution_id)
        except StoreError as exc:
            _raise_exit(str(exc), cause=exc)
        for line in _format_state(state):
            typer.echo(line)
    finally:
        store.close()


@app.command()
def stop(
    work_dir: Path = typer.Option(Path("."), "--dir", "-d", help="Working directory"),
    execution_id: int = typer.Option(..., "--execution-id", help="Execution id"),
):
    """Ask a running execution to stop after its current step."""
    config = _require_config(work_dir)
    store = _open_store(config)
    try:
        if store.get_plan(execution_id) is None:
            _raise_exit(f"Execution {execution_id} not found")
        store.request_stop(execution_id)
    except StoreError as exc:
        _raise_exit(str(exc), cause=exc)
    finally:
        store.close()
    typer.echo(f"Stop requested for execution {execution_id}")


@app.command()
def preflight(
    file: Path = typer.Option(..., "--file", "-f", help="Plan document"),
    work_dir: Path = typer.Option(Path("."), "--dir", "-d", help="Working directory"),
    agent: str = typer.Option("claude", "--agent", help="Agent that runs the analysis"),
    timeout: float = typer.Option(
        PREFLIGHT_TIMEOUT_MINUTES, "--timeout", help="Minutes to wait for the analysis"
    ),
    apply: bool = typer.Option(
        False, "--apply", help="Write the recommended permissions to .claude/settings.local.json"
    ),
):
    """Check that the agent may run every command the plan needs.

    Exits 2 when permissions are missing and were not applied.
    """
    config = _require_config(work_dir)
    try:
        agent_id = validate_agent_id(agent)
        plan_file = _resolve_plan_file(file, config.root)
    except ConfigError as exc:
        _raise_exit(str(exc), cause=exc)

    run_logger = setup_rotating_logger(f"stepcat[{config.root}]", config.log)
    runner = build_runner(agent_id, config, logger=run_logger)
    typer.echo(f"Running preflight analysis with {runner.display_name}...")
    try:
        report = asyncio.run(
            run_preflight(
                runner, plan_file, config.root, timeout_minutes=timeout, logger=run_logger
            )
        )
    except (AgentError, PreflightError) as exc:
        log_event(run_logger, logging.ERROR, "cli.preflight.failed", exc=exc)
        detail = f"\n{exc.output.strip()}" if exc.output.strip() else ""
        _raise_exit(f"Preflight failed: {exc}{detail}", cause=exc)

    typer.echo(format_preflight_report(report))
    if not report.needs_permissions:
        return
    if not apply:
        typer.echo("\nRe-run with --apply to add the recommended permissions.")
        raise typer.Exit(code=2)
    try:
        merged = apply_preflight_recommendations(config.root, report)
    except (PreflightError, OSError) as exc:
        _raise_exit(f"Could not apply permissions: {exc}", cause=exc)
    typer.echo(
        f"\nAdded {len(merged.added)} permission(s) to {SETTINGS_LOCAL_PATH}: "
        f"{', '.join(merged.added) or '(already present)'}"
    )


@app.command()
def serve(
    work_dir: Path = typer.Option(Path("."), "--dir", "-d", help="Working directory"),
    host: Optional[str] = typer.Option(None, "--host", help="Host to bind"),
    port: Optional[int] = typer.Option(None, "--port", help="Port to bind"),
):
    """Serve the execution status API."""
    config = _require_config(work_dir)
    bind_host = host or config.server_host
    bind_port = port or config.server_port
    typer.echo(f"Serving executions on http://{bind_host}:{bind_port}")
    uvicorn.run(create_app(config.db_path), host=bind_host, port=bind_port)


if __name__ == "__main__":
    main()
