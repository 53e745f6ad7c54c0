from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence, Union

from ..agents.base import AgentError, AgentNotFoundError, AgentRunner, AgentRunResult
from ..integrations.github.checks import (
    NO_BUILD_DETAIL_MESSAGE,
    CheckWaitContext,
    ChecksTimeoutError,
    MergeConflictError,
)
from . import prompts
from .approval import PermissionApprover
from .config import StepcatConfig
from .events import EventBus, EventType
from .git_utils import GitRepo
from .logging_utils import log_event
from .models import (
    BuildStatus,
    ExecutionState,
    Issue,
    IssueStatus,
    IssueType,
    Iteration,
    IterationKind,
    IterationStatus,
    Plan,
    ReviewStatus,
    Step,
    StepStatus,
)
from .permissions import (
    MAX_PERMISSION_REQUEST_ATTEMPTS,
    PermissionRequest,
    apply_permission_request,
    parse_permission_request,
)
from .plan_parser import PlanStep
from .review import (
    ReviewFailed,
    ReviewFinding,
    ReviewPassed,
    ReviewUnparseable,
    ReviewVerdict,
    parse_review_output,
)
from .stop import StopSignal
from .store import ExecutionStore

_logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


class EngineError(Exception):
    def __init__(
        self,
        message: str,
        *,
        step_number: Optional[int] = None,
        iteration_number: Optional[int] = None,
        sha: Optional[str] = None,
    ):
        super().__init__(message)
        self.step_number = step_number
        self.iteration_number = iteration_number
        self.sha = sha


class RetryBudgetExhausted(EngineError):
    pass


class PermissionDeclinedError(EngineError):
    pass


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    STOPPED = "stopped"


@dataclasses.dataclass(frozen=True)
class RunResult:
    plan_id: int
    outcome: RunOutcome


class ChecksWaiter(Protocol):
    async def wait(
        self,
        sha: str,
        max_wait_minutes: float = 30.0,
        *,
        context: Optional[CheckWaitContext] = None,
    ) -> bool: ...

    async def describe_failures(self, sha: str) -> str: ...


@dataclasses.dataclass
class EngineSettings:
    work_dir: Path
    plan_file: Path
    max_iterations_per_step: int = 3
    build_timeout_minutes: float = 30.0
    agent_timeout_minutes: float = 30.0
    push_commits: bool = True

    @classmethod
    def from_config(cls, config: StepcatConfig, plan_file: Path) -> "EngineSettings":
        return cls(
            work_dir=config.root,
            plan_file=plan_file,
            max_iterations_per_step=config.max_iterations_per_step,
            build_timeout_minutes=config.build_timeout_minutes,
            agent_timeout_minutes=config.agent_timeout_minutes,
            push_commits=config.push_commits,
        )


@dataclasses.dataclass(frozen=True)
class _RunAgent:
    kind: IterationKind


@dataclasses.dataclass(frozen=True)
class _VerifyBuild:
    iteration: Iteration


@dataclasses.dataclass(frozen=True)
class _ReviewCommit:
    iteration: Iteration


@dataclasses.dataclass(frozen=True)
class _StepDone:
    pass


_Action = Union[_RunAgent, _VerifyBuild, _ReviewCommit, _StepDone]


def start_execution(
    store: ExecutionStore,
    *,
    plan_file: Path,
    work_dir: Path,
    owner: str,
    repo: str,
    steps: Sequence[PlanStep],
) -> Plan:
    """Create the plan row and one pending step per parsed step."""
    plan = store.create_plan(str(plan_file), str(work_dir), owner, repo)
    for step in steps:
        store.create_step(plan.id, step.number, step.title)
    return plan


def _finding_key(file_path: Optional[str], description: str) -> tuple[str, str]:
    normalized = _WHITESPACE_RE.sub(" ", description or "").strip().lower()
    return ((file_path or "unknown").strip(), normalized)


class StepEngine:
    """
    Drives each step through implementation, build verification and review.

    All phase state lives in the store: the next action for a step is derived
    from its latest iterations, so a restarted engine continues where the
    previous one stopped.
    """

    def __init__(
        self,
        settings: EngineSettings,
        *,
        store: ExecutionStore,
        checks: ChecksWaiter,
        repo: GitRepo,
        implementer: AgentRunner,
        reviewer: AgentRunner,
        events: EventBus,
        stop: StopSignal,
        approver: PermissionApprover,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.settings = settings
        self._store = store
        self._checks = checks
        self._repo = repo
        self._implementer = implementer
        self._reviewer = reviewer
        self._events = events
        self._stop = stop
        self._approver = approver
        self._logger = logger or _logger

    # Public API

    def status(self, plan_id: int) -> ExecutionState:
        return self._store.get_execution_state(plan_id)

    async def run(
        self, plan_id: int, *, plan_steps: Optional[Sequence[PlanStep]] = None
    ) -> RunResult:
        plan = self._store.get_plan(plan_id)
        if plan is None:
            raise EngineError(f"Execution {plan_id} not found")
        if plan_steps is not None:
            self._store.replace_pending_steps(
                plan.id, [(step.number, step.title) for step in plan_steps]
            )
        # A stop persisted for an earlier process must not end this run.
        self._store.clear_stop_request(plan.id)
        self._events.plan_id = plan.id
        self._events.publish(
            EventType.EXECUTION_STARTED,
            plan_id=plan.id,
            plan_file=plan.plan_file_path,
            work_dir=plan.work_dir,
        )
        self._publish_state(plan.id)
        log_event(self._logger, logging.INFO, "engine.run.start", plan_id=plan.id)

        for step in self._store.get_steps(plan.id):
            if step.status == StepStatus.COMPLETED:
                continue
            await self._execute_step(plan, step)
            self._publish_state(plan.id)
            if self._stop.requested or self._store.stop_requested(plan.id):
                self._stop.mark_triggered()
                self._store.clear_stop_request(plan.id)
                self._emit_log(
                    logging.INFO,
                    f"Stop requested; stopping after step {step.step_number}",
                    step_number=step.step_number,
                )
                self._events.publish(
                    EventType.STOPPED, plan_id=plan.id, step_number=step.step_number
                )
                return RunResult(plan_id=plan.id, outcome=RunOutcome.STOPPED)

        self._events.publish(EventType.ALL_COMPLETE, plan_id=plan.id)
        log_event(self._logger, logging.INFO, "engine.run.completed", plan_id=plan.id)
        return RunResult(plan_id=plan.id, outcome=RunOutcome.COMPLETED)

    # Step driver

    async def _execute_step(self, plan: Plan, step: Step) -> None:
        if step.status != StepStatus.IN_PROGRESS:
            step = self._store.update_step_status(step.id, StepStatus.IN_PROGRESS)
        self._events.publish(
            EventType.STEP_START, step_number=step.step_number, title=step.title
        )
        self._emit_log(
            logging.INFO,
            f"Starting step {step.step_number}: {step.title}",
            step_number=step.step_number,
        )
        try:
            await self._recover_interrupted(plan, step)
            while True:
                iterations = self._store.get_iterations(step.id)
                action = self._next_action(iterations)
                if isinstance(action, _StepDone):
                    break
                if isinstance(action, _RunAgent):
                    self._ensure_budget(step, iterations)
                    await self._run_iteration(plan, step, action.kind)
                elif isinstance(action, _VerifyBuild):
                    await self._verify_build(step, action.iteration)
                else:
                    await self._review(plan, step, action.iteration)
        except Exception as exc:
            self._fail_step(step, exc)
            raise

        self._store.update_step_status(step.id, StepStatus.COMPLETED)
        self._events.publish(
            EventType.STEP_COMPLETE, step_number=step.step_number, status="completed"
        )
        self._emit_log(
            logging.INFO,
            f"Step {step.step_number} completed",
            step_number=step.step_number,
        )

    def _next_action(self, iterations: Sequence[Iteration]) -> _Action:
        attempts = [it for it in iterations if it.counts_toward_budget()]
        if not attempts:
            return _RunAgent(IterationKind.IMPLEMENTATION)
        last = attempts[-1]
        if last.status == IterationStatus.IN_PROGRESS:
            raise EngineError(
                f"Iteration {last.iteration_number} is still in progress",
                iteration_number=last.iteration_number,
            )
        if last.status == IterationStatus.FAILED or not last.commit_sha:
            return _RunAgent(last.kind)
        if last.build_status is None or last.build_status.needs_verification():
            return _VerifyBuild(last)
        if last.build_status == BuildStatus.FAILED:
            return _RunAgent(IterationKind.BUILD_FIX)
        if last.review_status in (None, ReviewStatus.PENDING, ReviewStatus.IN_PROGRESS):
            return _ReviewCommit(last)
        if last.review_status == ReviewStatus.FAILED:
            return _RunAgent(IterationKind.REVIEW_FIX)
        return _StepDone()

    def _ensure_budget(self, step: Step, iterations: Sequence[Iteration]) -> None:
        used = [it for it in iterations if it.counts_toward_budget()]
        if len(used) < self.settings.max_iterations_per_step:
            return
        last_sha = next((it.commit_sha for it in reversed(used) if it.commit_sha), None)
        raise RetryBudgetExhausted(
            f"Step {step.step_number} used all {self.settings.max_iterations_per_step} "
            "iterations without a passing build and review",
            step_number=step.step_number,
            iteration_number=used[-1].iteration_number if used else None,
            sha=last_sha,
        )

    def _fail_step(self, step: Step, exc: Exception) -> None:
        context: dict[str, Any] = {
            "step_number": step.step_number,
            "iteration_number": getattr(exc, "iteration_number", None),
            "sha": getattr(exc, "sha", None) or getattr(exc, "tracked_sha", None),
            "pr_number": getattr(exc, "pr_number", None),
        }
        try:
            self._store.update_step_status(step.id, StepStatus.FAILED)
        except Exception as store_exc:
            log_event(
                self._logger,
                logging.ERROR,
                "engine.step.fail_persist_failed",
                step_number=step.step_number,
                exc=store_exc,
            )
        log_event(self._logger, logging.ERROR, "engine.step.failed", exc=exc, **context)
        self._events.publish(
            EventType.ERROR, message=str(exc), error_type=type(exc).__name__, **context
        )
        self._events.publish(
            EventType.STEP_COMPLETE, step_number=step.step_number, status="failed"
        )

    # Implementation iterations

    async def _run_iteration(self, plan: Plan, step: Step, kind: IterationKind) -> None:
        head_before = await asyncio.to_thread(self._repo.head_sha)
        iteration = self._store.create_iteration(
            step.id, kind, self._implementer.agent_id, head_before=head_before
        )
        self._events.publish(
            EventType.ITERATION_START,
            step_number=step.step_number,
            iteration_number=iteration.iteration_number,
            kind=kind.value,
            agent=self._implementer.agent_id,
        )
        self._events.publish(
            EventType.PHASE_START,
            step_number=step.step_number,
            iteration_number=iteration.iteration_number,
            phase=kind.value,
        )
        clean = await asyncio.to_thread(self._repo.is_clean)
        if clean:
            prompt = self._implementation_prompt(plan, step, kind)
            continue_session = False
        else:
            self._emit_log(
                logging.WARNING,
                "Working tree has uncommitted changes; asking the agent to commit them",
                step_number=step.step_number,
                iteration_number=iteration.iteration_number,
            )
            prompt = await self._recovery_prompt(plan, step, kind)
            continue_session = self._implementer.supports_continuation
        await self._invoke_and_record(step, iteration, prompt, continue_session)

    async def _invoke_and_record(
        self, step: Step, iteration: Iteration, prompt: str, continue_session: bool
    ) -> None:
        try:
            result, transcript = await self._invoke(
                self._implementer,
                step,
                iteration,
                prompt,
                expect_commit=True,
                continue_session=continue_session,
            )
        except AgentNotFoundError as exc:
            self._fail_iteration(step, iteration, str(exc), exc.output)
            raise
        except AgentError as exc:
            self._fail_iteration(step, iteration, str(exc), exc.output)
            return
        except Exception as exc:
            self._fail_iteration(step, iteration, str(exc), "")
            raise
        if not result.commit_sha:
            self._fail_iteration(
                step,
                iteration,
                f"{self._implementer.display_name} finished without creating a commit",
                transcript,
            )
            return
        self._store.update_iteration(
            iteration.id,
            status=IterationStatus.COMPLETED,
            commit_sha=result.commit_sha,
            implementation_log=transcript,
            build_status=BuildStatus.PENDING,
        )
        self._events.publish(
            EventType.ITERATION_COMPLETE,
            step_number=step.step_number,
            iteration_number=iteration.iteration_number,
            status=IterationStatus.COMPLETED.value,
            commit_sha=result.commit_sha,
        )
        self._emit_log(
            logging.INFO,
            f"Iteration {iteration.iteration_number} committed {result.commit_sha[:12]}",
            step_number=step.step_number,
            iteration_number=iteration.iteration_number,
        )

    def _fail_iteration(
        self, step: Step, iteration: Iteration, message: str, output: str
    ) -> None:
        log_text = f"{output.rstrip()}\n\nError: {message}\n" if output else f"Error: {message}\n"
        self._store.update_iteration(
            iteration.id, status=IterationStatus.FAILED, implementation_log=log_text
        )
        self._events.publish(
            EventType.ITERATION_COMPLETE,
            step_number=step.step_number,
            iteration_number=iteration.iteration_number,
            status=IterationStatus.FAILED.value,
            error=message,
        )
        self._emit_log(
            logging.WARNING,
            f"Iteration {iteration.iteration_number} failed: {message}",
            step_number=step.step_number,
            iteration_number=iteration.iteration_number,
        )

    async def _invoke(
        self,
        runner: AgentRunner,
        step: Step,
        iteration: Iteration,
        prompt: str,
        *,
        expect_commit: bool,
        continue_session: bool = False,
    ) -> tuple[AgentRunResult, str]:
        """
        Run an agent, resolving permission requests in place.

        Approved requests re-invoke the same iteration with a continuation
        prompt; the transcript joins every invocation.
        """
        transcripts: list[str] = []
        result = await runner.run(
            self.settings.work_dir,
            prompt,
            timeout_minutes=self.settings.agent_timeout_minutes,
            expect_commit=expect_commit,
            continue_session=continue_session,
        )
        transcripts.append(result.transcript() if expect_commit else result.output)
        requests = 0
        while runner.supports_continuation and not result.commit_sha:
            request = parse_permission_request(result.output)
            if request is None:
                break
            requests += 1
            if requests > MAX_PERMISSION_REQUEST_ATTEMPTS:
                raise AgentError(
                    f"{runner.display_name} requested permissions more than "
                    f"{MAX_PERMISSION_REQUEST_ATTEMPTS} times",
                    output="\n\n---\n\n".join(transcripts),
                )
            await self._resolve_permission_request(step, iteration, request)
            result = await runner.run(
                self.settings.work_dir,
                prompts.permissions_granted_prompt(request.permissions),
                timeout_minutes=self.settings.agent_timeout_minutes,
                expect_commit=expect_commit,
                continue_session=True,
            )
            transcripts.append(result.transcript() if expect_commit else result.output)
        return result, "\n\n---\n\n".join(transcripts)

    async def _resolve_permission_request(
        self, step: Step, iteration: Iteration, request: PermissionRequest
    ) -> None:
        description = "Agent requested permissions: " + ", ".join(request.permissions)
        if request.reason:
            description += f"\nReason: {request.reason}"
        issue = self._store.create_issue(
            iteration.id, IssueType.PERMISSION_REQUEST, description
        )
        self._events.publish(
            EventType.PERMISSION_REQUEST,
            step_number=step.step_number,
            iteration_number=iteration.iteration_number,
            permissions=list(request.permissions),
            reason=request.reason,
        )
        self._publish_issue(EventType.ISSUE_FOUND, step, issue)
        approved = await self._approver.approve(request, step_number=step.step_number)
        if not approved:
            raise PermissionDeclinedError(
                f"Permission request for step {step.step_number} was declined",
                step_number=step.step_number,
                iteration_number=iteration.iteration_number,
            )
        merge = await asyncio.to_thread(
            apply_permission_request, self.settings.work_dir, request
        )
        issue = self._store.update_issue_status(issue.id, IssueStatus.FIXED)
        self._publish_issue(EventType.ISSUE_RESOLVED, step, issue)
        self._emit_log(
            logging.INFO,
            "Added permissions: " + (", ".join(merge.added) or "(already present)"),
            step_number=step.step_number,
            iteration_number=iteration.iteration_number,
        )

    # Build verification

    async def _verify_build(self, step: Step, iteration: Iteration) -> None:
        sha = iteration.commit_sha
        if not sha:
            raise EngineError(
                f"Iteration {iteration.iteration_number} has no commit to verify",
                step_number=step.step_number,
                iteration_number=iteration.iteration_number,
            )
        self._events.publish(
            EventType.PHASE_START,
            step_number=step.step_number,
            iteration_number=iteration.iteration_number,
            phase="build",
        )
        if self.settings.push_commits:
            await asyncio.to_thread(self._repo.push)
            self._emit_log(
                logging.INFO,
                f"Pushed {sha[:12]}",
                step_number=step.step_number,
                iteration_number=iteration.iteration_number,
            )
        self._store.update_iteration(iteration.id, build_status=BuildStatus.IN_PROGRESS)
        attempts = [
            it
            for it in self._store.get_iterations(step.id)
            if it.counts_toward_budget()
        ]
        ctx = CheckWaitContext(
            requested_sha=sha,
            attempt=len(attempts),
            max_attempts=self.settings.max_iterations_per_step,
        )
        try:
            passed = await self._checks.wait(
                sha, self.settings.build_timeout_minutes, context=ctx
            )
        except MergeConflictError as exc:
            self._store.update_iteration(
                iteration.id, build_status=BuildStatus.MERGE_CONFLICT
            )
            issue = self._store.create_issue(
                iteration.id,
                IssueType.MERGE_CONFLICT,
                f"{exc}. Resolve the conflict on {exc.branch} against {exc.base}, "
                "then resume this execution.",
            )
            self._publish_issue(EventType.ISSUE_FOUND, step, issue)
            _annotate(exc, step.step_number, iteration.iteration_number)
            raise
        except ChecksTimeoutError as exc:
            self._store.update_iteration(iteration.id, build_status=BuildStatus.PENDING)
            _annotate(exc, step.step_number, iteration.iteration_number)
            raise

        if ctx.switched:
            self._emit_log(
                logging.INFO,
                f"CI verified pull request head {ctx.tracked_sha[:12]}, "
                f"which contains {sha[:12]}",
                step_number=step.step_number,
                iteration_number=iteration.iteration_number,
            )
        if passed:
            self._store.update_iteration(iteration.id, build_status=BuildStatus.PASSED)
            for issue_type in (IssueType.CI_FAILURE, IssueType.MERGE_CONFLICT):
                for issue in self._store.get_open_issues(step.id, issue_type):
                    self._resolve_issue(step, issue)
            self._emit_log(
                logging.INFO,
                "Build checks passed",
                step_number=step.step_number,
                iteration_number=iteration.iteration_number,
            )
            return

        detail = await self._checks.describe_failures(ctx.tracked_sha)
        self._store.update_iteration(iteration.id, build_status=BuildStatus.FAILED)
        issue = self._store.create_issue(iteration.id, IssueType.CI_FAILURE, detail)
        self._publish_issue(EventType.ISSUE_FOUND, step, issue)
        self._emit_log(
            logging.WARNING,
            "Build checks failed",
            step_number=step.step_number,
            iteration_number=iteration.iteration_number,
        )

    # Review

    async def _review(self, plan: Plan, step: Step, iteration: Iteration) -> None:
        self._store.update_iteration(
            iteration.id,
            review_status=ReviewStatus.IN_PROGRESS,
            review_agent=self._reviewer.agent_id,
        )
        self._events.publish(
            EventType.REVIEW_START,
            step_number=step.step_number,
            iteration_number=iteration.iteration_number,
            agent=self._reviewer.agent_id,
        )
        prompt = self._review_prompt(plan, step, iteration)
        try:
            result, transcript = await self._invoke(
                self._reviewer, step, iteration, prompt, expect_commit=False
            )
            verdict: ReviewVerdict = parse_review_output(result.output)
        except AgentNotFoundError:
            self._store.update_iteration(iteration.id, review_status=ReviewStatus.PENDING)
            raise
        except AgentError as exc:
            transcript = exc.output
            verdict = ReviewUnparseable(
                reason=f"review agent failed: {exc}", raw_excerpt=exc.output[:500]
            )

        if isinstance(verdict, ReviewUnparseable):
            self._emit_log(
                logging.WARNING,
                verdict.reason,
                step_number=step.step_number,
                iteration_number=iteration.iteration_number,
            )
            findings: tuple[ReviewFinding, ...] = (
                ReviewFinding(file="unknown", description=verdict.describe()),
            )
        elif isinstance(verdict, ReviewFailed):
            findings = verdict.findings
        else:
            findings = ()
            if isinstance(verdict, ReviewPassed) and verdict.findings:
                self._emit_log(
                    logging.INFO,
                    f"Review passed with {len(verdict.findings)} note(s)",
                    step_number=step.step_number,
                    iteration_number=iteration.iteration_number,
                )

        if not findings:
            self._store.update_iteration(
                iteration.id, review_status=ReviewStatus.PASSED, review_log=transcript
            )
            for issue in self._store.get_open_issues(step.id, IssueType.CODEX_REVIEW):
                self._resolve_issue(step, issue)
            self._events.publish(
                EventType.REVIEW_COMPLETE,
                step_number=step.step_number,
                iteration_number=iteration.iteration_number,
                result="PASS",
                issue_count=0,
            )
            return

        previous = self._store.get_open_issues(step.id, IssueType.CODEX_REVIEW)
        self._store.update_iteration(
            iteration.id, review_status=ReviewStatus.FAILED, review_log=transcript
        )
        reported = {_finding_key(f.file, f.description) for f in findings}
        for issue in previous:
            if _finding_key(issue.file_path, issue.description) not in reported:
                self._resolve_issue(step, issue)
        for finding in findings:
            issue = self._store.create_issue(
                iteration.id,
                IssueType.CODEX_REVIEW,
                finding.description,
                file_path=finding.file,
                line_number=finding.line,
                severity=finding.severity,
            )
            self._publish_issue(EventType.ISSUE_FOUND, step, issue)
        self._events.publish(
            EventType.REVIEW_COMPLETE,
            step_number=step.step_number,
            iteration_number=iteration.iteration_number,
            result="FAIL",
            issue_count=len(findings),
        )

    # Resume

    async def _recover_interrupted(self, plan: Plan, step: Step) -> None:
        iterations = self._store.get_iterations(step.id)
        interrupted = [it for it in iterations if it.status == IterationStatus.IN_PROGRESS]
        if not interrupted:
            return
        iteration = interrupted[-1]
        known = {it.commit_sha for it in iterations if it.commit_sha}
        head = await asyncio.to_thread(self._repo.head_sha)
        if head and head != iteration.head_before and head not in known:
            self._store.update_iteration(
                iteration.id,
                status=IterationStatus.COMPLETED,
                commit_sha=head,
                build_status=BuildStatus.PENDING,
                implementation_log=(iteration.implementation_log or "")
                + f"\nRecovered commit {head} created before the previous run ended.\n",
            )
            self._emit_log(
                logging.INFO,
                f"Recovered commit {head[:12]} for interrupted iteration "
                f"{iteration.iteration_number}",
                step_number=step.step_number,
                iteration_number=iteration.iteration_number,
            )
            return
        if not await asyncio.to_thread(self._repo.is_clean):
            self._emit_log(
                logging.INFO,
                f"Iteration {iteration.iteration_number} left uncommitted edits; "
                "asking the agent to commit them",
                step_number=step.step_number,
                iteration_number=iteration.iteration_number,
            )
            prompt = await self._recovery_prompt(plan, step, iteration.kind)
            await self._invoke_and_record(
                step, iteration, prompt, self._implementer.supports_continuation
            )
            return
        self._store.update_iteration(iteration.id, status=IterationStatus.ABORTED)
        self._emit_log(
            logging.INFO,
            f"Iteration {iteration.iteration_number} was interrupted without changes; "
            "marked aborted",
            step_number=step.step_number,
            iteration_number=iteration.iteration_number,
        )

    # Prompts

    def _plan_file_label(self) -> str:
        try:
            return str(self.settings.plan_file.relative_to(self.settings.work_dir))
        except ValueError:
            return str(self.settings.plan_file)

    def _latest_build_errors(self, step: Step) -> str:
        issues = self._store.get_issues_for_step(step.id, IssueType.CI_FAILURE)
        return issues[-1].description if issues else NO_BUILD_DETAIL_MESSAGE

    def _implementation_prompt(self, plan: Plan, step: Step, kind: IterationKind) -> str:
        label = self._plan_file_label()
        if kind == IterationKind.IMPLEMENTATION:
            return prompts.implementation_prompt(step.step_number, label)
        if kind == IterationKind.BUILD_FIX:
            return prompts.build_fix_prompt(
                step.step_number, label, self._latest_build_errors(step)
            )
        return prompts.review_fix_prompt(
            step.step_number,
            label,
            self._store.get_open_issues(step.id, IssueType.CODEX_REVIEW),
        )

    async def _recovery_prompt(self, plan: Plan, step: Step, kind: IterationKind) -> str:
        status = await asyncio.to_thread(self._repo.status_short)
        return prompts.recover_uncommitted_prompt(
            step.step_number, self._plan_file_label(), kind.value, status
        )

    def _review_prompt(self, plan: Plan, step: Step, iteration: Iteration) -> str:
        sha = iteration.commit_sha or ""
        if iteration.kind == IterationKind.BUILD_FIX:
            return prompts.review_build_fix_prompt(self._latest_build_errors(step), sha)
        if iteration.kind == IterationKind.REVIEW_FIX:
            return prompts.review_review_fix_prompt(
                self._store.get_open_issues(step.id, IssueType.CODEX_REVIEW), sha
            )
        try:
            plan_content = self.settings.plan_file.read_text(encoding="utf-8")
        except OSError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "engine.plan.unreadable",
                path=str(self.settings.plan_file),
                exc=exc,
            )
            plan_content = f"(plan file {self.settings.plan_file} could not be read)"
        return prompts.review_implementation_prompt(
            step.step_number, step.title, plan_content, sha
        )

    # Events

    def _resolve_issue(self, step: Step, issue: Issue) -> None:
        resolved = self._store.update_issue_status(issue.id, IssueStatus.FIXED)
        self._publish_issue(EventType.ISSUE_RESOLVED, step, resolved)

    def _publish_issue(self, event_type: EventType, step: Step, issue: Issue) -> None:
        self._events.publish(
            event_type,
            step_number=step.step_number,
            issue_id=issue.id,
            iteration_id=issue.iteration_id,
            issue_type=issue.type.value,
            description=issue.description,
            file_path=issue.file_path,
            line_number=issue.line_number,
            severity=issue.severity.value if issue.severity else None,
            status=issue.status.value,
        )

    def _publish_state(self, plan_id: int) -> None:
        state = self._store.get_execution_state(plan_id)
        self._events.publish(EventType.STATE_SYNC, state=state.model_dump(mode="json"))

    def _emit_log(
        self,
        level: int,
        message: str,
        *,
        step_number: Optional[int] = None,
        iteration_number: Optional[int] = None,
    ) -> None:
        self._logger.log(level, message)
        self._events.publish(
            EventType.LOG,
            level=logging.getLevelName(level).lower(),
            message=message,
            step_number=step_number,
            iteration_number=iteration_number,
        )


def _annotate(exc: Exception, step_number: int, iteration_number: int) -> Exception:
    setattr(exc, "step_number", step_number)
    setattr(exc, "iteration_number", iteration_number)
    return exc


__all__ = [
    "EngineError",
    "EngineSettings",
    "PermissionDeclinedError",
    "RetryBudgetExhausted",
    "RunOutcome",
    "RunResult",
    "StepEngine",
    "start_execution",
]
