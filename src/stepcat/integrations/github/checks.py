from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from ...core.events import CheckStatus, EventBus, EventType
from ...core.git_utils import GitError, GitRepo
from ...core.logging_utils import log_event
from ...core.utils import truncate_text
from .client import CheckRun, CheckSuite, GitHubApiError, GitHubClient, PullRequest

_logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
MAX_BUILD_OUTPUT_CHARS = 8000
MAX_ANNOTATIONS = 20
MAX_ANNOTATION_CHARS = 500
NO_BUILD_DETAIL_MESSAGE = (
    "Build checks failed. Please review the GitHub Actions logs and fix the issues."
)

SUCCESSFUL_RUN_CONCLUSIONS = frozenset({"success", "skipped"})
SUCCESSFUL_SUITE_CONCLUSIONS = frozenset({"success", "neutral", "skipped"})

_TRANSIENT_ERRORS = (httpx.HTTPError, GitHubApiError, GitError)


class CommitRelation(str, Enum):
    """Position of a pull request head relative to the tracked commit."""

    AHEAD = "ahead"
    BEHIND = "behind"
    IDENTICAL = "identical"
    DIVERGED = "diverged"
    UNKNOWN = "unknown"

    @classmethod
    def from_status(cls, status: str) -> "CommitRelation":
        try:
            return cls(status)
        except ValueError:
            return cls.UNKNOWN


class MergeConflictError(Exception):
    def __init__(self, pr_number: int, branch: str, base: str, sha: str):
        super().__init__(
            f"Pull request #{pr_number} ({branch} -> {base}) has merge conflicts; "
            f"CI will not run for {sha[:12]} until they are resolved"
        )
        self.pr_number = pr_number
        self.branch = branch
        self.base = base
        self.sha = sha


class ChecksTimeoutError(Exception):
    def __init__(self, requested_sha: str, tracked_sha: str, max_wait_minutes: float):
        tracked = "" if tracked_sha == requested_sha else f" (tracking {tracked_sha[:12]})"
        super().__init__(
            f"Checks for {requested_sha[:12]}{tracked} did not complete "
            f"within {max_wait_minutes:g} minutes"
        )
        self.requested_sha = requested_sha
        self.tracked_sha = tracked_sha
        self.max_wait_minutes = max_wait_minutes


@dataclass(frozen=True)
class TrackedShaSwitch:
    from_sha: str
    to_sha: str
    relation: CommitRelation
    pr_number: int


@dataclass
class CheckWaitContext:
    """
    State of one `ChecksTracker.wait` call, owned by the caller.

    `tracked_sha` starts at `requested_sha` and only changes through a
    recorded comparison against the pull request head.
    """

    requested_sha: str
    attempt: int = 1
    max_attempts: int = 1
    tracked_sha: str = ""
    pr_number: Optional[int] = None
    run_polls: int = 0
    suite_polls: int = 0
    switches: List[TrackedShaSwitch] = field(default_factory=list)
    comparisons: Dict[Tuple[str, str], CommitRelation] = field(default_factory=dict)
    check_runs: List[CheckRun] = field(default_factory=list)
    check_suites: List[CheckSuite] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.tracked_sha:
            self.tracked_sha = self.requested_sha

    @property
    def switched(self) -> bool:
        return self.tracked_sha != self.requested_sha


class ChecksTracker:
    """Follows CI for a commit, including pull request head drift and merge conflicts."""

    def __init__(
        self,
        client: GitHubClient,
        repo: GitRepo,
        *,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        events: Optional[EventBus] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._repo = repo
        self._poll_interval = poll_interval_seconds
        self._events = events
        self._logger = logger or _logger
        self._sleep = sleep
        self._clock = clock

    async def wait(
        self,
        sha: str,
        max_wait_minutes: float = 30.0,
        *,
        context: Optional[CheckWaitContext] = None,
    ) -> bool:
        """
        Wait for CI on `sha` and return whether every check succeeded.

        Raises MergeConflictError as soon as the pull request is unmergeable
        with no checks to wait for, and ChecksTimeoutError when the budget
        runs out without a definitive result.
        """
        ctx = context or CheckWaitContext(requested_sha=sha)
        deadline = self._clock() + max_wait_minutes * 60
        log_event(
            self._logger,
            logging.INFO,
            "checks.wait.start",
            sha=sha,
            max_wait_minutes=max_wait_minutes,
            attempt=ctx.attempt,
        )
        self._publish(CheckStatus.WAITING, ctx)
        while self._clock() < deadline:
            try:
                pr = await self._refresh_tracked_sha(ctx)
                runs = await self._matching_check_runs(ctx)
                if not runs:
                    await self._raise_if_conflicted(ctx, pr)
                    log_event(
                        self._logger,
                        logging.INFO,
                        "checks.runs.not_started",
                        sha=ctx.tracked_sha,
                        poll=ctx.run_polls,
                    )
                    await self._sleep(self._poll_interval)
                    continue
                completed = [run for run in runs if run.status == "completed"]
                if len(completed) < len(runs):
                    self._publish(
                        CheckStatus.RUNNING,
                        ctx,
                        detail=f"{len(completed)}/{len(runs)} checks completed",
                    )
                    await self._sleep(self._poll_interval)
                    continue
                ctx.check_runs = runs
                failed = [
                    run for run in runs if run.conclusion not in SUCCESSFUL_RUN_CONCLUSIONS
                ]
                if failed:
                    self._publish(
                        CheckStatus.FAILURE,
                        ctx,
                        detail=", ".join(f"{run.name}: {run.conclusion}" for run in failed),
                    )
                    return False
                return await self._wait_for_suites(ctx, deadline, max_wait_minutes)
            except _TRANSIENT_ERRORS as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "checks.poll.failed",
                    sha=ctx.tracked_sha,
                    exc=exc,
                )
                await self._sleep(self._poll_interval)
        self._publish(CheckStatus.FAILURE, ctx, detail="timed out")
        raise ChecksTimeoutError(ctx.requested_sha, ctx.tracked_sha, max_wait_minutes)

    async def _wait_for_suites(
        self, ctx: CheckWaitContext, deadline: float, max_wait_minutes: float
    ) -> bool:
        while self._clock() < deadline:
            try:
                suites = await self._client.list_check_suites(ctx.tracked_sha)
            except _TRANSIENT_ERRORS as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "checks.suites.failed",
                    sha=ctx.tracked_sha,
                    exc=exc,
                )
                await self._sleep(self._poll_interval)
                continue
            ctx.suite_polls += 1
            suites = [
                suite
                for suite in suites
                if not suite.head_sha or suite.head_sha == ctx.tracked_sha
            ]
            ctx.check_suites = suites
            pending = [suite for suite in suites if suite.status != "completed"]
            if pending:
                self._publish(
                    CheckStatus.RUNNING,
                    ctx,
                    detail=f"{len(pending)} check suite(s) still {pending[0].status}",
                )
                await self._sleep(self._poll_interval)
                continue
            failed = [
                suite
                for suite in suites
                if suite.conclusion not in SUCCESSFUL_SUITE_CONCLUSIONS
            ]
            if failed:
                self._publish(
                    CheckStatus.FAILURE,
                    ctx,
                    detail=", ".join(
                        f"{suite.app_name or suite.id}: {suite.conclusion}" for suite in failed
                    ),
                )
                return False
            self._publish(CheckStatus.SUCCESS, ctx)
            log_event(
                self._logger,
                logging.INFO,
                "checks.wait.passed",
                sha=ctx.tracked_sha,
                requested_sha=ctx.requested_sha,
                run_polls=ctx.run_polls,
                suite_polls=ctx.suite_polls,
            )
            return True
        self._publish(CheckStatus.FAILURE, ctx, detail="timed out")
        raise ChecksTimeoutError(ctx.requested_sha, ctx.tracked_sha, max_wait_minutes)

    async def _matching_check_runs(self, ctx: CheckWaitContext) -> List[CheckRun]:
        runs = await self._client.list_check_runs(ctx.tracked_sha)
        ctx.run_polls += 1
        matching = [run for run in runs if run.head_sha == ctx.tracked_sha]
        if len(matching) != len(runs):
            log_event(
                self._logger,
                logging.DEBUG,
                "checks.runs.filtered",
                sha=ctx.tracked_sha,
                dropped=len(runs) - len(matching),
            )
        return matching

    async def _refresh_tracked_sha(self, ctx: CheckWaitContext) -> Optional[PullRequest]:
        branch = await asyncio.to_thread(self._repo.current_branch)
        if branch == "HEAD":
            return None
        pulls = await self._client.list_open_pulls(branch)
        if not pulls:
            return None
        pr = pulls[0]
        ctx.pr_number = pr.number
        if not pr.head_sha or pr.head_sha == ctx.tracked_sha:
            return pr
        relation = await self._relation(ctx, ctx.tracked_sha, pr.head_sha)
        if relation == CommitRelation.AHEAD:
            switch = TrackedShaSwitch(
                from_sha=ctx.tracked_sha,
                to_sha=pr.head_sha,
                relation=relation,
                pr_number=pr.number,
            )
            ctx.switches.append(switch)
            ctx.tracked_sha = pr.head_sha
            log_event(
                self._logger,
                logging.INFO,
                "checks.tracked_sha.switched",
                from_sha=switch.from_sha,
                to_sha=switch.to_sha,
                pr_number=pr.number,
            )
        elif relation in (CommitRelation.DIVERGED, CommitRelation.UNKNOWN):
            log_event(
                self._logger,
                logging.WARNING,
                "checks.pr_head.unrelated",
                sha=ctx.tracked_sha,
                pr_head=pr.head_sha,
                relation=relation.value,
                pr_number=pr.number,
            )
        return pr

    async def _relation(
        self, ctx: CheckWaitContext, base: str, head: str
    ) -> CommitRelation:
        cached = ctx.comparisons.get((base, head))
        if cached is not None:
            return cached
        try:
            comparison = await self._client.compare_commits(base, head)
            relation = CommitRelation.from_status(comparison.status)
        except (httpx.HTTPError, GitHubApiError) as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "checks.compare.failed",
                base=base,
                head=head,
                exc=exc,
            )
            relation = await self._local_relation(base, head)
        ctx.comparisons[(base, head)] = relation
        return relation

    async def _local_relation(self, base: str, head: str) -> CommitRelation:
        if base == head:
            return CommitRelation.IDENTICAL
        try:
            if await asyncio.to_thread(self._repo.is_ancestor, base, head):
                return CommitRelation.AHEAD
            if await asyncio.to_thread(self._repo.is_ancestor, head, base):
                return CommitRelation.BEHIND
        except GitError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "checks.local_ancestry.failed",
                base=base,
                head=head,
                exc=exc,
            )
        return CommitRelation.UNKNOWN

    async def _raise_if_conflicted(
        self, ctx: CheckWaitContext, pr: Optional[PullRequest]
    ) -> None:
        if pr is None:
            return
        detail = await self._client.get_pull(pr.number)
        if not detail.has_merge_conflict:
            return
        self._publish(CheckStatus.BLOCKED, ctx, detail="merge conflict")
        log_event(
            self._logger,
            logging.ERROR,
            "checks.merge_conflict",
            sha=ctx.tracked_sha,
            pr_number=detail.number,
            branch=detail.head_ref,
            base=detail.base_ref,
        )
        raise MergeConflictError(
            detail.number, detail.head_ref, detail.base_ref, ctx.tracked_sha
        )

    def _publish(
        self, status: CheckStatus, ctx: CheckWaitContext, *, detail: Optional[str] = None
    ) -> None:
        if self._events is None:
            return
        self._events.publish(
            EventType.GITHUB_CHECK,
            status=status.value,
            sha=ctx.tracked_sha,
            requested_sha=ctx.requested_sha if ctx.switched else None,
            attempt=ctx.attempt,
            max_attempts=ctx.max_attempts,
            pr_number=ctx.pr_number,
            detail=detail,
        )

    async def describe_failures(self, sha: str) -> str:
        """
        Summarize failing check runs for `sha` for the build-fix prompt.

        Includes each failed run's output and up to MAX_ANNOTATIONS
        annotations; falls back to NO_BUILD_DETAIL_MESSAGE.
        """
        try:
            runs = [run for run in await self._client.list_check_runs(sha) if run.head_sha == sha]
        except _TRANSIENT_ERRORS as exc:
            log_event(
                self._logger, logging.WARNING, "checks.describe.failed", sha=sha, exc=exc
            )
            return NO_BUILD_DETAIL_MESSAGE
        failed = [
            run
            for run in runs
            if run.status == "completed" and run.conclusion not in SUCCESSFUL_RUN_CONCLUSIONS
        ]
        sections = []
        for run in failed:
            sections.append(await self._describe_run(run))
        if not sections:
            return NO_BUILD_DETAIL_MESSAGE
        return "\n\n".join(sections)

    async def _describe_run(self, run: CheckRun) -> str:
        lines = [f"### {run.name or run.id} ({run.conclusion})"]
        url = run.details_url or run.html_url
        if url:
            lines.append(f"Details: {url}")
        output = run.output
        if output.title:
            lines.append(f"Title: {output.title}")
        if output.summary:
            lines.append(f"Summary:\n{truncate_text(output.summary.strip(), MAX_BUILD_OUTPUT_CHARS)}")
        if output.text:
            lines.append(f"Output:\n{truncate_text(output.text.strip(), MAX_BUILD_OUTPUT_CHARS)}")
        annotations = await self._annotations(run)
        if annotations:
            lines.append("Annotations:")
            lines.extend(annotations)
        return "\n".join(lines)

    async def _annotations(self, run: CheckRun) -> List[str]:
        if not run.output.annotations_count:
            return []
        try:
            annotations = await self._client.list_check_run_annotations(run.id)
        except _TRANSIENT_ERRORS as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "checks.annotations.failed",
                check_run_id=run.id,
                exc=exc,
            )
            return []
        formatted = []
        for annotation in annotations[:MAX_ANNOTATIONS]:
            location = annotation.path or "unknown"
            if annotation.start_line is not None:
                location = f"{location}:{annotation.start_line}"
            line = f"- {location}: {annotation.annotation_level or 'notice'}: {annotation.message}"
            extras = " - ".join(
                part for part in (annotation.title, annotation.raw_details) if part
            )
            if extras:
                line = f"{line} ({extras})"
            formatted.append(truncate_text(line, MAX_ANNOTATION_CHARS))
        total = max(len(annotations), run.output.annotations_count or 0)
        if total > MAX_ANNOTATIONS:
            formatted.append(f"... {total - MAX_ANNOTATIONS} more annotations omitted")
        return formatted


__all__ = [
    "CheckWaitContext",
    "ChecksTimeoutError",
    "ChecksTracker",
    "CommitRelation",
    "MAX_ANNOTATIONS",
    "MAX_BUILD_OUTPUT_CHARS",
    "MergeConflictError",
    "NO_BUILD_DETAIL_MESSAGE",
    "TrackedShaSwitch",
]
