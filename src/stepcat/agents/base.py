from __future__ import annotations

import asyncio
import codecs
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, ClassVar, List, NamedTuple, Optional, Sequence

from ..core.git_utils import GitError, GitRepo
from ..core.logging_utils import log_event
from ..core.utils import resolve_executable, tail_lines

_logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], None]

_TERMINATE_GRACE_SECONDS = 5
_READ_CHUNK_BYTES = 64 * 1024
_STDERR_TAIL_LINES = 40


def _with_stderr(stdout: str, stderr: str) -> str:
    tail = tail_lines(stderr.strip(), _STDERR_TAIL_LINES)
    if not tail:
        return stdout
    return f"{stdout.rstrip()}\n\n[stderr]\n{tail}\n"


class AgentError(Exception):
    """Base error for agent invocation failures."""

    def __init__(self, message: str, *, output: str = ""):
        super().__init__(message)
        self.output = output


class AgentNotFoundError(AgentError):
    def __init__(self, binary: str):
        super().__init__(f"Agent binary not found: {binary}")
        self.binary = binary


class AgentTimeoutError(AgentError):
    def __init__(self, agent_name: str, timeout_minutes: float, *, output: str = ""):
        super().__init__(
            f"{agent_name} timed out after {timeout_minutes:g} minutes", output=output
        )
        self.timeout_minutes = timeout_minutes


class AgentExitError(AgentError):
    def __init__(self, agent_name: str, exit_code: int, *, output: str = ""):
        super().__init__(f"{agent_name} exited with code {exit_code}", output=output)
        self.exit_code = exit_code


class _ProcessOutput(NamedTuple):
    stdout: str
    stderr: str
    exit_code: int


@dataclass
class AgentRunResult:
    """`output` is stdout only; diagnostics written to stderr live in `stderr`."""

    output: str
    exit_code: int
    commit_sha: Optional[str] = None
    head_before: Optional[str] = None
    working_tree_status: Optional[str] = None
    stderr: str = ""

    def transcript(self) -> str:
        """Output followed by the working tree status captured after the run."""
        if self.working_tree_status is None:
            status = "(unavailable)"
        else:
            status = self.working_tree_status.strip() or "(clean)"
        body = _with_stderr(self.output, self.stderr)
        return f"{body.rstrip()}\n\nWorking tree status after run:\n{status}\n"


class AgentRunner:
    """
    Runs one external coding agent for one prompt.

    The prompt goes to stdin. stdout and stderr are drained into separate
    buffers while the process exit races the wall-clock timeout.
    """

    agent_id: ClassVar[str] = ""
    display_name: ClassVar[str] = ""
    supports_continuation: ClassVar[bool] = False

    def __init__(
        self,
        binary: str,
        extra_args: Optional[Sequence[str]] = None,
        *,
        on_output: Optional[OutputCallback] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.binary = binary
        self.extra_args = list(extra_args or [])
        self._on_output = on_output
        self._logger = logger or _logger

    def build_command(self, work_dir: Path, *, continue_session: bool = False) -> List[str]:
        raise NotImplementedError

    async def run(
        self,
        work_dir: Path,
        prompt: str,
        *,
        timeout_minutes: float,
        expect_commit: bool = False,
        continue_session: bool = False,
    ) -> AgentRunResult:
        repo = GitRepo(work_dir)
        head_before = await asyncio.to_thread(repo.head_sha) if expect_commit else None
        cmd = self.build_command(work_dir, continue_session=continue_session)
        log_event(
            self._logger,
            logging.INFO,
            "agent.run.start",
            agent=self.agent_id,
            cmd=" ".join(cmd),
            prompt_chars=len(prompt),
            head_before=head_before,
            continue_session=continue_session or None,
        )
        output, stderr, exit_code = await self._execute(cmd, work_dir, prompt, timeout_minutes)
        if stderr.strip():
            log_event(
                self._logger,
                logging.DEBUG,
                "agent.run.stderr",
                agent=self.agent_id,
                stderr_chars=len(stderr),
                tail=tail_lines(stderr.strip(), _STDERR_TAIL_LINES),
            )
        if exit_code != 0:
            log_event(
                self._logger,
                logging.WARNING,
                "agent.run.exit",
                agent=self.agent_id,
                exit_code=exit_code,
            )
            raise AgentExitError(
                self.display_name, exit_code, output=_with_stderr(output, stderr)
            )

        result = AgentRunResult(
            output=output, exit_code=exit_code, head_before=head_before, stderr=stderr
        )
        if expect_commit:
            head_after = await asyncio.to_thread(repo.head_sha)
            if head_after and head_after != head_before:
                result.commit_sha = head_after
            result.working_tree_status = await self._working_tree_status(repo)
        log_event(
            self._logger,
            logging.INFO,
            "agent.run.finished",
            agent=self.agent_id,
            output_chars=len(output),
            commit_sha=result.commit_sha,
        )
        return result

    async def _working_tree_status(self, repo: GitRepo) -> Optional[str]:
        try:
            return await asyncio.to_thread(repo.status_short)
        except GitError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "agent.git_status.failed",
                agent=self.agent_id,
                exc=exc,
            )
            return None

    async def _execute(
        self, cmd: List[str], work_dir: Path, prompt: str, timeout_minutes: float
    ) -> _ProcessOutput:
        if resolve_executable(cmd[0]) is None:
            raise AgentNotFoundError(cmd[0])
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(work_dir),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise AgentNotFoundError(cmd[0]) from exc

        out_chunks: List[str] = []
        err_chunks: List[str] = []
        drain_tasks = {
            asyncio.create_task(self._drain(proc.stdout, out_chunks, self._on_output)),
            asyncio.create_task(self._drain(proc.stderr, err_chunks, None)),
        }
        exit_task = asyncio.create_task(self._feed_and_wait(proc, prompt))
        try:
            done, _ = await asyncio.wait({exit_task}, timeout=timeout_minutes * 60)
            if exit_task not in done:
                exit_task.cancel()
                await self._kill(proc)
                await asyncio.gather(exit_task, return_exceptions=True)
                await self._cancel_all(drain_tasks)
                log_event(
                    self._logger,
                    logging.WARNING,
                    "agent.run.timeout",
                    agent=self.agent_id,
                    timeout_minutes=timeout_minutes,
                )
                raise AgentTimeoutError(
                    self.display_name,
                    timeout_minutes,
                    output=_with_stderr("".join(out_chunks), "".join(err_chunks)),
                )
            # Grandchildren may keep the pipes open after the agent exits.
            _, pending = await asyncio.wait(drain_tasks, timeout=_TERMINATE_GRACE_SECONDS)
            await self._cancel_all(pending)
        except asyncio.CancelledError:
            exit_task.cancel()
            for task in drain_tasks:
                task.cancel()
            await self._kill(proc)
            raise
        return _ProcessOutput("".join(out_chunks), "".join(err_chunks), int(exit_task.result()))

    @staticmethod
    async def _cancel_all(tasks) -> None:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _feed_and_wait(self, proc: asyncio.subprocess.Process, prompt: str) -> int:
        await self._write_prompt(proc, prompt)
        return await proc.wait()

    async def _write_prompt(self, proc: asyncio.subprocess.Process, prompt: str) -> None:
        if proc.stdin is None:
            return
        try:
            proc.stdin.write(prompt.encode("utf-8"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # Agent exited before reading its prompt; the exit code tells the story.
            pass
        finally:
            proc.stdin.close()

    async def _drain(
        self,
        stream: Optional[asyncio.StreamReader],
        chunks: List[str],
        on_line: Optional[OutputCallback],
    ) -> None:
        """Read fixed-size chunks so a single huge line never hits the reader limit."""
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            data = await stream.read(_READ_CHUNK_BYTES)
            text = decoder.decode(data, final=not data)
            if text:
                chunks.append(text)
                if on_line is not None:
                    pending += text
                    *lines, pending = pending.split("\n")
                    for line in lines:
                        self._emit(on_line, line)
            if not data:
                break
        if on_line is not None and pending:
            self._emit(on_line, pending)

    def _emit(self, on_line: OutputCallback, line: str) -> None:
        try:
            on_line(line.rstrip("\r"))
        except Exception as exc:
            log_event(
                self._logger,
                logging.DEBUG,
                "agent.output_callback.failed",
                agent=self.agent_id,
                exc=exc,
            )

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=_TERMINATE_GRACE_SECONDS)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()


__all__ = [
    "AgentError",
    "AgentExitError",
    "AgentNotFoundError",
    "AgentRunResult",
    "AgentRunner",
    "AgentTimeoutError",
    "OutputCallback",
]
