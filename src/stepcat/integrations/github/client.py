"""GitHub REST API client for check runs, check suites and pull requests."""

from __future__ import annotations

from typing import Any, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

DEFAULT_API_URL = "https://api.github.com"
_PER_PAGE = 100


class GitHubApiError(Exception):
    def __init__(self, message: str, *, status_code: Optional[int] = None, path: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.path = path


class _ApiModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class CheckRunOutput(_ApiModel):
    title: Optional[str] = None
    summary: Optional[str] = None
    text: Optional[str] = None
    annotations_count: int = 0


class CheckRun(_ApiModel):
    id: int
    name: str = ""
    head_sha: str = ""
    status: str = ""
    conclusion: Optional[str] = None
    details_url: Optional[str] = None
    html_url: Optional[str] = None
    output: CheckRunOutput = Field(default_factory=CheckRunOutput)


class CheckSuite(_ApiModel):
    id: int
    head_sha: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None
    app_name: Optional[str] = None


class CheckAnnotation(_ApiModel):
    path: str = ""
    start_line: Optional[int] = None
    annotation_level: Optional[str] = None
    message: str = ""
    title: Optional[str] = None
    raw_details: Optional[str] = None


class PullRequest(_ApiModel):
    number: int
    head_sha: str
    head_ref: str
    base_ref: str
    mergeable: Optional[bool] = None
    mergeable_state: Optional[str] = None
    html_url: Optional[str] = None

    @property
    def has_merge_conflict(self) -> bool:
        return self.mergeable_state == "dirty" or self.mergeable is False


class CommitComparison(_ApiModel):
    status: str
    ahead_by: int = 0
    behind_by: int = 0


def _pull_from_payload(data: dict[str, Any]) -> PullRequest:
    head = data.get("head") or {}
    base = data.get("base") or {}
    return PullRequest(
        number=int(data["number"]),
        head_sha=str(head.get("sha") or ""),
        head_ref=str(head.get("ref") or ""),
        base_ref=str(base.get("ref") or ""),
        mergeable=data.get("mergeable"),
        mergeable_state=data.get("mergeable_state"),
        html_url=data.get("html_url"),
    )


class GitHubClient:
    """
    Minimal async GitHub REST client bound to one repository.

    Only the read operations needed to follow CI for a commit are exposed.
    """

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str,
        *,
        api_url: str = DEFAULT_API_URL,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            owner: Repository owner (user or organization).
            repo: Repository name.
            token: Token sent as a Bearer credential.
            api_url: API base URL, overridable for GitHub Enterprise.
            timeout_seconds: Per-request timeout.
            transport: Optional httpx transport, used by tests.
        """
        self.owner = owner
        self.repo = repo
        self.client = httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout=timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.client.aclose()

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """
        Make an API request and return the decoded JSON body.

        Raises:
            GitHubApiError: On a non-2xx response.
            httpx.HTTPError: On transport failures.
        """
        response = await self.client.request(method, path, **kwargs)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = ""
            try:
                body = response.json()
                if isinstance(body, dict):
                    detail = str(body.get("message") or "")
            except ValueError:
                detail = response.text[:200]
            raise GitHubApiError(
                f"GitHub API {method} {path} failed with {response.status_code}: {detail}",
                status_code=response.status_code,
                path=path,
            ) from exc
        return response.json()

    async def list_check_runs(self, sha: str) -> List[CheckRun]:
        """
        List check runs for a commit.

        Args:
            sha: Commit SHA (or ref) whose check runs to list.

        Returns:
            Check runs as reported; callers filter on `head_sha` themselves.
        """
        data = await self._request(
            "GET",
            f"{self._repo_path}/commits/{sha}/check-runs",
            params={"per_page": _PER_PAGE},
        )
        return [CheckRun(**run) for run in data.get("check_runs") or []]

    async def list_check_suites(self, sha: str) -> List[CheckSuite]:
        data = await self._request(
            "GET",
            f"{self._repo_path}/commits/{sha}/check-suites",
            params={"per_page": _PER_PAGE},
        )
        suites = []
        for suite in data.get("check_suites") or []:
            app = suite.get("app") or {}
            suites.append(
                CheckSuite(
                    id=suite["id"],
                    head_sha=suite.get("head_sha"),
                    status=suite.get("status"),
                    conclusion=suite.get("conclusion"),
                    app_name=app.get("name"),
                )
            )
        return suites

    async def list_check_run_annotations(self, check_run_id: int) -> List[CheckAnnotation]:
        data = await self._request(
            "GET",
            f"{self._repo_path}/check-runs/{check_run_id}/annotations",
            params={"per_page": _PER_PAGE},
        )
        return [CheckAnnotation(**item) for item in data or []]

    async def list_open_pulls(self, branch: str) -> List[PullRequest]:
        """
        List open pull requests whose head is `branch` in this repository.

        Args:
            branch: Head branch name, without the owner prefix.
        """
        data = await self._request(
            "GET",
            f"{self._repo_path}/pulls",
            params={"state": "open", "head": f"{self.owner}:{branch}", "per_page": _PER_PAGE},
        )
        return [_pull_from_payload(item) for item in data or []]

    async def get_pull(self, number: int) -> PullRequest:
        """Fetch one pull request, including its computed mergeable state."""
        data = await self._request("GET", f"{self._repo_path}/pulls/{number}")
        return _pull_from_payload(data)

    async def compare_commits(self, base: str, head: str) -> CommitComparison:
        """
        Compare two commits.

        Returns:
            `status` is one of ahead, behind, identical or diverged, describing
            `head` relative to `base`.
        """
        data = await self._request(
            "GET",
            f"{self._repo_path}/compare/{base}...{head}",
            params={"per_page": 1},
        )
        return CommitComparison(
            status=str(data.get("status") or "unknown"),
            ahead_by=int(data.get("ahead_by") or 0),
            behind_by=int(data.get("behind_by") or 0),
        )


__all__ = [
    "CheckAnnotation",
    "CheckRun",
    "CheckRunOutput",
    "CheckSuite",
    "CommitComparison",
    "GitHubApiError",
    "GitHubClient",
    "PullRequest",
]
