import httpx
import pytest

from stepcat.integrations.github.client import GitHubApiError, GitHubClient


def _client(handler) -> GitHubClient:
    return GitHubClient(
        "acme",
        "widgets",
        "tok",
        api_url="https://api.example.test/",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_list_check_runs_sends_auth_and_decodes() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "total_count": 1,
                "check_runs": [
                    {
                        "id": 11,
                        "name": "tests",
                        "head_sha": "abc",
                        "status": "completed",
                        "conclusion": "failure",
                        "details_url": "https://ci/11",
                        "output": {"title": "2 failed", "summary": "s", "annotations_count": 1},
                        "app": {"name": "GitHub Actions"},
                    }
                ],
            },
        )

    async with _client(handler) as client:
        runs = await client.list_check_runs("abc")

    assert seen[0].url.path == "/repos/acme/widgets/commits/abc/check-runs"
    assert seen[0].headers["Authorization"] == "Bearer tok"
    assert runs[0].conclusion == "failure"
    assert runs[0].output.title == "2 failed"
    assert runs[0].output.annotations_count == 1


@pytest.mark.asyncio
async def test_list_check_suites_flattens_app_name() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "check_suites": [
                    {
                        "id": 5,
                        "head_sha": "abc",
                        "status": "queued",
                        "conclusion": None,
                        "app": {"name": "CircleCI"},
                    }
                ]
            },
        )

    async with _client(handler) as client:
        suites = await client.list_check_suites("abc")
    assert suites[0].status == "queued"
    assert suites[0].app_name == "CircleCI"


@pytest.mark.asyncio
async def test_pull_requests_and_compare() -> None:
    pull = {
        "number": 7,
        "head": {"sha": "def", "ref": "feature"},
        "base": {"ref": "main"},
        "mergeable": False,
        "mergeable_state": "dirty",
        "html_url": "https://github.com/acme/widgets/pull/7",
    }

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/pulls"):
            assert request.url.params["head"] == "acme:feature"
            assert request.url.params["state"] == "open"
            return httpx.Response(200, json=[pull])
        if request.url.path.endswith("/pulls/7"):
            return httpx.Response(200, json=pull)
        assert request.url.path.endswith("/compare/abc...def")
        return httpx.Response(200, json={"status": "ahead", "ahead_by": 2, "behind_by": 0})

    async with _client(handler) as client:
        pulls = await client.list_open_pulls("feature")
        single = await client.get_pull(7)
        comparison = await client.compare_commits("abc", "def")

    assert pulls[0].head_sha == "def"
    assert pulls[0].base_ref == "main"
    assert single.has_merge_conflict is True
    assert comparison.status == "ahead"
    assert comparison.ahead_by == 2


@pytest.mark.asyncio
async def test_annotations() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/repos/acme/widgets/check-runs/11/annotations"
        return httpx.Response(
            200,
            json=[
                {
                    "path": "src/app.py",
                    "start_line": 3,
                    "annotation_level": "failure",
                    "message": "E501 line too long",
                }
            ],
        )

    async with _client(handler) as client:
        annotations = await client.list_check_run_annotations(11)
    assert annotations[0].path == "src/app.py"
    assert annotations[0].start_line == 3


@pytest.mark.asyncio
async def test_error_status_raises_api_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "Not Found"})

    async with _client(handler) as client:
        with pytest.raises(GitHubApiError) as excinfo:
            await client.get_pull(1)
    assert excinfo.value.status_code == 404
    assert excinfo.value.path == "/repos/acme/widgets/pulls/1"
    assert "Not Found" in str(excinfo.value)


def test_mergeable_states() -> None:
    from stepcat.integrations.github.client import PullRequest

    clean = PullRequest(number=1, head_sha="a", head_ref="b", base_ref="main", mergeable=True)
    unknown = PullRequest(number=1, head_sha="a", head_ref="b", base_ref="main")
    assert clean.has_merge_conflict is False
    assert unknown.has_merge_conflict is False
