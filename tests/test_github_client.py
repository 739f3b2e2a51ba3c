from __future__ import annotations

import base64
import json
from collections.abc import Callable

import allure
import httpx
import pytest

from ifi_worker.orchestrator.github import (
    GitHubClient,
    OpenedPullRequest,
    RepositoryMutationError,
    split_repo,
)

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Repository Mutation"),
]

Handler = Callable[[httpx.Request], httpx.Response]


class Recorder:
    def __init__(self, handler: Handler) -> None:
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def calls(self) -> list[tuple[str, str]]:
        return [(request.method, request.url.path) for request in self.requests]


def _client(handler: Handler) -> tuple[GitHubClient, Recorder]:
    recorder = Recorder(handler)
    client = GitHubClient(token="t0ken", transport=httpx.MockTransport(recorder))
    return client, recorder


def _body(request: httpx.Request) -> dict:
    return json.loads(request.content)


def test_ensure_branch_creates_ref_from_base_tip() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/git/ref/heads/feat/autogen-abc12345"):
            return httpx.Response(404, json={"message": "Not Found"})
        if path.endswith("/git/ref/heads/main"):
            return httpx.Response(200, json={"object": {"sha": "base-sha"}})
        if path.endswith("/git/refs"):
            return httpx.Response(201, json={"ref": "refs/heads/feat/autogen-abc12345"})
        return httpx.Response(500)

    client, recorder = _client(handler)
    with client:
        client.ensure_branch("o/r", "main", "feat/autogen-abc12345")

    assert recorder.calls() == [
        ("GET", "/repos/o/r/git/ref/heads/feat/autogen-abc12345"),
        ("GET", "/repos/o/r/git/ref/heads/main"),
        ("POST", "/repos/o/r/git/refs"),
    ]
    assert _body(recorder.requests[-1]) == {
        "ref": "refs/heads/feat/autogen-abc12345",
        "sha": "base-sha",
    }
    assert recorder.requests[0].headers["Authorization"] == "Bearer t0ken"


def test_ensure_branch_is_noop_when_branch_exists() -> None:
    client, recorder = _client(lambda _: httpx.Response(200, json={"object": {"sha": "x"}}))

    client.ensure_branch("o/r", "main", "feat/x")

    assert recorder.calls() == [("GET", "/repos/o/r/git/ref/heads/feat/x")]


def test_ensure_branch_tolerates_creation_race() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(422, json={"message": "Reference already exists"})
        if request.url.path.endswith("/main"):
            return httpx.Response(200, json={"object": {"sha": "base-sha"}})
        return httpx.Response(404, json={"message": "Not Found"})

    client, _ = _client(handler)

    client.ensure_branch("o/r", "main", "feat/x")


def test_ensure_branch_reports_missing_base_branch() -> None:
    client, _ = _client(lambda _: httpx.Response(404, json={"message": "Not Found"}))

    with pytest.raises(RepositoryMutationError, match="Not Found") as excinfo:
        client.ensure_branch("o/r", "develop", "feat/x")

    assert excinfo.value.status_code == 404


def test_create_file_without_existing_blob() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(404, json={"message": "Not Found"})
        return httpx.Response(201, json={"commit": {"sha": "commit-1"}})

    client, recorder = _client(handler)

    sha = client.create_or_update_file(
        "o/r",
        path=".ifi/autogen.patch",
        content="diff\n",
        branch="feat/x",
        message="feat(autogen): apply generated changes for job abc12345",
    )

    assert sha == "commit-1"
    lookup, write = recorder.requests
    assert lookup.url.path == "/repos/o/r/contents/.ifi/autogen.patch"
    assert lookup.url.params["ref"] == "feat/x"
    body = _body(write)
    assert base64.b64decode(body["content"]).decode("utf-8") == "diff\n"
    assert body["branch"] == "feat/x"
    assert "sha" not in body


def test_update_file_passes_existing_blob_sha() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json={"sha": "blob-1"})
        return httpx.Response(200, json={"commit": {"sha": "commit-2"}})

    client, recorder = _client(handler)

    client.create_or_update_file("o/r", path="a.patch", content="x", branch="b", message="m")

    assert _body(recorder.requests[-1])["sha"] == "blob-1"


def test_open_pull_request_as_draft() -> None:
    client, recorder = _client(
        lambda _: httpx.Response(
            201,
            json={"number": 7, "html_url": "https://github.com/o/r/pull/7"},
        ),
    )

    opened = client.open_pull_request(
        "o/r",
        head="feat/x",
        base="main",
        title="Automated change",
        body="body",
    )

    assert opened == OpenedPullRequest(number=7, url="https://github.com/o/r/pull/7")
    assert _body(recorder.requests[0])["draft"] is True


def test_open_pull_request_reuses_existing_open_one() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(
                422,
                json={
                    "message": "Validation Failed",
                    "errors": [{"message": "A pull request already exists for o:feat/x."}],
                },
            )
        return httpx.Response(
            200,
            json=[{"number": 3, "html_url": "https://github.com/o/r/pull/3"}],
        )

    client, recorder = _client(handler)

    opened = client.open_pull_request("o/r", head="feat/x", base="main", title="t", body="b")

    assert opened.number == 3
    listing = recorder.requests[-1]
    assert listing.url.params["head"] == "o:feat/x"
    assert listing.url.params["state"] == "open"


def test_rejected_pull_request_keeps_status_code() -> None:
    client, _ = _client(
        lambda _: httpx.Response(403, json={"message": "Resource not accessible by integration"}),
    )

    with pytest.raises(RepositoryMutationError) as excinfo:
        client.open_pull_request("o/r", head="feat/x", base="main", title="t", body="b")

    assert excinfo.value.status_code == 403
    assert str(excinfo.value) == "Resource not accessible by integration"


def test_transport_errors_are_wrapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client, _ = _client(handler)

    with pytest.raises(RepositoryMutationError, match="connection refused") as excinfo:
        client.ensure_branch("o/r", "main", "feat/x")

    assert excinfo.value.status_code is None


def test_split_repo_requires_owner_and_name() -> None:
    assert split_repo(" o/r ") == ("o", "r")
    for value in ("o", "o/r/x", "/r", "o/ "):
        with pytest.raises(ValueError, match="owner/name"):
            split_repo(value)
