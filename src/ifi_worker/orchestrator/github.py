"""Remote repository mutation client for the GitHub REST API."""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 2
API_VERSION = "2022-11-28"
USER_AGENT = "ifi-worker/0.1"

_REF_EXISTS_MARKER = "reference already exists"
_PR_EXISTS_MARKER = "a pull request already exists"


class RepositoryMutationError(RuntimeError):
    """Branch, commit or pull-request operation was rejected or unreachable."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True, frozen=True)
class OpenedPullRequest:
    number: int
    url: str


class RepositoryMutationClient(Protocol):
    """Operations the pipeline performs against one ``owner/name`` repository."""

    def ensure_branch(self, repo: str, base_branch: str, feature_branch: str) -> None: ...

    def create_or_update_file(
        self,
        repo: str,
        *,
        path: str,
        content: str,
        branch: str,
        message: str,
    ) -> str | None: ...

    def open_pull_request(
        self,
        repo: str,
        *,
        head: str,
        base: str,
        title: str,
        body: str,
        draft: bool = True,
    ) -> OpenedPullRequest: ...


def split_repo(repo: str) -> tuple[str, str]:
    """Split ``owner/name`` into its parts, rejecting anything else."""

    parts = repo.strip().split("/")
    if len(parts) != 2 or not all(part.strip() for part in parts):
        raise ValueError(f"Repository must look like owner/name, got {repo!r}")
    return parts[0].strip(), parts[1].strip()


class GitHubClient:
    """Thin httpx wrapper over the git refs, contents and pulls endpoints."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        token: str | None,
        api_url: str = DEFAULT_API_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": API_VERSION,
            "User-Agent": USER_AGENT,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=api_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def ensure_branch(self, repo: str, base_branch: str, feature_branch: str) -> None:
        """Create ``feature_branch`` from the tip of ``base_branch`` unless it exists."""

        prefix = _repo_prefix(repo)
        existing = self._request("GET", f"{prefix}/git/ref/heads/{_quote(feature_branch)}")
        if existing.status_code == httpx.codes.OK:
            logger.debug("Branch %s already exists in %s", feature_branch, repo)
            return
        if existing.status_code != httpx.codes.NOT_FOUND:
            raise _response_error(existing, action=f"look up branch {feature_branch}")

        base = self._request("GET", f"{prefix}/git/ref/heads/{_quote(base_branch)}")
        if base.status_code != httpx.codes.OK:
            raise _response_error(base, action=f"look up base branch {base_branch}")
        sha = _json(base).get("object", {}).get("sha")
        if not isinstance(sha, str) or not sha:
            raise RepositoryMutationError(
                f"Base branch {base_branch} response has no commit sha",
                status_code=base.status_code,
            )

        created = self._request(
            "POST",
            f"{prefix}/git/refs",
            json={"ref": f"refs/heads/{feature_branch}", "sha": sha},
        )
        if created.status_code == httpx.codes.CREATED:
            logger.info("Created branch %s from %s in %s", feature_branch, base_branch, repo)
            return
        if (
            created.status_code == httpx.codes.UNPROCESSABLE_ENTITY
            and _REF_EXISTS_MARKER in _error_text(created).lower()
        ):
            return
        raise _response_error(created, action=f"create branch {feature_branch}")

    def create_or_update_file(
        self,
        repo: str,
        *,
        path: str,
        content: str,
        branch: str,
        message: str,
    ) -> str | None:
        """Write ``content`` at ``path`` on ``branch``; returns the commit sha."""

        url = f"{_repo_prefix(repo)}/contents/{_quote(path)}"
        current = self._request("GET", url, params={"ref": branch})
        blob_sha: str | None = None
        if current.status_code == httpx.codes.OK:
            payload = _json(current)
            blob_sha = payload.get("sha") if isinstance(payload.get("sha"), str) else None
        elif current.status_code != httpx.codes.NOT_FOUND:
            raise _response_error(current, action=f"read {path}")

        body: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        if blob_sha:
            body["sha"] = blob_sha
        written = self._request("PUT", url, json=body)
        if written.status_code not in (httpx.codes.OK, httpx.codes.CREATED):
            raise _response_error(written, action=f"write {path}")
        commit_sha = _json(written).get("commit", {}).get("sha")
        return commit_sha if isinstance(commit_sha, str) else None

    def open_pull_request(
        self,
        repo: str,
        *,
        head: str,
        base: str,
        title: str,
        body: str,
        draft: bool = True,
    ) -> OpenedPullRequest:
        """Open a pull request, or return the open one for the same head branch."""

        owner, _ = split_repo(repo)
        prefix = _repo_prefix(repo)
        response = self._request(
            "POST",
            f"{prefix}/pulls",
            json={"title": title, "head": head, "base": base, "body": body, "draft": draft},
        )
        if response.status_code == httpx.codes.CREATED:
            return _opened_pull_request(response)
        if (
            response.status_code == httpx.codes.UNPROCESSABLE_ENTITY
            and _PR_EXISTS_MARKER in _error_text(response).lower()
        ):
            existing = self._find_open_pull_request(prefix=prefix, owner=owner, head=head, base=base)
            if existing is not None:
                logger.info("Reusing open pull request #%s for %s", existing.number, head)
                return existing
        raise _response_error(response, action=f"open pull request for {head}")

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GitHubClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _find_open_pull_request(
        self,
        *,
        prefix: str,
        owner: str,
        head: str,
        base: str,
    ) -> OpenedPullRequest | None:
        response = self._request(
            "GET",
            f"{prefix}/pulls",
            params={"head": f"{owner}:{head}", "base": base, "state": "open"},
        )
        if response.status_code != httpx.codes.OK:
            raise _response_error(response, action=f"list pull requests for {head}")
        items = response.json()
        if not isinstance(items, list) or not items:
            return None
        first = items[0]
        return OpenedPullRequest(number=int(first["number"]), url=str(first["html_url"]))

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._client.request(method, url, **kwargs)
        except httpx.HTTPError as error:
            raise RepositoryMutationError(f"GitHub request failed: {error}") from error


def _repo_prefix(repo: str) -> str:
    owner, name = split_repo(repo)
    return f"/repos/{quote(owner, safe='')}/{quote(name, safe='')}"


def _quote(value: str) -> str:
    return quote(value, safe="/")


def _json(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _error_message(response: httpx.Response) -> str:
    message = _json(response).get("message")
    if isinstance(message, str) and message:
        return message
    return f"HTTP {response.status_code}"


def _error_text(response: httpx.Response) -> str:
    """Top-level message plus nested validation error messages."""

    payload = _json(response)
    parts = [_error_message(response)]
    for item in payload.get("errors") or []:
        if isinstance(item, dict) and isinstance(item.get("message"), str):
            parts.append(item["message"])
    return " ".join(parts)


def _response_error(response: httpx.Response, *, action: str) -> RepositoryMutationError:
    message = _error_message(response)
    logger.warning("GitHub refused to %s: %s (HTTP %s)", action, message, response.status_code)
    return RepositoryMutationError(message, status_code=response.status_code)


def _opened_pull_request(response: httpx.Response) -> OpenedPullRequest:
    payload = _json(response)
    number = payload.get("number")
    url = payload.get("html_url")
    if not isinstance(number, int) or not isinstance(url, str):
        raise RepositoryMutationError(
            "Pull request response is missing number or html_url",
            status_code=response.status_code,
        )
    return OpenedPullRequest(number=number, url=url)
