"""Async client for the GitHub REST endpoints used to publish files and run workflows."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
import logging
from typing import Any
from urllib.parse import quote

import httpx

from iacpush.models.github import RepositoryInfo, RepositoryRef, WorkflowJob, WorkflowRun
from iacpush.models.settings import GitHubSettings
from iacpush.services.errors import (
    AccessDenied,
    AuthError,
    DispatchRejected,
    GitHubError,
    NotFound,
    RateLimited,
    RefUpdateRejected,
    TransientError,
)

LOGGER = logging.getLogger(__name__)

FILE_MODE = "100644"


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, Mapping):
        message = str(payload.get("message") or "").strip()
        errors = payload.get("errors")
        if isinstance(errors, Sequence) and not isinstance(errors, str):
            details = [
                str(item.get("message") or item.get("code") or item) if isinstance(item, Mapping) else str(item)
                for item in errors
            ]
            details = [detail for detail in details if detail]
            if details:
                message = f"{message} ({'; '.join(details)})" if message else "; ".join(details)
        if message:
            return message

    text = response.text.strip()
    return text[:200] if text else response.reason_phrase or f"HTTP {response.status_code}"


def _rate_limit_reset(response: httpx.Response) -> datetime | None:
    raw_value = response.headers.get("x-ratelimit-reset")
    if not raw_value:
        return None
    try:
        return datetime.fromtimestamp(int(raw_value), tz=timezone.utc)
    except (ValueError, OverflowError):
        return None


def error_for_response(response: httpx.Response) -> GitHubError:
    """Translate a non-success response into the matching :class:`GitHubError`."""

    status = response.status_code
    message = _error_message(response)

    if status == 401:
        return AuthError(message, status_code=status)
    if status == 429 or (
        status == 403
        and (response.headers.get("x-ratelimit-remaining") == "0" or "rate limit" in message.lower())
    ):
        return RateLimited(message, status_code=status, reset_at=_rate_limit_reset(response))
    if status == 403:
        return AccessDenied(message, status_code=status)
    if status == 404:
        return NotFound(message, status_code=status)
    if status in (409, 422):
        return DispatchRejected(message, status_code=status)
    if status >= 500:
        return TransientError(message, status_code=status)
    return GitHubError(message, status_code=status)


class GitHubClient:
    """Thin async wrapper over ``httpx.AsyncClient`` that speaks in domain types.

    Every request carries the configured timeout; nothing is retried here.
    Callers decide whether a :class:`TransientError` may be retried.
    """

    _API_VERSION = "2022-11-28"

    def __init__(
        self,
        settings: GitHubSettings,
        *,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=settings.api_url,
            headers=self._build_headers(settings),
            timeout=settings.timeout,
            transport=transport,
            follow_redirects=True,
        )

    @staticmethod
    def _build_headers(settings: GitHubSettings) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GitHubClient._API_VERSION,
            "User-Agent": settings.user_agent,
        }
        if settings.has_token:
            headers["Authorization"] = f"Bearer {settings.token}"
        return headers

    @property
    def settings(self) -> GitHubSettings:
        return self._settings

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Mapping[str, Any] | None = None,
    ) -> httpx.Response:
        if not self._settings.has_token:
            raise AuthError("No GitHub token configured; sign in before publishing or triggering workflows")

        try:
            response = await self._client.request(
                method,
                path,
                json=json,
                params=params,
                timeout=self._settings.timeout,
            )
        except httpx.TimeoutException as exc:
            raise TransientError(f"{method} {path} timed out after {self._settings.timeout}s") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"{method} {path} failed: {exc}") from exc

        if response.is_success:
            return response

        error = error_for_response(response)
        LOGGER.debug(
            "GitHub request failed",
            extra={
                "event": "github.request_failed",
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "error": error.kind,
            },
        )
        raise error

    @staticmethod
    def _repo_path(repository: RepositoryRef) -> str:
        return f"/repos/{quote(repository.owner, safe='')}/{quote(repository.name, safe='')}"

    # ------------------------------------------------------------------
    # Repository and Git data
    # ------------------------------------------------------------------
    async def get_repository(self, repository: RepositoryRef) -> RepositoryInfo:
        response = await self._request("GET", self._repo_path(repository))
        return RepositoryInfo.from_api(response.json())

    async def get_branch_head(self, repository: RepositoryRef, branch: str) -> str:
        """Return the commit sha the branch currently points at."""

        path = f"{self._repo_path(repository)}/git/ref/heads/{quote(branch, safe='/')}"
        response = await self._request("GET", path)
        return str(response.json()["object"]["sha"])

    async def get_commit_tree(self, repository: RepositoryRef, commit_sha: str) -> str:
        """Return the tree sha referenced by ``commit_sha``."""

        response = await self._request("GET", f"{self._repo_path(repository)}/git/commits/{commit_sha}")
        return str(response.json()["tree"]["sha"])

    async def create_blob(self, repository: RepositoryRef, encoded_content: str) -> str:
        response = await self._request(
            "POST",
            f"{self._repo_path(repository)}/git/blobs",
            json={"content": encoded_content, "encoding": "base64"},
        )
        return str(response.json()["sha"])

    async def create_tree(
        self,
        repository: RepositoryRef,
        base_tree: str,
        entries: Sequence[tuple[str, str]],
    ) -> str:
        """Create a tree layering ``(path, blob_sha)`` entries over ``base_tree``."""

        tree = [{"path": path, "mode": FILE_MODE, "type": "blob", "sha": sha} for path, sha in entries]
        response = await self._request(
            "POST",
            f"{self._repo_path(repository)}/git/trees",
            json={"base_tree": base_tree, "tree": tree},
        )
        return str(response.json()["sha"])

    async def create_commit(
        self,
        repository: RepositoryRef,
        *,
        message: str,
        tree_sha: str,
        parents: Sequence[str],
    ) -> str:
        response = await self._request(
            "POST",
            f"{self._repo_path(repository)}/git/commits",
            json={"message": message, "tree": tree_sha, "parents": list(parents)},
        )
        return str(response.json()["sha"])

    async def update_branch(self, repository: RepositoryRef, branch: str, commit_sha: str) -> None:
        """Move ``branch`` to ``commit_sha`` only if that is a fast-forward."""

        path = f"{self._repo_path(repository)}/git/refs/heads/{quote(branch, safe='/')}"
        try:
            await self._request("PATCH", path, json={"sha": commit_sha, "force": False})
        except DispatchRejected as exc:
            if isinstance(exc, RefUpdateRejected):
                raise
            raise RefUpdateRejected(exc.message, status_code=exc.status_code) from exc

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------
    async def create_workflow_dispatch(
        self,
        repository: RepositoryRef,
        workflow_id: str,
        *,
        ref: str,
        inputs: Mapping[str, str],
    ) -> None:
        path = f"{self._repo_path(repository)}/actions/workflows/{quote(workflow_id, safe='')}/dispatches"
        await self._request("POST", path, json={"ref": ref, "inputs": dict(inputs)})

    async def list_workflow_runs(
        self,
        repository: RepositoryRef,
        workflow_id: str,
        *,
        event: str | None = None,
        per_page: int = 10,
    ) -> list[WorkflowRun]:
        """Return the most recent runs for ``workflow_id``, newest first."""

        params: dict[str, Any] = {"per_page": per_page}
        if event:
            params["event"] = event
        path = f"{self._repo_path(repository)}/actions/workflows/{quote(workflow_id, safe='')}/runs"
        response = await self._request("GET", path, params=params)
        payload = response.json()
        return [WorkflowRun.from_api(item) for item in payload.get("workflow_runs", [])]

    async def get_workflow_run(self, repository: RepositoryRef, run_id: int) -> WorkflowRun:
        response = await self._request("GET", f"{self._repo_path(repository)}/actions/runs/{run_id}")
        return WorkflowRun.from_api(response.json())

    async def list_run_jobs(self, repository: RepositoryRef, run_id: int) -> list[WorkflowJob]:
        response = await self._request("GET", f"{self._repo_path(repository)}/actions/runs/{run_id}/jobs")
        return [WorkflowJob.from_api(item) for item in response.json().get("jobs", [])]

    async def download_run_logs(self, repository: RepositoryRef, run_id: int) -> bytes:
        """Return the zipped log archive for a run (GitHub answers with a redirect)."""

        response = await self._request("GET", f"{self._repo_path(repository)}/actions/runs/{run_id}/logs")
        return response.content


__all__ = ["FILE_MODE", "GitHubClient", "error_for_response"]
