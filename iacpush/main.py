"""JSON API for publishing generated files and driving deployment workflows"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import logging
from typing import Any, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, field_validator

from iacpush.models.github import CommitRequest, FileChange, RepositoryRef
from iacpush.models.operation import parse_action
from iacpush.models.settings import GitHubSettings
from iacpush.services.actions import ActionStateMachine
from iacpush.services.errors import (
    AccessDenied,
    AlreadyRunning,
    AuthError,
    ConfirmationRequired,
    DispatchRejected,
    GitHubError,
    InvalidTransition,
    NotFound,
    OperationError,
    RateLimited,
    RefUpdateRejected,
    TransientError,
)
from iacpush.services.registry import OperationRegistry, OperationSlot

logger = logging.getLogger(__name__)

InputPayload = Union[bool, int, float, str, None]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    registry = OperationRegistry.from_settings(GitHubSettings.from_env())
    app.state.registry = registry
    try:
        yield
    finally:
        await registry.aclose()


app = FastAPI(title="iacpush", lifespan=lifespan)


def get_registry(request: Request) -> OperationRegistry:
    """FastAPI dependency returning the registry created at startup."""

    return request.app.state.registry


def _build_debug_detail(exc: Exception) -> dict[str, str]:
    """Return a serialisable mapping describing ``exc`` for debugging."""

    message = str(exc).strip()
    return {
        "type": type(exc).__name__,
        "message": message or "No exception message provided.",
    }


def _status_for(exc: Exception) -> int:
    if isinstance(exc, AuthError):
        return 401
    if isinstance(exc, RateLimited):
        return 429
    if isinstance(exc, AccessDenied):
        return 403
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, RefUpdateRejected):
        return 409
    if isinstance(exc, DispatchRejected):
        return 422
    if isinstance(exc, TransientError):
        return 503
    if isinstance(exc, (AlreadyRunning, InvalidTransition)):
        return 409
    if isinstance(exc, ConfirmationRequired):
        return 428
    if isinstance(exc, (ValueError, TypeError)):
        return 400
    return 502


def _http_error(exc: Exception, message: str) -> HTTPException:
    status_code = _status_for(exc)
    detail: dict[str, Any] = {"message": message, "debug": _build_debug_detail(exc)}
    if isinstance(exc, RateLimited) and exc.reset_at is not None:
        detail["reset_at"] = exc.reset_at.isoformat()
    logger.info(
        message,
        extra={"event": "api.error", "status_code": status_code, "error": type(exc).__name__},
    )
    return HTTPException(status_code=status_code, detail=detail)


def _repository(owner: str, repo: str) -> RepositoryRef:
    try:
        return RepositoryRef(owner=owner, name=repo)
    except ValueError as exc:
        raise _http_error(exc, "Invalid repository name") from exc


def _slot(value: str) -> OperationSlot:
    try:
        return OperationSlot(value)
    except ValueError as exc:
        raise HTTPException(
            status_code=404,
            detail={"message": f"Unknown operation slot {value!r}", "debug": _build_debug_detail(exc)},
        ) from exc


class FileChangePayload(BaseModel):
    path: str = Field(..., description="Repository-relative file path.")
    content: str = Field(..., description="Full UTF-8 file content.")


class CommitPayload(BaseModel):
    """Files to publish as a single commit."""

    message: str = Field(..., description="Commit message.")
    branch: Optional[str] = Field(default=None, description="Target branch; defaults to the repository default.")
    files: list[FileChangePayload] = Field(default_factory=list)

    @field_validator("message")
    @classmethod
    def _ensure_message_not_empty(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Commit message must not be empty.")
        return cleaned

    def to_request(self, repository: RepositoryRef) -> CommitRequest:
        return CommitRequest(
            repository=repository,
            files=[FileChange(path=item.path, content=item.content) for item in self.files],
            message=self.message,
            branch=self.branch,
        )


class ActionPayload(BaseModel):
    """Action request shared by the trigger and confirmation endpoints."""

    action: str = Field(..., description="Action name, e.g. plan, apply, deploy.")
    inputs: dict[str, InputPayload] = Field(default_factory=dict)
    files: Optional[list[FileChangePayload]] = None
    commit_message: Optional[str] = None

    def file_changes(self) -> list[FileChange]:
        return [FileChange(path=item.path, content=item.content) for item in self.files or []]


def _machine(registry: OperationRegistry, owner: str, repo: str, slot: str) -> ActionStateMachine:
    return registry.machine(_repository(owner, repo), _slot(slot))


@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.get("/api/repos/{owner}/{repo}/access")
async def repository_access(
    owner: str,
    repo: str,
    registry: OperationRegistry = Depends(get_registry),
) -> dict[str, Any]:
    """Report whether the configured credential can push to the repository."""

    repository = _repository(owner, repo)
    try:
        has_access = await registry.check_access(repository)
    except GitHubError as exc:
        raise _http_error(exc, f"Could not check access to {repository.full_name}") from exc
    return {"repository": repository.full_name, "has_access": has_access}


@app.get("/api/repos/{owner}/{repo}/permissions")
async def repository_permissions(
    owner: str,
    repo: str,
    registry: OperationRegistry = Depends(get_registry),
) -> dict[str, Any]:
    """Return the default branch and the permission map granted to the credential."""

    repository = _repository(owner, repo)
    try:
        report = await registry.describe_access(repository)
    except GitHubError as exc:
        raise _http_error(exc, f"Could not read permissions for {repository.full_name}") from exc
    return report.to_dict()


@app.post("/api/repos/{owner}/{repo}/commits")
async def publish_files(
    owner: str,
    repo: str,
    payload: CommitPayload,
    registry: OperationRegistry = Depends(get_registry),
) -> dict[str, Any]:
    repository = _repository(owner, repo)
    try:
        result = await registry.publish(payload.to_request(repository))
    except (GitHubError, ValueError) as exc:
        raise _http_error(exc, f"Could not publish files to {repository.full_name}") from exc
    return result.to_dict()


@app.get("/api/repos/{owner}/{repo}/operations/{slot}")
async def operation_status(
    owner: str,
    repo: str,
    slot: str,
    registry: OperationRegistry = Depends(get_registry),
) -> dict[str, Any]:
    """Return the current operation snapshot for a slot, including its log."""

    machine = _machine(registry, owner, repo, slot)
    snapshot = machine.operation.to_dict()
    snapshot["workflow_id"] = machine.workflow_id
    return snapshot


@app.post("/api/repos/{owner}/{repo}/operations/{slot}/trigger", status_code=202)
async def trigger_operation(
    owner: str,
    repo: str,
    slot: str,
    payload: ActionPayload,
    registry: OperationRegistry = Depends(get_registry),
) -> dict[str, Any]:
    machine = _machine(registry, owner, repo, slot)
    try:
        action = parse_action(payload.action)
        operation = await machine.trigger(
            action,
            payload.inputs,
            files=payload.file_changes(),
            commit_message=payload.commit_message,
        )
    except (GitHubError, OperationError, ValueError, TypeError) as exc:
        raise _http_error(exc, f"Could not trigger {payload.action}") from exc
    return operation.to_dict()


@app.post("/api/repos/{owner}/{repo}/operations/{slot}/confirmations", status_code=201)
async def request_confirmation(
    owner: str,
    repo: str,
    slot: str,
    payload: ActionPayload,
    registry: OperationRegistry = Depends(get_registry),
) -> dict[str, Any]:
    """Issue a single-use token for the requested action."""

    machine = _machine(registry, owner, repo, slot)
    try:
        token = machine.request_confirmation(
            parse_action(payload.action),
            payload.inputs,
            files=payload.file_changes(),
            commit_message=payload.commit_message,
        )
    except (ValueError, TypeError) as exc:
        raise _http_error(exc, f"Could not prepare {payload.action}") from exc
    return token.to_dict()


@app.post("/api/repos/{owner}/{repo}/operations/{slot}/confirmations/{token}", status_code=202)
async def confirm_operation(
    owner: str,
    repo: str,
    slot: str,
    token: str,
    registry: OperationRegistry = Depends(get_registry),
) -> dict[str, Any]:
    machine = _machine(registry, owner, repo, slot)
    try:
        operation = await machine.confirm(token)
    except (GitHubError, OperationError, ValueError) as exc:
        raise _http_error(exc, "Could not run the confirmed action") from exc
    return operation.to_dict()


@app.post("/api/repos/{owner}/{repo}/operations/{slot}/reset")
async def reset_operation(
    owner: str,
    repo: str,
    slot: str,
    registry: OperationRegistry = Depends(get_registry),
) -> dict[str, Any]:
    machine = _machine(registry, owner, repo, slot)
    try:
        operation = machine.reset()
    except InvalidTransition as exc:
        raise _http_error(exc, "Operation is still running") from exc
    return operation.to_dict()
