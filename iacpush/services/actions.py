"""Per-slot coordinator that publishes, dispatches and tracks one action at a time."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import secrets
from typing import Protocol

from iacpush.models.github import CommitRequest, CommitResult, FileChange, RepositoryRef, WorkflowJob, WorkflowRun
from iacpush.models.operation import (
    Action,
    ConfirmationToken,
    InputValue,
    LogListener,
    OperationStatus,
    StatusLog,
    TrackedOperation,
    input_key,
    is_destructive,
    success_label,
    trigger_message,
)
from iacpush.services.dispatcher import DispatchReceipt
from iacpush.services.errors import (
    AlreadyRunning,
    ConfirmationRequired,
    GitHubError,
    InvalidTransition,
    RunFailed,
)
from iacpush.services.tracker import RunObserver

LOGGER = logging.getLogger(__name__)

DEFAULT_COMMIT_MESSAGE = "Update generated infrastructure files"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _describe(exc: BaseException) -> str:
    describe = getattr(exc, "describe", None)
    if callable(describe):
        return describe()
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


class SupportsPublishing(Protocol):
    async def publish(self, request: CommitRequest) -> CommitResult:
        """Publish files atomically."""


class SupportsDispatching(Protocol):
    async def dispatch(
        self,
        repository: RepositoryRef,
        workflow_id: str,
        inputs: Mapping[str, InputValue],
        *,
        ref: str | None = None,
    ) -> DispatchReceipt:
        """Trigger the workflow."""


class SupportsTracking(Protocol):
    def start(
        self,
        repository: RepositoryRef,
        workflow_id: str,
        dispatched_at: datetime,
        observer: RunObserver,
        *,
        label: str | None = None,
    ) -> object:
        """Begin polling for the dispatched run."""

    def cancel(self) -> None:
        """Stop polling immediately."""

    async def stop(self) -> None:
        """Stop polling and wait for the loop to exit."""

    async def wait(self) -> None:
        """Wait until polling ends on its own."""


@dataclass(slots=True)
class _PendingConfirmation:
    token: ConfirmationToken
    files: tuple[FileChange, ...]
    commit_message: str | None


class _OperationBinding:
    """Routes tracker events to one operation; events for a replaced operation are dropped."""

    __slots__ = ("_machine", "_operation")

    def __init__(self, machine: "ActionStateMachine", operation: TrackedOperation) -> None:
        self._machine = machine
        self._operation = operation

    def _current(self) -> bool:
        return self._machine.operation is self._operation

    def run_adopted(self, run: WorkflowRun) -> None:
        if not self._current():
            return
        operation = self._operation
        operation.run = run
        operation.log.append(f"Workflow started: {run.html_url}")
        operation.log.append(f"Monitoring {operation.action.value} progress")

    def run_progressed(self, run: WorkflowRun, message: str) -> None:
        if not self._current():
            return
        self._operation.run = run
        self._operation.log.append_status(message)

    def run_completed(self, run: WorkflowRun, failed_jobs: list[WorkflowJob]) -> None:
        if not self._current():
            return
        operation = self._operation
        operation.run = run
        action = operation.action
        if run.succeeded:
            self._machine._finish(operation, OperationStatus.SUCCESS, f"{success_label(action)} completed successfully")
            return

        for job in failed_jobs:
            steps = f" at step(s): {', '.join(job.failed_steps)}" if job.failed_steps else ""
            operation.log.append(f"Job '{job.name}' {job.conclusion}{steps}")
        self._machine._finish(
            operation,
            OperationStatus.ERROR,
            f"{action.value} failed: {run.conclusion or 'no conclusion'}",
            error=RunFailed(run),
        )

    def tracking_failed(self, error: Exception) -> None:
        if not self._current():
            return
        operation = self._operation
        self._machine._finish(
            operation,
            OperationStatus.ERROR,
            f"{operation.action.value} tracking failed: {_describe(error)}",
            error=error,
        )


class ActionStateMachine:
    """Enforce idle → deploying → success|error for one action slot.

    Destructive actions are only reachable through
    :meth:`request_confirmation` followed by :meth:`confirm`; :meth:`trigger`
    refuses them.
    """

    def __init__(
        self,
        *,
        repository: RepositoryRef,
        workflow_id: str,
        dispatcher: SupportsDispatching,
        tracker: SupportsTracking,
        publisher: SupportsPublishing | None = None,
        ref: str | None = None,
        action_type: type | tuple[type, ...] | None = None,
        confirmation_ttl: float = 300.0,
        clock: Callable[[], datetime] = _utcnow,
        log_listener: LogListener | None = None,
    ) -> None:
        self._repository = repository
        self._workflow_id = workflow_id
        self._dispatcher = dispatcher
        self._tracker = tracker
        self._publisher = publisher
        self._ref = ref
        self._action_type = action_type
        self._confirmation_ttl = timedelta(seconds=confirmation_ttl)
        self._clock = clock
        self._log_listener = log_listener
        self._pending: dict[str, _PendingConfirmation] = {}
        self._operation = self._new_operation()

    @property
    def operation(self) -> TrackedOperation:
        return self._operation

    @property
    def status(self) -> OperationStatus:
        return self._operation.status

    @property
    def repository(self) -> RepositoryRef:
        return self._repository

    @property
    def workflow_id(self) -> str:
        return self._workflow_id

    # ------------------------------------------------------------------
    # Public lifecycle
    # ------------------------------------------------------------------
    async def trigger(
        self,
        action: Action,
        inputs: Mapping[str, InputValue] | None = None,
        *,
        files: Sequence[FileChange] | None = None,
        commit_message: str | None = None,
    ) -> TrackedOperation:
        """Publish ``files`` (if any), dispatch the workflow and start tracking."""

        self._check_action(action)
        if is_destructive(action):
            raise ConfirmationRequired(action)
        return await self._start(action, dict(inputs or {}), tuple(files or ()), commit_message)

    def request_confirmation(
        self,
        action: Action,
        inputs: Mapping[str, InputValue] | None = None,
        *,
        files: Sequence[FileChange] | None = None,
        commit_message: str | None = None,
    ) -> ConfirmationToken:
        """Issue a single-use token that :meth:`confirm` exchanges for a trigger."""

        self._check_action(action)
        self._prune_expired()
        token = ConfirmationToken(
            token=secrets.token_urlsafe(16),
            action=action,
            inputs=dict(inputs or {}),
            description=self._confirmation_text(action),
            expires_at=self._clock() + self._confirmation_ttl,
        )
        self._pending[token.token] = _PendingConfirmation(
            token=token,
            files=tuple(files or ()),
            commit_message=commit_message,
        )
        return token

    async def confirm(self, token: ConfirmationToken | str) -> TrackedOperation:
        """Run the action a token was issued for; tokens are consumed on use."""

        key = token.token if isinstance(token, ConfirmationToken) else token
        pending = self._pending.get(key)
        if pending is None:
            raise ConfirmationRequired(None, "Unknown or already used confirmation token")
        if self._operation.status is OperationStatus.DEPLOYING:
            raise AlreadyRunning(self._operation.action)

        del self._pending[key]
        if self._clock() >= pending.token.expires_at:
            raise ConfirmationRequired(
                pending.token.action, "Confirmation token expired; request a new confirmation"
            )
        return await self._start(
            pending.token.action,
            dict(pending.token.inputs),
            pending.files,
            pending.commit_message,
        )

    def reset(self) -> TrackedOperation:
        """Return a finished slot to idle, dropping its run and log."""

        status = self._operation.status
        if not status.is_terminal:
            raise InvalidTransition(f"Cannot reset while the operation is {status.value}")
        self._tracker.cancel()
        self._operation = self._new_operation()
        return self._operation

    async def wait(self) -> TrackedOperation:
        """Wait for tracking to end and return the operation."""

        await self._tracker.wait()
        return self._operation

    async def aclose(self) -> None:
        await self._tracker.stop()
        self._operation.polling = False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _new_operation(self, action: Action | None = None) -> TrackedOperation:
        return TrackedOperation(
            action=action,
            log=StatusLog(clock=self._clock, listener=self._log_listener),
        )

    def _check_action(self, action: Action) -> None:
        if self._action_type is not None and not isinstance(action, self._action_type):
            raise ValueError(f"Action {action.value!r} is not supported by workflow {self._workflow_id}")
        # Raises TypeError for anything outside the action union.
        input_key(action)

    def _confirmation_text(self, action: Action) -> str:
        text = f"Run {action.value} via {self._workflow_id} on {self._repository.full_name}"
        if is_destructive(action):
            text += "; this destroys live resources and cannot be undone"
        return text

    def _prune_expired(self) -> None:
        now = self._clock()
        for key in [key for key, pending in self._pending.items() if pending.token.expires_at <= now]:
            del self._pending[key]

    async def _start(
        self,
        action: Action,
        inputs: dict[str, InputValue],
        files: tuple[FileChange, ...],
        commit_message: str | None,
    ) -> TrackedOperation:
        current = self._operation
        if current.status is OperationStatus.DEPLOYING:
            raise AlreadyRunning(current.action)
        if current.status.is_terminal:
            raise InvalidTransition(
                f"Previous {current.action.value if current.action else 'operation'} ended with "
                f"{current.status.value}; reset before triggering again"
            )
        if files and self._publisher is None:
            raise ValueError("Files were supplied but no publisher is configured")

        inputs[input_key(action)] = action.value
        operation = self._new_operation(action)
        operation.status = OperationStatus.DEPLOYING
        operation.inputs = inputs
        operation.started_at = self._clock()
        self._operation = operation
        operation.log.append(trigger_message(action))

        try:
            if files:
                operation.log.append(f"Publishing {len(files)} file(s) to {self._repository.full_name}")
                operation.commit = await self._publisher.publish(
                    CommitRequest(
                        repository=self._repository,
                        files=files,
                        message=commit_message or DEFAULT_COMMIT_MESSAGE,
                        branch=self._ref,
                    )
                )
                if operation.commit.updated:
                    operation.log.append(
                        f"Committed {operation.commit.commit_sha[:7]} to {operation.commit.branch}"
                    )
                else:
                    operation.log.append("No file changes to commit")

            receipt = await self._dispatcher.dispatch(
                self._repository,
                self._workflow_id,
                inputs,
                ref=self._ref,
            )
        except BaseException as exc:
            LOGGER.warning(
                "Failed to trigger %s",
                action.value,
                exc_info=not isinstance(exc, (GitHubError, ValueError, asyncio.CancelledError)),
                extra={
                    "event": "action.trigger_failed",
                    "repository": self._repository.full_name,
                    "workflow_id": self._workflow_id,
                    "error": type(exc).__name__,
                },
            )
            if operation is self._operation:
                self._finish(
                    operation,
                    OperationStatus.ERROR,
                    f"Failed to trigger {action.value}: {_describe(exc)}",
                    error=exc,
                )
            raise

        operation.log.append("Workflow triggered successfully")
        operation.polling = True
        self._tracker.start(
            self._repository,
            self._workflow_id,
            receipt.dispatched_at,
            _OperationBinding(self, operation),
            label=action.value,
        )
        LOGGER.info(
            "Triggered %s",
            action.value,
            extra={
                "event": "action.triggered",
                "repository": self._repository.full_name,
                "workflow_id": self._workflow_id,
                "ref": receipt.ref,
            },
        )
        return operation

    def _finish(
        self,
        operation: TrackedOperation,
        status: OperationStatus,
        message: str,
        *,
        error: BaseException | None = None,
    ) -> None:
        if operation.status is not OperationStatus.DEPLOYING:
            raise InvalidTransition(f"Cannot move from {operation.status.value} to {status.value}")
        operation.status = status
        operation.error = error
        operation.polling = False
        operation.finished_at = self._clock()
        operation.log.append(message)
        LOGGER.info(
            message,
            extra={
                "event": "action.finished",
                "repository": self._repository.full_name,
                "workflow_id": self._workflow_id,
                "status": status.value,
            },
        )


__all__ = ["ActionStateMachine", "DEFAULT_COMMIT_MESSAGE"]
