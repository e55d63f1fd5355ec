"""Lifecycle models for actions that dispatch and track a workflow run."""
from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from iacpush.models.github import CommitResult, WorkflowRun


InputValue = Union[str, int, float, bool, None]
WorkflowInputs = Mapping[str, InputValue]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InfraAction(str, Enum):
    """Terraform operations run by the infrastructure workflow."""

    PLAN = "plan"
    APPLY = "apply"
    DESTROY = "destroy"


class AppAction(str, Enum):
    """Kubernetes operations run by the application workflow."""

    DEPLOY = "deploy"
    UPDATE = "update"
    DELETE = "delete"
    STATUS = "status"


Action = Union[InfraAction, AppAction]

_INFRA_TRIGGER_MESSAGES = {
    InfraAction.PLAN: "Triggering Terraform plan",
    InfraAction.APPLY: "Triggering infrastructure deployment",
    InfraAction.DESTROY: "Triggering infrastructure destruction",
}
_INFRA_SUCCESS_LABELS = {
    InfraAction.PLAN: "Terraform plan",
    InfraAction.APPLY: "Terraform apply",
    InfraAction.DESTROY: "Terraform destroy",
}
_APP_TRIGGER_MESSAGES = {
    AppAction.DEPLOY: "Triggering application deployment",
    AppAction.UPDATE: "Triggering application update",
    AppAction.DELETE: "Triggering application deletion",
    AppAction.STATUS: "Checking deployment status",
}
_APP_SUCCESS_LABELS = {
    AppAction.DEPLOY: "Application deploy",
    AppAction.UPDATE: "Application update",
    AppAction.DELETE: "Application delete",
    AppAction.STATUS: "Status check",
}


def input_key(action: Action) -> str:
    """Return the workflow input that carries the action tag."""

    if isinstance(action, InfraAction):
        return "terraform_action"
    if isinstance(action, AppAction):
        return "k8s_action"
    raise TypeError(f"Unsupported action: {action!r}")


def is_destructive(action: Action) -> bool:
    if isinstance(action, InfraAction):
        return action is InfraAction.DESTROY
    if isinstance(action, AppAction):
        return action is AppAction.DELETE
    raise TypeError(f"Unsupported action: {action!r}")


def trigger_message(action: Action) -> str:
    if isinstance(action, InfraAction):
        return _INFRA_TRIGGER_MESSAGES[action]
    if isinstance(action, AppAction):
        return _APP_TRIGGER_MESSAGES[action]
    raise TypeError(f"Unsupported action: {action!r}")


def success_label(action: Action) -> str:
    """Return the human label used in the final success line, e.g. ``"Terraform plan"``."""

    if isinstance(action, InfraAction):
        return _INFRA_SUCCESS_LABELS[action]
    if isinstance(action, AppAction):
        return _APP_SUCCESS_LABELS[action]
    raise TypeError(f"Unsupported action: {action!r}")


def parse_action(value: str) -> Action:
    """Resolve an action name across both action families."""

    cleaned = value.strip().lower()
    for family in (InfraAction, AppAction):
        try:
            return family(cleaned)
        except ValueError:
            continue
    raise ValueError(f"Unknown action: {value!r}")


class OperationStatus(str, Enum):
    IDLE = "idle"
    DEPLOYING = "deploying"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.SUCCESS, OperationStatus.ERROR)


@dataclass(slots=True, frozen=True)
class LogLine:
    """One user-facing progress message."""

    timestamp: datetime
    message: str
    is_status: bool = False

    def render(self) -> str:
        return f"{self.timestamp.strftime('%H:%M:%S')} - {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "message": self.message}


LogListener = Callable[[LogLine], None]


class StatusLog:
    """Append-only list of log lines that never repeats a status message back to back."""

    __slots__ = ("_lines", "_clock", "_listener")

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = _utcnow,
        listener: LogListener | None = None,
    ) -> None:
        self._lines: list[LogLine] = []
        self._clock = clock
        self._listener = listener

    def append(self, message: str) -> LogLine:
        """Record a free-form message."""

        return self._record(LogLine(timestamp=self._clock(), message=message))

    def append_status(self, message: str) -> LogLine | None:
        """Record a status message unless it equals the previous line; return the new line."""

        if self._lines and self._lines[-1].message == message:
            return None
        return self._record(LogLine(timestamp=self._clock(), message=message, is_status=True))

    def _record(self, line: LogLine) -> LogLine:
        self._lines.append(line)
        if self._listener is not None:
            self._listener(line)
        return line

    @property
    def lines(self) -> tuple[LogLine, ...]:
        return tuple(self._lines)

    @property
    def last(self) -> LogLine | None:
        return self._lines[-1] if self._lines else None

    def messages(self) -> list[str]:
        return [line.message for line in self._lines]

    def rendered(self) -> list[str]:
        return [line.render() for line in self._lines]

    def __len__(self) -> int:
        return len(self._lines)

    def __iter__(self) -> Iterator[LogLine]:
        return iter(tuple(self._lines))


@dataclass(slots=True)
class TrackedOperation:
    """One logical action from trigger to terminal state."""

    action: Action | None = None
    status: OperationStatus = OperationStatus.IDLE
    run: WorkflowRun | None = None
    log: StatusLog = field(default_factory=StatusLog)
    polling: bool = False
    inputs: dict[str, InputValue] = field(default_factory=dict)
    commit: CommitResult | None = None
    error: BaseException | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def conclusion(self) -> str | None:
        return self.run.conclusion if self.run is not None else None

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-ready snapshot suitable for a history store."""

        error_payload: dict[str, Any] | None = None
        if self.error is not None:
            error_payload = {
                "type": type(self.error).__name__,
                "message": getattr(self.error, "message", None) or str(self.error),
            }
            conclusion = getattr(self.error, "conclusion", None)
            if conclusion is not None:
                error_payload["conclusion"] = conclusion

        return {
            "action": self.action.value if self.action is not None else None,
            "status": self.status.value,
            "polling": self.polling,
            "inputs": dict(self.inputs),
            "run": self.run.to_dict() if self.run is not None else None,
            "commit": self.commit.to_dict() if self.commit is not None else None,
            "error": error_payload,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "log": [line.to_dict() for line in self.log],
        }


@dataclass(slots=True, frozen=True)
class ConfirmationToken:
    """Single-use permission to run a destructive action."""

    token: str
    action: Action
    inputs: Mapping[str, InputValue]
    description: str
    expires_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "action": self.action.value,
            "description": self.description,
            "expires_at": self.expires_at.isoformat(),
        }


__all__ = [
    "Action",
    "AppAction",
    "ConfirmationToken",
    "InfraAction",
    "InputValue",
    "LogLine",
    "LogListener",
    "OperationStatus",
    "StatusLog",
    "TrackedOperation",
    "WorkflowInputs",
    "input_key",
    "is_destructive",
    "parse_action",
    "success_label",
    "trigger_message",
]
