"""Exception taxonomy for publishing files and tracking workflow runs."""
from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - for static type checking only
    from iacpush.models.github import WorkflowRun
    from iacpush.models.operation import Action


class GitHubError(Exception):
    """Base class for failures reported by (or while talking to) the GitHub API."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    @property
    def kind(self) -> str:
        return type(self).__name__

    def describe(self) -> str:
        """Return ``"Kind: remote message"`` for user-facing log lines."""

        return f"{self.kind}: {self.message}"


class AuthError(GitHubError):
    """The credential is missing, invalid or expired (HTTP 401)."""


class AccessDenied(GitHubError):
    """The credential lacks permission for the requested operation (HTTP 403)."""


class NotFound(GitHubError):
    """Repository, branch, workflow or run does not exist or is hidden (HTTP 404)."""


class RateLimited(GitHubError):
    """The API rate limit is exhausted."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        reset_at: datetime | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.reset_at = reset_at


class DispatchRejected(GitHubError):
    """The API refused the request payload: bad ref, workflow id or inputs (HTTP 409/422)."""


ValidationError = DispatchRejected


class RefUpdateRejected(DispatchRejected):
    """The branch moved since it was read, so the fast-forward update was refused."""


class TransientError(GitHubError):
    """Network failure, timeout or 5xx response; safe to retry only for read-only polling."""


class OperationError(Exception):
    """Base class for action lifecycle errors raised by the state machine."""

    @property
    def kind(self) -> str:
        return type(self).__name__

    def describe(self) -> str:
        return f"{self.kind}: {self}"


class PollingTransientError(OperationError):
    """Polling gave up after repeated transient failures."""

    def __init__(self, attempts: int, last_error: GitHubError) -> None:
        super().__init__(f"gave up after {attempts} failed polls; last error: {last_error.describe()}")
        self.attempts = attempts
        self.last_error = last_error


class RunFailed(OperationError):
    """The workflow run finished with a conclusion other than ``success``."""

    def __init__(self, run: "WorkflowRun") -> None:
        conclusion = run.conclusion or "no conclusion"
        super().__init__(f"run {run.id} concluded with {conclusion}; see {run.html_url}")
        self.run = run
        self.conclusion = run.conclusion
        self.html_url = run.html_url


class RunNotDiscovered(OperationError):
    """No run of the dispatched workflow appeared within the discovery window."""

    def __init__(self, workflow_id: str, waited: float) -> None:
        super().__init__(
            f"no {workflow_id} run appeared within {waited:.0f}s of the dispatch; "
            "check the Actions tab or the local clock"
        )
        self.workflow_id = workflow_id
        self.waited = waited


class AlreadyRunning(OperationError):
    """An action is already deploying in this slot."""

    def __init__(self, action: "Action | None") -> None:
        label = action.value if action is not None else "an action"
        super().__init__(f"{label} is already running; wait for it to finish before triggering again")
        self.action = action


class ConfirmationRequired(OperationError):
    """A destructive action was requested without a valid confirmation token."""

    def __init__(self, action: "Action | None", reason: str | None = None) -> None:
        label = action.value if action is not None else "action"
        super().__init__(reason or f"{label} is destructive and must be confirmed first")
        self.action = action


class InvalidTransition(OperationError):
    """The requested lifecycle change is not allowed from the current status."""


__all__ = [
    "AccessDenied",
    "AlreadyRunning",
    "AuthError",
    "ConfirmationRequired",
    "DispatchRejected",
    "GitHubError",
    "InvalidTransition",
    "NotFound",
    "OperationError",
    "PollingTransientError",
    "RateLimited",
    "RefUpdateRejected",
    "RunFailed",
    "RunNotDiscovered",
    "TransientError",
    "ValidationError",
]
