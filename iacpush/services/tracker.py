"""Poll a dispatched workflow until its run reaches a terminal state.

GitHub does not return the run id from a ``workflow_dispatch`` call, and the
new run only shows up in the run list a few seconds later. While discovering,
the tracker adopts the newest ``workflow_dispatch`` run created no earlier than
the dispatch time (minus a small clock-skew allowance). Two dispatches of the
same workflow inside that window are indistinguishable, so under concurrent
triggers the adopted run may belong to the other caller. Discovery gives up
with ``RunNotDiscovered`` once ``discovery_timeout`` has passed since the
dispatch without a matching run.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
from typing import Protocol

from iacpush.models.github import RepositoryRef, WorkflowJob, WorkflowRun
from iacpush.services.errors import GitHubError, PollingTransientError, RateLimited, RunNotDiscovered, TransientError

LOGGER = logging.getLogger(__name__)

_QUEUED_STATUSES = frozenset({"queued", "requested", "waiting", "pending"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TrackerPhase(str, Enum):
    NOT_STARTED = "not_started"
    DISCOVERING = "discovering"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


def phase_for_status(status: str) -> TrackerPhase:
    """Map a raw GitHub run status onto the tracker lifecycle."""

    if status == "completed":
        return TrackerPhase.COMPLETED
    if status == "in_progress":
        return TrackerPhase.IN_PROGRESS
    if status in _QUEUED_STATUSES:
        return TrackerPhase.QUEUED
    LOGGER.debug("Unrecognised run status %r treated as queued", status, extra={"event": "tracker.unknown_status"})
    return TrackerPhase.QUEUED


def status_message(run: WorkflowRun, label: str) -> str:
    """Return the user-facing message for the run's current status."""

    phase = phase_for_status(run.status)
    if phase is TrackerPhase.COMPLETED:
        return f"Workflow completed (conclusion: {run.conclusion or 'none'})"
    if phase is TrackerPhase.IN_PROGRESS:
        return f"{label} in progress"
    return "Workflow queued"


class SupportsRunLookup(Protocol):
    async def list_workflow_runs(
        self,
        repository: RepositoryRef,
        workflow_id: str,
        *,
        event: str | None = None,
        per_page: int = 10,
    ) -> list[WorkflowRun]:
        """Return recent runs, newest first."""

    async def get_workflow_run(self, repository: RepositoryRef, run_id: int) -> WorkflowRun:
        """Return one run by id."""

    async def list_run_jobs(self, repository: RepositoryRef, run_id: int) -> list[WorkflowJob]:
        """Return the jobs of a run."""


class RunObserver(Protocol):
    """Receives tracker events for one tracked target."""

    def run_adopted(self, run: WorkflowRun) -> None:
        """A run was bound to the dispatch."""

    def run_progressed(self, run: WorkflowRun, message: str) -> None:
        """A poll returned the run's current status."""

    def run_completed(self, run: WorkflowRun, failed_jobs: list[WorkflowJob]) -> None:
        """The run finished; ``failed_jobs`` is filled for non-success conclusions."""

    def tracking_failed(self, error: Exception) -> None:
        """Tracking stopped without a terminal run state."""


@dataclass(slots=True, eq=False)
class _PollTarget:
    """Identity of one tracking session; results for any other target are discarded."""

    repository: RepositoryRef
    workflow_id: str
    dispatched_at: datetime
    label: str
    observer: RunObserver
    run_id: int | None = None
    failures: int = 0


class RunTracker:
    """Serialized, cancellable poll loop for a single dispatched workflow."""

    def __init__(
        self,
        client: SupportsRunLookup,
        *,
        interval: float = 10.0,
        max_retries: int = 3,
        discovery_skew: float = 5.0,
        discovery_timeout: float = 300.0,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._client = client
        self._interval = interval
        self._max_retries = max(0, max_retries)
        self._discovery_skew = timedelta(seconds=discovery_skew)
        self._discovery_timeout = timedelta(seconds=discovery_timeout)
        self._sleep = sleep
        self._clock = clock
        self._target: _PollTarget | None = None
        self._task: asyncio.Task[None] | None = None
        self._phase = TrackerPhase.NOT_STARTED
        self._run: WorkflowRun | None = None
        self._ticks = 0

    @property
    def phase(self) -> TrackerPhase:
        return self._phase

    @property
    def run(self) -> WorkflowRun | None:
        return self._run

    @property
    def ticks(self) -> int:
        """Number of poll ticks issued for the current target."""

        return self._ticks

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(
        self,
        repository: RepositoryRef,
        workflow_id: str,
        dispatched_at: datetime,
        observer: RunObserver,
        *,
        label: str | None = None,
    ) -> asyncio.Task[None]:
        """Begin tracking; any previous target is cancelled first."""

        self.cancel()
        target = _PollTarget(
            repository=repository,
            workflow_id=workflow_id,
            dispatched_at=dispatched_at,
            label=label or workflow_id,
            observer=observer,
        )
        self._target = target
        self._phase = TrackerPhase.DISCOVERING
        self._run = None
        self._ticks = 0
        self._task = asyncio.create_task(self._poll(target), name=f"track:{repository.full_name}:{workflow_id}")
        return self._task

    def cancel(self) -> None:
        """Stop tracking without waiting; an in-flight result is discarded on arrival."""

        self._target = None
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        if self._phase in (TrackerPhase.DISCOVERING, TrackerPhase.QUEUED, TrackerPhase.IN_PROGRESS):
            self._phase = TrackerPhase.NOT_STARTED

    async def stop(self) -> None:
        """Cancel tracking and wait for the poll task to unwind."""

        task = self._task
        self.cancel()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def wait(self) -> None:
        """Wait for the current poll loop to finish on its own."""

        task = self._task
        if task is None:
            return
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------
    def _is_current(self, target: _PollTarget) -> bool:
        return target is self._target

    async def _poll(self, target: _PollTarget) -> None:
        while self._is_current(target):
            try:
                finished = await self._tick(target)
            except Exception as exc:  # pragma: no cover
                LOGGER.exception(
                    "Unexpected error while polling %s",
                    target.workflow_id,
                    extra={"event": "tracker.unexpected_error", "workflow_id": target.workflow_id},
                )
                if self._is_current(target):
                    self._fail(target, exc)
                return
            if finished or not self._is_current(target):
                return
            await self._sleep(self._interval)

    async def _tick(self, target: _PollTarget) -> bool:
        """Issue one poll; return ``True`` once tracking of ``target`` is over."""

        self._ticks += 1
        try:
            if target.run_id is None:
                run = await self._discover(target)
            else:
                run = await self._client.get_workflow_run(target.repository, target.run_id)
        except (TransientError, RateLimited) as exc:
            if not self._is_current(target):
                return True
            target.failures += 1
            if target.failures > self._max_retries:
                self._fail(target, PollingTransientError(target.failures, exc))
                return True
            LOGGER.warning(
                "Transient error while polling %s; will retry",
                target.workflow_id,
                extra={
                    "event": "tracker.poll_retry",
                    "repository": target.repository.full_name,
                    "workflow_id": target.workflow_id,
                    "attempt": target.failures,
                    "error": exc.kind,
                },
            )
            return False
        except GitHubError as exc:
            if self._is_current(target):
                self._fail(target, exc)
            return True

        if not self._is_current(target):
            LOGGER.debug(
                "Discarding poll result for a target that is no longer tracked",
                extra={"event": "tracker.stale_result", "workflow_id": target.workflow_id},
            )
            return True

        target.failures = 0
        if run is None:
            waited = self._clock() - target.dispatched_at
            if waited >= self._discovery_timeout:
                self._fail(target, RunNotDiscovered(target.workflow_id, waited.total_seconds()))
                return True
            return False

        if target.run_id is None:
            target.run_id = run.id
            self._run = run
            target.observer.run_adopted(run)

        self._run = run
        self._phase = phase_for_status(run.status)
        target.observer.run_progressed(run, status_message(run, target.label))

        if self._phase is not TrackerPhase.COMPLETED:
            return False

        failed_jobs = [] if run.succeeded else await self._failed_jobs(target, run)
        if self._is_current(target):
            target.observer.run_completed(run, failed_jobs)
        return True

    async def _discover(self, target: _PollTarget) -> WorkflowRun | None:
        runs = await self._client.list_workflow_runs(
            target.repository,
            target.workflow_id,
            event="workflow_dispatch",
        )
        earliest = target.dispatched_at - self._discovery_skew
        candidates = [
            run
            for run in runs
            if (run.event in (None, "workflow_dispatch"))
            and (run.created_at is None or run.created_at >= earliest)
        ]
        if not candidates:
            LOGGER.debug(
                "Dispatched run not visible yet",
                extra={"event": "tracker.discovering", "workflow_id": target.workflow_id},
            )
            return None
        return max(candidates, key=lambda run: (run.created_at or target.dispatched_at, run.id))

    async def _failed_jobs(self, target: _PollTarget, run: WorkflowRun) -> list[WorkflowJob]:
        try:
            jobs = await self._client.list_run_jobs(target.repository, run.id)
        except GitHubError as exc:
            LOGGER.info(
                "Could not load jobs for failed run %s",
                run.id,
                extra={"event": "tracker.jobs_unavailable", "error": exc.kind},
            )
            return []
        return [job for job in jobs if job.conclusion not in (None, "success", "skipped")]

    def _fail(self, target: _PollTarget, error: Exception) -> None:
        self._phase = TrackerPhase.FAILED
        LOGGER.warning(
            "Stopped tracking %s: %s",
            target.workflow_id,
            error,
            extra={
                "event": "tracker.failed",
                "repository": target.repository.full_name,
                "workflow_id": target.workflow_id,
            },
        )
        target.observer.tracking_failed(error)


__all__ = [
    "RunObserver",
    "RunTracker",
    "TrackerPhase",
    "phase_for_status",
    "status_message",
]
