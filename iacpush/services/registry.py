"""Shared GitHub services plus one state machine per repository and action slot."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from enum import Enum
import logging

import httpx

from iacpush.models.github import CommitRequest, CommitResult, RepositoryRef
from iacpush.models.operation import AppAction, InfraAction, LogListener
from iacpush.models.settings import GitHubSettings
from iacpush.services.access import AccessReport, AccessValidator
from iacpush.services.actions import ActionStateMachine
from iacpush.services.dispatcher import WorkflowDispatcher
from iacpush.services.github_client import GitHubClient
from iacpush.services.publisher import CommitPublisher
from iacpush.services.tracker import RunTracker

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFLICT_RETRIES = 2


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OperationSlot(str, Enum):
    INFRASTRUCTURE = "infrastructure"
    APPLICATION = "application"


def slot_action_type(slot: OperationSlot) -> type:
    """Return the action enum a slot accepts."""

    if slot is OperationSlot.INFRASTRUCTURE:
        return InfraAction
    if slot is OperationSlot.APPLICATION:
        return AppAction
    raise TypeError(f"Unsupported slot: {slot!r}")


def slot_workflow(slot: OperationSlot, settings: GitHubSettings) -> str:
    if slot is OperationSlot.INFRASTRUCTURE:
        return settings.infra_workflow
    if slot is OperationSlot.APPLICATION:
        return settings.app_workflow
    raise TypeError(f"Unsupported slot: {slot!r}")


class OperationRegistry:
    """Owns the HTTP client and hands out lazily created per-slot state machines."""

    def __init__(
        self,
        client: GitHubClient,
        *,
        conflict_retries: int = DEFAULT_CONFLICT_RETRIES,
        confirmation_ttl: float = 300.0,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
        log_listener: LogListener | None = None,
    ) -> None:
        self._client = client
        self._settings = client.settings
        self._confirmation_ttl = confirmation_ttl
        self._sleep = sleep
        self._clock = clock
        self._log_listener = log_listener
        self._publisher = CommitPublisher(client, conflict_retries=conflict_retries)
        self._access = AccessValidator(client)
        self._dispatcher = WorkflowDispatcher(client, clock=clock)
        self._machines: dict[tuple[RepositoryRef, OperationSlot], ActionStateMachine] = {}

    @classmethod
    def from_settings(
        cls,
        settings: GitHubSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs,
    ) -> "OperationRegistry":
        return cls(GitHubClient(settings, transport=transport), **kwargs)

    @property
    def settings(self) -> GitHubSettings:
        return self._settings

    @property
    def client(self) -> GitHubClient:
        return self._client

    @property
    def publisher(self) -> CommitPublisher:
        return self._publisher

    def machine(self, repository: RepositoryRef, slot: OperationSlot) -> ActionStateMachine:
        """Return the state machine for ``slot`` in ``repository``, creating it on first use."""

        key = (repository, slot)
        machine = self._machines.get(key)
        if machine is None:
            tracker = RunTracker(
                self._client,
                interval=self._settings.poll_interval,
                max_retries=self._settings.poll_retries,
                discovery_skew=self._settings.discovery_skew,
                discovery_timeout=self._settings.discovery_timeout,
                sleep=self._sleep,
                clock=self._clock,
            )
            machine = ActionStateMachine(
                repository=repository,
                workflow_id=slot_workflow(slot, self._settings),
                dispatcher=self._dispatcher,
                tracker=tracker,
                publisher=self._publisher,
                action_type=slot_action_type(slot),
                confirmation_ttl=self._confirmation_ttl,
                clock=self._clock,
                log_listener=self._log_listener,
            )
            self._machines[key] = machine
            LOGGER.debug(
                "Created %s state machine",
                slot.value,
                extra={"event": "registry.machine_created", "repository": repository.full_name},
            )
        return machine

    async def publish(self, request: CommitRequest) -> CommitResult:
        return await self._publisher.publish(request)

    async def check_access(self, repository: RepositoryRef) -> bool:
        return await self._access.check_access(repository)

    async def describe_access(self, repository: RepositoryRef) -> AccessReport:
        return await self._access.describe_access(repository)

    async def aclose(self) -> None:
        """Stop every tracker, then close the shared HTTP client."""

        machines = list(self._machines.values())
        self._machines.clear()
        await asyncio.gather(*(machine.aclose() for machine in machines))
        await self._client.aclose()


__all__ = ["OperationRegistry", "OperationSlot", "slot_action_type", "slot_workflow"]
