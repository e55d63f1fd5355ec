"""Trigger ``workflow_dispatch`` events with typed inputs."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import math
from typing import Protocol

from iacpush.models.github import RepositoryInfo, RepositoryRef
from iacpush.models.operation import InputValue
from iacpush.services.errors import DispatchRejected

LOGGER = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def serialize_inputs(inputs: Mapping[str, InputValue]) -> dict[str, str]:
    """Stringify workflow inputs for the API, which accepts only string values.

    Booleans become ``"true"``/``"false"`` (what ``type: boolean`` inputs
    expect), numbers use ``str()``, and ``None`` entries are omitted.
    """

    serialized: dict[str, str] = {}
    for key, value in inputs.items():
        if not isinstance(key, str) or not key.strip():
            raise DispatchRejected(f"Workflow input names must be non-empty strings, got {key!r}")
        if value is None:
            continue
        if isinstance(value, bool):
            serialized[key] = "true" if value else "false"
        elif isinstance(value, int):
            serialized[key] = str(value)
        elif isinstance(value, float):
            if not math.isfinite(value):
                raise DispatchRejected(f"Workflow input {key!r} must be a finite number")
            serialized[key] = str(int(value)) if value.is_integer() else repr(value)
        elif isinstance(value, str):
            serialized[key] = value
        else:
            raise DispatchRejected(
                f"Workflow input {key!r} has unsupported type {type(value).__name__}"
            )
    return serialized


class SupportsDispatch(Protocol):
    async def get_repository(self, repository: RepositoryRef) -> RepositoryInfo:
        """Return repository metadata including the default branch."""

    async def create_workflow_dispatch(
        self,
        repository: RepositoryRef,
        workflow_id: str,
        *,
        ref: str,
        inputs: Mapping[str, str],
    ) -> None:
        """Send the dispatch event."""


@dataclass(slots=True, frozen=True)
class DispatchReceipt:
    """What was dispatched and when; the tracker uses ``dispatched_at`` to find the run."""

    repository: RepositoryRef
    workflow_id: str
    ref: str
    inputs: Mapping[str, str]
    dispatched_at: datetime


@dataclass(slots=True)
class WorkflowDispatcher:
    client: SupportsDispatch
    clock: Callable[[], datetime] = field(default=_utcnow)

    async def dispatch(
        self,
        repository: RepositoryRef,
        workflow_id: str,
        inputs: Mapping[str, InputValue],
        *,
        ref: str | None = None,
    ) -> DispatchReceipt:
        """Dispatch ``workflow_id`` on ``ref`` (default branch when omitted)."""

        if not workflow_id or not workflow_id.strip():
            raise DispatchRejected("Workflow id must not be empty")

        payload = serialize_inputs(inputs)
        target_ref = ref or (await self.client.get_repository(repository)).default_branch
        dispatched_at = self.clock()
        await self.client.create_workflow_dispatch(repository, workflow_id, ref=target_ref, inputs=payload)

        LOGGER.info(
            "Dispatched workflow %s on %s@%s",
            workflow_id,
            repository.full_name,
            target_ref,
            extra={
                "event": "dispatch.sent",
                "repository": repository.full_name,
                "workflow_id": workflow_id,
                "ref": target_ref,
                "input_names": sorted(payload),
            },
        )
        return DispatchReceipt(
            repository=repository,
            workflow_id=workflow_id,
            ref=target_ref,
            inputs=payload,
            dispatched_at=dispatched_at,
        )


__all__ = ["DispatchReceipt", "WorkflowDispatcher", "serialize_inputs"]
