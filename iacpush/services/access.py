"""Advisory preflight check that the credential can push to a repository."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Mapping, Protocol

from iacpush.models.github import RepositoryInfo, RepositoryRef
from iacpush.services.errors import AccessDenied, NotFound

LOGGER = logging.getLogger(__name__)


class SupportsRepositoryLookup(Protocol):
    async def get_repository(self, repository: RepositoryRef) -> RepositoryInfo:
        """Return repository metadata including permissions."""


@dataclass(slots=True, frozen=True)
class AccessReport:
    repository: str
    default_branch: str
    permissions: Mapping[str, bool]
    can_push: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "repository": self.repository,
            "default_branch": self.default_branch,
            "permissions": dict(self.permissions),
            "can_push": self.can_push,
        }


@dataclass(slots=True)
class AccessValidator:
    """Check write permission before publishing.

    The answer is advisory: permissions can change, or the repository can
    disappear, between this check and the publish call.
    """

    client: SupportsRepositoryLookup

    async def check_access(self, repository: RepositoryRef) -> bool:
        """Return ``True`` when the credential holds push or admin permission.

        A forbidden or missing repository answers ``False``. Credential, rate
        limit and network failures say nothing about permissions and propagate.
        """

        try:
            info = await self.client.get_repository(repository)
        except (AccessDenied, NotFound) as exc:
            LOGGER.debug(
                "Access check failed",
                extra={"event": "access.denied", "repository": repository.full_name, "error": exc.kind},
            )
            return False
        return info.can_push

    async def describe_access(self, repository: RepositoryRef) -> AccessReport:
        """Return permission details, propagating API errors."""

        info = await self.client.get_repository(repository)
        return AccessReport(
            repository=info.full_name or repository.full_name,
            default_branch=info.default_branch,
            permissions=dict(info.permissions),
            can_push=info.can_push,
        )


__all__ = ["AccessReport", "AccessValidator"]
