"""Publish generated files to GitHub as one atomic commit."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Protocol, Sequence

from iacpush.models.github import CommitRequest, CommitResult, FileChange, RepositoryInfo, RepositoryRef
from iacpush.services.errors import RefUpdateRejected
from iacpush.utils.encoding import encode_content

LOGGER = logging.getLogger(__name__)


class SupportsGitData(Protocol):
    """Subset of :class:`~iacpush.services.github_client.GitHubClient` used for publishing."""

    async def get_repository(self, repository: RepositoryRef) -> RepositoryInfo:
        """Return repository metadata, including the default branch."""

    async def get_branch_head(self, repository: RepositoryRef, branch: str) -> str:
        """Return the commit sha of the branch head."""

    async def get_commit_tree(self, repository: RepositoryRef, commit_sha: str) -> str:
        """Return the tree sha of a commit."""

    async def create_blob(self, repository: RepositoryRef, encoded_content: str) -> str:
        """Store base64 content and return the blob sha."""

    async def create_tree(
        self, repository: RepositoryRef, base_tree: str, entries: Sequence[tuple[str, str]]
    ) -> str:
        """Create a tree layered over ``base_tree``."""

    async def create_commit(
        self, repository: RepositoryRef, *, message: str, tree_sha: str, parents: Sequence[str]
    ) -> str:
        """Create a commit object and return its sha."""

    async def update_branch(self, repository: RepositoryRef, branch: str, commit_sha: str) -> None:
        """Fast-forward the branch to ``commit_sha``."""


@dataclass(slots=True)
class _RepositoryLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


@dataclass(slots=True)
class CommitPublisher:
    """Build blob → tree → commit → ref on top of the current branch head.

    Only the final ref update is visible to other readers; a failure before it
    leaves the branch exactly where it was. Publishes against the same
    repository are serialised per publisher instance.
    """

    client: SupportsGitData
    conflict_retries: int = 0
    _locks: dict[RepositoryRef, _RepositoryLock] = field(default_factory=dict, init=False, repr=False)

    async def publish(self, request: CommitRequest) -> CommitResult:
        """Publish ``request.files`` and return the new commit (or the untouched head)."""

        repository = request.repository
        entry = self._locks.get(repository)
        if entry is None:
            entry = self._locks[repository] = _RepositoryLock()
        entry.users += 1
        try:
            async with entry.lock:
                return await self._publish_serialised(request)
        finally:
            entry.users -= 1
            # Lock entries live only while a publish holds or awaits them.
            if entry.users == 0:
                del self._locks[repository]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _publish_serialised(self, request: CommitRequest) -> CommitResult:
        files = request.unique_files()
        branch = request.branch or await self._default_branch(request.repository)
        attempt = 0
        while True:
            try:
                return await self._publish_once(request, branch, files)
            except RefUpdateRejected:
                if attempt >= self.conflict_retries:
                    raise
                attempt += 1
                LOGGER.info(
                    "Branch moved during publish; rebuilding commit on the new head",
                    extra={
                        "event": "publish.ref_conflict",
                        "repository": request.repository.full_name,
                        "branch": branch,
                        "attempt": attempt,
                    },
                )

    async def _default_branch(self, repository: RepositoryRef) -> str:
        info = await self.client.get_repository(repository)
        return info.default_branch

    async def _publish_once(self, request: CommitRequest, branch: str, files: list[FileChange]) -> CommitResult:
        repository = request.repository
        head_sha = await self.client.get_branch_head(repository, branch)

        if not files:
            LOGGER.info(
                "Nothing to publish; branch left untouched",
                extra={"event": "publish.noop", "repository": repository.full_name, "branch": branch},
            )
            return CommitResult(commit_sha=head_sha, updated=False, branch=branch, parent_sha=head_sha)

        base_tree = await self.client.get_commit_tree(repository, head_sha)
        blob_shas = await asyncio.gather(
            *(self.client.create_blob(repository, encode_content(change.content)) for change in files)
        )
        entries = [(change.path, sha) for change, sha in zip(files, blob_shas)]

        tree_sha = await self.client.create_tree(repository, base_tree, entries)
        commit_sha = await self.client.create_commit(
            repository,
            message=request.message,
            tree_sha=tree_sha,
            parents=[head_sha],
        )
        await self.client.update_branch(repository, branch, commit_sha)

        LOGGER.info(
            "Published %d file(s) to %s@%s",
            len(files),
            repository.full_name,
            branch,
            extra={
                "event": "publish.committed",
                "repository": repository.full_name,
                "branch": branch,
                "commit_sha": commit_sha,
            },
        )
        return CommitResult(
            commit_sha=commit_sha,
            updated=True,
            branch=branch,
            tree_sha=tree_sha,
            parent_sha=head_sha,
            paths=[change.path for change in files],
        )


__all__ = ["CommitPublisher", "SupportsGitData"]
