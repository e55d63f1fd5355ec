"""Data structures describing repositories, commits and workflow runs."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Mapping, Sequence


def _parse_timestamp(value: Any) -> datetime | None:
    """Coerce GitHub ISO-8601 timestamps (``2024-01-02T09:00:00Z``) to UTC datetimes."""

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(slots=True, frozen=True)
class RepositoryRef:
    """Owner/name pair identifying a GitHub repository."""

    owner: str
    name: str

    def __post_init__(self) -> None:
        for label, value in (("owner", self.owner), ("name", self.name)):
            if not value or not value.strip() or "/" in value:
                raise ValueError(f"Invalid repository {label}: {value!r}")

    @classmethod
    def parse(cls, value: str) -> "RepositoryRef":
        """Build a reference from ``"owner/name"``."""

        owner, sep, name = value.strip().partition("/")
        if not sep:
            raise ValueError(f"Repository must be given as 'owner/name', got {value!r}")
        return cls(owner=owner.strip(), name=name.strip())

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def __str__(self) -> str:
        return self.full_name


def normalise_path(path: str) -> str:
    """Return a clean repository-relative POSIX path or raise ``ValueError``."""

    candidate = path.strip().replace("\\", "/")
    if not candidate:
        raise ValueError("File path must not be empty")
    if candidate.startswith("/"):
        raise ValueError(f"File path must be relative to the repository root: {path!r}")

    parts = [part for part in PurePosixPath(candidate).parts if part not in ("", ".")]
    if not parts or any(part == ".." for part in parts):
        raise ValueError(f"File path escapes the repository root: {path!r}")
    if parts[0] == ".git":
        raise ValueError(f"Refusing to write inside .git: {path!r}")
    return "/".join(parts)


@dataclass(slots=True, frozen=True)
class FileChange:
    """A single generated file destined for the repository."""

    path: str
    content: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", normalise_path(self.path))
        if not isinstance(self.content, str):
            raise TypeError(f"Content for {self.path} must be text")


@dataclass(slots=True)
class CommitRequest:
    """Unit of atomic publication: every file lands in one commit or none do."""

    repository: RepositoryRef
    files: Sequence[FileChange]
    message: str
    branch: str | None = None

    def __post_init__(self) -> None:
        self.files = tuple(self.files)
        if not self.message or not self.message.strip():
            raise ValueError("Commit message must not be empty")

    def unique_files(self) -> list[FileChange]:
        """Return the files with duplicate paths collapsed (last one wins), keeping order."""

        by_path: dict[str, FileChange] = {}
        for change in self.files:
            by_path.pop(change.path, None)
            by_path[change.path] = change
        return list(by_path.values())


@dataclass(slots=True)
class CommitResult:
    """Outcome of a publish call."""

    commit_sha: str
    updated: bool
    branch: str
    tree_sha: str | None = None
    parent_sha: str | None = None
    paths: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "commit_sha": self.commit_sha,
            "updated": self.updated,
            "branch": self.branch,
            "tree_sha": self.tree_sha,
            "parent_sha": self.parent_sha,
            "paths": list(self.paths),
        }


@dataclass(slots=True, frozen=True)
class RepositoryInfo:
    """Subset of the get-repository payload used by the publisher and access checks."""

    full_name: str
    default_branch: str
    permissions: Mapping[str, bool] = field(default_factory=dict)
    private: bool = False

    @property
    def can_push(self) -> bool:
        return bool(self.permissions.get("push") or self.permissions.get("admin"))

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "RepositoryInfo":
        permissions = data.get("permissions") or {}
        return cls(
            full_name=str(data.get("full_name") or ""),
            default_branch=str(data.get("default_branch") or "main"),
            permissions={str(key): bool(value) for key, value in permissions.items()},
            private=bool(data.get("private", False)),
        )


@dataclass(slots=True)
class WorkflowRun:
    """One execution of a GitHub Actions workflow as reported by the API."""

    id: int
    status: str
    conclusion: str | None
    html_url: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
    run_number: int | None = None
    event: str | None = None
    name: str | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"

    @property
    def succeeded(self) -> bool:
        return self.is_completed and self.conclusion == "success"

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "WorkflowRun":
        return cls(
            id=int(data["id"]),
            status=str(data.get("status") or "queued"),
            conclusion=data.get("conclusion"),
            html_url=str(data.get("html_url") or ""),
            created_at=_parse_timestamp(data.get("created_at")),
            updated_at=_parse_timestamp(data.get("updated_at")),
            run_number=data.get("run_number"),
            event=data.get("event"),
            name=data.get("name"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "conclusion": self.conclusion,
            "html_url": self.html_url,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
            "run_number": self.run_number,
            "event": self.event,
            "name": self.name,
        }


@dataclass(slots=True)
class WorkflowJob:
    """A job inside a workflow run, used for failure diagnostics."""

    id: int
    name: str
    status: str
    conclusion: str | None
    html_url: str = ""
    failed_steps: list[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "WorkflowJob":
        steps = data.get("steps") or []
        failed = [
            str(step.get("name") or f"step {step.get('number')}")
            for step in steps
            if isinstance(step, Mapping) and step.get("conclusion") == "failure"
        ]
        return cls(
            id=int(data["id"]),
            name=str(data.get("name") or ""),
            status=str(data.get("status") or ""),
            conclusion=data.get("conclusion"),
            html_url=str(data.get("html_url") or ""),
            failed_steps=failed,
        )


__all__ = [
    "CommitRequest",
    "CommitResult",
    "FileChange",
    "RepositoryInfo",
    "RepositoryRef",
    "WorkflowJob",
    "WorkflowRun",
    "normalise_path",
]
