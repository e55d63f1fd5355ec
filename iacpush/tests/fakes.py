"""In-process GitHub API double backed by an in-memory Git object store."""

from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import hashlib
import json
import re
from typing import Any, Callable

import httpx

from iacpush.models.github import RepositoryRef

EPOCH = datetime(2024, 5, 1, 9, 0, 0, tzinfo=timezone.utc)

_REPO_PATH = re.compile(r"^/repos/(?P<owner>[^/]+)/(?P<name>[^/]+)(?P<rest>/.*)?$")


class FakeClock:
    """Manually advanced clock whose ``sleep`` moves time forward instead of waiting."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)


@dataclass
class ScriptedRun:
    """A workflow run whose status follows a timeline relative to ``created_at``."""

    id: int
    workflow_id: str
    created_at: datetime
    timeline: list[tuple[float, str, str | None]] = field(default_factory=lambda: [(0.0, "queued", None)])
    visible_at: datetime | None = None
    event: str = "workflow_dispatch"
    jobs: list[dict[str, Any]] = field(default_factory=list)

    def state(self, now: datetime) -> tuple[str, str | None]:
        status, conclusion = "queued", None
        for offset, step_status, step_conclusion in self.timeline:
            if self.created_at + timedelta(seconds=offset) <= now:
                status, conclusion = step_status, step_conclusion
        return status, conclusion

    def is_visible(self, now: datetime) -> bool:
        return (self.visible_at or self.created_at) <= now

    def payload(self, now: datetime, repository: RepositoryRef) -> dict[str, Any]:
        status, conclusion = self.state(now)
        return {
            "id": self.id,
            "name": self.workflow_id,
            "status": status,
            "conclusion": conclusion,
            "event": self.event,
            "run_number": self.id % 1000,
            "html_url": f"https://github.com/{repository.full_name}/actions/runs/{self.id}",
            "created_at": self.created_at.isoformat().replace("+00:00", "Z"),
            "updated_at": now.isoformat().replace("+00:00", "Z"),
        }


@dataclass
class _Fault:
    method: str
    pattern: re.Pattern[str]
    remaining: int
    status_code: int = 500
    body: dict[str, Any] | None = None
    headers: dict[str, str] | None = None
    exception: Exception | None = None


def _sha(kind: str, payload: bytes) -> str:
    return hashlib.sha1(f"{kind} {len(payload)}\0".encode() + payload).hexdigest()


class FakeGitHub:
    """Serve the subset of the REST API the client uses, for one repository.

    Trees are flat ``path -> blob sha`` mappings. Ref updates enforce
    fast-forward unless ``force`` is sent. Runs are scripted with
    :class:`ScriptedRun` and read the injected clock.
    """

    def __init__(
        self,
        *,
        owner: str = "acme",
        name: str = "platform",
        default_branch: str = "main",
        files: dict[str, str] | None = None,
        permissions: dict[str, bool] | None = None,
        workflows: tuple[str, ...] = ("deploy.yml", "k8s-deploy.yml"),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = RepositoryRef(owner=owner, name=name)
        self.default_branch = default_branch
        self.permissions = permissions if permissions is not None else {"admin": False, "push": True, "pull": True}
        self.workflows = set(workflows)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.blobs: dict[str, bytes] = {}
        self.trees: dict[str, dict[str, str]] = {}
        self.commits: dict[str, dict[str, Any]] = {}
        self.refs: dict[str, str] = {}
        self.calls: list[tuple[str, str]] = []
        self.dispatches: list[dict[str, Any]] = []
        self.runs: list[ScriptedRun] = []
        self.on_dispatch: Callable[[dict[str, Any]], None] | None = None
        self.before_ref_update: Callable[[str], None] | None = None
        self._faults: list[_Fault] = []
        self._commit_counter = 0
        self._next_run_id = 9000

        tree_sha = self._store_tree(
            {path: self._store_blob(content.encode("utf-8")) for path, content in (files or {}).items()}
        )
        self.refs[default_branch] = self._store_commit("Initial commit", tree_sha, [])

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def head(self, branch: str | None = None) -> str:
        return self.refs[branch or self.default_branch]

    def tree_of(self, commit_sha: str) -> dict[str, str]:
        """Return ``path -> text`` for the tree of ``commit_sha``."""

        tree = self.trees[self.commits[commit_sha]["tree"]]
        return {path: self.blobs[sha].decode("utf-8") for path, sha in tree.items()}

    def files_at(self, branch: str | None = None) -> dict[str, str]:
        return self.tree_of(self.head(branch))

    def push_commit(self, files: dict[str, str], *, branch: str | None = None, message: str = "Concurrent change") -> str:
        """Simulate another writer fast-forwarding ``branch``."""

        branch = branch or self.default_branch
        parent = self.refs[branch]
        tree = dict(self.trees[self.commits[parent]["tree"]])
        tree.update({path: self._store_blob(text.encode("utf-8")) for path, text in files.items()})
        sha = self._store_commit(message, self._store_tree(tree), [parent])
        self.refs[branch] = sha
        return sha

    def fail(
        self,
        method: str,
        pattern: str,
        *,
        status_code: int = 500,
        body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        exception: Exception | None = None,
        times: int = 1,
    ) -> None:
        """Answer the next ``times`` matching requests with an error (or raise ``exception``)."""

        self._faults.append(
            _Fault(
                method=method.upper(),
                pattern=re.compile(pattern),
                remaining=times,
                status_code=status_code,
                body=body,
                headers=headers,
                exception=exception,
            )
        )

    def add_run(
        self,
        *,
        workflow_id: str = "deploy.yml",
        created_at: datetime,
        timeline: list[tuple[float, str, str | None]] | None = None,
        visible_at: datetime | None = None,
        event: str = "workflow_dispatch",
        jobs: list[dict[str, Any]] | None = None,
        run_id: int | None = None,
    ) -> ScriptedRun:
        if run_id is None:
            self._next_run_id += 1
            run_id = self._next_run_id
        run = ScriptedRun(
            id=run_id,
            workflow_id=workflow_id,
            created_at=created_at,
            timeline=timeline or [(0.0, "queued", None)],
            visible_at=visible_at,
            event=event,
            jobs=jobs or [],
        )
        self.runs.append(run)
        return run

    def script_dispatch(
        self,
        *,
        created_after: float = 1.0,
        visible_after: float | None = None,
        timeline: list[tuple[float, str, str | None]] | None = None,
        jobs: list[dict[str, Any]] | None = None,
    ) -> list[ScriptedRun]:
        """Create a run for every later dispatch; returns the list the runs are appended to."""

        created: list[ScriptedRun] = []

        def _on_dispatch(dispatch: dict[str, Any]) -> None:
            at = dispatch["at"]
            created.append(
                self.add_run(
                    workflow_id=dispatch["workflow_id"],
                    created_at=at + timedelta(seconds=created_after),
                    visible_at=at + timedelta(seconds=visible_after) if visible_after is not None else None,
                    timeline=timeline,
                    jobs=jobs,
                )
            )

        self.on_dispatch = _on_dispatch
        return created

    def count(self, method: str, pattern: str) -> int:
        regex = re.compile(pattern)
        return sum(1 for call_method, path in self.calls if call_method == method and regex.search(path))

    # ------------------------------------------------------------------
    # Object store
    # ------------------------------------------------------------------
    def _store_blob(self, raw: bytes) -> str:
        sha = _sha("blob", raw)
        self.blobs[sha] = raw
        return sha

    def _store_tree(self, entries: dict[str, str]) -> str:
        sha = _sha("tree", json.dumps(sorted(entries.items())).encode())
        self.trees[sha] = dict(entries)
        return sha

    def _store_commit(self, message: str, tree_sha: str, parents: list[str]) -> str:
        self._commit_counter += 1
        body = json.dumps({"tree": tree_sha, "parents": parents, "message": message, "n": self._commit_counter})
        sha = _sha("commit", body.encode())
        self.commits[sha] = {"tree": tree_sha, "parents": list(parents), "message": message}
        return sha

    def _is_ancestor(self, ancestor: str, descendant: str) -> bool:
        pending = [descendant]
        seen: set[str] = set()
        while pending:
            sha = pending.pop()
            if sha == ancestor:
                return True
            if sha in seen or sha not in self.commits:
                continue
            seen.add(sha)
            pending.extend(self.commits[sha]["parents"])
        return False

    # ------------------------------------------------------------------
    # HTTP handling
    # ------------------------------------------------------------------
    @staticmethod
    def _json(status_code: int, payload: Any = None, headers: dict[str, str] | None = None) -> httpx.Response:
        if payload is None:
            return httpx.Response(status_code, headers=headers)
        return httpx.Response(status_code, json=payload, headers=headers)

    def _not_found(self) -> httpx.Response:
        return self._json(404, {"message": "Not Found"})

    def _injected(self, request: httpx.Request, rest: str) -> httpx.Response | None:
        for fault in self._faults:
            if fault.remaining <= 0 or fault.method != request.method or not fault.pattern.search(rest):
                continue
            fault.remaining -= 1
            if fault.exception is not None:
                raise fault.exception
            return self._json(fault.status_code, fault.body or {"message": "Injected failure"}, fault.headers)
        return None

    def handle(self, request: httpx.Request) -> httpx.Response:
        match = _REPO_PATH.match(request.url.path)
        if match is None:
            return self._not_found()
        rest = match.group("rest") or ""
        self.calls.append((request.method, rest))

        if not request.headers.get("authorization", "").startswith("Bearer "):
            return self._json(401, {"message": "Requires authentication"})
        injected = self._injected(request, rest)
        if injected is not None:
            return injected
        if (match.group("owner"), match.group("name")) != (self.repository.owner, self.repository.name):
            return self._not_found()

        body = json.loads(request.content) if request.content else {}
        for method, pattern, handler in self._routes():
            found = re.fullmatch(pattern, rest)
            if found is not None and method == request.method:
                return handler(request, body, **found.groupdict())
        return self._not_found()

    def _routes(self) -> list[tuple[str, str, Callable[..., httpx.Response]]]:
        return [
            ("GET", r"", self._get_repository),
            ("GET", r"/git/ref/heads/(?P<branch>.+)", self._get_ref),
            ("GET", r"/git/commits/(?P<sha>[0-9a-f]+)", self._get_commit),
            ("POST", r"/git/blobs", self._create_blob),
            ("POST", r"/git/trees", self._create_tree),
            ("POST", r"/git/commits", self._create_commit),
            ("PATCH", r"/git/refs/heads/(?P<branch>.+)", self._update_ref),
            ("POST", r"/actions/workflows/(?P<workflow_id>[^/]+)/dispatches", self._dispatch),
            ("GET", r"/actions/workflows/(?P<workflow_id>[^/]+)/runs", self._list_runs),
            ("GET", r"/actions/runs/(?P<run_id>\d+)", self._get_run),
            ("GET", r"/actions/runs/(?P<run_id>\d+)/jobs", self._get_jobs),
            ("GET", r"/actions/runs/(?P<run_id>\d+)/logs", self._get_logs),
        ]

    def _get_repository(self, request: httpx.Request, body: dict[str, Any]) -> httpx.Response:
        return self._json(
            200,
            {
                "full_name": self.repository.full_name,
                "default_branch": self.default_branch,
                "permissions": self.permissions,
                "private": True,
            },
        )

    def _get_ref(self, request: httpx.Request, body: dict[str, Any], branch: str) -> httpx.Response:
        sha = self.refs.get(branch)
        if sha is None:
            return self._not_found()
        return self._json(200, {"ref": f"refs/heads/{branch}", "object": {"sha": sha, "type": "commit"}})

    def _get_commit(self, request: httpx.Request, body: dict[str, Any], sha: str) -> httpx.Response:
        commit = self.commits.get(sha)
        if commit is None:
            return self._not_found()
        return self._json(
            200,
            {
                "sha": sha,
                "tree": {"sha": commit["tree"]},
                "parents": [{"sha": parent} for parent in commit["parents"]],
                "message": commit["message"],
            },
        )

    def _create_blob(self, request: httpx.Request, body: dict[str, Any]) -> httpx.Response:
        if body.get("encoding") == "base64":
            raw = base64.b64decode(body["content"])
        else:
            raw = body["content"].encode("utf-8")
        return self._json(201, {"sha": self._store_blob(raw)})

    def _create_tree(self, request: httpx.Request, body: dict[str, Any]) -> httpx.Response:
        base_sha = body.get("base_tree")
        if base_sha and base_sha not in self.trees:
            return self._json(422, {"message": "base_tree is not a valid tree"})
        entries = dict(self.trees.get(base_sha, {}))
        for entry in body["tree"]:
            if entry["sha"] not in self.blobs:
                return self._json(422, {"message": f"Invalid sha for {entry['path']}"})
            entries[entry["path"]] = entry["sha"]
        return self._json(201, {"sha": self._store_tree(entries)})

    def _create_commit(self, request: httpx.Request, body: dict[str, Any]) -> httpx.Response:
        if body["tree"] not in self.trees or any(parent not in self.commits for parent in body["parents"]):
            return self._json(422, {"message": "Invalid tree or parent"})
        return self._json(201, {"sha": self._store_commit(body["message"], body["tree"], body["parents"])})

    def _update_ref(self, request: httpx.Request, body: dict[str, Any], branch: str) -> httpx.Response:
        if branch not in self.refs:
            return self._json(422, {"message": "Reference does not exist"})
        if self.before_ref_update is not None:
            hook, self.before_ref_update = self.before_ref_update, None
            hook(branch)
        new_sha = body["sha"]
        if not body.get("force") and not self._is_ancestor(self.refs[branch], new_sha):
            return self._json(422, {"message": "Update is not a fast forward"})
        self.refs[branch] = new_sha
        return self._json(200, {"ref": f"refs/heads/{branch}", "object": {"sha": new_sha}})

    def _dispatch(self, request: httpx.Request, body: dict[str, Any], workflow_id: str) -> httpx.Response:
        if workflow_id not in self.workflows:
            return self._not_found()
        if body.get("ref") not in self.refs:
            return self._json(422, {"message": f"No ref found for: {body.get('ref')}"})
        dispatch = {
            "workflow_id": workflow_id,
            "ref": body["ref"],
            "inputs": body.get("inputs", {}),
            "at": self.clock(),
        }
        self.dispatches.append(dispatch)
        if self.on_dispatch is not None:
            self.on_dispatch(dispatch)
        return self._json(204)

    def _list_runs(self, request: httpx.Request, body: dict[str, Any], workflow_id: str) -> httpx.Response:
        now = self.clock()
        event = request.url.params.get("event")
        runs = [
            run
            for run in self.runs
            if run.workflow_id == workflow_id and run.is_visible(now) and (not event or run.event == event)
        ]
        runs.sort(key=lambda run: (run.created_at, run.id), reverse=True)
        per_page = int(request.url.params.get("per_page", "30"))
        payload = [run.payload(now, self.repository) for run in runs[:per_page]]
        return self._json(200, {"total_count": len(runs), "workflow_runs": payload})

    def _find_run(self, run_id: str) -> ScriptedRun | None:
        return next((run for run in self.runs if run.id == int(run_id)), None)

    def _get_run(self, request: httpx.Request, body: dict[str, Any], run_id: str) -> httpx.Response:
        run = self._find_run(run_id)
        if run is None:
            return self._not_found()
        return self._json(200, run.payload(self.clock(), self.repository))

    def _get_jobs(self, request: httpx.Request, body: dict[str, Any], run_id: str) -> httpx.Response:
        run = self._find_run(run_id)
        if run is None:
            return self._not_found()
        return self._json(200, {"total_count": len(run.jobs), "jobs": run.jobs})

    def _get_logs(self, request: httpx.Request, body: dict[str, Any], run_id: str) -> httpx.Response:
        if self._find_run(run_id) is None:
            return self._not_found()
        return httpx.Response(200, content=b"PK\x05\x06" + b"\x00" * 18)


__all__ = ["EPOCH", "FakeClock", "FakeGitHub", "ScriptedRun"]
