"""Publish generated files and run a deployment workflow from a YAML manifest.

Example manifest::

    repository: acme/platform
    branch: main
    commit_message: Regenerate staging stack
    action: apply
    inputs:
      environment: staging
      auto_approve: true
    files:
      - path: terraform/main.tf
        source: build/main.tf
      - path: terraform/terraform.tfvars
        content: |
          region = "eu-west-1"

``source`` paths are resolved relative to the manifest. The workflow slot is
derived from the action unless ``workflow`` names one explicitly
(``infrastructure`` or ``application``). The token and tunables come from
``IACPUSH_*`` environment variables.
"""
from __future__ import annotations

import argparse
import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
import sys
from typing import Any, Sequence

import httpx
import yaml

from iacpush.models.github import CommitRequest, FileChange, RepositoryRef
from iacpush.models.operation import (
    Action,
    AppAction,
    InputValue,
    LogLine,
    OperationStatus,
    is_destructive,
    parse_action,
)
from iacpush.models.settings import GitHubSettings
from iacpush.services.access import AccessValidator
from iacpush.services.actions import DEFAULT_COMMIT_MESSAGE, ActionStateMachine
from iacpush.services.dispatcher import WorkflowDispatcher
from iacpush.services.errors import GitHubError, OperationError
from iacpush.services.github_client import GitHubClient
from iacpush.services.publisher import CommitPublisher
from iacpush.services.registry import DEFAULT_CONFLICT_RETRIES, OperationSlot, slot_action_type, slot_workflow
from iacpush.services.tracker import RunTracker

LOGGER = logging.getLogger("iacpush.run_action")


class ManifestError(ValueError):
    """The manifest file is missing, malformed or inconsistent."""


@dataclass(slots=True)
class Manifest:
    repository: RepositoryRef
    action: Action
    slot: OperationSlot
    branch: str | None = None
    commit_message: str = DEFAULT_COMMIT_MESSAGE
    inputs: dict[str, InputValue] = field(default_factory=dict)
    files: list[FileChange] = field(default_factory=list)


def _configure_logging() -> None:
    level_name = os.getenv("IACPUSH_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Publish files and run a deployment workflow.")
    parser.add_argument("manifest", type=Path, help="Path to the YAML manifest.")
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Skip the interactive prompt for destructive actions.",
    )
    parser.add_argument(
        "--no-wait",
        action="store_true",
        help="Exit once the workflow is dispatched instead of following the run.",
    )
    parser.add_argument(
        "--publish-only",
        action="store_true",
        help="Commit the manifest files without dispatching a workflow.",
    )
    return parser.parse_args(argv)


def _slot_for(action: Action, raw_slot: Any) -> OperationSlot:
    if raw_slot is None:
        return OperationSlot.APPLICATION if isinstance(action, AppAction) else OperationSlot.INFRASTRUCTURE
    try:
        slot = OperationSlot(str(raw_slot).strip().lower())
    except ValueError as exc:
        raise ManifestError(f"Unknown workflow slot {raw_slot!r}") from exc
    if not isinstance(action, slot_action_type(slot)):
        raise ManifestError(f"Action {action.value!r} cannot run in the {slot.value} workflow")
    return slot


def _load_inputs(raw: Any) -> dict[str, InputValue]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ManifestError("'inputs' must be a mapping")
    inputs: dict[str, InputValue] = {}
    for key, value in raw.items():
        if value is not None and not isinstance(value, (str, int, float, bool)):
            raise ManifestError(f"Input {key!r} must be a string, number or boolean")
        inputs[str(key)] = value
    return inputs


def _load_files(raw: Any, base_dir: Path) -> list[FileChange]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ManifestError("'files' must be a list")

    files: list[FileChange] = []
    for entry in raw:
        if not isinstance(entry, Mapping) or "path" not in entry:
            raise ManifestError("Each file entry needs a 'path'")
        if "content" in entry:
            content = entry["content"]
            if not isinstance(content, str):
                raise ManifestError(f"Content for {entry['path']!r} must be a string")
        elif "source" in entry:
            source = base_dir / str(entry["source"])
            try:
                content = source.read_text(encoding="utf-8")
            except OSError as exc:
                raise ManifestError(f"Cannot read {source}: {exc}") from exc
        else:
            raise ManifestError(f"File {entry['path']!r} needs 'content' or 'source'")
        try:
            files.append(FileChange(path=str(entry["path"]), content=content))
        except ValueError as exc:
            raise ManifestError(str(exc)) from exc
    return files


def load_manifest(path: Path) -> Manifest:
    """Parse and validate a manifest file."""

    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ManifestError(f"Cannot read manifest {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ManifestError(f"Manifest {path} is not valid YAML: {exc}") from exc

    if not isinstance(payload, Mapping):
        raise ManifestError("Manifest must be a mapping")
    for key in ("repository", "action"):
        if not payload.get(key):
            raise ManifestError(f"Manifest is missing {key!r}")

    try:
        repository = RepositoryRef.parse(str(payload["repository"]))
        action = parse_action(str(payload["action"]))
    except ValueError as exc:
        raise ManifestError(str(exc)) from exc

    branch = payload.get("branch")
    return Manifest(
        repository=repository,
        action=action,
        slot=_slot_for(action, payload.get("workflow")),
        branch=str(branch).strip() if branch else None,
        commit_message=str(payload.get("commit_message") or DEFAULT_COMMIT_MESSAGE),
        inputs=_load_inputs(payload.get("inputs")),
        files=_load_files(payload.get("files"), path.parent),
    )


def _print_line(line: LogLine) -> None:
    print(line.render(), flush=True)


def _confirmed(description: str, action: Action, prompt: Callable[[str], str]) -> bool:
    try:
        answer = prompt(f"{description}.\nType '{action.value}' to continue: ")
    except EOFError:
        return False
    return answer.strip().lower() == action.value


async def _execute(
    manifest: Manifest,
    settings: GitHubSettings,
    args: argparse.Namespace,
    *,
    prompt: Callable[[str], str],
    transport: httpx.AsyncBaseTransport | None = None,
) -> int:
    async with GitHubClient(settings, transport=transport) as client:
        try:
            has_access = await AccessValidator(client).check_access(manifest.repository)
        except GitHubError as exc:
            LOGGER.error("Could not check access to %s: %s", manifest.repository, exc.describe())
            return 1
        if not has_access:
            LOGGER.error("No push access to %s with the configured token", manifest.repository)
            return 1

        publisher = CommitPublisher(client, conflict_retries=DEFAULT_CONFLICT_RETRIES)
        if args.publish_only:
            if not manifest.files:
                LOGGER.error("--publish-only given but the manifest lists no files")
                return 1
            try:
                result = await publisher.publish(
                    CommitRequest(
                        repository=manifest.repository,
                        files=manifest.files,
                        message=manifest.commit_message,
                        branch=manifest.branch,
                    )
                )
            except GitHubError as exc:
                LOGGER.error("Publish failed: %s", exc.describe())
                return 1
            if result.updated:
                LOGGER.info("Committed %s to %s", result.commit_sha, result.branch)
            else:
                LOGGER.info("Files already up to date on %s; nothing committed", result.branch)
            return 0

        machine = ActionStateMachine(
            repository=manifest.repository,
            workflow_id=slot_workflow(manifest.slot, settings),
            dispatcher=WorkflowDispatcher(client),
            tracker=RunTracker(
                client,
                interval=settings.poll_interval,
                max_retries=settings.poll_retries,
                discovery_skew=settings.discovery_skew,
                discovery_timeout=settings.discovery_timeout,
            ),
            publisher=publisher,
            ref=manifest.branch,
            action_type=slot_action_type(manifest.slot),
            log_listener=_print_line,
        )
        try:
            if is_destructive(manifest.action):
                token = machine.request_confirmation(
                    manifest.action,
                    manifest.inputs,
                    files=manifest.files,
                    commit_message=manifest.commit_message,
                )
                if not args.yes and not _confirmed(token.description, manifest.action, prompt):
                    LOGGER.warning("Cancelled; %s was not run", manifest.action.value)
                    return 1
                await machine.confirm(token)
            else:
                await machine.trigger(
                    manifest.action,
                    manifest.inputs,
                    files=manifest.files,
                    commit_message=manifest.commit_message,
                )

            if args.no_wait:
                LOGGER.info("Workflow dispatched; not waiting for the run")
                return 0

            operation = await machine.wait()
        except (GitHubError, OperationError) as exc:
            LOGGER.error("%s", exc.describe())
            return 1
        finally:
            await machine.aclose()

    if operation.status is OperationStatus.SUCCESS:
        return 0
    if operation.run is not None:
        LOGGER.error("Run details: %s", operation.run.html_url)
    return 1


def main(
    argv: Sequence[str] | None = None,
    *,
    prompt: Callable[[str], str] = input,
    environ: Mapping[str, str] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> int:
    _configure_logging()
    args = _parse_args(argv)

    try:
        manifest = load_manifest(args.manifest)
    except ManifestError as exc:
        LOGGER.error("Invalid manifest: %s", exc)
        return 1

    settings = GitHubSettings.from_env(environ)
    if not settings.has_token:
        LOGGER.error("Set IACPUSH_GITHUB_TOKEN (or GITHUB_TOKEN) to a token with repo and workflow scopes")
        return 1

    LOGGER.info(
        "Running %s on %s",
        manifest.action.value,
        manifest.repository,
        extra={"event": "cli.start", "repository": manifest.repository.full_name, "slot": manifest.slot.value},
    )
    return asyncio.run(_execute(manifest, settings, args, prompt=prompt, transport=transport))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
