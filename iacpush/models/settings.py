"""Configuration values injected into the GitHub-facing services."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
import os
from typing import Mapping


LOGGER = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_INFRA_WORKFLOW = "deploy.yml"
DEFAULT_APP_WORKFLOW = "k8s-deploy.yml"


def _read_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw_value = environ.get(name)
    if raw_value is None or not raw_value.strip():
        return default
    try:
        value = float(raw_value)
    except ValueError:
        LOGGER.warning(
            "Ignoring invalid %s=%r; using %s", name, raw_value, default, extra={"event": "settings.invalid"}
        )
        return default
    if value <= 0:
        LOGGER.warning(
            "Ignoring non-positive %s=%r; using %s", name, raw_value, default, extra={"event": "settings.invalid"}
        )
        return default
    return value


def _read_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw_value = environ.get(name)
    if raw_value is None or not raw_value.strip():
        return default
    try:
        value = int(raw_value)
    except ValueError:
        LOGGER.warning(
            "Ignoring invalid %s=%r; using %s", name, raw_value, default, extra={"event": "settings.invalid"}
        )
        return default
    return max(0, value)


@dataclass(slots=True, frozen=True)
class GitHubSettings:
    """Credential and tunables shared by every call made on behalf of one user."""

    token: str | None = field(default=None, repr=False)
    api_url: str = DEFAULT_API_URL
    timeout: float = 30.0
    poll_interval: float = 10.0
    poll_retries: int = 3
    discovery_skew: float = 5.0
    discovery_timeout: float = 300.0
    infra_workflow: str = DEFAULT_INFRA_WORKFLOW
    app_workflow: str = DEFAULT_APP_WORKFLOW
    user_agent: str = "iacpush/1.0"

    @property
    def has_token(self) -> bool:
        return bool(self.token and self.token.strip())

    def with_token(self, token: str | None) -> "GitHubSettings":
        return replace(self, token=token)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "GitHubSettings":
        """Build settings from ``IACPUSH_*`` environment variables."""

        env = os.environ if environ is None else environ
        token = (env.get("IACPUSH_GITHUB_TOKEN") or env.get("GITHUB_TOKEN") or "").strip() or None
        api_url = (env.get("IACPUSH_API_URL") or DEFAULT_API_URL).strip().rstrip("/")

        return cls(
            token=token,
            api_url=api_url or DEFAULT_API_URL,
            timeout=_read_float(env, "IACPUSH_HTTP_TIMEOUT", 30.0),
            poll_interval=_read_float(env, "IACPUSH_POLL_INTERVAL", 10.0),
            poll_retries=_read_int(env, "IACPUSH_POLL_RETRIES", 3),
            discovery_skew=_read_float(env, "IACPUSH_DISCOVERY_SKEW", 5.0),
            discovery_timeout=_read_float(env, "IACPUSH_DISCOVERY_TIMEOUT", 300.0),
            infra_workflow=(env.get("IACPUSH_INFRA_WORKFLOW") or DEFAULT_INFRA_WORKFLOW).strip(),
            app_workflow=(env.get("IACPUSH_APP_WORKFLOW") or DEFAULT_APP_WORKFLOW).strip(),
        )


__all__ = ["GitHubSettings"]
