"""Shared fixtures wiring the services to the in-memory GitHub double."""

from __future__ import annotations

import pytest

from iacpush.models.settings import GitHubSettings
from iacpush.services.github_client import GitHubClient
from iacpush.tests.fakes import FakeClock, FakeGitHub


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def fake_github(clock: FakeClock) -> FakeGitHub:
    """Repository seeded with the files used by the publishing scenarios."""

    return FakeGitHub(files={"c.txt": "1", "old.txt": "x"}, clock=clock.now)


@pytest.fixture()
def settings() -> GitHubSettings:
    return GitHubSettings(token="ghp_test", poll_interval=10.0, poll_retries=3, discovery_skew=5.0)


@pytest.fixture()
def github_client(settings: GitHubSettings, fake_github: FakeGitHub) -> GitHubClient:
    return GitHubClient(settings, transport=fake_github.transport())
