"""
Shared fixtures for the uploader tests.

HTTP traffic is mocked with requests_mock; token exchanges go through a fake
token client so msal never touches the network.
"""

from __future__ import annotations

import itertools
import threading
import time
from typing import Any

import pytest

from auth import CredentialManager, Credentials
from config import ApiType, BackendConfig
from errors import RefreshTokenError
from paths import PathResolver
from uploader import Uploader

GRAPH = "https://graph.microsoft.com/v1.0"
FUTURE = "2999-01-01T00:00:00.1234567Z"
PAST = "2000-01-01T00:00:00Z"


class FakeTokenClient:
    """Hands out numbered token pairs: access-N always travels with refresh-N."""

    def __init__(self, expires_in: float = 3600, fail: bool = False) -> None:
        self.expires_in = expires_in
        self.fail = fail
        self.calls: list[str] = []
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def exchange_refresh_token(self, refresh_token: str) -> Credentials:
        with self._lock:
            self.calls.append(refresh_token)
            if self.fail:
                raise RefreshTokenError("invalid_grant")
            n = next(self._counter)
        return Credentials(f"access-{n}", f"refresh-{n}", time.time() + self.expires_in)


@pytest.fixture
def config() -> BackendConfig:
    return BackendConfig(
        client_id="client",
        client_secret="secret",
        api_type=ApiType.COMMON,
        root_folder="/Backups",
    )


@pytest.fixture
def token_client() -> FakeTokenClient:
    return FakeTokenClient()


@pytest.fixture
def credentials() -> Credentials:
    return Credentials("access-0", "refresh-0", time.time() + 3600)


@pytest.fixture
def manager(token_client: FakeTokenClient, credentials: Credentials):
    mgr = CredentialManager(token_client, credentials, poll_interval=0.01)
    yield mgr
    mgr.close()


@pytest.fixture
def resolver(config: BackendConfig, manager: CredentialManager) -> PathResolver:
    return PathResolver(config, manager)


@pytest.fixture
def uploader(config: BackendConfig, manager: CredentialManager,
             resolver: PathResolver) -> Uploader:
    return Uploader(config, manager, resolver)


def item(item_id: str) -> dict[str, Any]:
    """Minimal driveItem body."""
    return {"id": item_id, "name": item_id}
