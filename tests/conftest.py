"""
Shared fixtures for rce-manager tests.
"""

import pytest

from rce_manager.config import ManagerConfig
from rce_manager.models import ServerOptions

from .helpers import FakeConnector, GPortalStub


@pytest.fixture
def gportal() -> GPortalStub:
    """Scripted token and GraphQL endpoints."""
    return GPortalStub()


@pytest.fixture
def connector() -> FakeConnector:
    """Fake websocket connect factory."""
    return FakeConnector()


@pytest.fixture
def eu_server() -> ServerOptions:
    return ServerOptions(identifier="eu-main", server_id=1234567, region="EU")


@pytest.fixture
def fast_config(tmp_path) -> ManagerConfig:
    """Config with timings short enough for tests."""
    return ManagerConfig(
        refresh_token="provided-token",
        auth_file=tmp_path / "auth.json",
        reconnect_initial_delay=0.0,
        reconnect_max_delay=0.0,
        auth_retry_delay=60.0,
    )
