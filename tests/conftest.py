import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

# Test modules mint auth headers at import time; sign them with the same
# secret the autouse fixture installs.
os.environ["JWT_SECRET"] = "test-secret"

from src.chatlink.config import BackoffPolicy, GatewaySettings, LaunchPolicy  # noqa: E402
from src.chatlink.infrastructure.store import InMemoryGatewayStore, reset_store  # noqa: E402
from src.chatlink.security.rate_limit import reset_rate_limits  # noqa: E402
from src.chatlink.services.extraction_ai import reset_breaker  # noqa: E402
from src.chatlink.services.gateway import Gateway, reset_gateway  # noqa: E402
from tests.fakes import FakeClientFactory, FakeExtractionDelegate  # noqa: E402


@pytest.fixture(autouse=True)
def _isolated_gateway_env(monkeypatch):
    """Keep app startup inert and every singleton fresh per test."""
    monkeypatch.setenv("CHATLINK_AUTOSTART", "0")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.delenv("CHATLINK_RELAY_TOKEN", raising=False)
    monkeypatch.delenv("CHATLINK_RELAY_URL", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("CHATLINK_RATE_LIMIT_DISABLED", raising=False)
    reset_store()
    reset_gateway()
    reset_rate_limits()
    reset_breaker()
    yield
    reset_gateway()
    reset_store()


@pytest.fixture
def settings():
    return GatewaySettings(
        backoff=BackoffPolicy(),
        launch=LaunchPolicy(attempts=3, step_s=0.0),
        connect_timeout_s=0.5,
        reconnect_timeout_s=0.5,
        autostart=False,
    )


@pytest.fixture
def store():
    return InMemoryGatewayStore()


@pytest.fixture
def factory():
    return FakeClientFactory()


@pytest.fixture
def delegate():
    return FakeExtractionDelegate()


@pytest.fixture
def gateway(settings, store, factory, delegate):
    gw = Gateway(settings=settings, store=store, client_factory=factory, delegate=delegate)
    reset_gateway(gw)
    return gw
