"""Security test fixtures.

Responsibilities:
- Builds the FastAPI `app` with recording business handlers and a
  zero-delay retry policy
- Provides an unauthenticated `client` (attacker perspective)
- Sets provider secrets in the environment for the duration of a test
"""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from portal_webhooks.monitoring import PerformanceMonitor
from portal_webhooks.serve import create_app
from portal_webhooks.webhooks.retry import RetryPolicy

SECRETS = {
    "MPESA_WEBHOOK_SECRET": "mpesa-secret",
    "KOPOKOPO_WEBHOOK_SECRET": "kopokopo-secret",
    "WEBHOOK_SECRET": "generic-secret",
}


class RecordingHandler:
    """Business handler that records payloads and can be told to fail."""

    def __init__(self) -> None:
        self.payloads: list[bytes] = []
        self.fail = False

    async def __call__(self, payload: bytes) -> None:
        self.payloads.append(payload)
        if self.fail:
            raise RuntimeError("ledger write failed")


@pytest.fixture
def secrets_env():
    with patch.dict(os.environ, SECRETS):
        yield SECRETS


@pytest.fixture
def business_handler():
    return RecordingHandler()


@pytest.fixture
def monitor():
    return PerformanceMonitor()


@pytest.fixture
def app(business_handler, monitor):
    return create_app(
        {"mpesa": business_handler, "kopokopo": business_handler, "generic": business_handler},
        policy=RetryPolicy(max_attempts=3, base_delay=0),
        monitor=monitor,
    )


@pytest.fixture
def client(app, secrets_env):
    """Unauthenticated TestClient (attacker perspective)."""
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
