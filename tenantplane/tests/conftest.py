from __future__ import annotations

import pytest

from tenantplane.core.config import get_settings
from tenantplane.services.container import reset_container
from tenantplane.services.resilience import reset_circuit_breakers
from tenantplane.services.telemetry import reset_telemetry


_FAKE_PROVIDER_ENV = {
    "PARAMETER_STORE_PROVIDER": "fake",
    "STACK_PROVIDER": "fake",
    "DATA_STORE_PROVIDER": "fake",
    "EVENTS_PROVIDER": "fake",
    "METRICS_PROVIDER": "fake",
    "IDENTITY_PROVIDER": "fake",
    "JOB_STORE": "memory",
    "ENVIRONMENT": "test",
    "PROJECT_NAME": "app",
    "STACK_MAX_WAIT_S": "2",
    "STACK_POLL_INTERVAL_S": "0.01",
    "CB_SHARED_STATE": "false",
    "AUTO_BOOTSTRAP": "false",
}


@pytest.fixture(autouse=True)
def _fake_providers(monkeypatch) -> None:
    # Never reach AWS from tests; every factory resolves to an in-memory fake.
    for key, value in _FAKE_PROVIDER_ENV.items():
        monkeypatch.setenv(key, value)
    get_settings.cache_clear()
    reset_container()
    reset_circuit_breakers()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_container()
    reset_circuit_breakers()
    reset_telemetry()
