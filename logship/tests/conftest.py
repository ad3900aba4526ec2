"""
Shared test fixtures for uploader tests.

Provides environment variable fixtures for UploaderSettings configuration
tests. All uploader env vars are cleaned before each test to ensure
isolation.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import pytest

# All UploaderSettings environment variable names, used for cleanup.
_ALL_UPLOADER_ENV_VARS = (
    "POSTGREST_URL",
    "TABLE",
    "SCHEMA_NAME",
    "DEVICE_NAME",
    "DEVICE_ID",
    "JWT_TOKEN",
    "INTERVAL_S",
    "BULK_SEND",
    "BUFFER_LIMIT",
    "UPLOAD_START_DATE",
    "CPU_BUDGET_MS",
    "REQUEST_TIMEOUT_S",
    "CONNECTIVITY_CHECK",
    "CONNECTIVITY_HOST",
    "CONNECTIVITY_PORT",
    "CONNECTIVITY_INTERVAL_S",
    "DATALOG_PATH",
    "HEALTH_PATH",
    "MEASUREMENTS",
)

_MEASUREMENTS_JSON = (
    '[{"name": "main", "channel": "ct1", "units": "Watts", "precision": 1},'
    ' {"name": "main", "channel": "v1", "units": "Volts", "precision": 1}]'
)


@pytest.fixture(autouse=True)
def _clean_uploader_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all uploader env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_UPLOADER_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set all required and optional environment variables for UploaderSettings.

    Returns the dict of env var names to values for assertion convenience.
    """
    env = {
        "POSTGREST_URL": "https://db.example.com",
        "TABLE": "readings",
        "SCHEMA_NAME": "sensors",
        "DEVICE_NAME": "$device-main",
        "DEVICE_ID": "iw42",
        "JWT_TOKEN": "test-jwt-token",
        "INTERVAL_S": "60",
        "BULK_SEND": "5",
        "BUFFER_LIMIT": "8000",
        "UPLOAD_START_DATE": "1697328000",
        "CPU_BUDGET_MS": "20",
        "REQUEST_TIMEOUT_S": "15",
        "CONNECTIVITY_CHECK": "false",
        "CONNECTIVITY_HOST": "gateway.local",
        "CONNECTIVITY_PORT": "8443",
        "CONNECTIVITY_INTERVAL_S": "2",
        "DATALOG_PATH": "/tmp/test-datalog.db",
        "HEALTH_PATH": "/tmp/test-health.json",
        "MEASUREMENTS": _MEASUREMENTS_JSON,
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def env_vars_required_only(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set only the required environment variables (no optional ones).

    Optional variables should fall back to their defaults.
    """
    env = {
        "POSTGREST_URL": "http://10.0.0.5:3000",
        "TABLE": "iotawatt",
        "MEASUREMENTS": _MEASUREMENTS_JSON,
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env
