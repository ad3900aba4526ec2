"""
Uploader daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration values come from environment variables or .env files;
no hardcoded URLs or credentials. Settings are frozen once loaded: changing
them means building a new uploader.

``MEASUREMENTS`` is a JSON list, e.g.::

    MEASUREMENTS='[{"name": "main", "channel": "ct1", "units": "Watts"},
                   {"name": "main", "channel": "v1", "units": "Volts"}]'

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import socket
from urllib.parse import urlsplit

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from logship.src.encoder import resolve_device_name
from logship.src.models import MeasurementConfig, is_csv_safe
from logship.src.resume import DEFAULT_SCHEMA, normalize_schema


class UploaderSettings(BaseSettings):
    """Uploader daemon configuration for the datalog-to-PostgREST pipeline.

    All values are loaded from environment variables. Required variables
    must be set; optional variables have sensible defaults.

    Attributes:
        postgrest_url: PostgREST service root URL (http or https).
        table: Target table name.
        schema_name: Target schema. Empty means ``public``.
        device_name: Value for the ``device`` column; ``$device`` is
            replaced with ``device_id``.
        device_id: Runtime identity of this device. Defaults to the host
            name.
        jwt_token: Optional bearer token for PostgREST.
        interval_s: Spacing of uploaded rows in seconds (min 5).
        bulk_send: Number of intervals sent per POST (1-10).
        buffer_limit: Maximum batch size in characters.
        upload_start_date: Epoch seconds; nothing older is uploaded.
        cpu_budget_ms: Encoding time allowed per tick before yielding.
        request_timeout_s: Per-request HTTP timeout.
        connectivity_check: Check the PostgREST host before resume queries
            and defer them while it is unreachable.
        connectivity_host: Host to check. Defaults to the POSTGREST_URL host.
        connectivity_port: Port to check. Defaults to the POSTGREST_URL port.
        connectivity_interval_s: Minimum time between two checks.
        datalog_path: SQLite datalog file path.
        health_path: JSON health file path.
        measurements: Output measurements (at least one).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        frozen=True,
    )

    postgrest_url: str
    table: str
    schema_name: str = DEFAULT_SCHEMA
    device_name: str = "$device"
    device_id: str = Field(default_factory=socket.gethostname)
    jwt_token: str | None = None
    interval_s: int = 10
    bulk_send: int = 1
    buffer_limit: int = 4000
    upload_start_date: int = 0
    cpu_budget_ms: float = 10.0
    request_timeout_s: float = 10.0
    connectivity_check: bool = True
    connectivity_host: str | None = None
    connectivity_port: int | None = Field(default=None, ge=1, le=65535)
    connectivity_interval_s: float = 5.0
    datalog_path: str = "/data/datalog.db"
    health_path: str = "/data/health.json"
    measurements: list[MeasurementConfig] = Field(min_length=1)

    def resolved_device_name(self) -> str:
        """Device column value with ``$device`` substituted."""
        return resolve_device_name(self.device_name, self.device_id)

    def connectivity_target(self) -> tuple[str, int]:
        """Host and port checked for connectivity."""
        url = urlsplit(self.postgrest_url)
        host = self.connectivity_host or url.hostname or ""
        port = self.connectivity_port or url.port or (443 if url.scheme == "https" else 80)
        return host, port

    @model_validator(mode="after")
    def device_name_must_be_csv_safe(self) -> UploaderSettings:
        """The device column is written unquoted, so it cannot hold CSV syntax."""
        if not is_csv_safe(self.resolved_device_name()):
            raise ValueError(
                "DEVICE_NAME/DEVICE_ID must not contain commas, quotes or newlines"
            )
        return self

    @field_validator("postgrest_url")
    @classmethod
    def postgrest_url_must_be_http(cls, v: str) -> str:
        """Validate that the PostgREST URL is an http(s) URL."""
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError(
                f"POSTGREST_URL must start with http:// or https:// (got: '{v[:20]}...')"
            )
        return v.rstrip("/")

    @field_validator("table")
    @classmethod
    def table_must_be_set(cls, v: str) -> str:
        """A table name is required."""
        if not v.strip():
            raise ValueError("TABLE name required")
        return v.strip()

    @field_validator("schema_name")
    @classmethod
    def schema_defaults_to_public(cls, v: str) -> str:
        """An empty schema means the default ``public`` schema."""
        return normalize_schema(v.strip())

    @field_validator("jwt_token")
    @classmethod
    def empty_token_means_anonymous(cls, v: str | None) -> str | None:
        """An empty token is treated as no token."""
        return v or None

    @field_validator("interval_s")
    @classmethod
    def interval_must_be_valid(cls, v: int) -> int:
        """Validate upload interval is at least 5 seconds."""
        if v < 5:
            raise ValueError("INTERVAL_S must be >= 5")
        return v

    @field_validator("bulk_send")
    @classmethod
    def bulk_send_must_be_valid(cls, v: int) -> int:
        """Validate bulk send is between 1 and 10."""
        if v < 1 or v > 10:
            raise ValueError("BULK_SEND must be >= 1 and <= 10")
        return v

    @field_validator("buffer_limit")
    @classmethod
    def buffer_limit_must_be_valid(cls, v: int) -> int:
        """Validate the batch buffer can hold a header and some rows."""
        if v < 256:
            raise ValueError("BUFFER_LIMIT must be >= 256")
        return v

    @field_validator("upload_start_date")
    @classmethod
    def upload_start_date_must_be_non_negative(cls, v: int) -> int:
        """Validate upload start date is non-negative."""
        if v < 0:
            raise ValueError("UPLOAD_START_DATE must be >= 0")
        return v

    @field_validator("connectivity_host")
    @classmethod
    def empty_host_means_url_host(cls, v: str | None) -> str | None:
        """An empty connectivity host falls back to the POSTGREST_URL host."""
        return v.strip() if v and v.strip() else None

    @field_validator("cpu_budget_ms", "request_timeout_s", "connectivity_interval_s")
    @classmethod
    def durations_must_be_positive(cls, v: float) -> float:
        """Validate time budgets are positive."""
        if v <= 0:
            raise ValueError("durations must be > 0")
        return v
