"""
Uploader daemon main loop for the datalog-to-PostgREST pipeline.

Runs a single asyncio loop that ticks the :class:`UploadScheduler` and waits
the delay each tick returns. The scheduler itself never blocks, so the loop
shares the event loop cooperatively with whatever else runs on the device.

The loop is resilient: an exception in one tick is logged and the tick is
retried after the POST backoff. Graceful shutdown on SIGTERM/SIGINT sets a
shared asyncio.Event; the loop then asks the scheduler to stop and keeps
ticking until any in-flight request has completed and the scheduler has
reached its Stopped state.

Structured JSON logging is used for all events; scheduler records carry
``endpoint``/``state``/``last_sent`` fields. A HealthWriter instance tracks
the scheduler state, the last confirmed row and the latest failure.

Resume queries are deferred while a ConnectivityMonitor reports the PostgREST
host unreachable (disable with ``CONNECTIVITY_CHECK=false``).

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from logship.src.state import POST_RETRY_S, WAIT_DELAY_S

if TYPE_CHECKING:
    from logship.src.config import UploaderSettings
    from logship.src.scheduler import UploadScheduler
    from logship.src.transport import HttpTransport

logger = logging.getLogger(__name__)

_SHUTDOWN_TICK_LIMIT = 1000
"""Ticks allowed after shutdown for in-flight requests to finish."""


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------

_CONTEXT_FIELDS = ("endpoint", "state", "last_sent")
"""Optional ``extra=`` attributes copied into the JSON log line."""


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record, with uploader context fields when given."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: int = logging.INFO) -> None:
    """Send JSON log lines to stderr from the root logger."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonLogFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


def _token_fingerprint(token: str | None) -> str:
    """Identify the configured JWT in logs without revealing it."""
    if not token:
        return "anonymous"
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]
    return f"jwt:{digest}"


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: UploaderSettings) -> None:
    """Log where and what the uploader will send, never the JWT itself."""
    connectivity = "off"
    if settings.connectivity_check:
        host, port = settings.connectivity_target()
        connectivity = f"{host}:{port}"
    logger.info(
        "Uploader starting: postgrest_url=%s, table=%s, schema=%s, device=%s, "
        "interval_s=%s, bulk_send=%s, buffer_limit=%s, upload_start_date=%s, "
        "datalog_path=%s, measurements=%d, connectivity=%s, auth=%s",
        settings.postgrest_url,
        settings.table,
        settings.schema_name,
        settings.resolved_device_name(),
        settings.interval_s,
        settings.bulk_send,
        settings.buffer_limit,
        settings.upload_start_date,
        settings.datalog_path,
        len(settings.measurements),
        connectivity,
        _token_fingerprint(settings.jwt_token),
    )


def build_transport(settings: UploaderSettings) -> HttpTransport:
    """Create the PostgREST transport, with a host connectivity check unless disabled."""
    from logship.src.transport import ConnectivityMonitor, HttpTransport

    connectivity = None
    if settings.connectivity_check:
        host, port = settings.connectivity_target()
        connectivity = ConnectivityMonitor(
            host,
            port,
            timeout_s=min(settings.request_timeout_s, WAIT_DELAY_S),
            interval_s=settings.connectivity_interval_s,
        )
    return HttpTransport(
        settings.postgrest_url,
        token=settings.jwt_token,
        timeout_s=settings.request_timeout_s,
        connectivity=connectivity,
    )


# ---------------------------------------------------------------------------
# Single-iteration function (easily testable)
# ---------------------------------------------------------------------------


async def _tick_once(scheduler: UploadScheduler) -> float:
    """Execute a single scheduler tick.

    Catches all exceptions so that the caller's loop is never broken.

    Args:
        scheduler: The upload scheduler.

    Returns:
        Seconds to wait before the next tick.
    """
    try:
        return await scheduler.tick()
    except Exception:
        logger.error("Upload tick error", exc_info=True)
        return POST_RETRY_S


# ---------------------------------------------------------------------------
# Loop runner
# ---------------------------------------------------------------------------


async def _upload_loop(
    *,
    scheduler: UploadScheduler,
    shutdown_event: asyncio.Event,
) -> None:
    """Tick the scheduler until shutdown_event is set.

    Waits the delay returned by each tick, waking early on shutdown.

    Args:
        scheduler: The upload scheduler.
        shutdown_event: Event to signal graceful shutdown.
    """
    logger.info("Upload loop started (endpoint=%s)", scheduler.endpoint)
    while not shutdown_event.is_set() and not scheduler.stopped:
        delay = await _tick_once(scheduler)
        # Use wait with timeout so we can check shutdown between sleeps
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
    logger.info("Upload loop stopped")


async def run_uploader(
    *,
    scheduler: UploadScheduler,
    shutdown_event: asyncio.Event,
) -> None:
    """Run the upload loop, then stop the scheduler cleanly.

    After shutdown the scheduler is asked to stop and ticked until it
    reaches Stopped, so an in-flight request is observed to completion.

    Args:
        scheduler: The upload scheduler.
        shutdown_event: Event to signal graceful shutdown.
    """
    await _upload_loop(scheduler=scheduler, shutdown_event=shutdown_event)

    scheduler.stop()
    for _ in range(_SHUTDOWN_TICK_LIMIT):
        if scheduler.stopped:
            break
        delay = await _tick_once(scheduler)
        await asyncio.sleep(min(delay, 1.0))
    else:
        logger.warning("Uploader did not stop cleanly (state=%s)", scheduler.state.name)
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, build components, run the loop.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.
    """
    configure_logging()

    from logship.src.config import UploaderSettings
    from logship.src.datalog import DataLog
    from logship.src.encoder import RowEncoder
    from logship.src.health import HealthWriter
    from logship.src.measurements import build_measurements
    from logship.src.scheduler import UploadScheduler

    settings = UploaderSettings()
    log_config_summary(settings)

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    encoder = RowEncoder(
        build_measurements(settings.measurements),
        settings.resolved_device_name(),
    )
    transport = build_transport(settings)
    health = HealthWriter(settings.health_path)

    async with DataLog(settings.datalog_path) as datalog:
        scheduler = UploadScheduler(
            encoder=encoder,
            log_store=datalog,
            transport=transport,
            table=settings.table,
            schema=settings.schema_name,
            interval_s=settings.interval_s,
            bulk_send=settings.bulk_send,
            buffer_limit=settings.buffer_limit,
            upload_start_date=settings.upload_start_date,
            cpu_budget_s=settings.cpu_budget_ms / 1000.0,
            health=health,
        )
        try:
            await run_uploader(scheduler=scheduler, shutdown_event=shutdown_event)
        finally:
            await transport.aclose()


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event.

    Args:
        shutdown_event: The event to set for graceful shutdown.
    """
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the uploader daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
