"""
Unit tests for the uploader daemon main loop module.

Tests verify:
- _tick_once() returns the scheduler's delay.
- A tick error doesn't crash the loop; the POST backoff is used instead.
- The upload loop waits the returned delay and exits on shutdown.
- The upload loop exits when the scheduler stops by itself.
- Shutdown asks the scheduler to stop and ticks it until Stopped.
- Startup logs config summary without secrets.
- configure_logging() emits one JSON object per line, with uploader context fields.
- build_transport() wires the connectivity monitor into the transport, so an
  unreachable host defers the resume query instead of failing it.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from logship.src.state import POST_RETRY_S, UploadState

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _FakeScheduler:
    """Scheduler stand-in that needs a few ticks to stop after stop()."""

    def __init__(self, delay: float = 0.01, ticks_to_stop: int = 1) -> None:
        self.endpoint = "/readings"
        self.state = UploadState.ENCODING
        self.tick_count = 0
        self.stop_calls = 0
        self._delay = delay
        self._ticks_to_stop = ticks_to_stop
        self._stopping = False

    @property
    def stopped(self) -> bool:
        return self.state is UploadState.STOPPED

    def stop(self) -> None:
        self.stop_calls += 1
        self._stopping = True

    async def tick(self) -> float:
        self.tick_count += 1
        if self._stopping:
            self._ticks_to_stop -= 1
            if self._ticks_to_stop <= 0:
                self.state = UploadState.STOPPED
        return self._delay


def _make_settings(**overrides: object) -> MagicMock:
    """Create a mock UploaderSettings with sensible defaults."""
    defaults = {
        "postgrest_url": "https://db.example.com",
        "table": "readings",
        "schema_name": "sensors",
        "interval_s": 60,
        "bulk_send": 5,
        "buffer_limit": 4000,
        "upload_start_date": 0,
        "datalog_path": "/tmp/test-datalog.db",
        "measurements": [MagicMock(), MagicMock()],
        "jwt_token": "secret-jwt-abc",
        "request_timeout_s": 10.0,
        "connectivity_check": True,
        "connectivity_interval_s": 5.0,
    }
    defaults.update(overrides)
    settings = MagicMock()
    for key, value in defaults.items():
        setattr(settings, key, value)
    settings.resolved_device_name = MagicMock(return_value="iw42-main")
    settings.connectivity_target = MagicMock(return_value=("db.example.com", 443))
    return settings


async def _trigger_after(event: asyncio.Event, seconds: float) -> None:
    await asyncio.sleep(seconds)
    event.set()


# ---------------------------------------------------------------------------
# Test: single tick
# ---------------------------------------------------------------------------


class TestTickOnce:
    """_tick_once() wraps scheduler.tick()."""

    @pytest.mark.asyncio
    async def test_returns_scheduler_delay(self) -> None:
        from logship.src.main import _tick_once

        scheduler = MagicMock()
        scheduler.tick = AsyncMock(return_value=0.25)

        assert await _tick_once(scheduler) == 0.25
        scheduler.tick.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_tick_error_uses_post_backoff(self, caplog: pytest.LogCaptureFixture) -> None:
        """An exception in tick() is logged and does not propagate."""
        from logship.src.main import _tick_once

        scheduler = MagicMock()
        scheduler.tick = AsyncMock(side_effect=RuntimeError("datalog unreadable"))

        with caplog.at_level(logging.ERROR, logger="logship.src.main"):
            delay = await _tick_once(scheduler)

        assert delay == POST_RETRY_S
        assert "Upload tick error" in caplog.text
        assert "datalog unreadable" in caplog.text


# ---------------------------------------------------------------------------
# Test: upload loop
# ---------------------------------------------------------------------------


class TestUploadLoop:
    """_upload_loop() ticks until shutdown or until the scheduler stops."""

    @pytest.mark.asyncio
    async def test_loop_ticks_until_shutdown(self) -> None:
        from logship.src.main import _upload_loop

        scheduler = _FakeScheduler(delay=0.01)
        shutdown_event = asyncio.Event()

        task = asyncio.create_task(
            _upload_loop(scheduler=scheduler, shutdown_event=shutdown_event)
        )
        trigger = asyncio.create_task(_trigger_after(shutdown_event, 0.1))
        await asyncio.wait_for(asyncio.gather(task, trigger), timeout=5.0)

        assert scheduler.tick_count >= 2
        assert scheduler.stop_calls == 0

    @pytest.mark.asyncio
    async def test_shutdown_interrupts_long_delay(self) -> None:
        """A long retry delay does not hold up shutdown."""
        from logship.src.main import _upload_loop

        scheduler = _FakeScheduler(delay=POST_RETRY_S)
        shutdown_event = asyncio.Event()

        task = asyncio.create_task(
            _upload_loop(scheduler=scheduler, shutdown_event=shutdown_event)
        )
        trigger = asyncio.create_task(_trigger_after(shutdown_event, 0.05))
        await asyncio.wait_for(asyncio.gather(task, trigger), timeout=2.0)

        assert scheduler.tick_count == 1

    @pytest.mark.asyncio
    async def test_loop_exits_when_scheduler_stopped(self) -> None:
        from logship.src.main import _upload_loop

        scheduler = _FakeScheduler(delay=0.0)
        scheduler.stop()

        await asyncio.wait_for(
            _upload_loop(scheduler=scheduler, shutdown_event=asyncio.Event()),
            timeout=2.0,
        )

        assert scheduler.stopped
        assert scheduler.tick_count == 1


# ---------------------------------------------------------------------------
# Test: graceful shutdown
# ---------------------------------------------------------------------------


class TestGracefulShutdown:
    """run_uploader() stops the scheduler cleanly after shutdown."""

    @pytest.mark.asyncio
    async def test_shutdown_stops_scheduler(self) -> None:
        from logship.src.main import run_uploader

        scheduler = _FakeScheduler(delay=0.01, ticks_to_stop=3)
        shutdown_event = asyncio.Event()

        task = asyncio.create_task(
            run_uploader(scheduler=scheduler, shutdown_event=shutdown_event)
        )
        trigger = asyncio.create_task(_trigger_after(shutdown_event, 0.05))
        await asyncio.wait_for(asyncio.gather(task, trigger), timeout=5.0)

        assert scheduler.stop_calls == 1
        assert scheduler.stopped

    @pytest.mark.asyncio
    async def test_shutdown_logs_completion(self, caplog: pytest.LogCaptureFixture) -> None:
        from logship.src.main import run_uploader

        scheduler = _FakeScheduler(delay=0.0)
        shutdown_event = asyncio.Event()
        shutdown_event.set()

        with caplog.at_level(logging.INFO, logger="logship.src.main"):
            await asyncio.wait_for(
                run_uploader(scheduler=scheduler, shutdown_event=shutdown_event),
                timeout=2.0,
            )

        assert scheduler.stopped
        assert "Shutdown complete" in caplog.text
        assert "did not stop cleanly" not in caplog.text


# ---------------------------------------------------------------------------
# Test: startup logs config summary without secrets
# ---------------------------------------------------------------------------


class TestStartupLogging:
    """Structured logging for startup with no secrets."""

    def test_log_config_summary_contains_target(self, caplog: pytest.LogCaptureFixture) -> None:
        """Startup log includes URL, table, schema and device."""
        from logship.src.main import log_config_summary

        with caplog.at_level(logging.INFO, logger="logship.src.main"):
            log_config_summary(_make_settings())

        full_log = caplog.text
        assert "https://db.example.com" in full_log
        assert "table=readings" in full_log
        assert "schema=sensors" in full_log
        assert "device=iw42-main" in full_log
        assert "measurements=2" in full_log
        assert "connectivity=db.example.com:443" in full_log

    def test_log_config_summary_does_not_contain_token(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Startup log only carries a fingerprint of the JWT."""
        from logship.src.main import log_config_summary

        with caplog.at_level(logging.INFO, logger="logship.src.main"):
            log_config_summary(_make_settings())

        full_log = caplog.text
        assert "secret-jwt-abc" not in full_log
        assert "auth=jwt:" in full_log

    def test_log_config_summary_without_token(self, caplog: pytest.LogCaptureFixture) -> None:
        from logship.src.main import log_config_summary

        with caplog.at_level(logging.INFO, logger="logship.src.main"):
            log_config_summary(_make_settings(jwt_token=None))

        assert "auth=anonymous" in caplog.text


class TestConfigureLogging:
    def test_emits_json_lines(self, capsys: pytest.CaptureFixture[str]) -> None:
        from logship.src.main import configure_logging

        root = logging.getLogger()
        saved_handlers = list(root.handlers)
        saved_level = root.level
        try:
            configure_logging()
            logging.getLogger("logship.test").info("hello %s", "world")
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

        line = capsys.readouterr().err.strip().splitlines()[-1]
        entry = json.loads(line)
        assert entry["level"] == "INFO"
        assert entry["logger"] == "logship.test"
        assert entry["msg"] == "hello world"
        assert "ts" in entry

    def test_context_fields_included(self) -> None:
        from logship.src.main import JsonLogFormatter

        record = logging.LogRecord(
            "logship.src.scheduler", logging.INFO, __file__, 1, "Uploaded %d rows", (5,), None
        )
        record.endpoint = "/sensors.readings"
        record.state = "encoding"
        record.last_sent = "2023-10-15T14:35:00Z"

        entry = json.loads(JsonLogFormatter().format(record))

        assert entry["msg"] == "Uploaded 5 rows"
        assert entry["endpoint"] == "/sensors.readings"
        assert entry["state"] == "encoding"
        assert entry["last_sent"] == "2023-10-15T14:35:00Z"

    def test_context_fields_omitted_when_absent(self) -> None:
        from logship.src.main import JsonLogFormatter

        record = logging.LogRecord("logship", logging.INFO, __file__, 1, "hello", (), None)

        entry = json.loads(JsonLogFormatter().format(record))

        assert set(entry) == {"ts", "level", "logger", "msg"}


# ---------------------------------------------------------------------------
# Test: transport wiring
# ---------------------------------------------------------------------------


class TestBuildTransport:
    """build_transport() hands the connectivity monitor to the transport."""

    def test_monitor_reaches_transport(self) -> None:
        from logship.src.main import build_transport

        with patch("logship.src.transport.ConnectivityMonitor") as mock_monitor_cls:
            mock_monitor_cls.return_value.return_value = False
            transport = build_transport(_make_settings())

        mock_monitor_cls.assert_called_once_with(
            "db.example.com", 443, timeout_s=1.0, interval_s=5.0
        )
        assert transport.is_connected() is False
        mock_monitor_cls.return_value.assert_called_once_with()

    def test_monitor_disabled(self) -> None:
        from logship.src.main import build_transport

        with patch("logship.src.transport.ConnectivityMonitor") as mock_monitor_cls:
            transport = build_transport(_make_settings(connectivity_check=False))

        mock_monitor_cls.assert_not_called()
        assert transport.is_connected() is True

    @pytest.mark.asyncio
    async def test_offline_defers_resume_query(self) -> None:
        """With the host unreachable the scheduler waits quietly instead of failing."""
        from logship.src.encoder import RowEncoder
        from logship.src.main import build_transport
        from logship.src.scheduler import UploadScheduler
        from logship.src.state import WAIT_DELAY_S

        with patch("logship.src.transport.ConnectivityMonitor") as mock_monitor_cls:
            mock_monitor_cls.return_value.return_value = False
            transport = build_transport(_make_settings())

        log_store = MagicMock()
        scheduler = UploadScheduler(
            encoder=RowEncoder([], "iw42"),
            log_store=log_store,
            transport=transport,
            table="readings",
            interval_s=60,
        )

        with patch.object(transport, "get") as mock_get:
            delays = [await scheduler.tick() for _ in range(3)]

        assert delays == [WAIT_DELAY_S] * 3
        assert scheduler.state is UploadState.RESOLVING
        assert scheduler.status_message is None
        mock_get.assert_not_called()
