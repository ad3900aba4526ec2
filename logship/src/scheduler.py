"""
Cooperative upload scheduler for the PostgREST uploader.

Drives the upload state machine one step per :meth:`UploadScheduler.tick`.
Each tick returns immediately with the number of seconds to wait before the
next tick; network requests are started and then polled on later ticks, and
batch encoding gives up the CPU once its per-tick budget is spent.

Cycle:
1. **Resolve**: ask the table for the newest row of this device and derive
   ``last_sent`` (see :mod:`logship.src.resume`).
2. **Encode**: once the datalog holds ``bulk_send`` complete intervals past
   ``last_sent``, encode them into a CSV batch (bounded by ``buffer_limit``).
3. **Post**: POST the batch as ``text/csv``. HTTP 201 is the only success;
   then ``last_sent`` advances to the newest row in the batch. Any failure
   leaves ``last_sent`` alone, so the same window is encoded and sent again
   after the retry delay. Rows may be duplicated, never skipped.

The latest failure (code plus truncated response body) is kept in
``status_message`` and mirrored to the health file.

Operations:
- tick(): Perform one step; return the delay until the next one.
- stop(): Request a cooperative stop at the next state boundary.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from logship.src.resume import (
    endpoint_path,
    parse_last_timestamp,
    resolve_resume_point,
    resume_query_params,
)
from logship.src.state import Event, ResumeCursor, UploadState, transition
from logship.src.timestamps import format_local, format_timestamp

if TYPE_CHECKING:
    from logship.src.datalog import LogRecord, LogStore
    from logship.src.encoder import Batch, RowEncoder
    from logship.src.health import HealthWriter
    from logship.src.transport import HttpTransport, PendingRequest, RequestResult

logger = logging.getLogger(__name__)

CSV_CONTENT_TYPE = "text/csv"
HTTP_OK = 200
HTTP_CREATED = 201
STATUS_BODY_LIMIT = 200
"""Maximum number of response body characters kept in status messages."""

_DEFAULT_CPU_BUDGET_S = 0.01


class UploadScheduler:
    """State machine moving datalog intervals to a PostgREST table.

    Args:
        encoder: Row encoder holding the sorted measurements and device name.
        log_store: Read-only datalog access.
        transport: Non-blocking HTTP transport.
        table: Target table name.
        schema: Target schema; ``public`` (or empty) is omitted from paths.
        interval_s: Spacing of uploaded rows in seconds.
        bulk_send: Number of intervals per batch.
        buffer_limit: Batch size limit in characters.
        upload_start_date: Never upload rows before this epoch timestamp.
        cpu_budget_s: Encoding time allowed per tick before yielding.
        clock: Monotonic clock used for the CPU budget.
        health: HealthWriter instance, or None to skip health writes.
    """

    def __init__(
        self,
        *,
        encoder: RowEncoder,
        log_store: LogStore,
        transport: HttpTransport,
        table: str,
        schema: str | None = None,
        interval_s: int,
        bulk_send: int = 1,
        buffer_limit: int = 4000,
        upload_start_date: int = 0,
        cpu_budget_s: float = _DEFAULT_CPU_BUDGET_S,
        clock: Callable[[], float] = time.monotonic,
        health: HealthWriter | None = None,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        if bulk_send < 1:
            raise ValueError("bulk_send must be at least 1")
        self._encoder = encoder
        self._log = log_store
        self._transport = transport
        self._path = endpoint_path(table, schema)
        self._interval = interval_s
        self._bulk_send = bulk_send
        self._buffer_limit = buffer_limit
        self._upload_start_date = upload_start_date
        self._cpu_budget_s = cpu_budget_s
        self._clock = clock
        self._health = health

        self._state = UploadState.RESOLVING
        self._cursor = ResumeCursor()
        self._status_message: str | None = None
        self._stop_requested = False
        self._request: PendingRequest | None = None

        # Encoding progress, kept across yields.
        self._batch: Batch | None = None
        self._window_end = 0
        self._old: LogRecord | None = None
        self._new: LogRecord | None = None

        self._handlers: dict[UploadState, Callable[[], Awaitable[Event]]] = {
            UploadState.RESOLVING: self._handle_resolving,
            UploadState.AWAITING_RESOLVE: self._handle_awaiting_resolve,
            UploadState.ENCODING: self._handle_encoding,
            UploadState.POSTING: self._handle_posting,
            UploadState.AWAITING_POST: self._handle_awaiting_post,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> UploadState:
        return self._state

    @property
    def stopped(self) -> bool:
        return self._state is UploadState.STOPPED

    @property
    def last_sent(self) -> int:
        """Timestamp of the newest row confirmed by the remote."""
        return self._cursor.last_sent

    @property
    def last_post(self) -> int:
        """Timestamp of the newest row in the current batch."""
        return self._cursor.last_post

    @property
    def status_message(self) -> str | None:
        """Latest failure description, ``None`` after a success."""
        return self._status_message

    @property
    def endpoint(self) -> str:
        return self._path

    def stop(self) -> None:
        """Ask the scheduler to stop at the next state boundary.

        An in-flight request is not interrupted; it is polled to completion
        (and its outcome applied) before the scheduler halts.
        """
        if not self._stop_requested:
            logger.info("Stop requested for uploader to %s", self._path)
        self._stop_requested = True

    async def tick(self) -> float:
        """Perform one step of the state machine.

        Returns:
            Seconds to wait before calling :meth:`tick` again.
        """
        if self._state is UploadState.STOPPED:
            return transition(self._state, Event.STOP)[1]

        event = await self._handlers[self._state]()
        next_state, delay = transition(self._state, event)

        if next_state is UploadState.STOPPED:
            self._release()
            logger.info("Uploader to %s stopped", self._path)
        if next_state is not self._state:
            logger.debug(
                "Uploader state %s -> %s (%s)",
                self._state.name,
                next_state.name,
                event.name,
                extra=self._log_context(next_state),
            )
            self._state = next_state
            self._update_health(lambda health: health.set_state(next_state.value))
        return delay

    # ------------------------------------------------------------------
    # State handlers
    # ------------------------------------------------------------------

    async def _handle_resolving(self) -> Event:
        if self._stop_requested:
            return Event.STOP
        if not self._transport.is_connected():
            logger.debug("No connectivity, deferring resume query.")
            return Event.OFFLINE

        self._cursor = ResumeCursor()
        self._request = self._transport.get(
            self._path,
            resume_query_params(self._encoder.device_name),
        )
        return Event.QUERY_SENT

    async def _handle_awaiting_resolve(self) -> Event:
        if self._request is not None and not self._request.ready:
            return Event.PENDING
        if self._request is None:
            self._set_status("Query failed, no request in flight")
            return Event.QUERY_FAILED

        result = self._request.result()
        self._request = None

        if result.status_code != HTTP_OK:
            message = _failure_message("Query failed", result)
            logger.warning("%s", message)
            self._set_status(message)
            return Event.QUERY_FAILED

        remote = parse_last_timestamp(result.text)
        first_key = await self._log.first_key()
        last_sent = resolve_resume_point(
            remote,
            upload_start_date=self._upload_start_date,
            first_key=first_key,
            interval=self._interval,
        )
        self._cursor = ResumeCursor(last_sent=last_sent, last_post=last_sent)
        self._set_status(None)

        if not self._stop_requested:
            logger.info(
                "Start posting to %s at %s",
                self._path,
                format_local(last_sent + self._interval),
            )
        return Event.RESOLVED

    async def _handle_encoding(self) -> Event:
        if self._stop_requested:
            return Event.STOP

        if self._batch is None:
            window_end = self._cursor.last_sent + self._interval * (self._bulk_send + 1)
            if await self._log.last_key() < window_end:
                return Event.NO_DATA
            self._batch = self._encoder.new_batch(self._buffer_limit)
            self._window_end = window_end
            self._old = None
            self._new = await self._log.read_at(self._cursor.last_sent + self._interval)

        batch = self._batch
        assert self._new is not None
        deadline = self._clock() + self._cpu_budget_s
        encoded = 0

        while self._new.unix_time < self._window_end:
            if batch.row_count and batch.full:
                break
            if encoded and self._clock() > deadline:
                return Event.YIELD

            self._old = self._new
            self._new = await self._log.read_at(self._old.unix_time + self._interval)
            encoded += 1

            if self._new.log_hours - self._old.log_hours <= 0:
                continue

            rows = self._encoder.encode(self._old.unix_time, self._old, self._new)
            if rows:
                batch.add_rows(rows)
                self._cursor.last_post = self._old.unix_time

        if batch.row_count == 0:
            # The datalog is append-only, so an empty window stays empty.
            first_key = await self._log.first_key()
            skipped_to = max(
                self._window_end - self._interval,
                first_key - first_key % self._interval,
            )
            logger.debug(
                "No rows between %s and %s, advancing.",
                format_timestamp(self._cursor.last_sent + self._interval),
                format_timestamp(skipped_to),
            )
            self._cursor.last_sent = skipped_to
            self._cursor.last_post = skipped_to
            self._discard_batch()
            return Event.WINDOW_EMPTY

        return Event.BATCH_READY

    async def _handle_posting(self) -> Event:
        if self._stop_requested:
            return Event.STOP
        assert self._batch is not None

        logger.debug(
            "Posting %d rows up to %s to %s",
            self._batch.row_count,
            format_timestamp(self._cursor.last_post),
            self._path,
        )
        self._request = self._transport.post(self._path, self._batch.text(), CSV_CONTENT_TYPE)
        return Event.POST_SENT

    async def _handle_awaiting_post(self) -> Event:
        if self._request is not None and not self._request.ready:
            return Event.PENDING

        result = self._request.result() if self._request is not None else None
        self._request = None
        rows = self._batch.row_count if self._batch is not None else 0
        self._discard_batch()

        if result is None or result.transport_failed:
            error = result.error if result is not None else "no request in flight"
            message = f"POST failed, transport error: {error}"
            logger.warning("%s; retrying in the next window.", message)
            self._set_status(message)
            return Event.TRANSPORT_FAILED

        if result.status_code == HTTP_CREATED:
            self._cursor.last_sent = self._cursor.last_post
            self._status_message = None
            last_sent = self._cursor.last_sent
            self._update_health(lambda health: health.record_upload(last_sent))
            logger.info(
                "Uploaded %d rows to %s, last_sent=%s",
                rows,
                self._path,
                format_timestamp(self._cursor.last_sent),
                extra=self._log_context(self._state),
            )
            return Event.POST_OK

        message = _failure_message("POST failed", result)
        logger.warning("%s", message)
        self._set_status(message)
        return Event.POST_FAILED

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _set_status(self, message: str | None) -> None:
        self._status_message = message
        self._update_health(lambda health: health.set_status_message(message))

    def _log_context(self, state: UploadState) -> dict[str, str]:
        return {
            "endpoint": self._path,
            "state": state.value,
            "last_sent": format_timestamp(self._cursor.last_sent),
        }

    def _update_health(self, update: Callable[[HealthWriter], None]) -> None:
        """Apply *update* to the health writer; a failed write never stops uploads."""
        if self._health is None:
            return
        try:
            update(self._health)
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)

    def _discard_batch(self) -> None:
        self._batch = None
        self._old = None
        self._new = None
        self._window_end = 0

    def _release(self) -> None:
        self._discard_batch()
        if self._request is not None:
            self._request.cancel()
            self._request = None


def _failure_message(prefix: str, result: RequestResult) -> str:
    """Describe a failed request for the status message."""
    if result.transport_failed:
        return f"{prefix}, transport error: {result.error}"
    body = result.text[:STATUS_BODY_LIMIT]
    if not body:
        return f"{prefix}, code {result.status_code}"
    return f"{prefix}, code {result.status_code}, response: {body}"
