"""
Append-only datalog of interval snapshots, backed by async SQLite.

The device's metering side appends one :class:`LogRecord` per log interval.
Each record carries cumulative per-channel accumulators and the total number
of logged hours, so the value of any measurement over an interval is the
difference between two adjacent snapshots.

The uploader only reads the log, by timestamp key. A read between stored
records returns the newest record at or before the key, restamped with the
requested key: a gap in the log therefore shows up as two snapshots with
identical ``log_hours`` (zero elapsed time).

Operations:
- append(record): INSERT a snapshot (producer side).
- read_at(key): Snapshot at or before *key*, restamped with *key*.
- first_key(): Oldest retained timestamp (0 when empty).
- last_key(): Newest timestamp (0 when empty).
- close(): Close the underlying database connection.

Supports async context manager protocol for clean resource management.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import aiosqlite

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS datalog (
    unix_time INTEGER PRIMARY KEY,
    log_hours REAL NOT NULL,
    accum TEXT NOT NULL
);
"""

_INSERT_SQL = """\
INSERT OR REPLACE INTO datalog (unix_time, log_hours, accum) VALUES (?, ?, ?);
"""

_READ_AT_SQL = """\
SELECT unix_time, log_hours, accum
FROM datalog
WHERE unix_time <= ?
ORDER BY unix_time DESC
LIMIT 1;
"""

_FIRST_KEY_SQL = "SELECT MIN(unix_time) FROM datalog;"
_LAST_KEY_SQL = "SELECT MAX(unix_time) FROM datalog;"


@dataclass
class LogRecord:
    """One datalog snapshot.

    Attributes:
        unix_time: Snapshot timestamp (epoch seconds).
        log_hours: Total hours of logging represented up to this snapshot.
        accum: Cumulative accumulator per channel name (e.g. Wh for power
            channels, V·h for voltage channels).
    """

    unix_time: int
    log_hours: float = 0.0
    accum: dict[str, float] = field(default_factory=dict)


class LogStore(Protocol):
    """Read-only view of the datalog used by the uploader."""

    async def read_at(self, key: int) -> LogRecord: ...

    async def first_key(self) -> int: ...

    async def last_key(self) -> int: ...


class DataLog:
    """Durable append-only datalog backed by a SQLite database.

    Args:
        path: Filesystem path for the SQLite database file.
              Accepts ``str`` or ``pathlib.Path``.

    Usage::

        async with DataLog(path="/data/datalog.db") as log:
            await log.append(LogRecord(1697380200, 12.5, {"main": 3400.0}))
            record = await log.read_at(1697380200)
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the SQLite connection and initialize the schema."""
        self._db = await aiosqlite.connect(str(self._path))
        # WAL lets the metering side append while the uploader reads.
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(_CREATE_TABLE_SQL)
        await self._db.commit()

    async def close(self) -> None:
        """Close the underlying SQLite connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> DataLog:
        """Enter async context manager: open the database."""
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Exit async context manager: close the database."""
        await self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def append(self, record: LogRecord) -> None:
        """Store a snapshot. A snapshot with an existing timestamp replaces it."""
        assert self._db is not None, "DataLog not opened. Call open() or use async with."
        await self._db.execute(
            _INSERT_SQL,
            (record.unix_time, record.log_hours, json.dumps(record.accum)),
        )
        await self._db.commit()

    async def read_at(self, key: int) -> LogRecord:
        """Return the snapshot in effect at *key*.

        Args:
            key: Timestamp (epoch seconds) to read.

        Returns:
            The newest stored record at or before *key*, with ``unix_time``
            set to *key*. An empty record (zero hours, no channels) when
            *key* precedes the first stored record.
        """
        assert self._db is not None, "DataLog not opened. Call open() or use async with."
        cursor = await self._db.execute(_READ_AT_SQL, (key,))
        row = await cursor.fetchone()
        if row is None:
            return LogRecord(unix_time=key)
        return LogRecord(unix_time=key, log_hours=row[1], accum=json.loads(row[2]))

    async def first_key(self) -> int:
        """Return the oldest retained timestamp, or 0 for an empty log."""
        return await self._scalar(_FIRST_KEY_SQL)

    async def last_key(self) -> int:
        """Return the newest timestamp, or 0 for an empty log."""
        return await self._scalar(_LAST_KEY_SQL)

    async def _scalar(self, sql: str) -> int:
        assert self._db is not None, "DataLog not opened. Call open() or use async with."
        cursor = await self._db.execute(sql)
        row = await cursor.fetchone()
        if row is None or row[0] is None:
            return 0
        return int(row[0])
