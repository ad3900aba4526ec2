"""
CSV row encoder for PostgREST batch uploads.

Turns one interval (a pair of adjacent datalog snapshots) into one CSV row
per sensor. Each row is ``timestamp,device,sensor`` followed by one column
per active unit, holding either the formatted value or ``NULL``:

    timestamp,device,sensor,Volts,Watts,PF
    2023-10-15T14:31:00Z,iw42,main,NULL,3412.5,0.97
    2023-10-15T14:31:00Z,iw42,mains,241.2,NULL,NULL

Measurements are consumed in (name, unit ordinal) order. A NaN value is
skipped without writing a column. A unit that repeats for the same sensor
keeps its first value; the table has one column per unit.

The encoder produces text only; it knows nothing about transport or retry.

Operations:
- resolve_device_name(template, identity): ``$device`` substitution.
- RowEncoder.encode(timestamp, old, new): Rows for one interval.
- Batch: Size-bounded CSV buffer (header + rows).

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import math
from collections.abc import Iterable

from logship.src.datalog import LogRecord
from logship.src.measurements import ActiveUnitSet, Measurement, sort_measurements
from logship.src.timestamps import format_timestamp

NULL = "NULL"
DEVICE_TOKEN = "$device"


def resolve_device_name(template: str | None, identity: str) -> str:
    """Substitute the device's runtime identity into a name template.

    Args:
        template: Configured device name; every ``$device`` is replaced.
            ``None`` or empty falls back to *identity*.
        identity: The device's own name.

    Returns:
        The device name written to the ``device`` column.
    """
    if not template:
        return identity
    return template.replace(DEVICE_TOKEN, identity)


class Batch:
    """CSV text buffer for one POST.

    Holds the header line plus zero or more rows. The batch is considered
    full once its size reaches *capacity*; the caller stops adding intervals
    at that point, so a batch may overshoot by at most one interval's rows.

    Args:
        header: CSV header line (no trailing newline).
        capacity: Size limit in characters.
    """

    def __init__(self, header: str, capacity: int) -> None:
        self._lines: list[str] = [header]
        self._size = len(header) + 1
        self._capacity = capacity

    def add_rows(self, rows: Iterable[str]) -> None:
        for row in rows:
            self._lines.append(row)
            self._size += len(row) + 1

    @property
    def row_count(self) -> int:
        return len(self._lines) - 1

    @property
    def size(self) -> int:
        """Length of :meth:`text` in characters."""
        return self._size

    @property
    def full(self) -> bool:
        return self._size >= self._capacity

    def text(self) -> str:
        """Header and rows, newline separated, with a trailing newline."""
        return "\n".join(self._lines) + "\n"


class RowEncoder:
    """Packs measurement values for one interval into fixed-width rows.

    Args:
        measurements: Output measurements in any order. They are sorted
            once here by name and unit ordinal.
        device_name: Resolved value for the ``device`` column.
    """

    def __init__(self, measurements: Iterable[Measurement], device_name: str) -> None:
        self._measurements = sort_measurements(measurements)
        self._active = ActiveUnitSet(self._measurements)
        self._device_name = device_name

    @property
    def active_units(self) -> ActiveUnitSet:
        return self._active

    @property
    def device_name(self) -> str:
        return self._device_name

    def header(self) -> str:
        return self._active.header()

    def new_batch(self, capacity: int) -> Batch:
        """Return an empty :class:`Batch` carrying this encoder's header."""
        return Batch(self.header(), capacity)

    def encode(self, timestamp: int, old: LogRecord, new: LogRecord) -> list[str]:
        """Encode the interval starting at *timestamp*.

        Args:
            timestamp: Row timestamp (start of the interval, epoch seconds).
            old: Snapshot at the start of the interval.
            new: Snapshot at the end of the interval.

        Returns:
            One CSV line per sensor, without newlines. Empty when no
            measurements are configured.
        """
        if not self._measurements:
            return []

        stamp = format_timestamp(timestamp)
        rows: list[str] = []
        sensor = self._measurements[0].name
        fields = [stamp, self._device_name, sensor]
        unit_index = 0

        for measurement in self._measurements:
            value = measurement.evaluate(old, new)
            if math.isnan(value):
                continue

            if measurement.name != sensor:
                fields.extend(self._nulls(unit_index, len(self._active.flags)))
                rows.append(",".join(fields))
                sensor = measurement.name
                fields = [stamp, self._device_name, sensor]
                unit_index = 0

            ordinal = int(measurement.units)
            fields.extend(self._nulls(unit_index, ordinal))
            unit_index = max(unit_index, ordinal)

            # A repeated unit for the same sensor leaves unit_index past it.
            if unit_index == ordinal:
                fields.append(f"{value:.{measurement.precision}f}")
                unit_index += 1

        fields.extend(self._nulls(unit_index, len(self._active.flags)))
        rows.append(",".join(fields))
        return rows

    def _nulls(self, start: int, stop: int) -> list[str]:
        """NULL markers for the active units with ordinal in [start, stop)."""
        flags = self._active.flags
        return [NULL for index in range(start, stop) if flags[index]]
