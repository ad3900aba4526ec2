"""
Output measurements and the active unit set.

A measurement is anything exposing ``name``, ``units``, ``precision`` and
``evaluate(old, new)``; the encoder depends only on that capability.
``evaluate`` returns NaN when the measurement has nothing to report for the
interval.

Measurements are sorted once, by name and then by unit ordinal, so that all
units of one sensor are contiguous and always appear in column order. The
:class:`ActiveUnitSet` derived from the sorted list fixes the CSV header and
the width of every row.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence
from typing import Protocol

from logship.src.datalog import LogRecord
from logship.src.models import MeasurementConfig, Units

logger = logging.getLogger(__name__)

CSV_PREFIX = "timestamp,device,sensor"


class Measurement(Protocol):
    """Capability required from an output measurement."""

    @property
    def name(self) -> str: ...

    @property
    def units(self) -> Units: ...

    @property
    def precision(self) -> int: ...

    def evaluate(self, old: LogRecord, new: LogRecord) -> float: ...


class ChannelMeasurement:
    """Interval average of one datalog accumulator.

    The value is ``scale * (new.accum[channel] - old.accum[channel]) /
    (new.log_hours - old.log_hours)``: for a Wh accumulator that is the mean
    power in watts over the interval.

    Args:
        config: The measurement's configuration.
    """

    def __init__(self, config: MeasurementConfig) -> None:
        self._config = config

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def units(self) -> Units:
        return self._config.units

    @property
    def precision(self) -> int:
        return self._config.precision

    def evaluate(self, old: LogRecord, new: LogRecord) -> float:
        """Return the interval average, or NaN when it cannot be computed."""
        channel = self._config.channel
        if channel not in old.accum or channel not in new.accum:
            return math.nan
        elapsed_hours = new.log_hours - old.log_hours
        if elapsed_hours <= 0:
            return math.nan
        delta = new.accum[channel] - old.accum[channel]
        return self._config.scale * delta / elapsed_hours

    def __repr__(self) -> str:
        return f"ChannelMeasurement({self.name!r}, {self.units.label})"


def build_measurements(configs: Iterable[MeasurementConfig]) -> list[ChannelMeasurement]:
    """Create a :class:`ChannelMeasurement` for every configuration entry."""
    return [ChannelMeasurement(config) for config in configs]


def sort_measurements(measurements: Iterable[Measurement]) -> list[Measurement]:
    """Sort measurements by name, then by unit ordinal.

    Duplicate (name, unit) pairs are kept but logged: the table has a single
    column per unit, so only the first of them will ever be written.
    """
    ordered = sorted(measurements, key=lambda m: (m.name, int(m.units)))
    for previous, current in zip(ordered, ordered[1:]):
        if previous.name == current.name and previous.units == current.units:
            logger.warning(
                "Measurement '%s' has more than one %s output; only the first is uploaded.",
                current.name,
                current.units.label,
            )
    return ordered


class ActiveUnitSet:
    """Which unit categories appear in the output at all.

    Args:
        measurements: The configured measurements (any order).
    """

    def __init__(self, measurements: Iterable[Measurement]) -> None:
        used = {m.units for m in measurements}
        self._active: tuple[bool, ...] = tuple(unit in used for unit in Units)

    def __contains__(self, unit: object) -> bool:
        if not isinstance(unit, int):
            return False
        return 0 <= unit < len(self._active) and self._active[unit]

    def __len__(self) -> int:
        return self.width

    @property
    def width(self) -> int:
        """Number of value columns in every row."""
        return sum(self._active)

    @property
    def flags(self) -> tuple[bool, ...]:
        """Boolean vector indexed by unit ordinal."""
        return self._active

    @property
    def units(self) -> Sequence[Units]:
        """Active units in canonical column order."""
        return [unit for unit in Units if self._active[unit]]

    def header(self) -> str:
        """CSV header line listing the fixed prefix and the active units."""
        return ",".join([CSV_PREFIX, *(unit.label for unit in self.units)])
