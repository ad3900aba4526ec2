"""
Pydantic models and enumerations shared by the uploader modules.

Defines the ``Units`` enumeration whose ordinal order fixes the CSV column
order, and the ``MeasurementConfig`` model describing one configured output
measurement (a named sensor value in one unit).

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

from enum import IntEnum

from pydantic import BaseModel, Field, field_validator


class Units(IntEnum):
    """Unit categories a measurement can be reported in.

    The integer value is the canonical ordinal: it decides column order in
    the CSV header and in every row.
    """

    VOLTS = 0
    WATTS = 1
    WH = 2
    KWH = 3
    AMPS = 4
    VA = 5
    VAH = 6
    HZ = 7
    PF = 8
    VAR = 9
    VARH = 10

    @property
    def label(self) -> str:
        """Column name used in the remote table."""
        return _UNIT_LABELS[self]

    @classmethod
    def from_label(cls, label: str) -> Units:
        """Look up a unit by its column name (case-insensitive).

        Raises:
            ValueError: If *label* is not a known unit.
        """
        for unit, name in _UNIT_LABELS.items():
            if name.lower() == label.lower():
                return unit
        raise ValueError(f"Unknown unit '{label}'")


_UNIT_LABELS: dict[Units, str] = {
    Units.VOLTS: "Volts",
    Units.WATTS: "Watts",
    Units.WH: "Wh",
    Units.KWH: "kWh",
    Units.AMPS: "Amps",
    Units.VA: "VA",
    Units.VAH: "VAh",
    Units.HZ: "Hz",
    Units.PF: "PF",
    Units.VAR: "VAR",
    Units.VARH: "VARh",
}


_CSV_UNSAFE_CHARS = ',"\n\r'


def is_csv_safe(value: str) -> bool:
    """True when *value* can be written as an unquoted CSV field."""
    return not any(ch in value for ch in _CSV_UNSAFE_CHARS)


class MeasurementConfig(BaseModel):
    """Configuration of one output measurement.

    Attributes:
        name: Sensor name written to the ``sensor`` column.
        channel: Datalog accumulator the value is derived from.
        units: Unit category (column) the value is written to. Accepts the
            column name (``"Watts"``) or the enum value.
        precision: Number of decimals written to the CSV row.
        scale: Multiplier applied to the interval average.
    """

    name: str = Field(min_length=1)
    channel: str = Field(min_length=1)
    units: Units = Units.WATTS
    precision: int = Field(default=1, ge=0, le=8)
    scale: float = 1.0

    @field_validator("units", mode="before")
    @classmethod
    def units_from_label(cls, v: object) -> object:
        """Accept unit column names as well as enum ordinals."""
        if isinstance(v, str) and not v.isdigit():
            return Units.from_label(v)
        return v

    @field_validator("name")
    @classmethod
    def name_must_be_csv_safe(cls, v: str) -> str:
        """Sensor names are written unquoted, so they cannot hold CSV syntax."""
        if not is_csv_safe(v):
            raise ValueError("measurement name must not contain commas, quotes or newlines")
        return v
