"""
Timestamp codec for the PostgREST uploader.

Inbound timestamps come from the remote table and may arrive in any of the
textual forms PostgreSQL produces. Outbound rows always carry the canonical
UTC form ``YYYY-MM-DDTHH:MM:SSZ``.

Accepted input forms, checked in this order:

(a) ``2023-10-15 14:30:25+10:30``
(b) ``2023-10-15 14:30:25+10``
(c) ``2023-10-15T14:30:25Z``
(d) ``2023-10-15T14:30:25``
(e) ``2023-10-15 14:30:25``

Forms (a) and (b) also accept ``T`` as the date/time separator, which is how
PostgREST serializes ``timestamptz`` columns in JSON responses. Forms (d)
and (e) are interpreted as UTC.

Operations:
- parse_timestamp(text): Text -> epoch seconds, or UNKNOWN_TIME (0).
- format_timestamp(epoch): Epoch seconds -> canonical UTC text.
- format_local(epoch): Epoch seconds -> readable text for log lines.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import calendar
import re
from datetime import UTC, datetime

UNKNOWN_TIME: int = 0
"""Sentinel for "no usable timestamp". Never a legitimate resume point."""

_DATE_TIME = r"(\d{4})-(\d{1,2})-(\d{1,2})[ T](\d{1,2}):(\d{1,2}):(\d{1,2})"

_OFFSET_HM_RE = re.compile(_DATE_TIME + r"([+-])(\d{1,2}):(\d{1,2})")
_OFFSET_H_RE = re.compile(_DATE_TIME + r"([+-])(\d{1,2})")
_ISO_Z_RE = re.compile(
    r"(\d{4})-(\d{1,2})-(\d{1,2})T(\d{1,2}):(\d{1,2}):(\d{1,2})Z"
)
_ISO_NAIVE_RE = re.compile(
    r"(\d{4})-(\d{1,2})-(\d{1,2})T(\d{1,2}):(\d{1,2}):(\d{1,2})"
)
_SIMPLE_RE = re.compile(
    r"(\d{4})-(\d{1,2})-(\d{1,2}) (\d{1,2}):(\d{1,2}):(\d{1,2})"
)

_CANONICAL_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
_LOCAL_FORMAT = "%Y-%m-%d %H:%M:%S"


def _epoch(fields: tuple[str, ...]) -> int:
    """Convert (year, month, day, hour, minute, second) strings to UTC epoch.

    Raises:
        ValueError: If the fields do not form a valid calendar date/time.
    """
    year, month, day, hour, minute, second = (int(f) for f in fields)
    # datetime() validates ranges (month 13, Feb 30, hour 25, ...).
    moment = datetime(year, month, day, hour, minute, second)
    return calendar.timegm(moment.timetuple())


def parse_timestamp(text: str) -> int:
    """Parse a remote timestamp string into epoch seconds (UTC).

    The whole string must match one of the accepted forms; partial matches
    are rejected.

    Args:
        text: Timestamp text as returned by the remote table.

    Returns:
        Epoch seconds, or :data:`UNKNOWN_TIME` when the text matches none
        of the accepted forms or describes an impossible date.
    """
    if not isinstance(text, str):
        return UNKNOWN_TIME
    text = text.strip()

    try:
        match = _OFFSET_HM_RE.fullmatch(text)
        if match:
            sign = -1 if match.group(7) == "-" else 1
            offset = int(match.group(8)) * 3600 + int(match.group(9)) * 60
            return _epoch(match.groups()[:6]) - sign * offset

        match = _OFFSET_H_RE.fullmatch(text)
        if match:
            sign = -1 if match.group(7) == "-" else 1
            offset = int(match.group(8)) * 3600
            return _epoch(match.groups()[:6]) - sign * offset

        for pattern in (_ISO_Z_RE, _ISO_NAIVE_RE, _SIMPLE_RE):
            match = pattern.fullmatch(text)
            if match:
                return _epoch(match.groups())
    except ValueError:
        return UNKNOWN_TIME

    return UNKNOWN_TIME


def format_timestamp(epoch: int) -> str:
    """Format epoch seconds as ``YYYY-MM-DDTHH:MM:SSZ`` (UTC)."""
    return datetime.fromtimestamp(epoch, tz=UTC).strftime(_CANONICAL_FORMAT)


def format_local(epoch: int) -> str:
    """Format epoch seconds in the host's local time for log messages."""
    return datetime.fromtimestamp(epoch).strftime(_LOCAL_FORMAT)
