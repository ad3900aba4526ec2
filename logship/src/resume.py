"""
Resume point resolution against the remote PostgREST table.

After every (re)start the uploader asks the table for the newest row it holds
for this device and resumes right after it. The answer is reconciled with
the configured upload start date and the oldest timestamp still retained in
the local datalog, then floored to an interval boundary:

    last_sent = max(remote, start_date, first_key)
    last_sent -= last_sent % interval

Operations:
- normalize_schema(schema): Empty -> "public".
- endpoint_path(table, schema): "/table" or "/schema.table".
- resume_query_params(device): PostgREST query for the newest row.
- parse_last_timestamp(body): Response body -> epoch, 0 when unusable.
- resolve_resume_point(...): Reconcile and floor to the interval.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
import logging

from logship.src.timestamps import UNKNOWN_TIME, parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = "public"


def normalize_schema(schema: str | None) -> str:
    """Return *schema*, with ``None`` and empty strings mapped to ``public``."""
    return schema or DEFAULT_SCHEMA


def endpoint_path(table: str, schema: str | None = DEFAULT_SCHEMA) -> str:
    """Build the PostgREST resource path for the target table.

    The default ``public`` schema is implied and therefore omitted.

    Examples::

        endpoint_path("readings")             -> "/readings"
        endpoint_path("readings", "sensors")  -> "/sensors.readings"
    """
    schema = normalize_schema(schema)
    if schema != DEFAULT_SCHEMA:
        return f"/{schema}.{table}"
    return f"/{table}"


def resume_query_params(device: str) -> dict[str, str]:
    """Query parameters selecting the newest timestamp stored for *device*."""
    return {
        "select": "timestamp",
        "device": f"eq.{device}",
        "order": "timestamp.desc",
        "limit": "1",
    }


def parse_last_timestamp(body: str) -> int:
    """Extract the newest remote timestamp from a resume query response.

    Malformed JSON, a non-array document, an empty array, a missing
    ``timestamp`` field or an unparseable value all mean "no resume data"
    and yield :data:`UNKNOWN_TIME`.

    Args:
        body: Raw response text.

    Returns:
        Epoch seconds of the newest row, or ``UNKNOWN_TIME``.
    """
    try:
        records = json.loads(body)
    except (TypeError, ValueError):
        logger.warning("Resume query returned malformed JSON; assuming no prior rows.")
        return UNKNOWN_TIME

    if not isinstance(records, list) or not records:
        return UNKNOWN_TIME

    last = records[0]
    if not isinstance(last, dict) or "timestamp" not in last:
        logger.warning("Resume query row has no timestamp field; assuming no prior rows.")
        return UNKNOWN_TIME

    value = last["timestamp"]
    timestamp = parse_timestamp(value) if isinstance(value, str) else UNKNOWN_TIME
    if timestamp == UNKNOWN_TIME:
        logger.warning("Unrecognized remote timestamp %r; ignoring it.", value)
    return timestamp


def resolve_resume_point(
    remote_timestamp: int,
    *,
    upload_start_date: int,
    first_key: int,
    interval: int,
) -> int:
    """Compute ``last_sent`` from the remote and local lower bounds.

    Args:
        remote_timestamp: Newest remote row for this device (0 if none).
        upload_start_date: Configured earliest timestamp to upload.
        first_key: Oldest timestamp retained in the datalog.
        interval: Upload interval in seconds.

    Returns:
        The largest of the three bounds, floored to a multiple of *interval*.
    """
    last_sent = max(remote_timestamp, upload_start_date, first_key)
    return last_sent - last_sent % interval
