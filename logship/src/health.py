"""
Health file writer for the uploader daemon.

Writes a JSON health file with four fields:
- state: Current upload state name.
- last_sent: Canonical timestamp of the newest confirmed row (or null).
- last_upload_ts: ISO timestamp of the most recent successful POST.
- status_message: Latest failure description (or null once healthy).

The file is overwritten on every change, providing a simple liveness signal
that a container HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

from logship.src.timestamps import format_timestamp


class HealthWriter:
    """Writes uploader health status to a JSON file.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._state: str | None = None
        self._last_sent: str | None = None
        self._last_upload_ts: str | None = None
        self._status_message: str | None = None

    def record_upload(self, last_sent: int) -> None:
        """Record a confirmed batch and write health file.

        Args:
            last_sent: Timestamp of the newest row the remote now holds.
        """
        self._last_sent = format_timestamp(last_sent)
        self._last_upload_ts = datetime.now(tz=UTC).isoformat()
        self._status_message = None
        self._write()

    def set_state(self, state: str) -> None:
        """Update the state name and write health file."""
        self._state = state
        self._write()

    def set_status_message(self, message: str | None) -> None:
        """Update the failure description and write health file."""
        self._status_message = message
        self._write()

    def _write(self) -> None:
        """Write the health JSON file with current state."""
        data = {
            "state": self._state,
            "last_sent": self._last_sent,
            "last_upload_ts": self._last_upload_ts,
            "status_message": self._status_message,
        }
        self.path.write_text(json.dumps(data))
