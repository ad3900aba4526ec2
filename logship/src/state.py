"""
Upload state machine: states, events and the transition table.

The scheduler performs one step per tick and reports what happened as an
:class:`Event`. :func:`transition` maps ``(state, event)`` to the next state
and to the delay before the next tick. It is a pure function, so every timing
decision lives in the table below and can be tested without a clock.

    Resolving --QUERY_SENT--> AwaitingResolve --RESOLVED--> Encoding
        ^                          |                          |  ^
        +-------QUERY_FAILED-------+               BATCH_READY|  |POST_OK /
                                                              v  |POST_FAILED
                                        AwaitingPost <--POST_SENT-- Posting

Any state moves to Stopped on STOP; Stopped is terminal.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class UploadState(Enum):
    RESOLVING = "resolving"
    AWAITING_RESOLVE = "awaiting_resolve"
    ENCODING = "encoding"
    POSTING = "posting"
    AWAITING_POST = "awaiting_post"
    STOPPED = "stopped"


class Event(Enum):
    OFFLINE = "offline"
    QUERY_SENT = "query_sent"
    PENDING = "pending"
    RESOLVED = "resolved"
    QUERY_FAILED = "query_failed"
    NO_DATA = "no_data"
    YIELD = "yield"
    WINDOW_EMPTY = "window_empty"
    BATCH_READY = "batch_ready"
    POST_SENT = "post_sent"
    POST_OK = "post_ok"
    POST_FAILED = "post_failed"
    TRANSPORT_FAILED = "transport_failed"
    STOP = "stop"


# ---------------------------------------------------------------------------
# Delays (seconds)
# ---------------------------------------------------------------------------

IMMEDIATE_S: float = 0.0
"""Run the next step as soon as the event loop allows."""

POLL_DELAY_S: float = 0.01
"""Re-check an in-flight request."""

YIELD_DELAY_S: float = 0.001
"""Resume a batch after giving up the CPU."""

WAIT_DELAY_S: float = 1.0
"""Wait for connectivity or for new datalog entries."""

QUERY_RETRY_S: float = 5.0
"""Retry a failed resume query."""

POST_RETRY_S: float = 10.0
"""Retry a failed batch POST."""


_TRANSITIONS: dict[tuple[UploadState, Event], tuple[UploadState, float]] = {
    (UploadState.RESOLVING, Event.OFFLINE): (UploadState.RESOLVING, WAIT_DELAY_S),
    (UploadState.RESOLVING, Event.QUERY_SENT): (UploadState.AWAITING_RESOLVE, POLL_DELAY_S),
    (UploadState.AWAITING_RESOLVE, Event.PENDING): (UploadState.AWAITING_RESOLVE, POLL_DELAY_S),
    (UploadState.AWAITING_RESOLVE, Event.RESOLVED): (UploadState.ENCODING, IMMEDIATE_S),
    (UploadState.AWAITING_RESOLVE, Event.QUERY_FAILED): (UploadState.RESOLVING, QUERY_RETRY_S),
    (UploadState.ENCODING, Event.NO_DATA): (UploadState.ENCODING, WAIT_DELAY_S),
    (UploadState.ENCODING, Event.YIELD): (UploadState.ENCODING, YIELD_DELAY_S),
    (UploadState.ENCODING, Event.WINDOW_EMPTY): (UploadState.ENCODING, IMMEDIATE_S),
    (UploadState.ENCODING, Event.BATCH_READY): (UploadState.POSTING, IMMEDIATE_S),
    (UploadState.POSTING, Event.POST_SENT): (UploadState.AWAITING_POST, POLL_DELAY_S),
    (UploadState.AWAITING_POST, Event.PENDING): (UploadState.AWAITING_POST, POLL_DELAY_S),
    (UploadState.AWAITING_POST, Event.POST_OK): (UploadState.ENCODING, IMMEDIATE_S),
    (UploadState.AWAITING_POST, Event.POST_FAILED): (UploadState.ENCODING, POST_RETRY_S),
    (UploadState.AWAITING_POST, Event.TRANSPORT_FAILED): (UploadState.ENCODING, POST_RETRY_S),
}



def transition(state: UploadState, event: Event) -> tuple[UploadState, float]:
    """Return the next state and the delay before the next tick.

    Raises:
        ValueError: If *event* cannot occur in *state*.
    """
    if event is Event.STOP or state is UploadState.STOPPED:
        return UploadState.STOPPED, IMMEDIATE_S
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise ValueError(f"Event {event.name} is not valid in state {state.name}") from None


@dataclass
class ResumeCursor:
    """Upload progress.

    Attributes:
        last_sent: Timestamp of the newest row the remote has confirmed.
            Always a multiple of the upload interval.
        last_post: Timestamp of the newest row in the batch being posted.
    """

    last_sent: int = 0
    last_post: int = 0
