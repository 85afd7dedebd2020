"""
Telemetry event records.

Events are open-ended mappings: only `type`, `timestamp` and `sessionId` are
required; every other key is relayed to the server untouched, so new event
kinds need no changes here.

Example:
    >>> event = new_event("tool_call", session_id="sess-1", toolName="Bash")
    >>> sorted(event)
    ['sessionId', 'timestamp', 'toolName', 'type']
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

REQUIRED_FIELDS = ("type", "timestamp", "sessionId")


class InvalidEventError(ValueError):
    """Raised when an event record misses a required field or is not a mapping."""

    def __init__(self, message: str, event: Any = None):
        super().__init__(message)
        self.event = event


def validate_event(event: Any) -> dict[str, Any]:
    """
    Check that `event` carries the required fields.

    Args:
        event: Candidate event record.

    Returns:
        A plain dict copy of the event.

    Raises:
        InvalidEventError: If the event is not a mapping or a required field
            is missing or not a non-empty string.
    """
    if not isinstance(event, Mapping):
        raise InvalidEventError(f"Event must be a mapping, got {type(event).__name__}", event)

    for name in REQUIRED_FIELDS:
        value = event.get(name)
        if not isinstance(value, str) or not value:
            raise InvalidEventError(f"Event field '{name}' must be a non-empty string", event)

    return dict(event)


def new_event(
    event_type: str,
    session_id: str,
    timestamp: datetime | None = None,
    **fields: Any,
) -> dict[str, Any]:
    """
    Build a validated event record.

    Args:
        event_type: Event kind, e.g. "ai_request" or "tool_call".
        session_id: Identifier of the session that produced the event.
        timestamp: Event time (defaults to now, UTC).
        **fields: Extension fields, copied verbatim.

    Returns:
        The event record.
    """
    when = timestamp or datetime.now(UTC)
    return validate_event({
        **fields,
        "type": event_type,
        "timestamp": when.isoformat(),
        "sessionId": session_id,
    })
