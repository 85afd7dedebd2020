"""
Backpressure state model and its file-backed store.

The state is a single JSON document (camelCase keys) shared by every flush
process on the machine. Writes replace the whole document atomically; there is
no locking, so concurrent flushes follow last-writer-wins semantics.

Example:
    >>> from telepool._state import StateStore
    >>> store = StateStore(Path("~/.claude/rulecatch/.backpressure-state").expanduser())
    >>> state = store.load()
    >>> store.save(state.with_changes(pending_event_count=12))
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Self

from telepool._backoff import DEFAULT_POLICY
from telepool._utils import load_json_file, save_json_file

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapacityDescriptor:
    """
    Server-advertised terms for how much and how fast the client may send.

    Attributes:
        ready: Whether the server currently accepts sends.
        max_batch_size: Upper bound on events per send call.
        delay_between_batches: Pacing delay in milliseconds between batches.
        retry_after: Seconds to wait before asking again when not ready.
        load_percent: Optional server load indicator (0-100). Diagnostic only.
        message: Optional human-readable reason. Diagnostic only.
    """

    ready: bool
    max_batch_size: int
    delay_between_batches: int
    retry_after: int
    load_percent: int | None = None
    message: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> CapacityDescriptor:
        """
        Build a descriptor from its JSON representation.

        Args:
            data: Decoded JSON body (camelCase keys).

        Returns:
            A new CapacityDescriptor.

        Raises:
            ValueError: If the payload is not an object, misses `ready` or
                `maxBatchSize`, or carries values of the wrong type or sign.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Capacity payload must be a JSON object, got {type(data).__name__}")

        if "ready" not in data or not isinstance(data["ready"], bool):
            raise ValueError("Capacity payload requires a boolean 'ready' field")
        if "maxBatchSize" not in data:
            raise ValueError("Capacity payload requires a 'maxBatchSize' field")

        max_batch_size = _as_non_negative_int(data["maxBatchSize"], "maxBatchSize")
        delay = _as_non_negative_int(data.get("delayBetweenBatches", 0), "delayBetweenBatches")
        retry_after = _as_non_negative_int(data.get("retryAfter", 0), "retryAfter")

        load_percent = data.get("loadPercent")
        if load_percent is not None:
            load_percent = _as_non_negative_int(load_percent, "loadPercent")

        message = data.get("message")
        if message is not None and not isinstance(message, str):
            message = str(message)

        return cls(
            ready=data["ready"],
            max_batch_size=max_batch_size,
            delay_between_batches=delay,
            retry_after=retry_after,
            load_percent=load_percent,
            message=message,
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON representation (camelCase keys, optional fields omitted when None)."""
        data: dict[str, Any] = {
            "ready": self.ready,
            "maxBatchSize": self.max_batch_size,
            "delayBetweenBatches": self.delay_between_batches,
            "retryAfter": self.retry_after,
        }
        if self.load_percent is not None:
            data["loadPercent"] = self.load_percent
        if self.message is not None:
            data["message"] = self.message
        return data


# Used whenever the server cannot be reached or answers unexpectedly
DEFAULT_CAPACITY = CapacityDescriptor(
    ready=False,
    max_batch_size=10,
    delay_between_batches=5000,
    retry_after=30,
)


@dataclass(frozen=True)
class BackpressureState:
    """
    Persisted flow-control state.

    Attributes:
        backoff_level: Exponent used for wait-time calculation, in [0, max level].
        next_attempt_after: Epoch ms before which no flush may be admitted (0 = no wait).
        last_capacity: Last CapacityDescriptor received, if any.
        consecutive_failures: Failures since the last success (uncapped).
        last_success_time: Epoch ms of the last successful send (0 = never).
        pending_event_count: Caller's last reported queue depth. Observational only.
    """

    backoff_level: int = 0
    next_attempt_after: int = 0
    last_capacity: CapacityDescriptor | None = None
    consecutive_failures: int = 0
    last_success_time: int = 0
    pending_event_count: int = 0

    def with_changes(self, **changes: Any) -> Self:
        """Return a copy of this state with the given fields replaced."""
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Any, max_backoff_level: int = DEFAULT_POLICY.max_backoff_level) -> BackpressureState:
        """
        Build a state from its JSON representation.

        A `backoffLevel` above `max_backoff_level` is clamped to it.

        Raises:
            ValueError: If the document is not an object or a field is invalid.
        """
        if not isinstance(data, dict):
            raise ValueError(f"State document must be a JSON object, got {type(data).__name__}")

        capacity = data.get("lastCapacity")
        return cls(
            backoff_level=min(_as_non_negative_int(data.get("backoffLevel", 0), "backoffLevel"), max_backoff_level),
            next_attempt_after=_as_non_negative_int(data.get("nextAttemptAfter", 0), "nextAttemptAfter"),
            last_capacity=CapacityDescriptor.from_dict(capacity) if capacity is not None else None,
            consecutive_failures=_as_non_negative_int(data.get("consecutiveFailures", 0), "consecutiveFailures"),
            last_success_time=_as_non_negative_int(data.get("lastSuccessTime", 0), "lastSuccessTime"),
            pending_event_count=_as_non_negative_int(data.get("pendingEventCount", 0), "pendingEventCount"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON representation (camelCase keys)."""
        return {
            "backoffLevel": self.backoff_level,
            "nextAttemptAfter": self.next_attempt_after,
            "lastCapacity": self.last_capacity.to_dict() if self.last_capacity else None,
            "consecutiveFailures": self.consecutive_failures,
            "lastSuccessTime": self.last_success_time,
            "pendingEventCount": self.pending_event_count,
        }


def _as_non_negative_int(value: Any, name: str) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{name}' must be a number, got {value!r}")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"'{name}' must be finite, got {value!r}")
    if value < 0:
        raise ValueError(f"'{name}' must be >= 0, got {value!r}")
    return int(value)


class StateStore:
    """
    Loads and saves BackpressureState from a JSON file.

    Loading never fails: a missing, unreadable or corrupt file yields a fresh
    default state. Saving is best-effort: failures are logged and swallowed,
    since only durability across restarts is affected.

    Args:
        path: Location of the state file.
        max_backoff_level: Upper bound applied to a loaded `backoffLevel`.
    """

    def __init__(self, path: Path, max_backoff_level: int = DEFAULT_POLICY.max_backoff_level):
        assert path is not None, "State file path cannot be None."
        self.path = Path(path)
        self.max_backoff_level = max_backoff_level

    def load(self) -> BackpressureState:
        """Load the persisted state, falling back to defaults on any problem."""
        try:
            data = load_json_file(self.path)
        except FileNotFoundError:
            return BackpressureState()
        except (OSError, ValueError) as e:
            logger.warning(f"⚠️ Unreadable backpressure state ({self.path.name}), starting fresh: {e}")
            return BackpressureState()

        try:
            return BackpressureState.from_dict(data, max_backoff_level=self.max_backoff_level)
        except ValueError as e:
            logger.warning(f"⚠️ Corrupt backpressure state ({self.path.name}), starting fresh: {e}")
            return BackpressureState()

    def save(self, state: BackpressureState) -> bool:
        """
        Persist the whole state document.

        Returns:
            True when the document was written, False when the write failed.
        """
        try:
            save_json_file(state.to_dict(), self.path)
            return True
        except RuntimeError:
            logger.error("Failed to save backpressure state")
            return False

    def reset(self) -> bool:
        """
        Delete the state file.

        Returns:
            True if a file was removed, False if none existed.
        """
        try:
            self.path.unlink()
            return True
        except FileNotFoundError:
            return False
