"""
Admission and outcome rules of the backpressure controller.

All functions here are pure: they take a BackpressureState and return a
decision or a new state. Persisting the result is the caller's job.

Example:
    >>> from telepool._backpressure import can_attempt, record_failure
    >>> state = record_failure(BackpressureState(), status_code=429)
    >>> decision = can_attempt(state)
    >>> decision.allowed
    False
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from telepool._backoff import DEFAULT_POLICY, BackoffPolicy
from telepool._state import BackpressureState
from telepool._utils import now_ms, parse_retry_after

logger = logging.getLogger(__name__)

# Statuses that are penalized with twice the standard backoff delay
OVERLOAD_STATUS_CODES = frozenset({429, 503})


@dataclass(frozen=True)
class AdmissionDecision:
    """
    Result of an admission check.

    Attributes:
        allowed: Whether a flush attempt may proceed now.
        wait_ms: Milliseconds until the next attempt is allowed (0 if allowed).
        reason: Human-readable explanation.
    """

    allowed: bool
    wait_ms: int
    reason: str


def can_attempt(
    state: BackpressureState,
    now: int | None = None,
    policy: BackoffPolicy = DEFAULT_POLICY,
) -> AdmissionDecision:
    """
    Decide whether a flush attempt may start.

    Rules, first match wins:
        1. Circuit breaker: too many consecutive failures and the penalty
           window has not expired.
        2. Backoff timer: `next_attempt_after` is still in the future.
        3. Otherwise the attempt is allowed.

    The failure counter alone never denies: once `next_attempt_after` has
    passed, an attempt is allowed even with the breaker threshold reached.

    Args:
        state: Current backpressure state.
        now: Current epoch ms (defaults to the wall clock).
        policy: Backoff tunables (circuit breaker threshold).

    Returns:
        The admission decision.
    """
    now = now_ms() if now is None else now
    wait_ms = state.next_attempt_after - now

    if state.consecutive_failures >= policy.circuit_breaker_threshold and wait_ms > 0:
        return AdmissionDecision(
            allowed=False,
            wait_ms=wait_ms,
            reason=(
                f"Circuit breaker open: {state.consecutive_failures} consecutive failures. "
                f"Retry in {math.ceil(wait_ms / 1000)}s"
            ),
        )

    if wait_ms > 0:
        return AdmissionDecision(
            allowed=False,
            wait_ms=wait_ms,
            reason=f"Backing off: retry in {math.ceil(wait_ms / 1000)}s (level {state.backoff_level})",
        )

    return AdmissionDecision(allowed=True, wait_ms=0, reason="OK")


def record_success(
    state: BackpressureState,
    events_sent: int,
    now: int | None = None,
) -> BackpressureState:
    """
    Return the state after a successful send.

    The backoff level decays by one per success rather than resetting, so an
    endpoint recovering from a long outage is ramped back up gradually.

    Args:
        state: State before the send.
        events_sent: Number of events acknowledged by the server.
        now: Current epoch ms (defaults to the wall clock).

    Returns:
        The new state.
    """
    now = now_ms() if now is None else now

    new_state = state.with_changes(
        backoff_level=max(0, state.backoff_level - 1),
        consecutive_failures=0,
        last_success_time=now,
        next_attempt_after=0,
        pending_event_count=max(0, state.pending_event_count - events_sent),
    )

    logger.info(f"Success: sent {events_sent} events, backoff level now {new_state.backoff_level}")
    return new_state


def record_failure(
    state: BackpressureState,
    status_code: int,
    retry_after_header: str | None = None,
    now: int | None = None,
    policy: BackoffPolicy = DEFAULT_POLICY,
) -> BackpressureState:
    """
    Return the state after a failed send.

    The next attempt is scheduled using, in order of precedence:
        1. The server's Retry-After header (seconds), when it parses.
        2. Twice the standard backoff delay for 429/503 responses.
        3. The standard backoff delay for the new level.

    Args:
        state: State before the send.
        status_code: HTTP status of the failed send (0 for transport errors).
        retry_after_header: Raw Retry-After header value, if any.
        now: Current epoch ms (defaults to the wall clock).
        policy: Backoff tunables.

    Returns:
        The new state.
    """
    now = now_ms() if now is None else now
    failures = state.consecutive_failures + 1
    level = min(state.backoff_level + 1, policy.max_backoff_level)

    retry_after = parse_retry_after(retry_after_header)
    if retry_after is None and retry_after_header:
        logger.warning(f"Ignoring unparseable Retry-After header: {retry_after_header!r}")

    if retry_after is not None:
        delay_ms = retry_after * 1000
    elif status_code in OVERLOAD_STATUS_CODES:
        delay_ms = policy.delay(level) * 2
    else:
        delay_ms = policy.delay(level)

    new_state = state.with_changes(
        backoff_level=level,
        consecutive_failures=failures,
        next_attempt_after=now + delay_ms,
    )

    logger.warning(
        f"Failure ({status_code}): count={failures}, backoff level={level}, "
        f"retry in {math.ceil(delay_ms / 1000)}s"
    )
    return new_state


def update_pending_count(state: BackpressureState, count: int) -> BackpressureState:
    """Return the state with the caller's queue depth updated."""
    return state.with_changes(pending_event_count=max(0, count))


def get_status_summary(
    state: BackpressureState,
    now: int | None = None,
    policy: BackoffPolicy = DEFAULT_POLICY,
) -> str:
    """
    Build a short multi-line summary of the backpressure state.

    Returns:
        One fact per line, or "Healthy (no backpressure)" when there is nothing to report.
    """
    now = now_ms() if now is None else now
    lines: list[str] = []

    if state.consecutive_failures > 0:
        lines.append(f"Consecutive failures: {state.consecutive_failures}")

    if state.backoff_level > 0:
        lines.append(f"Backoff level: {state.backoff_level}/{policy.max_backoff_level}")

    if state.next_attempt_after > now:
        lines.append(f"Next attempt in: {math.ceil((state.next_attempt_after - now) / 1000)}s")

    if state.pending_event_count > 0:
        lines.append(f"Pending events: {state.pending_event_count}")

    if state.last_success_time > 0:
        lines.append(f"Last success: {(now - state.last_success_time) // 1000}s ago")

    if state.last_capacity is not None:
        load = state.last_capacity.load_percent
        lines.append(f"Server load: {load if load is not None else 'unknown'}%")
        lines.append(f"Max batch: {state.last_capacity.max_batch_size}")

    return "\n".join(lines) if lines else "Healthy (no backpressure)"


def health_label(state: BackpressureState, policy: BackoffPolicy = DEFAULT_POLICY) -> str:
    """Classify the state as Healthy, Circuit Breaker OPEN, High Backoff or Backing Off."""
    if state.consecutive_failures == 0 and state.backoff_level == 0:
        return "Healthy"
    if state.consecutive_failures >= policy.circuit_breaker_threshold:
        return "Circuit Breaker OPEN"
    if state.backoff_level >= 5:
        return "High Backoff"
    return "Backing Off"
