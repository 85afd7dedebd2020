"""
Drain loop: flushes events under backpressure control.

One drain consults the admission gate, negotiates capacity, then sends the
events in FIFO batches sized to the negotiated terms. Batches are strictly
sequential; the first failed batch stops the drain and stays first in line for
the next one. State is persisted after every state-changing step, so a crash
mid-drain leaves a consistent, resumable state file.

Example:
    >>> result = flush_with_backpressure(
    ...     events,
    ...     send_batch=sender.send,
    ...     store=StateStore(state_path),
    ...     negotiator=negotiator,
    ... )
    >>> result.sent, result.remaining
    (25, 0)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from telepool._backoff import DEFAULT_POLICY, BackoffPolicy
from telepool._backpressure import (
    can_attempt,
    record_failure,
    record_success,
    update_pending_count,
)
from telepool._state import BackpressureState, CapacityDescriptor, StateStore
from telepool._utils import now_ms, sleep_ms

if TYPE_CHECKING:
    from telepool._capacity import CapacityNegotiator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendOutcome:
    """
    Result of one `send_batch` call.

    Attributes:
        ok: Whether the server acknowledged the batch.
        status: HTTP status code (0 when the request never got a response).
        retry_after: Raw Retry-After header value, if the server sent one.
    """

    ok: bool
    status: int
    retry_after: str | None = None


_T = TypeVar("_T")

# Ships one batch of events and reports the outcome
BatchSender = Callable[[list[_T]], SendOutcome]


@dataclass(frozen=True)
class DrainResult:
    """
    Outcome of one drain.

    Attributes:
        success: True when no events remain.
        sent: Number of events acknowledged during this drain.
        remaining: Number of events still waiting.
        state: Backpressure state at the end of the drain.
        reason: Why the drain ended.
    """

    success: bool
    sent: int
    remaining: int
    state: BackpressureState
    reason: str = ""


def flush_with_backpressure(
    events: Sequence[_T],
    send_batch: BatchSender[_T],
    *,
    store: StateStore,
    negotiator: CapacityNegotiator,
    policy: BackoffPolicy = DEFAULT_POLICY,
    renegotiate_every: int = 100,
    max_duration: float | None = None,
    clock: Callable[[], int] = now_ms,
    sleep: Callable[[int], None] = sleep_ms,
) -> DrainResult:
    """
    Drain `events` to the server under backpressure control.

    Args:
        events: Events to send, oldest first. Treated as opaque values.
        send_batch: Ships one batch; must report failures as `SendOutcome(ok=False)`.
        store: Persisted backpressure state.
        negotiator: Capacity negotiator for the remote endpoint.
        policy: Backoff tunables.
        renegotiate_every: Re-negotiate capacity after this many events sent
            since the last negotiation.
        max_duration: Optional bound in seconds on the drain; once exceeded no
            further batch is started.
        clock: Returns the current epoch ms.
        sleep: Blocks for the given milliseconds (pacing between batches).

    Returns:
        The DrainResult. Rate limiting, circuit breaking and partial drains
        are reported here, never raised.
    """
    assert renegotiate_every > 0, "renegotiate_every must be greater than 0."
    assert max_duration is None or max_duration > 0, "max_duration must be > 0 or None."

    state = update_pending_count(store.load(), len(events))
    store.save(state)

    if not events:
        return DrainResult(success=True, sent=0, remaining=0, state=state, reason="Nothing to send")

    decision = can_attempt(state, now=clock(), policy=policy)
    if not decision.allowed:
        logger.info(decision.reason)
        store.save(state)
        return DrainResult(success=False, sent=0, remaining=len(events), state=state, reason=decision.reason)

    capacity = negotiator.negotiate(len(events))
    state = state.with_changes(last_capacity=capacity)
    store.save(state)

    if not _accepts_batches(capacity):
        state = _schedule_retry(state, capacity, clock())
        reason = f"Server not ready: {capacity.message or 'backing off'}"
        logger.info(reason)
        store.save(state)
        return DrainResult(success=False, sent=0, remaining=len(events), state=state, reason=reason)

    started_at = time.monotonic()
    remaining = list(events)
    total_sent = 0
    sent_since_negotiation = 0
    reason = "Drained"

    try:
        while remaining:
            if max_duration is not None and total_sent > 0 and time.monotonic() - started_at >= max_duration:
                reason = f"Drain time budget of {max_duration}s exhausted"
                logger.info(reason)
                break

            batch = remaining[:capacity.max_batch_size]
            logger.info(f"Sending batch of {len(batch)} events ({len(remaining) - len(batch)} remaining)")

            outcome = send_batch(batch)

            if not outcome.ok:
                state = record_failure(state, outcome.status, outcome.retry_after, now=clock(), policy=policy)
                store.save(state)
                reason = f"Batch rejected with status {outcome.status}"
                break

            remaining = remaining[len(batch):]
            total_sent += len(batch)
            sent_since_negotiation += len(batch)
            state = record_success(state, len(batch), now=clock())
            store.save(state)

            if not remaining:
                break

            if capacity.delay_between_batches > 0:
                logger.debug(f"Waiting {capacity.delay_between_batches}ms before next batch")
                sleep(capacity.delay_between_batches)

            if sent_since_negotiation >= renegotiate_every:
                sent_since_negotiation = 0
                capacity = negotiator.negotiate(len(remaining))
                state = state.with_changes(last_capacity=capacity)
                if not _accepts_batches(capacity):
                    state = _schedule_retry(state, capacity, clock())
                    store.save(state)
                    reason = "Server requested pause during drain"
                    logger.info(reason)
                    break
                store.save(state)
    finally:
        state = update_pending_count(state, len(remaining))
        store.save(state)

    return DrainResult(
        success=not remaining,
        sent=total_sent,
        remaining=len(remaining),
        state=state,
        reason=reason,
    )


def _accepts_batches(capacity: CapacityDescriptor) -> bool:
    # ready with a zero batch size would never make progress
    return capacity.ready and capacity.max_batch_size > 0


def _schedule_retry(state: BackpressureState, capacity: CapacityDescriptor, now: int) -> BackpressureState:
    return state.with_changes(next_attempt_after=now + capacity.retry_after * 1000)
