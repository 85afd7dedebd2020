"""
Telemetry pooler: the context object that ties configuration, local storage
and the remote endpoint together.

Example:
    >>> from telepool import TelemetryPooler, TelepoolConfig, new_event
    >>> pooler = TelemetryPooler(TelepoolConfig.load())
    >>> pooler.track(new_event("session_start", session_id="s-1"))
    >>> result = pooler.flush(force=True)
    >>> result.sent, result.remaining
    (1, 0)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from telepool._auth import ApiKeyAuthProvider
from telepool._backpressure import get_status_summary, health_label
from telepool._buffer import BufferedEvent, EventBuffer
from telepool._capacity import CapacityNegotiator
from telepool._config import TelepoolConfig
from telepool._drain import DrainResult, SendOutcome, flush_with_backpressure
from telepool._http import AuthenticatedHttpClient, HttpClient
from telepool._sender import IngestSender
from telepool._state import BackpressureState, StateStore
from telepool._utils import now_ms, sleep_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolerStatus:
    """
    Snapshot of the local agent.

    Attributes:
        state: Persisted backpressure state.
        buffered: Number of events waiting in the buffer.
        health: Health label of the backpressure state.
        summary: Multi-line human-readable summary.
    """

    state: BackpressureState
    buffered: int
    health: str
    summary: str


class TelemetryPooler:
    """
    Buffers events locally and drains them under backpressure control.

    Args:
        config: Resolved configuration.
        http_client: HTTP client for the remote endpoint. Defaults to an
            AuthenticatedHttpClient using the configured API key.
        clock: Returns the current epoch ms.
        sleep: Blocks for the given milliseconds.
    """

    def __init__(
        self,
        config: TelepoolConfig,
        http_client: HttpClient | None = None,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[int], None] = sleep_ms,
    ):
        assert config is not None, "config cannot be None."

        self.config = config
        self.clock = clock
        self.sleep = sleep
        self.policy = config.backpressure.to_policy()

        if http_client is None:
            auth = ApiKeyAuthProvider(
                api_key=config.api.api_key,
                session_token=config.api.session_token,
            )
            http_client = AuthenticatedHttpClient(auth_provider=auth)

        base_url = config.api.resolved_base_url
        self.store = StateStore(config.buffer.state_file, max_backoff_level=self.policy.max_backoff_level)
        self.buffer = EventBuffer(config.buffer.buffer_dir)
        self.negotiator = CapacityNegotiator(
            http_client,
            base_url=base_url,
            client_version=config.api.client_version,
            timeout=config.api.negotiate_timeout,
        )
        self.sender = IngestSender(
            http_client,
            base_url=base_url,
            project_id=config.api.project_id,
            timeout=config.api.send_timeout,
        )

    def track(self, event: Any) -> BufferedEvent:
        """
        Append an event to the local buffer.

        Raises:
            InvalidEventError: If the event misses a required field.
        """
        return self.buffer.append(event)

    def flush(self, force: bool = False) -> DrainResult:
        """
        Drain the buffer to the remote endpoint.

        A non-forced flush waits until at least `batch_size` events are
        buffered. In monitor-only mode the buffer is cleared without sending.

        Args:
            force: Send whatever is buffered, regardless of `batch_size`.

        Returns:
            The DrainResult of this flush.
        """
        if self.config.buffer.monitor_only:
            discarded = self.buffer.clear()
            logger.info(f"Monitor-only mode: discarded {discarded} buffered events")
            state = self.store.load()
            return DrainResult(
                success=True,
                sent=0,
                remaining=0,
                state=state,
                reason=f"Monitor-only mode: discarded {discarded} events",
            )

        buffered = self.buffer.count()
        batch_size = self.config.buffer.batch_size
        if not force and buffered < batch_size:
            reason = f"Waiting for more events ({buffered}/{batch_size})"
            logger.debug(reason)
            return DrainResult(
                success=buffered == 0,
                sent=0,
                remaining=buffered,
                state=self.store.load(),
                reason=reason,
            )

        events = self.buffer.read()
        logger.info(f"Flushing {len(events)} buffered events")

        result = flush_with_backpressure(
            events,
            self._send_and_remove,
            store=self.store,
            negotiator=self.negotiator,
            policy=self.policy,
            renegotiate_every=self.config.backpressure.renegotiate_every,
            max_duration=self.config.backpressure.max_drain_duration,
            clock=self.clock,
            sleep=self.sleep,
        )
        if result.success:
            logger.info(f"Flush complete: {result.sent} events sent")
        else:
            logger.info(f"Flush stopped: {result.reason} ({result.sent} sent, {result.remaining} remaining)")
        return result

    def status(self) -> PoolerStatus:
        """Return a snapshot of the buffer and the backpressure state."""
        state = self.store.load()
        return PoolerStatus(
            state=state,
            buffered=self.buffer.count(),
            health=health_label(state, self.policy),
            summary=get_status_summary(state, now=self.clock(), policy=self.policy),
        )

    def reset_backpressure(self) -> bool:
        """
        Forget all failure history by deleting the state file.

        Returns:
            True if a state file was removed.
        """
        removed = self.store.reset()
        logger.info("Backpressure state reset" if removed else "No backpressure state to reset")
        return removed

    def _send_and_remove(self, batch: list[BufferedEvent]) -> SendOutcome:
        outcome = self.sender.send([event.payload for event in batch])
        if outcome.ok:
            self.buffer.remove(batch)
        return outcome
