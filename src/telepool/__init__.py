"""
telepool: buffered telemetry with adaptive backpressure.

Events observed on the client are buffered on disk and drained to a remote
ingestion endpoint. Every drain consults a persisted backpressure state
(exponential backoff and a circuit breaker) and negotiates capacity with the
server before sending, so an overloaded or unreachable endpoint is never
hammered and no buffered event is lost.

Quick Start:
    >>> from telepool import TelemetryPooler, TelepoolConfig, new_event
    >>> pooler = TelemetryPooler(TelepoolConfig.load(api={"api_key": "dc_abc123"}))
    >>> pooler.track(new_event("tool_call", session_id="s-1", toolName="Bash"))
    >>> result = pooler.flush(force=True)
    >>> print(result.sent, result.remaining, result.reason)

Custom drains:
    >>> from telepool import SendOutcome, StateStore, flush_with_backpressure
    >>> result = flush_with_backpressure(
    ...     events,
    ...     send_batch=lambda batch: SendOutcome(ok=True, status=200),
    ...     store=StateStore(Path("/tmp/state.json")),
    ...     negotiator=negotiator,
    ... )

Main Classes:
    - TelemetryPooler: Context object tying configuration, buffer and endpoint together.
    - flush_with_backpressure: The drain loop.
    - CapacityNegotiator: Asks the endpoint how much it can accept.
    - StateStore: Persisted BackpressureState.
    - EventBuffer: One-file-per-event on-disk buffer.
    - IngestSender: Default batch sender.

Configuration:
    - TelepoolConfig: Root configuration (no global instance).
    - ApiConfig, BackpressureConfig, BufferConfig: Configuration sections.
    - ConfigEnvVarError, ConfigValidationError: Configuration errors.
"""

from importlib.metadata import version as _get_version

__version__ = _get_version("telepool")

from telepool._auth import (
    ApiKeyAuthProvider,
    AuthenticationError,
    AuthProvider,
)
from telepool._backoff import (
    DEFAULT_POLICY,
    BackoffPolicy,
    calculate_backoff_delay,
)
from telepool._backpressure import (
    AdmissionDecision,
    can_attempt,
    get_status_summary,
    health_label,
    record_failure,
    record_success,
    update_pending_count,
)
from telepool._buffer import BufferedEvent, EventBuffer
from telepool._capacity import CapacityNegotiator
from telepool._config import (
    ApiConfig,
    BackpressureConfig,
    BufferConfig,
    ConfigEntry,
    ConfigEnvVarError,
    ConfigValidationError,
    TelepoolConfig,
)
from telepool._drain import DrainResult, SendOutcome, flush_with_backpressure
from telepool._events import InvalidEventError, new_event, validate_event
from telepool._http import AuthenticatedHttpClient, HttpClient
from telepool._pooler import PoolerStatus, TelemetryPooler
from telepool._sender import IngestSender
from telepool._state import (
    DEFAULT_CAPACITY,
    BackpressureState,
    CapacityDescriptor,
    StateStore,
)

__all__ = [
    "__version__",
    # Pooler
    "TelemetryPooler",
    "PoolerStatus",
    # Configuration
    "TelepoolConfig",
    "ApiConfig",
    "BackpressureConfig",
    "BufferConfig",
    "ConfigEntry",
    "ConfigEnvVarError",
    "ConfigValidationError",
    # Backoff & backpressure
    "BackoffPolicy",
    "DEFAULT_POLICY",
    "calculate_backoff_delay",
    "AdmissionDecision",
    "can_attempt",
    "record_success",
    "record_failure",
    "update_pending_count",
    "get_status_summary",
    "health_label",
    # State
    "BackpressureState",
    "CapacityDescriptor",
    "DEFAULT_CAPACITY",
    "StateStore",
    # Capacity & drain
    "CapacityNegotiator",
    "flush_with_backpressure",
    "DrainResult",
    "SendOutcome",
    # Events & buffer
    "new_event",
    "validate_event",
    "InvalidEventError",
    "EventBuffer",
    "BufferedEvent",
    "IngestSender",
    # Authentication & HTTP
    "AuthProvider",
    "ApiKeyAuthProvider",
    "AuthenticationError",
    "HttpClient",
    "AuthenticatedHttpClient",
]
