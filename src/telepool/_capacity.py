"""
Capacity negotiation with the ingestion API.

Before draining, the client asks the server how much it can accept right now.
Transport-level signals are normalized into a CapacityDescriptor:

    - HTTP 429: not ready, Retry-After (default 60s), "Rate limited"
    - HTTP 503: not ready, Retry-After (default 120s), "Server overloaded"
    - any other failure: conservative DEFAULT_CAPACITY

`CapacityNegotiator.negotiate()` never raises; every failure mode degrades to a
descriptor.

Example:
    >>> negotiator = CapacityNegotiator(http_client, base_url="https://api.rulecatch.ai")
    >>> capacity = negotiator.negotiate(pending_count=42)
    >>> capacity.ready, capacity.max_batch_size
    (True, 50)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import requests

from telepool._auth import AuthenticationError
from telepool._state import DEFAULT_CAPACITY, CapacityDescriptor
from telepool._utils import parse_retry_after

if TYPE_CHECKING:
    from telepool._http import HttpClient

logger = logging.getLogger(__name__)

CAPACITY_PATH = "/api/v1/ai/pooler/capacity"


class CapacityNegotiator:
    """
    Asks the remote endpoint how much it can currently accept.

    Args:
        http_client: Authenticated HTTP client carrying the caller's credentials.
        base_url: API base URL (without the `/api/v1` prefix).
        client_version: Version tag reported to the server.
        timeout: Request timeout in seconds (default: 10).
    """

    RATE_LIMITED_RETRY_AFTER = 60
    OVERLOADED_RETRY_AFTER = 120

    def __init__(
        self,
        http_client: HttpClient,
        base_url: str,
        client_version: str = "0.4.0",
        timeout: float = 10.0,
    ):
        assert http_client is not None, "http_client cannot be None."
        assert base_url, "base_url cannot be empty."
        assert timeout > 0, "timeout must be greater than 0."

        self.http_client = http_client
        self.endpoint = f"{base_url.rstrip('/')}{CAPACITY_PATH}"
        self.client_version = client_version
        self.timeout = timeout

    def negotiate(self, pending_count: int) -> CapacityDescriptor:
        """
        Request the current capacity terms.

        Args:
            pending_count: Number of events waiting in the local buffer.

        Returns:
            The server's terms, or a synthesized descriptor on any failure.
        """
        payload = {
            "pendingEventCount": pending_count,
            "clientVersion": self.client_version,
        }

        try:
            response = self.http_client.post(self.endpoint, data=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Failed to get server capacity: {e}")
            return DEFAULT_CAPACITY
        except AuthenticationError as e:
            logger.error(f"Failed to get server capacity: {e}")
            return DEFAULT_CAPACITY

        if response.status_code == 429:
            retry_after = self._retry_after(response, self.RATE_LIMITED_RETRY_AFTER)
            logger.warning(f"Rate limited by server, retry after {retry_after}s")
            return CapacityDescriptor(
                ready=False,
                max_batch_size=0,
                delay_between_batches=0,
                retry_after=retry_after,
                message="Rate limited",
            )

        if response.status_code == 503:
            retry_after = self._retry_after(response, self.OVERLOADED_RETRY_AFTER)
            logger.warning(f"Server overloaded, retry after {retry_after}s")
            return CapacityDescriptor(
                ready=False,
                max_batch_size=0,
                delay_between_batches=0,
                retry_after=retry_after,
                message="Server overloaded",
            )

        if not response.ok:
            logger.warning(f"Capacity check failed: {response.status_code}")
            return DEFAULT_CAPACITY

        try:
            capacity = CapacityDescriptor.from_dict(response.json())
        except ValueError as e:
            # requests' JSONDecodeError is a ValueError too
            logger.warning(f"Malformed capacity response: {e}")
            return DEFAULT_CAPACITY

        logger.info(
            f"Server capacity: ready={capacity.ready}, maxBatch={capacity.max_batch_size}, "
            f"delay={capacity.delay_between_batches}ms, load={capacity.load_percent}%"
        )
        return capacity

    @staticmethod
    def _retry_after(response: requests.Response, default: int) -> int:
        seconds = parse_retry_after(response.headers.get("Retry-After"))
        return default if seconds is None else seconds
