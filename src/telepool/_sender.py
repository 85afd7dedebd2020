"""
Default batch sender for the ingestion endpoint.

Example:
    >>> sender = IngestSender(http_client, base_url="https://api.rulecatch.ai", project_id="proj-1")
    >>> sender.send([{"type": "tool_call", "timestamp": "...", "sessionId": "s-1"}])
    SendOutcome(ok=True, status=202, retry_after=None)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import requests

from telepool._auth import AuthenticationError
from telepool._drain import SendOutcome

if TYPE_CHECKING:
    from telepool._http import HttpClient

logger = logging.getLogger(__name__)

INGEST_PATH = "/api/v1/ai/ingest"

# Status reported when the request never produced an HTTP response
NO_RESPONSE_STATUS = 0


class IngestSender:
    """
    Posts event batches to the ingestion API.

    Every failure, including transport errors, is reported as a
    `SendOutcome(ok=False)` so the drain loop can record it and back off.

    Args:
        http_client: Authenticated HTTP client.
        base_url: API base URL (without the `/api/v1` prefix).
        project_id: Optional project identifier sent with each batch.
        timeout: Request timeout in seconds (default: 30).
    """

    def __init__(
        self,
        http_client: HttpClient,
        base_url: str,
        project_id: str | None = None,
        timeout: float = 30.0,
    ):
        assert http_client is not None, "http_client cannot be None."
        assert base_url, "base_url cannot be empty."
        assert timeout > 0, "timeout must be greater than 0."

        self.http_client = http_client
        self.endpoint = f"{base_url.rstrip('/')}{INGEST_PATH}"
        self.project_id = project_id
        self.timeout = timeout

    def send(self, batch: list[dict[str, Any]]) -> SendOutcome:
        """
        Send one batch of events.

        Args:
            batch: Event records, oldest first.

        Returns:
            The outcome of the request.
        """
        body: dict[str, Any] = {"events": batch}
        if self.project_id:
            body["projectId"] = self.project_id

        try:
            response = self.http_client.post(self.endpoint, data=body, timeout=self.timeout)
        except requests.Timeout as e:
            logger.warning(f"Ingest request timed out after {self.timeout}s: {e}")
            return SendOutcome(ok=False, status=NO_RESPONSE_STATUS)
        except requests.RequestException as e:
            logger.warning(f"Ingest request failed: {e}")
            return SendOutcome(ok=False, status=NO_RESPONSE_STATUS)
        except AuthenticationError as e:
            logger.error(f"Ingest request not sent: {e}")
            return SendOutcome(ok=False, status=NO_RESPONSE_STATUS)

        if response.ok:
            logger.info(f"Flushed {len(batch)} events")
            return SendOutcome(ok=True, status=response.status_code)

        retry_after = response.headers.get("Retry-After")
        logger.warning(f"Ingest rejected batch of {len(batch)} events: HTTP {response.status_code}")
        return SendOutcome(ok=False, status=response.status_code, retry_after=retry_after)
