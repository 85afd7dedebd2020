"""
HTTP client abstraction for telepool.

Available implementations:
    - AuthenticatedHttpClient: Adds AuthProvider headers to every request (uses `requests`).

Example:
    >>> from telepool._auth import ApiKeyAuthProvider
    >>> from telepool._http import AuthenticatedHttpClient
    >>> client = AuthenticatedHttpClient(auth_provider=ApiKeyAuthProvider("dc_key"))
    >>> response = client.post("https://api.example.com/v1/resource", data={"key": "value"})
"""

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, override

import requests

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from telepool._auth import AuthProvider


# =============================================================================
# Abstract Base Class
# =============================================================================


class HttpClient(ABC):
    """
    Abstract base class for HTTP clients.

    Implementations handle authentication; the capacity negotiator and the
    ingest sender only depend on this interface, which keeps them testable
    with in-memory fakes.

    Example:
        >>> class MyHttpClient(HttpClient):
        ...     def post(self, url, data=None, headers=None, timeout=30):
        ...         return requests.post(url, json=data, headers=headers, timeout=timeout)
    """

    @abstractmethod
    def post(
        self,
        url: str,
        data: Any = None,
        headers: dict[str, str] | None = None,
        timeout: float = 30,
    ) -> requests.Response:
        """
        Execute an authenticated POST request with JSON body.

        Args:
            url: The full URL to request.
            data: JSON-serializable data to send in the request body.
            headers: Additional headers to include (merged with auth headers).
            timeout: Request timeout in seconds.

        Returns:
            The HTTP response.

        Raises:
            requests.RequestException: If the HTTP request fails.
        """
        pass


# =============================================================================
# Authenticated Implementation
# =============================================================================


class AuthenticatedHttpClient(HttpClient):
    """
    HTTP client using an AuthProvider for request authentication.

    Args:
        auth_provider: Provider for authorization headers.
        session: Optional `requests.Session` (a new one is created if omitted).
    """

    def __init__(self, auth_provider: "AuthProvider", session: requests.Session | None = None):
        from telepool._auth import AuthProvider

        assert auth_provider is not None, "auth_provider cannot be None"
        assert isinstance(auth_provider, AuthProvider), "auth_provider must be an AuthProvider instance"

        self._auth = auth_provider
        self._session = session or requests.Session()

    @override
    def post(
        self,
        url: str,
        data: Any = None,
        headers: dict[str, str] | None = None,
        timeout: float = 30,
    ) -> requests.Response:
        """
        Execute an authenticated POST request with JSON body.

        Raises:
            AssertionError: If url is empty or timeout is invalid.
            requests.RequestException: If the HTTP request fails.
            AuthenticationError: If no credentials are configured.
        """
        assert url, "URL cannot be empty."
        assert timeout is not None, "Timeout cannot be None."
        assert timeout > 0, "Timeout must be greater than 0."

        merged_headers = {
            "Content-Type": "application/json",
            **self._auth.get_auth_headers(),
            **(headers or {}),
        }

        return self._session.post(
            url,
            json=data,
            headers=merged_headers,
            timeout=timeout,
        )
