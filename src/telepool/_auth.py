"""
Authentication providers for the telepool HTTP clients.

The ingestion API authenticates with a long-lived API key sent as a bearer
token, optionally accompanied by a pooler session token.

Example:
    >>> from telepool._auth import ApiKeyAuthProvider
    >>> auth = ApiKeyAuthProvider(api_key="dc_abc123", session_token="tok")
    >>> auth.get_auth_headers()
    {'Authorization': 'Bearer dc_abc123', 'X-Pooler-Token': 'tok'}
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import override

# =============================================================================
# Exceptions
# =============================================================================


class AuthenticationError(Exception):
    """
    Raised when no usable credentials are available.

    Attributes:
        message: Description of the authentication failure.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# =============================================================================
# Abstract Base Class
# =============================================================================


class AuthProvider(ABC):
    """
    Abstract base class for authentication providers.

    Example:
        >>> class MyAuthProvider(AuthProvider):
        ...     def get_access_token(self) -> str:
        ...         return "my-token"
        ...
        >>> MyAuthProvider().get_auth_headers()
        {'Authorization': 'Bearer my-token'}
    """

    @abstractmethod
    def get_access_token(self) -> str:
        """
        Return the token sent as bearer credential.

        Raises:
            AuthenticationError: If no token is available.
        """
        pass

    def get_auth_headers(self) -> dict[str, str]:
        """Return authorization headers for HTTP requests."""
        return {"Authorization": f"Bearer {self.get_access_token()}"}


# =============================================================================
# API Key Implementation
# =============================================================================


class ApiKeyAuthProvider(AuthProvider):
    """
    Bearer API key authentication with an optional pooler session token.

    Args:
        api_key: The ingestion API key.
        session_token: Optional session token sent as `X-Pooler-Token`.
    """

    SESSION_TOKEN_HEADER = "X-Pooler-Token"

    def __init__(self, api_key: str | None, session_token: str | None = None):
        self._api_key = api_key
        self._session_token = session_token

    @override
    def get_access_token(self) -> str:
        if not self._api_key:
            raise AuthenticationError(
                "No API key configured. Set TELEPOOL_API_KEY or add 'apiKey' to the config file."
            )
        return self._api_key

    @override
    def get_auth_headers(self) -> dict[str, str]:
        headers = super().get_auth_headers()
        if self._session_token:
            headers[self.SESSION_TOKEN_HEADER] = self._session_token
        return headers
