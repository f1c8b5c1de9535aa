"""Base HTTP client with retry logic for the remote authority."""

import logging
from typing import Any, Optional

import requests

from .retry import RetryConfig, retry_with_backoff, RetryExhausted

__all__ = [
    "BaseApiClient",
    "RemoteError",
    "RemoteAuthError",
    "RemoteConflictError",
    "RemoteRejectedError",
    "RemoteTransientError",
]

logger = logging.getLogger(__name__)


class RemoteError(Exception):
    """Remote authority error."""

    pass


class RemoteAuthError(RemoteError):
    """Authentication or authorization rejected. Fatal to the sync session."""

    pass


class RemoteConflictError(RemoteError):
    """The remote row changed (or vanished) since the expected version.

    ``current`` holds the row as the server has it now, or None if it no
    longer exists.
    """

    def __init__(self, message: str, current: Any = None):
        super().__init__(message)
        self.current = current


class RemoteRejectedError(RemoteError):
    """The server refused the payload itself; retrying cannot help."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteTransientError(RemoteError):
    """Network failure, timeout or server error that outlived in-request retries."""

    pass


class _TransientError(Exception):
    """Internal: Marks an error as transient/retryable."""

    pass


class BaseApiClient:
    """Base HTTP client for a PostgREST-style REST endpoint.

    Handles:
    - Session management
    - API key and bearer token headers
    - Retry with exponential backoff on transient failures
    - Classification of error responses into the RemoteError hierarchy

    All methods block; callers on the event loop run them in an executor.
    """

    DEFAULT_RETRY_CONFIG = RetryConfig(
        max_retries=2,
        base_delay=0.5,
        max_delay=10.0,
        exponential_base=2.0,
        jitter=True,
    )

    USER_AGENT = "RosterSync/0.4.0"

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: int = 30,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize base API client.

        Args:
            api_url: REST base URL, e.g. "https://project.example.co/rest/v1"
            api_key: Public API key sent with every request
            access_token: User session token; falls back to the API key
            timeout: Request timeout in seconds
            retry_config: Configuration for retry with exponential backoff
            session: Optional requests session (for dependency injection/testing)
        """
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self.timeout = timeout
        self.retry_config = retry_config or self.DEFAULT_RETRY_CONFIG
        self._session = session or requests.Session()
        self._owns_session = session is None

    def _get_headers(self) -> dict:
        """Get request headers with authentication."""
        headers = {
            "Accept": "application/json",
            "User-Agent": self.USER_AGENT,
        }
        if self.api_key:
            headers["apikey"] = self.api_key
        token = self.access_token or self.api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        data: Optional[dict] = None,
        prefer: Optional[str] = None,
        retry: bool = True,
    ) -> Any:
        """Make a request to the REST endpoint.

        Args:
            method: HTTP method
            endpoint: Table or path relative to api_url
            params: Query string filters
            data: JSON body
            prefer: Value for the ``Prefer`` header
            retry: Whether to retry on transient failures

        Returns:
            Decoded JSON body, or None for an empty response

        Raises:
            RemoteAuthError: For 401/403 responses (not retried)
            RemoteConflictError: For 409/412 responses
            RemoteRejectedError: For any other 4xx response
            RemoteTransientError: For network errors and 5xx after retries
        """
        url = f"{self.api_url}/{endpoint.lstrip('/')}"
        headers = self._get_headers()
        if prefer:
            headers["Prefer"] = prefer

        kwargs: dict = {"timeout": self.timeout, "headers": headers}
        if params:
            kwargs["params"] = params
        if data is not None:
            kwargs["json"] = data

        def do_request() -> Any:
            try:
                response = self._session.request(method, url, **kwargs)
            except requests.exceptions.ConnectionError:
                raise _TransientError("Cannot connect to remote")
            except requests.exceptions.Timeout:
                raise _TransientError("Request timed out")

            status = response.status_code
            if status == 401:
                raise RemoteAuthError("Invalid or expired session token")
            if status == 403:
                raise RemoteAuthError("Not authorized for this resource")
            if status >= 500:
                raise _TransientError(f"Server error: {status}")
            if status in (409, 412):
                raise RemoteConflictError(
                    f"Conflict ({status}): {self._error_detail(response)}"
                )
            if status >= 400:
                raise RemoteRejectedError(
                    f"API error ({status}): {self._error_detail(response)}",
                    status_code=status,
                )
            return response.json() if response.content else None

        if not retry:
            try:
                return do_request()
            except _TransientError as e:
                raise RemoteTransientError(str(e)) from e

        try:
            return retry_with_backoff(
                do_request,
                config=self.retry_config,
                retryable_exceptions=(_TransientError,),
            )
        except RetryExhausted as e:
            if e.last_error:
                raise RemoteTransientError(str(e.last_error)) from e.last_error
            raise RemoteTransientError("Request failed after retries") from e

    @staticmethod
    def _error_detail(response: requests.Response) -> str:
        """Pull the message out of an error body, if it has one."""
        try:
            body = response.json()
        except ValueError:
            return response.reason or ""
        if isinstance(body, dict):
            return body.get("message") or body.get("hint") or str(body)
        return str(body)

    def set_access_token(self, token: Optional[str]) -> None:
        """Swap the user session token (after re-authentication)."""
        self.access_token = token

    def is_reachable(self) -> bool:
        """Check whether the REST endpoint answers at all."""
        try:
            self._request("GET", "", retry=False)
            return True
        except RemoteTransientError:
            return False
        except RemoteError:
            # Any HTTP answer, even an error, means the server is up
            return True

    def close(self) -> None:
        """Close the session if we own it."""
        if self._owns_session and self._session is not None:
            self._session.close()
            self._session = None

    def __enter__(self) -> "BaseApiClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
