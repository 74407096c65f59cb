"""Base client with retry logic, error handling, and rate limiting."""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
import structlog
from asyncio_throttle import Throttler
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from teamsync.clients.exceptions import (
    APIError,
    AuthenticationError,
    AuthorizationError,
    ClientError,
    ConflictError,
    NetworkError,
    RateLimitError,
    ResourceNotFoundError,
    ServerError,
)

logger = structlog.get_logger(__name__)


class BaseAPIClient(ABC):
    """Abstract base class for API clients with common functionality."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30,
        rate_limit_per_minute: int = 600,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        verify_tls: bool = True,
        user_agent: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the base API client.

        Args:
            base_url: Base URL for the API
            timeout_seconds: Request timeout in seconds
            rate_limit_per_minute: Maximum requests per minute
            max_retries: Maximum retry attempts for failed idempotent requests
            retry_delay_seconds: Initial delay between retries
            verify_tls: Whether to verify TLS certificates
            user_agent: Custom user agent string
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.rate_limit_per_minute = rate_limit_per_minute
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds

        headers = {
            "User-Agent": user_agent or self._get_default_user_agent(),
            "Accept": "application/json",
        }

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers=headers,
            follow_redirects=True,
            verify=verify_tls,
            transport=transport,
        )

        self._throttler = Throttler(rate_limit=rate_limit_per_minute, period=60)

        self._request_count = 0
        self._last_ok: Optional[datetime] = None

        self._logger = logger.bind(
            client_type=self.__class__.__name__,
            base_url=self.base_url,
        )

    async def __aenter__(self) -> "BaseAPIClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client and cleanup resources."""
        if self._client:
            await self._client.aclose()

    @abstractmethod
    async def _get_auth_headers(self) -> Dict[str, str]:
        """Get authentication headers for requests.

        Returns:
            Dictionary of authentication headers
        """
        pass

    def _get_default_user_agent(self) -> str:
        """Get default user agent string."""
        from teamsync.version import __version__
        return f"entra-grafana-sync/{__version__}"

    @property
    def last_ok(self) -> Optional[datetime]:
        """Time of the last successful response, if any."""
        return self._last_ok

    def _classify_error(self, response: httpx.Response) -> APIError:
        """Map a non-success response to a typed error.

        Subclasses refine this to recognise API-specific error payloads.
        """
        status = response.status_code
        text = response.text
        if status == 401:
            return AuthenticationError("Authentication failed", status_code=status, response_text=text)
        if status == 403:
            return AuthorizationError("Permission denied", status_code=status, response_text=text)
        if status == 404:
            return ResourceNotFoundError("Resource not found", status_code=status, response_text=text)
        if status == 409:
            return ConflictError("Conflict with current state", status_code=status, response_text=text)
        if status == 429:
            return RateLimitError(
                "Rate limit exceeded",
                status_code=status,
                response_text=text,
                retry_after=self._get_retry_after(response),
            )
        if 400 <= status < 500:
            return ClientError(f"Client error: {status}", status_code=status, response_text=text)
        if 500 <= status < 600:
            return ServerError(f"Server error: {status}", status_code=status, response_text=text)
        return APIError(f"Unexpected status code: {status}", status_code=status, response_text=text)

    async def _make_request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Any] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        authenticate: bool = True,
    ) -> httpx.Response:
        """Make an HTTP request with rate limiting and error handling.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE, etc.)
            path: API endpoint path relative to the base URL, or an absolute URL
            params: Query parameters
            json_data: JSON request body
            data: Form-encoded request body
            headers: Additional headers
            authenticate: Whether to attach authentication headers

        Returns:
            HTTP response object

        Raises:
            APIError: If the request fails
        """
        async with self._throttler:
            if path.startswith("http://") or path.startswith("https://"):
                url = path
            else:
                url = f"{self.base_url}/{path.lstrip('/')}"

            request_headers = await self._get_auth_headers() if authenticate else {}
            if headers:
                request_headers.update(headers)

            self._request_count += 1
            request_id = f"req_{self._request_count}"

            self._logger.debug(
                "Making API request",
                request_id=request_id,
                method=method,
                url=url,
                params=params,
                has_json_data=json_data is not None,
            )

            try:
                response = await self._client.request(
                    method=method,
                    url=url,
                    params=params,
                    json=json_data,
                    data=data,
                    headers=request_headers,
                )
            except httpx.RequestError as e:
                self._logger.error(
                    "Network error during API request",
                    request_id=request_id,
                    error=str(e),
                )
                raise NetworkError(f"Network error: {e}") from e

            self._logger.debug(
                "API request completed",
                request_id=request_id,
                status_code=response.status_code,
                response_size=len(response.content),
            )

            if response.is_success:
                self._last_ok = datetime.now(timezone.utc)
                return response

            raise self._classify_error(response)

    def _get_retry_after(self, response: httpx.Response) -> Optional[int]:
        """Extract retry-after value from response headers.

        Args:
            response: HTTP response

        Returns:
            Retry-after value in seconds, or None if not present
        """
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return int(retry_after)
            except ValueError:
                pass
        return None

    async def request(
        self,
        method: str,
        path: str,
        retry: Optional[bool] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Make a request, retrying transient failures for idempotent calls.

        Args:
            method: HTTP method
            path: API endpoint path or absolute URL
            retry: Whether to retry; defaults to True for GET only
            **kwargs: Passed through to ``_make_request``

        Returns:
            HTTP response
        """
        if retry is None:
            retry = method.upper() == "GET"
        if not retry or self.max_retries <= 0:
            return await self._make_request(method, path, **kwargs)

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries + 1),
                wait=wait_exponential(
                    multiplier=self.retry_delay_seconds,
                    min=self.retry_delay_seconds,
                    max=60,
                ),
                retry=retry_if_exception_type((ServerError, NetworkError, RateLimitError)),
                reraise=True,
            ):
                with attempt:
                    outcome = attempt.retry_state.outcome
                    if outcome is not None and isinstance(outcome.exception(), RateLimitError):
                        rate_limit_error = outcome.exception()
                        if rate_limit_error.retry_after:
                            self._logger.info(
                                "Rate limit hit, waiting before retry",
                                path=path,
                                retry_after=rate_limit_error.retry_after,
                            )
                            await asyncio.sleep(rate_limit_error.retry_after)
                    return await self._make_request(method, path, **kwargs)
        except APIError as e:
            self._logger.warning(
                "API request failed",
                method=method,
                path=path,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise
        raise APIError(f"Request {method} {path} produced no response")

    async def get_json(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Make a GET request and return the decoded JSON body.

        Raises:
            APIError: If response is not valid JSON
        """
        response = await self.request("GET", path, params=params, headers=headers)
        try:
            return response.json()
        except ValueError as e:
            raise APIError(f"Failed to parse JSON response: {e}") from e

    async def send_json(
        self,
        method: str,
        path: str,
        json_data: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Make a write request and return the decoded JSON body (or None)."""
        response = await self.request(
            method, path, json_data=json_data, params=params, headers=headers
        )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise APIError(f"Failed to parse JSON response: {e}") from e

    @abstractmethod
    async def health_check(self) -> bool:
        """Perform a basic health check against the API.

        Returns:
            True if the API is healthy, False otherwise
        """
        pass
