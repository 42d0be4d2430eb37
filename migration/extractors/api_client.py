"""
Source API transport client with authentication, retry logic and a circuit breaker.

This module provides the HTTP layer the paginated reader sits on:
- Bearer token authentication
- Exponential backoff retry logic for transient failures
- Circuit breaker pattern to prevent cascading failures
- Rate limiting protection (honours Retry-After)
- Error normalization: callers get a TransportResponse, never an exception
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import asyncio
import logging

import httpx

from core.config import settings
from core.exceptions import (
    APIExtractionError,
    AuthenticationError,
    NetworkError,
    RateLimitError,
    ResourceNotFoundError,
)

logger = logging.getLogger(__name__)


@dataclass
class TransportResponse:
    """Normalized result of one HTTP call"""
    success: bool
    data: Any = None
    status_code: Optional[int] = None
    error: Optional[str] = None
    body: Optional[str] = None


class SourceAPIClient:
    """
    Async HTTP client for the source system.

    Attributes:
        max_retries: Maximum number of attempts per request (default: settings.MAX_RETRIES)
        retry_delay: Initial retry delay in seconds (default: settings.RETRY_DELAY_SECONDS)
        timeout: Request timeout in seconds (default: settings.SOURCE_TIMEOUT_SECONDS)
        circuit_breaker_threshold: Failures before circuit opens (default: 5)
        circuit_breaker_timeout: Seconds before circuit reset (default: 60)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = (base_url or settings.SOURCE_API_URL).rstrip("/")
        self.token = token or settings.SOURCE_API_TOKEN
        self.timeout = timeout or settings.SOURCE_TIMEOUT_SECONDS
        self.max_retries = max_retries or settings.MAX_RETRIES
        self.retry_delay = settings.RETRY_DELAY_SECONDS if retry_delay is None else retry_delay

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout
        )

        # Circuit breaker state
        self._circuit_breaker_failures = 0
        self._circuit_breaker_threshold = 5
        self._circuit_breaker_open_until: Optional[datetime] = None
        self._circuit_breaker_timeout = 60  # seconds

    async def __aenter__(self) -> "SourceAPIClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    def _is_circuit_open(self) -> bool:
        """Check if circuit breaker is open."""
        if self._circuit_breaker_open_until is None:
            return False

        if datetime.utcnow() >= self._circuit_breaker_open_until:
            logger.info(f"Circuit breaker reset for {self.base_url}")
            self._circuit_breaker_failures = 0
            self._circuit_breaker_open_until = None
            return False

        return True

    def _record_failure(self):
        """Record a failure and potentially open circuit breaker."""
        self._circuit_breaker_failures += 1

        if self._circuit_breaker_failures >= self._circuit_breaker_threshold:
            self._circuit_breaker_open_until = datetime.utcnow() + timedelta(
                seconds=self._circuit_breaker_timeout
            )
            logger.warning(
                f"Circuit breaker opened for {self.base_url}. "
                f"Will retry after {self._circuit_breaker_timeout} seconds."
            )

    def _record_success(self):
        """Record a successful request."""
        self._circuit_breaker_failures = 0
        self._circuit_breaker_open_until = None

    def _backoff(self, attempt: int) -> float:
        return self.retry_delay * (2 ** attempt)

    async def _request_with_retry(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None
    ) -> httpx.Response:
        """
        Make HTTP request with retry logic and exponential backoff.

        Returns:
            HTTP response with a 2xx status

        Raises:
            APIExtractionError: For non-retryable errors or an open circuit
            NetworkError: For retryable network errors after max retries
        """
        if self._is_circuit_open():
            raise APIExtractionError(
                f"Circuit breaker is open for {self.base_url}",
                context={
                    "endpoint": endpoint,
                    "open_until": self._circuit_breaker_open_until.isoformat()
                }
            )

        last_exception = None

        for attempt in range(self.max_retries):
            try:
                logger.debug(f"{method} {endpoint} attempt {attempt + 1}/{self.max_retries}")

                response = await self._client.request(
                    method,
                    endpoint,
                    params=params,
                    json=json,
                    timeout=self.timeout
                )

                if response.status_code in (401, 403):
                    self._record_failure()
                    raise AuthenticationError(
                        f"Authentication failed for {endpoint}",
                        context={
                            "status_code": response.status_code,
                            "endpoint": endpoint,
                            "response_body": response.text[:500]
                        }
                    )

                if response.status_code == 404:
                    self._record_failure()
                    raise ResourceNotFoundError(
                        f"Resource not found: {endpoint}",
                        context={
                            "status_code": 404,
                            "endpoint": endpoint,
                            "response_body": response.text[:500]
                        }
                    )

                if response.status_code == 429:
                    try:
                        retry_after = int(response.headers.get("Retry-After", self._backoff(attempt)))
                    except ValueError:
                        retry_after = int(self._backoff(attempt))
                    logger.warning(f"Rate limited on {endpoint}. Retrying after {retry_after} seconds")

                    if attempt < self.max_retries - 1:
                        await asyncio.sleep(retry_after)
                        continue

                    self._record_failure()
                    raise RateLimitError(
                        f"Rate limit exceeded for {endpoint}",
                        context={
                            "status_code": 429,
                            "endpoint": endpoint,
                            "retry_count": attempt + 1
                        },
                        retry_after=retry_after
                    )

                if response.status_code >= 500:
                    if attempt < self.max_retries - 1:
                        delay = self._backoff(attempt)
                        logger.warning(
                            f"Server error {response.status_code} on {endpoint}. "
                            f"Retrying in {delay} seconds (attempt {attempt + 1}/{self.max_retries})"
                        )
                        await asyncio.sleep(delay)
                        continue

                    self._record_failure()
                    raise NetworkError(
                        f"Server error after {self.max_retries} attempts",
                        context={
                            "status_code": response.status_code,
                            "endpoint": endpoint,
                            "retry_count": attempt + 1,
                            "response_body": response.text[:500]
                        }
                    )

                if response.status_code >= 400:
                    self._record_failure()
                    raise APIExtractionError(
                        f"Request rejected with {response.status_code}: {endpoint}",
                        context={
                            "status_code": response.status_code,
                            "endpoint": endpoint,
                            "response_body": response.text[:500]
                        }
                    )

                self._record_success()
                return response

            except httpx.TimeoutException as e:
                last_exception = e
                if attempt < self.max_retries - 1:
                    delay = self._backoff(attempt)
                    logger.warning(f"Request timeout on {endpoint}. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue

                self._record_failure()
                raise NetworkError(
                    f"Request timeout after {self.max_retries} attempts",
                    context={
                        "endpoint": endpoint,
                        "timeout": self.timeout,
                        "retry_count": attempt + 1
                    },
                    original_exception=e
                )

            except httpx.TransportError as e:
                last_exception = e
                if attempt < self.max_retries - 1:
                    delay = self._backoff(attempt)
                    logger.warning(f"Network error on {endpoint}. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue

                self._record_failure()
                raise NetworkError(
                    f"Network error after {self.max_retries} attempts",
                    context={
                        "endpoint": endpoint,
                        "retry_count": attempt + 1
                    },
                    original_exception=e
                )

        raise APIExtractionError(
            "Max retries exceeded",
            context={"endpoint": endpoint},
            original_exception=last_exception
        )

    async def _call(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None
    ) -> TransportResponse:
        logger.info(f"→ {method} {self.base_url}{endpoint}")

        try:
            response = await self._request_with_retry(method, endpoint, params=params, json=json)
        except APIExtractionError as e:
            logger.error(
                f"✗ {method} {endpoint} failed: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            return TransportResponse(
                success=False,
                status_code=e.context.get("status_code"),
                error=e.message,
                body=e.context.get("response_body")
            )

        try:
            data = response.json() if response.content else None
        except ValueError as e:
            logger.error(f"✗ {method} {endpoint} returned a non-JSON body")
            return TransportResponse(
                success=False,
                status_code=response.status_code,
                error=f"Failed to parse JSON response: {e}",
                body=response.text[:500]
            )

        logger.info(f"✓ {response.status_code} {endpoint}")
        return TransportResponse(success=True, data=data, status_code=response.status_code)

    async def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> TransportResponse:
        """GET ``endpoint``; failures come back as ``success=False``"""
        return await self._call("GET", endpoint, params=params)

    async def post(self, endpoint: str, data: Optional[Any] = None) -> TransportResponse:
        """POST a JSON body to ``endpoint``; failures come back as ``success=False``"""
        return await self._call("POST", endpoint, json=data if data is not None else {})
