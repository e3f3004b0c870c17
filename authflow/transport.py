"""
HTTP transport for authflow.

Thin aiohttp wrapper used by the auth gateway: JSON in, JSON out, with
retry and exponential backoff for network failures and transient server
errors.
"""

import asyncio
import json
import logging
from typing import Optional, Dict, Any, Tuple
from urllib.parse import urljoin

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError

from .auth.token_policy import RetryPolicy

logger = logging.getLogger(__name__)

MAX_CONNECTIONS = 4
DEFAULT_HEADERS = {
    'Accept': 'application/json',
    'User-Agent': 'authflow/0.1',
}


class TransportError(Exception):
    """Base exception for transport failures."""

    def __init__(self, message: str, status: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.data = data


class TransportNetworkError(TransportError):
    """The request never produced an HTTP response."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class HTTPStatusError(TransportError):
    """The server answered with a non-2xx status."""

    def __init__(self, status: int, data: Any = None):
        super().__init__(f"Request failed with status code {status}", status=status, data=data)


class HTTPTransport:
    """
    JSON-over-HTTP client for the auth API.

    Provides ``get``/``post`` with automatic retries according to a
    RetryPolicy. Usable as an async context manager.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        retry_policy: Optional[RetryPolicy] = None
    ):
        self.base_url = base_url.rstrip('/') + '/'
        self.timeout = ClientTimeout(total=timeout)
        self.retry_policy = retry_policy or RetryPolicy()

        self._session: Optional[ClientSession] = None

        logger.info(f"HTTP transport initialized for {self.base_url}")

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> None:
        """Open the aiohttp session on first use or after ``close``."""
        if self._session is not None and not self._session.closed:
            return
        self._session = ClientSession(
            connector=aiohttp.TCPConnector(limit=MAX_CONNECTIONS),
            timeout=self.timeout,
            headers=DEFAULT_HEADERS
        )

    async def close(self) -> None:
        session, self._session = self._session, None
        if session is not None and not session.closed:
            await session.close()

    async def get(self, path: str, headers: Optional[Dict[str, str]] = None) -> Any:
        return await self._make_request('GET', path, headers=headers)

    async def post(
        self,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Any:
        return await self._make_request('POST', path, data=data, headers=headers)

    async def _make_request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Any:
        """
        Make an HTTP request with retry logic.

        Args:
            method: HTTP method
            path: API path, relative to the base URL
            data: JSON request body
            headers: Extra request headers

        Returns:
            Decoded JSON response body ({} for an empty body)

        Raises:
            HTTPStatusError: On a non-2xx response that is not retried
            TransportNetworkError: When no response could be obtained
        """
        url = urljoin(self.base_url, path.lstrip('/'))
        retry_count = 0

        while True:
            try:
                logger.debug(f"{method} {url} (attempt {retry_count + 1})")
                status, body = await self._send(method, url, data, headers)

                if 200 <= status < 300:
                    return body

                error = HTTPStatusError(status, body)
            except TransportNetworkError as e:
                error = e

            if not self.retry_policy.should_retry(retry_count, error.status):
                raise error

            delay = self.retry_policy.get_delay(retry_count)
            logger.warning(f"{method} {url} failed ({error.message}), retrying in {delay:.1f}s")
            await asyncio.sleep(delay)
            retry_count += 1

    async def _send(
        self,
        method: str,
        url: str,
        data: Optional[Dict[str, Any]],
        headers: Optional[Dict[str, str]]
    ) -> Tuple[int, Any]:
        """Perform one HTTP exchange and return ``(status, decoded body)``."""
        await self._ensure_session()

        try:
            async with self._session.request(
                method=method,
                url=url,
                json=data,
                headers=headers
            ) as response:
                text = await response.text()
                return response.status, self._decode_body(text)
        except (ClientError, asyncio.TimeoutError, OSError) as e:
            message = str(e) or type(e).__name__
            raise TransportNetworkError(message, cause=e) from e

    @staticmethod
    def _decode_body(text: str) -> Any:
        if not text:
            return {}
        try:
            return json.loads(text)
        except ValueError:
            return {'detail': text}
