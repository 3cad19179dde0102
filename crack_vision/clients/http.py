"""HTTP client for fetching source images from content-delivery URLs."""

import asyncio

import httpx

from crack_vision.config import config
from crack_vision.utils.job_errors import LoadError


class HttpImageClient:
    """Anonymous image fetcher built on httpx.AsyncClient.

    No cookies, auth headers or .netrc credentials are ever attached to a
    request. The underlying AsyncClient is bound to the event loop that first
    used it and is rebuilt when called from a different loop.
    """

    def __init__(
        self,
        timeout: float | None = None,
        max_bytes: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the image client.

        Args:
            timeout: Request timeout in seconds (defaults to config value)
            max_bytes: Largest accepted response body (defaults to config value)
            transport: Optional httpx transport (used by tests to stub the network)
        """
        self.timeout = timeout if timeout is not None else config.http_timeout_seconds
        self.max_bytes = max_bytes if max_bytes is not None else config.max_image_bytes
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def _client_for_loop(self) -> httpx.AsyncClient:
        loop = asyncio.get_running_loop()
        if self._client is None or self._client.is_closed or self._loop is not loop:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                trust_env=False,
                headers={"Accept": "image/*"},
                transport=self._transport,
            )
            self._loop = loop
        return self._client

    async def fetch(self, url: str) -> bytes:
        """
        Download an image body.

        Args:
            url: http(s) URL of the image

        Returns:
            Raw response body

        Raises:
            LoadError: On network failure, non-2xx status, empty or oversized body
        """
        client = self._client_for_loop()
        chunks: list[bytes] = []
        total = 0
        try:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                async for chunk in response.aiter_bytes():
                    total += len(chunk)
                    if total > self.max_bytes:
                        raise LoadError(url, f"Image exceeds {self.max_bytes} bytes")
                    chunks.append(chunk)
        except httpx.HTTPStatusError as e:
            raise LoadError(url, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise LoadError(url, f"Fetch failed ({type(e).__name__})") from e

        if total == 0:
            raise LoadError(url, "Empty response body")
        return b"".join(chunks)

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
        self._loop = None


# Module-level singleton instance
_http_client: HttpImageClient | None = None


def get_http_client() -> HttpImageClient:
    """
    Get or create the singleton image client instance.

    Returns:
        HttpImageClient: Configured client (singleton)
    """
    global _http_client

    if _http_client is None:
        _http_client = HttpImageClient()

    return _http_client


def close_http_client():
    """Reset the image client singleton."""
    global _http_client
    _http_client = None
