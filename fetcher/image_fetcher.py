"""
Image download handler with timeout, size ceiling and content-type validation.
"""

from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from pipeline.retry import NO_RETRY, RetryPolicy

logger = structlog.get_logger()


@dataclass
class FetchResult:
    """Result of an image download."""
    success: bool
    url: str
    content: Optional[bytes] = None
    content_type: Optional[str] = None
    size: int = 0
    error: Optional[str] = None


class ImageFetchError(Exception):
    """Raised inside a fetch attempt for a non-retryable rejection."""


class ImageFetcher:
    """
    Downloads candidate images into memory.

    Only 200 responses with an image/* content type are accepted. The body is
    streamed and abandoned once it passes `max_bytes`.
    """

    DEFAULT_TIMEOUT = 5.0  # seconds
    DEFAULT_MAX_BYTES = 15 * 1024 * 1024

    # Headers to mimic a browser request
    DEFAULT_HEADERS = {
        "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
    }

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_bytes: int = DEFAULT_MAX_BYTES,
        retry_policy: RetryPolicy = NO_RETRY,
        headers: Optional[dict] = None
    ):
        """
        Initialize image fetcher.

        Args:
            client: Shared async HTTP client. One is created lazily if omitted.
            timeout: Per-request timeout in seconds
            max_bytes: Largest response body accepted
            retry_policy: Policy applied to transient failures
            headers: Custom headers to use
        """
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.retry_policy = retry_policy
        self.headers = headers or self.DEFAULT_HEADERS.copy()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True, headers=self.headers)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str) -> FetchResult:
        """
        Download an image to memory.

        Args:
            url: Image URL

        Returns:
            FetchResult; success is False for timeouts, non-200 responses,
            non-image content types, empty bodies and oversized bodies.
        """
        if not url.lower().startswith(("http://", "https://")):
            return FetchResult(success=False, url=url, error=f"Unsupported URL scheme: {url[:40]}")

        try:
            content, content_type = await self.retry_policy.run(
                lambda: self._fetch_attempt(url),
                label="image_fetch",
                url=url
            )
        except httpx.TimeoutException as e:
            logger.warning("Image fetch timeout", url=url, timeout=self.timeout)
            return FetchResult(success=False, url=url, error=f"Timeout: {e}")
        except httpx.HTTPStatusError as e:
            logger.warning("Image fetch HTTP error", url=url, status=e.response.status_code)
            return FetchResult(success=False, url=url, error=f"HTTP {e.response.status_code}")
        except (httpx.HTTPError, ImageFetchError) as e:
            logger.warning("Image fetch failed", url=url, error=str(e))
            return FetchResult(success=False, url=url, error=str(e))

        logger.debug("Image fetched", url=url, size=len(content), content_type=content_type)
        return FetchResult(
            success=True,
            url=url,
            content=content,
            content_type=content_type,
            size=len(content)
        )

    async def _fetch_attempt(self, url: str) -> tuple[bytes, str]:
        """Single streamed download attempt."""
        async with self.client.stream("GET", url, timeout=self.timeout) as response:
            response.raise_for_status()
            if response.status_code != 200:
                raise ImageFetchError(f"Unexpected status {response.status_code}")

            content_type = response.headers.get("content-type", "")
            if not content_type.lower().startswith("image/"):
                raise ImageFetchError(f"Invalid content type: {content_type or 'missing'}")

            content_length = response.headers.get("content-length")
            if content_length and content_length.isdigit() and int(content_length) > self.max_bytes:
                raise ImageFetchError(f"Image too large: {content_length} > {self.max_bytes}")

            chunks: list[bytes] = []
            total = 0
            async for chunk in response.aiter_bytes():
                total += len(chunk)
                if total > self.max_bytes:
                    raise ImageFetchError(f"Image exceeds max size: {total} > {self.max_bytes}")
                chunks.append(chunk)

        body = b"".join(chunks)
        if not body:
            raise ImageFetchError("Empty response body")
        return body, content_type
