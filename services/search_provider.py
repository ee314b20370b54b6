"""
Search provider capability interfaces and shared pagination.

Two kinds of provider feed the pipeline:
- ReverseImageProvider: candidates for a probe image
- TextQueryProvider: candidates for a text query (identity metadata)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx
import structlog

from pipeline.errors import ProviderError
from pipeline.models import Candidate
from pipeline.retry import NO_RETRY, RetryPolicy

logger = structlog.get_logger()


@dataclass(frozen=True)
class ProbeImage:
    """The normalized probe as providers see it."""
    data: bytes
    artifact_key: Optional[str] = None
    public_url: Optional[str] = None
    content_type: str = "image/jpeg"


# fetch_page(offset, count) -> (candidates, number of raw items the provider returned)
PageFetcher = Callable[[int, int], Awaitable[tuple[list[Candidate], int]]]


async def paginate(
    fetch_page: PageFetcher,
    page_size: int,
    max_pages: int,
    max_results: Optional[int] = None,
    provider: str = "provider"
) -> list[Candidate]:
    """
    Drive an offset/count window until the provider is exhausted.

    A page whose raw item count is below page_size signals the end; items
    dropped while parsing do not shorten a page. Pages are accumulated and
    returned together; max_pages and max_results bound the total work.

    Args:
        fetch_page: Coroutine taking (offset, count) and returning
                (candidates, raw item count) for one page
        page_size: Requested count per page
        max_pages: Upper bound on requests
        max_results: Optional cap on accumulated candidates
        provider: Name used in logs
    """
    results: list[Candidate] = []
    offset = 0

    for page_number in range(max_pages):
        page, returned = await fetch_page(offset, page_size)
        results.extend(page)

        logger.debug(
            "Fetched provider page",
            provider=provider,
            page=page_number,
            offset=offset,
            returned=returned,
            kept=len(page)
        )

        if returned < page_size:
            break
        if max_results is not None and len(results) >= max_results:
            break
        offset += page_size

    if max_results is not None:
        results = results[:max_results]
    return results


class ReverseImageProvider(ABC):
    """Returns candidates visually related to a probe image."""

    name: str = "reverse_image"

    @abstractmethod
    async def search(self, probe: ProbeImage) -> list[Candidate]:
        """
        Raises:
            ProviderError: Provider unavailable or response malformed
        """


class TextQueryProvider(ABC):
    """Returns image candidates for a free-text query."""

    name: str = "text_query"

    @abstractmethod
    async def search_text(self, query: str) -> list[Candidate]:
        """
        Raises:
            ProviderError: Provider unavailable or response malformed
        """


class HttpSearchProvider:
    """Shared HTTP plumbing for API-backed providers."""

    name = "http"

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        retry_policy: RetryPolicy = NO_RETRY
    ):
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout
        self.retry_policy = retry_policy

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request_json(self, method: str, url: str, **kwargs) -> dict:
        """Send a request with the retry policy; map failures to ProviderError."""
        async def attempt() -> httpx.Response:
            response = await self.client.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            return response

        try:
            response = await self.retry_policy.run(attempt, label=f"{self.name}_request")
        except httpx.HTTPStatusError as e:
            raise ProviderError(self.name, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"request failed: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise ProviderError(self.name, "malformed JSON response") from e
        if not isinstance(body, dict):
            raise ProviderError(self.name, "unexpected response shape")
        return body
