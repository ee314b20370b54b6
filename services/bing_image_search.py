"""
Bing Image Search text-query provider (offset/count pagination).
"""

from typing import Optional

import httpx
import structlog

from pipeline.errors import ProviderError
from pipeline.models import Candidate
from pipeline.retry import NO_RETRY, RetryPolicy
from services.search_provider import HttpSearchProvider, TextQueryProvider, paginate

logger = structlog.get_logger()


class BingImageSearchProvider(HttpSearchProvider, TextQueryProvider):
    """Image results for a text query through the Bing Image Search API."""

    name = "bing_image"

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        page_size: int = 50,
        max_pages: int = 5,
        max_results: int = 50,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        retry_policy: RetryPolicy = NO_RETRY
    ):
        super().__init__(client=client, timeout=timeout, retry_policy=retry_policy)
        self.endpoint = endpoint
        self.api_key = api_key
        self.page_size = page_size
        self.max_pages = max_pages
        self.max_results = max_results

    @classmethod
    def from_settings(cls, settings, client=None, retry_policy: RetryPolicy = NO_RETRY):
        return cls(
            endpoint=settings.bing_image_search_url,
            api_key=settings.bing_api_key,
            page_size=settings.provider_page_size,
            max_pages=settings.provider_max_pages,
            max_results=settings.max_search_results,
            client=client,
            timeout=settings.request_timeout,
            retry_policy=retry_policy,
        )

    async def search_text(self, query: str) -> list[Candidate]:
        async def fetch_page(offset: int, count: int) -> tuple[list[Candidate], int]:
            body = await self._request_json(
                "GET",
                self.endpoint,
                headers={"Ocp-Apim-Subscription-Key": self.api_key},
                params={"q": query, "count": count, "offset": offset, "safeSearch": "Off"}
            )
            return self.parse_values(body, query), len(body.get("value") or [])

        candidates = await paginate(
            fetch_page,
            page_size=self.page_size,
            max_pages=self.max_pages,
            max_results=self.max_results,
            provider=self.name
        )
        logger.info("Bing image search completed", query=query, candidates=len(candidates))
        return candidates

    def parse_values(self, body: dict, query: str) -> list[Candidate]:
        if body.get("_type") == "ErrorResponse" or "errors" in body:
            raise ProviderError(self.name, f"error response: {body.get('errors')}")

        values = body.get("value")
        if values is None:
            return []
        if not isinstance(values, list):
            raise ProviderError(self.name, "value is not a list")

        candidates = []
        for item in values:
            if not isinstance(item, dict):
                raise ProviderError(self.name, "value item is not an object")
            content_url = item.get("contentUrl")
            if not content_url:
                continue
            candidates.append(Candidate(
                source=self.name,
                host_page_url=item.get("hostPageUrl"),
                target_url=content_url,
                search_terms=[query],
                thumbnail_url=item.get("thumbnailUrl"),
                width=item.get("width"),
                height=item.get("height"),
            ))
        return candidates
