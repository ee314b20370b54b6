"""
Google Custom Search image provider.

Queries by the probe's public URL with searchType=image, paging through the
start/num window (num is capped at 10 by the API).
"""

from typing import Optional

import httpx
import structlog

from pipeline.errors import ProviderError
from pipeline.models import Candidate
from pipeline.retry import NO_RETRY, RetryPolicy
from services.search_provider import HttpSearchProvider, ProbeImage, ReverseImageProvider, paginate

logger = structlog.get_logger()

GOOGLE_MAX_PAGE_SIZE = 10


class GoogleImageSearchProvider(HttpSearchProvider, ReverseImageProvider):
    """Reverse-image search through the Google Custom Search JSON API."""

    name = "google_image"

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        cx: str,
        page_size: int = GOOGLE_MAX_PAGE_SIZE,
        max_pages: int = 5,
        max_results: int = 50,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        retry_policy: RetryPolicy = NO_RETRY
    ):
        super().__init__(client=client, timeout=timeout, retry_policy=retry_policy)
        self.endpoint = endpoint
        self.api_key = api_key
        self.cx = cx
        self.page_size = max(1, min(page_size, GOOGLE_MAX_PAGE_SIZE))
        self.max_pages = max_pages
        self.max_results = max_results

    @classmethod
    def from_settings(cls, settings, client=None, retry_policy: RetryPolicy = NO_RETRY):
        return cls(
            endpoint=settings.google_api_url,
            api_key=settings.google_api_key,
            cx=settings.google_cx,
            page_size=settings.provider_page_size,
            max_pages=settings.provider_max_pages,
            max_results=settings.max_search_results,
            client=client,
            timeout=settings.request_timeout,
            retry_policy=retry_policy,
        )

    async def search(self, probe: ProbeImage) -> list[Candidate]:
        if not probe.public_url:
            raise ProviderError(self.name, "probe has no public URL")

        logger.info("Searching Google for image", image_url=probe.public_url[:120])

        async def fetch_page(offset: int, count: int) -> tuple[list[Candidate], int]:
            body = await self._request_json(
                "GET",
                self.endpoint,
                params={
                    "key": self.api_key,
                    "cx": self.cx,
                    "q": probe.public_url,
                    "searchType": "image",
                    "num": count,
                    # start is 1-based
                    "start": offset + 1,
                }
            )
            return self.parse_items(body), len(body.get("items") or [])

        candidates = await paginate(
            fetch_page,
            page_size=self.page_size,
            max_pages=self.max_pages,
            max_results=self.max_results,
            provider=self.name
        )
        logger.info("Google image search completed", candidates=len(candidates))
        return candidates

    def parse_items(self, body: dict) -> list[Candidate]:
        if "error" in body:
            raise ProviderError(self.name, f"error response: {body['error']}")

        items = body.get("items") or []
        if not isinstance(items, list):
            raise ProviderError(self.name, "items is not a list")

        candidates = []
        for item in items:
            if not isinstance(item, dict):
                raise ProviderError(self.name, "item is not an object")
            link = item.get("link")
            if not link:
                continue
            image = item.get("image") or {}
            if not isinstance(image, dict):
                raise ProviderError(self.name, "item image is not an object")
            candidates.append(Candidate(
                source=self.name,
                host_page_url=image.get("contextLink"),
                target_url=link,
                thumbnail_url=image.get("thumbnailLink"),
                width=image.get("width"),
                height=image.get("height"),
            ))
        return candidates
