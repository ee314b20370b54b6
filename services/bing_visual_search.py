"""
Bing Visual Search reverse-image provider.

Uploads the probe bytes as multipart form data and collects every image that
the VisualSearch/PagesIncluding actions return.
"""

from typing import Optional

import httpx
import structlog

from pipeline.errors import ProviderError
from pipeline.models import Candidate
from pipeline.retry import NO_RETRY, RetryPolicy
from services.search_provider import HttpSearchProvider, ProbeImage, ReverseImageProvider

logger = structlog.get_logger()


class BingVisualSearchProvider(HttpSearchProvider, ReverseImageProvider):
    """
    Reverse-image search through the Bing Visual Search API.

    The API answers with a single response, so no pagination is needed; the
    result list is capped at max_results.
    """

    name = "bing_visual"

    # Action types whose data.value lists are image results
    IMAGE_ACTION_TYPES = frozenset({"VisualSearch", "PagesIncluding", "ProductVisualSearch"})

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        max_results: int = 50,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        retry_policy: RetryPolicy = NO_RETRY
    ):
        super().__init__(client=client, timeout=timeout, retry_policy=retry_policy)
        self.endpoint = endpoint
        self.api_key = api_key
        self.max_results = max_results

    @classmethod
    def from_settings(cls, settings, client=None, retry_policy: RetryPolicy = NO_RETRY):
        return cls(
            endpoint=settings.bing_visual_search_url,
            api_key=settings.bing_api_key,
            max_results=settings.max_search_results,
            client=client,
            timeout=settings.request_timeout,
            retry_policy=retry_policy,
        )

    async def search(self, probe: ProbeImage) -> list[Candidate]:
        logger.info("Initiating Bing Visual Search", size=len(probe.data))

        body = await self._request_json(
            "POST",
            self.endpoint,
            headers={"Ocp-Apim-Subscription-Key": self.api_key},
            files={"image": ("probe.jpg", probe.data, probe.content_type)}
        )

        candidates = self.parse_response(body)[: self.max_results]
        logger.info("Bing Visual Search completed", candidates=len(candidates))
        return candidates

    def parse_response(self, body: dict) -> list[Candidate]:
        """Flatten tags[].actions[].data.value[] into candidates."""
        tags = body.get("tags")
        if tags is None:
            if body.get("_type") == "ErrorResponse" or "errors" in body:
                raise ProviderError(self.name, f"error response: {body.get('errors')}")
            return []
        if not isinstance(tags, list):
            raise ProviderError(self.name, "tags is not a list")
        if not all(isinstance(tag, dict) for tag in tags):
            raise ProviderError(self.name, "tag is not an object")

        candidates = []
        for tag in tags:
            for action in self._list_of_objects(tag, "actions"):
                if action.get("actionType") not in self.IMAGE_ACTION_TYPES:
                    continue
                data = action.get("data") or {}
                if not isinstance(data, dict):
                    raise ProviderError(self.name, "action data is not an object")
                for item in self._list_of_objects(data, "value"):
                    content_url = item.get("contentUrl")
                    if not content_url:
                        continue
                    candidates.append(Candidate(
                        source=self.name,
                        host_page_url=item.get("hostPageUrl"),
                        target_url=content_url,
                        thumbnail_url=item.get("thumbnailUrl"),
                        width=item.get("width"),
                        height=item.get("height"),
                    ))
        return candidates

    def _list_of_objects(self, parent: dict, key: str) -> list[dict]:
        """parent[key] as a list of dicts; absent reads as empty, any other shape is malformed."""
        value = parent.get(key) or []
        if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
            raise ProviderError(self.name, f"{key} is not a list of objects")
        return value
