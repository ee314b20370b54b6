"""
Downstream notification of terminal requests.

Completed requests with matches are posted individually as
{requestId, matches}. Completed requests without matches are buffered and
posted in batches as {clearedRequestIds: [...]}. Delivery is fire-and-forget:
a failure is logged and never retried, and never touches the stored status.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from pipeline.models import SearchState, SearchStatus

logger = structlog.get_logger()


@dataclass
class DeliveryResult:
    """Outcome of one webhook POST."""
    success: bool
    url: str
    status_code: Optional[int] = None
    error: Optional[str] = None


class Notifier(ABC):
    """Receives each terminal status exactly once."""

    @abstractmethod
    async def notify(self, status: SearchStatus) -> None:
        """Handle a terminal status. Must not raise."""

    async def flush(self) -> None:
        """Deliver anything buffered."""

    async def aclose(self) -> None:
        await self.flush()


class NullNotifier(Notifier):
    """Notifier used when no endpoint is configured."""

    async def notify(self, status: SearchStatus) -> None:
        logger.debug("Notification disabled", request_id=status.request_id, status=status.status.value)


class WebhookNotifier(Notifier):
    """
    Posts terminal results to the configured endpoints.
    """

    def __init__(
        self,
        matches_url: str = "",
        cleared_url: str = "",
        secret: str = "",
        secret_header: str = "x-api-key",
        cleared_batch_size: int = 1,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize webhook notifier.

        Args:
            matches_url: Endpoint receiving {requestId, matches}
            cleared_url: Endpoint receiving {clearedRequestIds}
            secret: Shared secret sent with every POST
            secret_header: Header carrying the secret
            cleared_batch_size: Number of cleared ids buffered before a POST
            timeout: Per-request timeout in seconds
            client: Shared async HTTP client (tests)
        """
        self.matches_url = matches_url
        self.cleared_url = cleared_url
        self.secret = secret
        self.secret_header = secret_header
        self.cleared_batch_size = max(1, cleared_batch_size)
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._cleared: list[str] = []
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings, client: Optional[httpx.AsyncClient] = None) -> Notifier:
        """WebhookNotifier for the configured endpoints, or a NullNotifier when there are none."""
        if not (settings.notify_matches_url or settings.notify_cleared_url):
            return NullNotifier()
        return cls(
            matches_url=settings.notify_matches_url,
            cleared_url=settings.notify_cleared_url,
            secret=settings.notify_secret,
            secret_header=settings.notify_secret_header,
            cleared_batch_size=settings.cleared_batch_size,
            timeout=settings.request_timeout,
            client=client,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    @property
    def pending_cleared(self) -> list[str]:
        return list(self._cleared)

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers[self.secret_header] = self.secret
        return headers

    async def _post(self, url: str, payload: dict) -> DeliveryResult:
        try:
            response = await self.client.post(url, json=payload, headers=self._headers())
            response.raise_for_status()
            return DeliveryResult(success=True, url=url, status_code=response.status_code)
        except httpx.HTTPStatusError as e:
            return DeliveryResult(success=False, url=url, status_code=e.response.status_code,
                                  error=f"HTTP {e.response.status_code}")
        except httpx.HTTPError as e:
            return DeliveryResult(success=False, url=url, error=str(e) or type(e).__name__)

    async def notify(self, status: SearchStatus) -> None:
        if status.status is SearchState.FAILED:
            logger.info("Skipping notification for failed request", request_id=status.request_id,
                        reason=status.failure_reason)
            return
        if status.status is not SearchState.COMPLETED:
            logger.warning("Ignoring notification for non-terminal request", request_id=status.request_id)
            return

        if status.matches:
            await self._send_matches(status)
            return

        async with self._lock:
            self._cleared.append(status.request_id)
            ready = len(self._cleared) >= self.cleared_batch_size
        if ready:
            await self.flush()

    async def _send_matches(self, status: SearchStatus) -> None:
        if not self.matches_url:
            logger.debug("No matches endpoint configured", request_id=status.request_id)
            return

        result = await self._post(self.matches_url, {"requestId": status.request_id, "matches": status.matches})
        if result.success:
            logger.info("Matches delivered", request_id=status.request_id, matches=len(status.matches))
        else:
            logger.error("Matches delivery failed", request_id=status.request_id, error=result.error)

    async def flush(self) -> None:
        async with self._lock:
            batch, self._cleared = self._cleared, []
        if not batch:
            return
        if not self.cleared_url:
            logger.debug("No cleared endpoint configured", cleared=len(batch))
            return

        result = await self._post(self.cleared_url, {"clearedRequestIds": batch})
        if result.success:
            logger.info("Cleared ids delivered", cleared=len(batch))
        else:
            logger.error("Cleared ids delivery failed", cleared=len(batch), error=result.error)

    async def aclose(self) -> None:
        await self.flush()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
