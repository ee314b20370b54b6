"""
Request intake and status lookup shared by the HTTP API, the Lambda API
handler and the CLI.
"""

from typing import Any, Optional

import structlog

from pipeline.models import IdentityMetadata, SearchRequest, SearchState, SearchStatus, StatusUpdate
from services.dispatcher import DispatchError, Dispatcher, build_dispatcher

logger = structlog.get_logger()


def status_payload(status: SearchStatus) -> dict:
    """Public view of a status record."""
    payload = {
        "status": status.status.value,
        "progress": status.progress,
        "matches": list(status.matches),
        "totalProcessed": status.total_processed,
        "totalAvailable": status.total_available,
        "timestamp": status.timestamp,
    }
    if status.status is SearchState.FAILED:
        payload["failureReason"] = status.failure_reason or "Request failed"
    return payload


class SearchService:
    """
    Creates status records and dispatches requests for processing.
    """

    def __init__(self, status_store, dispatcher: Dispatcher):
        self.status_store = status_store
        self.dispatcher = dispatcher

    async def initiate(
        self,
        image: Optional[Any],
        identity: Optional[dict] = None,
        reference_id: Optional[str] = None,
        priority: Optional[str] = None,
        background_tasks: Optional[Any] = None,
    ) -> SearchRequest:
        """
        Accept one request: create its processing record and dispatch it.

        A dispatch failure marks the record failed; the request id is still
        returned so the caller can read the reason.
        """
        request = SearchRequest.create(
            image=image,
            identity=IdentityMetadata.from_dict(identity),
            reference_id=reference_id,
            priority=priority,
        )
        await self.status_store.create(SearchStatus(request_id=request.request_id))
        logger.info("Search initiated", request_id=request.request_id, reference_id=reference_id,
                    priority=request.priority)

        try:
            await self.dispatcher.dispatch(request, background_tasks=background_tasks)
        except DispatchError as e:
            logger.error("Dispatch failed", request_id=request.request_id, error=str(e))
            try:
                await self.status_store.update(
                    request.request_id,
                    StatusUpdate(status=SearchState.FAILED, progress=0, replace_matches=[], failure_reason=str(e))
                )
            except Exception as update_error:
                logger.error("Could not record dispatch failure", request_id=request.request_id,
                             error=str(update_error))
        return request

    async def initiate_batch(
        self,
        items: list[dict],
        background_tasks: Optional[Any] = None
    ) -> tuple[list[str], list[int]]:
        """
        Accept several images; each becomes an independent request.

        Items are accepted one by one, so a failure on one item does not undo
        the items already accepted.

        Returns:
            (request ids of accepted items, indexes of items that were not accepted)
        """
        request_ids = []
        failed_indexes = []
        for index, item in enumerate(items):
            try:
                request = await self.initiate(
                    image=item.get("image"),
                    identity=item.get("identityMetadata"),
                    reference_id=item.get("referenceId"),
                    priority=item.get("priority"),
                    background_tasks=background_tasks,
                )
            except Exception as e:
                logger.error("Batch item not accepted", index=index, reference_id=item.get("referenceId"),
                             error=str(e))
                failed_indexes.append(index)
                continue
            request_ids.append(request.request_id)
        logger.info("Batch initiated", total_images=len(request_ids), failed=len(failed_indexes))
        return request_ids, failed_indexes

    async def get_status(self, request_id: str) -> Optional[dict]:
        """Public status of a request, or None when unknown."""
        status = await self.status_store.get(request_id)
        if status is None:
            return None
        return status_payload(status)

    async def aclose(self) -> None:
        close = getattr(self.dispatcher, "aclose", None)
        if close is not None:
            await close()


# Module-level service instance (lazy load for tests)
_service: Optional[SearchService] = None


def get_search_service() -> SearchService:
    """Return the configured search service (singleton)."""
    global _service
    if _service is None:
        from config import get_settings
        from storage.status_store import build_status_store

        settings = get_settings()
        store = build_status_store(settings)
        _service = SearchService(store, build_dispatcher(settings, status_store=store))
    return _service
