"""Incremental status writes for one request."""
from __future__ import annotations

import math
from typing import Optional

import structlog

from .errors import StatusTransitionError
from .models import Match, SearchRequest, SearchState, SearchStatus, StatusUpdate
from .retry import NO_RETRY, RetryPolicy

logger = structlog.get_logger()


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_progress(processed: int, total: int) -> int:
    """Percentage of candidates processed, 0..100."""
    if total <= 0:
        return 100
    return max(0, min(100, round_half_up(processed / total * 100)))


class ProgressTracker:
    """
    Writes status updates on behalf of the orchestrator.

    Writes are best effort: a store outage is logged and processing
    continues. A rejected transition (terminal record, backward progress) is
    logged as a warning and never raised.
    """

    def __init__(self, store, retry_policy: RetryPolicy = NO_RETRY):
        self.store = store
        self.retry_policy = retry_policy

    async def _write(
        self,
        request_id: str,
        update: StatusUpdate,
        event: str,
        fallback: Optional[SearchStatus] = None,
    ) -> Optional[SearchStatus]:
        """
        Returns the stored record, `fallback` when the store failed, or None
        when the transition was rejected.
        """
        try:
            return await self.retry_policy.run(
                lambda: self.store.update(request_id, update),
                label="status_write",
                request_id=request_id
            )
        except StatusTransitionError as e:
            logger.warning("Status write rejected", request_id=request_id, event=event, reason=str(e))
            return None
        except Exception as e:
            logger.error("Status write failed", request_id=request_id, event=event, error=str(e))
            return fallback

    async def start(self, request: SearchRequest) -> Optional[SearchStatus]:
        """
        Create the processing record unless the initiator already did.

        Returns the existing record when it is already terminal, so a
        redelivered request is not processed twice.
        """
        try:
            created = await self.store.create(SearchStatus(request_id=request.request_id))
            if created:
                logger.info("Status record created", request_id=request.request_id)
                return None
            existing = await self.store.get(request.request_id)
        except Exception as e:
            logger.error("Status record creation failed", request_id=request.request_id, error=str(e))
            return None

        if existing is not None and existing.status.is_terminal:
            return existing
        return None

    async def set_available(self, request_id: str, total: int) -> Optional[SearchStatus]:
        return await self._write(
            request_id,
            StatusUpdate(total_available=total, total_processed=0),
            "candidates_discovered"
        )

    async def record_batch(
        self,
        request_id: str,
        processed: int,
        total: int,
        new_matches: list[Match],
    ) -> Optional[SearchStatus]:
        """One write per resolved batch: progress, counters and the batch's matches."""
        progress = compute_progress(processed, total)
        logger.info(
            "Batch progress",
            request_id=request_id,
            processed=processed,
            total=total,
            progress=progress,
            new_matches=len(new_matches)
        )
        return await self._write(
            request_id,
            StatusUpdate(
                progress=progress,
                total_processed=processed,
                total_available=total,
                append_matches=[m.to_status_entry() for m in new_matches],
            ),
            "batch"
        )

    async def complete(
        self,
        request_id: str,
        matches: list[Match],
        total_processed: int,
        total_available: int,
    ) -> Optional[SearchStatus]:
        """Terminal write with the full match list."""
        entries = [m.to_status_entry() for m in matches]
        return await self._write(
            request_id,
            StatusUpdate(
                status=SearchState.COMPLETED,
                progress=100,
                total_processed=total_processed,
                total_available=total_available,
                replace_matches=entries,
            ),
            "completed",
            fallback=SearchStatus(
                request_id=request_id,
                status=SearchState.COMPLETED,
                progress=100,
                matches=entries,
                total_processed=total_processed,
                total_available=total_available,
            )
        )

    async def fail(self, request_id: str, reason: str) -> Optional[SearchStatus]:
        """Terminal failure: progress 0, no matches."""
        return await self._write(
            request_id,
            StatusUpdate(
                status=SearchState.FAILED,
                progress=0,
                replace_matches=[],
                failure_reason=reason,
            ),
            "failed",
            fallback=SearchStatus(
                request_id=request_id,
                status=SearchState.FAILED,
                failure_reason=reason,
            )
        )
