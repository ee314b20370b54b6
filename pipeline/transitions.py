"""State-transition rules for the status record."""
from __future__ import annotations

from dataclasses import replace
from typing import Optional

from .errors import StatusTransitionError
from .models import SearchState, SearchStatus, StatusUpdate, utc_now_iso


def check_transition(current: SearchStatus, update: StatusUpdate) -> None:
    """
    Reject writes that would move a record backward.

    - a terminal record (completed/failed) accepts no further writes
    - while processing, progress may only stay equal or grow
    - a write that appends matches must advance total_processed, so a
      replayed batch write cannot append the same matches twice

    Raises:
        StatusTransitionError
    """
    if current.status.is_terminal:
        raise StatusTransitionError(
            f"request {current.request_id} is already {current.status.value}"
        )

    target = update.status or current.status
    if target is SearchState.PROCESSING and update.progress is not None:
        if update.progress < current.progress:
            raise StatusTransitionError(
                f"progress for {current.request_id} would decrease "
                f"from {current.progress} to {update.progress}"
            )

    if target is SearchState.PROCESSING and update.append_matches and update.total_processed is not None:
        if update.total_processed <= current.total_processed:
            raise StatusTransitionError(
                f"batch for {current.request_id} already applied "
                f"(total_processed {current.total_processed} >= {update.total_processed})"
            )

    if update.progress is not None and not 0 <= update.progress <= 100:
        raise StatusTransitionError(f"progress out of range: {update.progress}")


def apply_update(current: Optional[SearchStatus], request_id: str, update: StatusUpdate) -> SearchStatus:
    """Validate and apply a partial update, returning the next version of the record."""
    current = current or SearchStatus(request_id=request_id)
    check_transition(current, update)

    if update.replace_matches is not None:
        matches = list(update.replace_matches)
    else:
        matches = list(current.matches)
    matches.extend(update.append_matches)

    return replace(
        current,
        status=update.status or current.status,
        progress=current.progress if update.progress is None else update.progress,
        matches=matches,
        total_processed=current.total_processed if update.total_processed is None else update.total_processed,
        total_available=current.total_available if update.total_available is None else update.total_available,
        failure_reason=update.failure_reason if update.failure_reason is not None else current.failure_reason,
        version=current.version + 1,
        timestamp=utc_now_iso(),
    )
