"""Unit of work for one candidate: normalize, store, compare, record."""
from __future__ import annotations

from typing import Optional

import structlog

from .errors import ComparatorError, ComparisonAbortedError
from .models import Candidate, Match
from .retry import NO_RETRY, RetryPolicy

logger = structlog.get_logger()

SKIP = "skip"
ABORT = "abort"


class CandidateProcessor:
    """
    Compares one candidate against the stored probe.

    Returns a Match when similarity reaches the threshold and None otherwise.
    A candidate that cannot be normalized is skipped. Comparator failures are
    raised as ComparatorError under the "skip" policy (the batcher logs and
    excludes the candidate) and as ComparisonAbortedError under "abort".
    """

    def __init__(
        self,
        normalizer,
        transient_manager,
        comparator,
        status_store=None,
        threshold: float = 98.0,
        failure_policy: str = SKIP,
        retry_policy: RetryPolicy = NO_RETRY,
    ):
        if failure_policy not in (SKIP, ABORT):
            raise ValueError(f"Unknown comparator failure policy: {failure_policy}")
        self.normalizer = normalizer
        self.transient_manager = transient_manager
        self.comparator = comparator
        self.status_store = status_store
        self.threshold = threshold
        self.failure_policy = failure_policy
        self.retry_policy = retry_policy

    async def process(self, request_id: str, probe_key: str, candidate: Candidate) -> Optional[Match]:
        log = logger.bind(request_id=request_id, candidate_id=candidate.candidate_id, target_url=candidate.target_url)

        normalized = await self.normalizer.normalize(candidate.target_url)
        if not normalized.success:
            log.info("Skipping candidate, normalization failed", error=normalized.error)
            return None

        image = normalized.image
        async with self.transient_manager.transient(
            image.data,
            source_url=candidate.target_url,
            content_type=image.content_type,
        ) as artifact:
            try:
                result = await self.retry_policy.run(
                    lambda: self.comparator.compare(probe_key, artifact.key, self.threshold),
                    label="compare",
                    request_id=request_id,
                    process_id=artifact.process_id
                )
            except ComparatorError as e:
                if self.failure_policy == ABORT:
                    raise ComparisonAbortedError(
                        f"Comparison failed for {candidate.target_url}: {e}"
                    ) from e
                raise

        if not result.matched:
            log.debug("No match", similarity=result.similarity)
            return None

        match = Match.from_candidate(request_id, candidate, result.similarity)
        log.info("Match found", similarity=result.similarity, match_id=match.match_id)
        await self._persist(match)
        return match

    async def _persist(self, match: Match) -> None:
        if self.status_store is None:
            return
        try:
            await self.retry_policy.run(
                lambda: self.status_store.put_match(match),
                label="match_write",
                request_id=match.request_id
            )
        except Exception as e:
            logger.error("Failed to persist match", request_id=match.request_id, match_id=match.match_id, error=str(e))
