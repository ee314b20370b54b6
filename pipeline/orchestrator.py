"""
Top-level state machine for one visual match request.

Stages: created -> searching_probe -> normalizing -> awaiting_providers ->
batching -> finalizing -> completed | failed.
"""
from __future__ import annotations

import asyncio
from typing import Optional, Sequence

import structlog

from .batcher import ConcurrencyBatcher
from .candidate_processor import CandidateProcessor
from .deduplicator import ResultDeduplicator
from .errors import ComparisonAbortedError, PipelineError, ProbeError, ProviderError
from .models import Candidate, Match, PipelineStage, SearchRequest, SearchState, SearchStatus
from .progress import ProgressTracker
from .retry import NO_RETRY, RetryPolicy
from services.search_provider import ProbeImage

logger = structlog.get_logger()


class SearchOrchestrator:
    """
    Runs one request from probe to terminal status.

    Every collaborator is injected; build_orchestrator() wires the AWS and
    HTTP implementations from settings.
    """

    def __init__(
        self,
        normalizer,
        artifact_store,
        providers: Sequence,
        processor: CandidateProcessor,
        tracker: ProgressTracker,
        notifier,
        batcher: Optional[ConcurrencyBatcher] = None,
        identity_search=None,
        deduplicator: Optional[ResultDeduplicator] = None,
        probe_prefix: str = "uploads/",
        all_providers_failed_is_fatal: bool = False,
        retry_policy: RetryPolicy = NO_RETRY,
    ):
        self.normalizer = normalizer
        self.artifact_store = artifact_store
        self.providers = list(providers)
        self.processor = processor
        self.tracker = tracker
        self.notifier = notifier
        self.batcher = batcher or ConcurrencyBatcher(5, propagate=(ComparisonAbortedError,))
        self.identity_search = identity_search
        self.deduplicator = deduplicator or ResultDeduplicator()
        self.probe_prefix = probe_prefix
        self.all_providers_failed_is_fatal = all_providers_failed_is_fatal
        self.retry_policy = retry_policy

    def probe_key(self, request_id: str) -> str:
        return f"{self.probe_prefix}{request_id}.jpg"

    async def run(self, request: SearchRequest) -> SearchStatus:
        """Process request to a terminal status and notify downstream once."""
        log = logger.bind(request_id=request.request_id)
        stage = PipelineStage.CREATED
        log.info("Request stage", stage=stage.value, has_identity=request.identity is not None)

        existing = await self.tracker.start(request)
        if existing is not None:
            log.info("Request already terminal, skipping", status=existing.status.value)
            return existing

        if not request.has_probe:
            log.warning("No probe image provided")
            return await self._fail(request, PipelineStage.CREATED, "No probe image provided")

        try:
            stage = PipelineStage.SEARCHING_PROBE
            log.info("Request stage", stage=stage.value)
            stage = PipelineStage.NORMALIZING
            log.info("Request stage", stage=stage.value)
            probe = await self._prepare_probe(request)

            stage = PipelineStage.AWAITING_PROVIDERS
            log.info("Request stage", stage=stage.value, providers=len(self.providers))
            candidates = await self._discover(request, probe)
            await self.tracker.set_available(request.request_id, len(candidates))

            stage = PipelineStage.BATCHING
            log.info("Request stage", stage=stage.value, candidates=len(candidates))
            matches, processed = await self._compare_all(request, probe.artifact_key, candidates)

            stage = PipelineStage.FINALIZING
            log.info("Request stage", stage=stage.value, matches=len(matches), processed=processed)
            status = await self.tracker.complete(request.request_id, matches, processed, len(candidates))
        except Exception as e:
            log.error("Request failed", stage=stage.value, error=str(e), error_type=type(e).__name__)
            return await self._fail(request, stage, self._failure_reason(stage, e))

        if status is None:
            log.warning("Completion rejected, request already terminal")
            return await self.tracker.store.get(request.request_id) or SearchStatus(request_id=request.request_id)

        log.info("Request stage", stage=PipelineStage.COMPLETED.value, matches=len(status.matches))
        await self.notifier.notify(status)
        return status

    async def _prepare_probe(self, request: SearchRequest):
        """Normalize the probe and store it where the comparator can read it."""
        result = await self.normalizer.normalize(request.image)
        if not result.success:
            raise ProbeError(f"Probe image could not be normalized: {result.error}")

        key = self.probe_key(request.request_id)
        image = result.image
        await self.retry_policy.run(
            lambda: self.artifact_store.put(
                key, image.data, content_type=image.content_type,
                metadata={"request-id": request.request_id}
            ),
            label="probe_put",
            request_id=request.request_id
        )

        public_url = None
        try:
            public_url = await self.artifact_store.url_for(key)
        except Exception as e:
            logger.warning("Could not build probe URL", request_id=request.request_id, error=str(e))

        logger.info("Probe stored", request_id=request.request_id, key=key, size=image.size,
                    width=image.width, height=image.height)
        return ProbeImage(data=image.data, artifact_key=key, public_url=public_url,
                          content_type=image.content_type)

    async def _discover(self, request: SearchRequest, probe) -> list[Candidate]:
        """Query every provider in parallel and deduplicate the union."""
        sources = [(provider.name, provider.search(probe)) for provider in self.providers]
        if self.identity_search is not None and request.identity is not None:
            sources.append((self.identity_search.name, self.identity_search.search(request.identity)))

        if not sources:
            logger.warning("No search providers configured", request_id=request.request_id)
            return []

        outcomes = await asyncio.gather(*(coro for _, coro in sources), return_exceptions=True)

        combined: list[Candidate] = []
        failed = 0
        for (name, _), outcome in zip(sources, outcomes):
            if isinstance(outcome, Exception):
                failed += 1
                logger.warning("Provider failed", request_id=request.request_id, provider=name, error=str(outcome))
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            logger.info("Provider returned candidates", request_id=request.request_id, provider=name,
                        count=len(outcome))
            combined.extend(outcome)

        if failed == len(sources) and self.all_providers_failed_is_fatal:
            raise ProviderError("all", "every search provider failed")

        candidates = self.deduplicator.deduplicate(combined)
        logger.info("Candidates discovered", request_id=request.request_id, raw=len(combined),
                    unique=len(candidates), failed_providers=failed)
        return candidates

    async def _compare_all(
        self,
        request: SearchRequest,
        probe_key: str,
        candidates: list[Candidate],
    ) -> tuple[list[Match], int]:
        matches: list[Match] = []
        processed = 0

        async def worker(candidate: Candidate) -> Optional[Match]:
            return await self.processor.process(request.request_id, probe_key, candidate)

        async for progress in self.batcher.run(candidates, worker):
            processed = progress.processed
            matches.extend(progress.batch_results)
            await self.tracker.record_batch(request.request_id, progress.processed, progress.total,
                                            progress.batch_results)

        return matches, processed

    @staticmethod
    def _failure_reason(stage: PipelineStage, error: Exception) -> str:
        if isinstance(error, ComparisonAbortedError):
            return f"Comparison aborted: {error}"
        if isinstance(error, PipelineError):
            return str(error)
        return f"Unexpected error while {stage.value.replace('_', ' ')}"

    async def _fail(self, request: SearchRequest, stage: PipelineStage, reason: str) -> SearchStatus:
        status = await self.tracker.fail(request.request_id, reason)
        if status is None:
            logger.warning("Failure rejected, request already terminal", request_id=request.request_id)
            return await self.tracker.store.get(request.request_id) or SearchStatus(
                request_id=request.request_id, status=SearchState.FAILED, failure_reason=reason
            )

        logger.info("Request stage", request_id=request.request_id, stage=PipelineStage.FAILED.value,
                    failed_at=stage.value, reason=reason)
        await self.notifier.notify(status)
        return status

    async def aclose(self) -> None:
        """Close HTTP clients owned by collaborators."""
        closables = list(self.providers) + [self.notifier, getattr(self.normalizer, "fetcher", None)]
        if self.identity_search is not None:
            closables.append(self.identity_search.provider)
        for item in closables:
            close = getattr(item, "aclose", None)
            if close is not None:
                await close()


def build_orchestrator(settings, status_store=None, notifier=None) -> SearchOrchestrator:
    """Wire the AWS and HTTP implementations from settings."""
    from fetcher.image_fetcher import ImageFetcher
    from image_processing.normalizer import ImageNormalizer
    from services.bing_image_search import BingImageSearchProvider
    from services.bing_visual_search import BingVisualSearchProvider
    from services.face_comparator import RekognitionComparator
    from services.google_image_search import GoogleImageSearchProvider
    from services.identity_search import IdentityQuerySearch
    from services.notifier import WebhookNotifier
    from storage.artifact_store import S3ArtifactStore, TransientResourceManager
    from storage.status_store import build_status_store

    retry_policy = RetryPolicy.from_settings(settings)
    status_store = status_store or build_status_store(settings)
    artifact_store = S3ArtifactStore.from_settings(settings)

    fetcher = ImageFetcher(
        timeout=settings.fetch_timeout,
        max_bytes=settings.max_download_bytes,
        retry_policy=retry_policy,
    )
    normalizer = ImageNormalizer.from_settings(settings, fetcher=fetcher)

    providers = []
    identity_search = None
    if settings.bing_api_key:
        providers.append(BingVisualSearchProvider.from_settings(settings, retry_policy=retry_policy))
        identity_search = IdentityQuerySearch(
            BingImageSearchProvider.from_settings(settings, retry_policy=retry_policy)
        )
    if settings.google_api_key and settings.google_cx:
        providers.append(GoogleImageSearchProvider.from_settings(settings, retry_policy=retry_policy))

    processor = CandidateProcessor(
        normalizer=normalizer,
        transient_manager=TransientResourceManager(
            artifact_store,
            prefix=settings.transient_prefix,
            settle_seconds=settings.artifact_settle_seconds,
            retry_policy=retry_policy,
        ),
        comparator=RekognitionComparator.from_settings(settings),
        status_store=status_store,
        threshold=settings.similarity_threshold,
        failure_policy=settings.comparator_failure_policy,
        retry_policy=retry_policy,
    )

    return SearchOrchestrator(
        normalizer=normalizer,
        artifact_store=artifact_store,
        providers=providers,
        processor=processor,
        tracker=ProgressTracker(status_store, retry_policy=retry_policy),
        notifier=notifier or WebhookNotifier.from_settings(settings),
        batcher=ConcurrencyBatcher(settings.batch_width, propagate=(ComparisonAbortedError,)),
        identity_search=identity_search,
        probe_prefix=settings.probe_prefix,
        all_providers_failed_is_fatal=settings.all_providers_failed_is_fatal,
        retry_policy=retry_policy,
    )
