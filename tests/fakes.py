"""
In-memory stand-ins for every capability interface, plus image helpers.
"""

import asyncio
import dataclasses
import io
from typing import Optional

from PIL import Image

from fetcher.image_fetcher import FetchResult
from image_processing.normalizer import ImageNormalizer
from pipeline.batcher import ConcurrencyBatcher
from pipeline.candidate_processor import CandidateProcessor
from pipeline.errors import ComparatorError, ComparisonAbortedError
from pipeline.models import Candidate, Match, SearchStatus, StatusUpdate
from pipeline.orchestrator import SearchOrchestrator
from pipeline.progress import ProgressTracker
from pipeline.transitions import apply_update
from services.face_comparator import ComparisonResult, SimilarityComparator
from services.notifier import Notifier
from services.search_provider import ReverseImageProvider
from storage.artifact_store import ArtifactStore, TransientResourceManager
from storage.status_store import StatusStore


def make_image_bytes(size=(64, 48), mode="RGB", fmt="PNG", color=(200, 40, 40)) -> bytes:
    """Encode a solid-colour image with Pillow."""
    if mode == "RGBA" and len(color) == 3:
        color = color + (128,)
    image = Image.new(mode, size, color)
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def candidate(n: int, source: str = "fake", terms: Optional[list] = None) -> Candidate:
    return Candidate(
        source=source,
        host_page_url=f"https://pages.example/{n}",
        target_url=f"https://img.example/{n}.jpg",
        search_terms=list(terms or []),
    )


class FakeFetcher:
    """Serves image bytes by URL; unknown URLs fail like a 404."""

    def __init__(self, images: Optional[dict] = None, default: Optional[bytes] = None):
        self.images = dict(images or {})
        self.default = default
        self.fetched: list[str] = []

    async def fetch(self, url: str) -> FetchResult:
        self.fetched.append(url)
        content = self.images.get(url, self.default)
        if content is None:
            return FetchResult(success=False, url=url, error="HTTP 404")
        return FetchResult(success=True, url=url, content=content, content_type="image/png", size=len(content))


class FakeArtifactStore(ArtifactStore):
    """Dict-backed object store that records every put and delete."""

    bucket = "test-bucket"

    def __init__(self, fail_delete: bool = False, fail_put_prefix: Optional[str] = None):
        self.objects: dict[str, bytes] = {}
        self.metadata: dict[str, dict] = {}
        self.put_keys: list[str] = []
        self.deleted_keys: list[str] = []
        self.fail_delete = fail_delete
        self.fail_put_prefix = fail_put_prefix

    async def put(self, key, data, content_type="image/jpeg", metadata=None):
        self.put_keys.append(key)
        if self.fail_put_prefix and key.startswith(self.fail_put_prefix):
            raise OSError(f"put failed for {key}")
        self.objects[key] = data
        self.metadata[key] = dict(metadata or {})

    async def delete(self, key):
        self.deleted_keys.append(key)
        if self.fail_delete:
            raise OSError(f"delete failed for {key}")
        self.objects.pop(key, None)

    async def url_for(self, key):
        return f"https://{self.bucket}.example/{key}"

    def keys_with_prefix(self, prefix: str) -> list[str]:
        return [k for k in self.objects if k.startswith(prefix)]


class FakeComparator(SimilarityComparator):
    """
    Scores artifacts by the URL they were stored from.

    Records peak concurrency and whether each artifact existed when compared.
    """

    def __init__(self, store: FakeArtifactStore, scores: Optional[dict] = None,
                 errors: Optional[set] = None, default: float = 0.0, delay: float = 0.01):
        self.store = store
        self.scores = dict(scores or {})
        self.errors = set(errors or ())
        self.default = default
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0
        self.calls: list[tuple[str, str]] = []
        self.artifacts_present: list[bool] = []

    async def compare(self, probe_key, candidate_key, threshold):
        self.calls.append((probe_key, candidate_key))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            self.artifacts_present.append(candidate_key in self.store.objects)
            await asyncio.sleep(self.delay)
            url = self.store.metadata.get(candidate_key, {}).get("original-url")
            if url in self.errors:
                raise ComparatorError(f"comparison failed for {url}")
            similarity = self.scores.get(url, self.default)
            return ComparisonResult(similarity=similarity, matched=similarity >= threshold, face_matches=1)
        finally:
            self.in_flight -= 1


class FakeProvider(ReverseImageProvider):
    """Returns fixed candidates, or raises."""

    def __init__(self, name: str, candidates: Optional[list] = None, error: Optional[Exception] = None):
        self.name = name
        self.candidates = list(candidates or [])
        self.error = error
        self.calls = 0

    async def search(self, probe):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return [dataclasses.replace(c, search_terms=list(c.search_terms)) for c in self.candidates]


class InMemoryStatusStore(StatusStore):
    """Status store applying the same transition rules as the real backends."""

    def __init__(self, fail_updates: bool = False):
        self.records: dict[str, SearchStatus] = {}
        self.history: dict[str, list[SearchStatus]] = {}
        self.matches: list[Match] = []
        self.fail_updates = fail_updates

    async def create(self, status):
        if status.request_id in self.records:
            return False
        self.records[status.request_id] = status
        self.history.setdefault(status.request_id, []).append(status)
        return True

    async def get(self, request_id):
        return self.records.get(request_id)

    async def update(self, request_id, update: StatusUpdate):
        if self.fail_updates and update.status is None:
            raise OSError("status store unavailable")
        new_status = apply_update(self.records.get(request_id), request_id, update)
        self.records[request_id] = new_status
        self.history.setdefault(request_id, []).append(new_status)
        return new_status

    async def put_match(self, match):
        self.matches.append(match)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.notified: list[SearchStatus] = []

    async def notify(self, status):
        self.notified.append(status)


def build_orchestrator(
    providers,
    images: Optional[dict] = None,
    scores: Optional[dict] = None,
    errors: Optional[set] = None,
    width: int = 5,
    policy: str = "skip",
    threshold: float = 98.0,
    store: Optional[InMemoryStatusStore] = None,
    artifact_store: Optional[FakeArtifactStore] = None,
    all_providers_failed_is_fatal: bool = False,
):
    """SearchOrchestrator wired to fakes. Returns (orchestrator, parts)."""
    artifact_store = artifact_store or FakeArtifactStore()
    store = store or InMemoryStatusStore()
    fetcher = FakeFetcher(images)
    normalizer = ImageNormalizer(fetcher=fetcher)
    comparator = FakeComparator(artifact_store, scores=scores, errors=errors)
    notifier = RecordingNotifier()

    processor = CandidateProcessor(
        normalizer=normalizer,
        transient_manager=TransientResourceManager(artifact_store),
        comparator=comparator,
        status_store=store,
        threshold=threshold,
        failure_policy=policy,
    )
    orchestrator = SearchOrchestrator(
        normalizer=normalizer,
        artifact_store=artifact_store,
        providers=providers,
        processor=processor,
        tracker=ProgressTracker(store),
        notifier=notifier,
        batcher=ConcurrencyBatcher(width, propagate=(ComparisonAbortedError,)),
        all_providers_failed_is_fatal=all_providers_failed_is_fatal,
    )
    parts = {
        "store": store,
        "artifacts": artifact_store,
        "fetcher": fetcher,
        "comparator": comparator,
        "notifier": notifier,
    }
    return orchestrator, parts


class RecordingDispatcher:
    """Dispatcher that records requests, or raises a DispatchError."""

    def __init__(self, error: Optional[Exception] = None):
        self.dispatched = []
        self.error = error

    async def dispatch(self, request, background_tasks=None):
        if self.error is not None:
            raise self.error
        self.dispatched.append(request)


def build_service(dispatcher: Optional[RecordingDispatcher] = None):
    """SearchService over an in-memory store. Returns (service, store, dispatcher)."""
    from services.search_service import SearchService

    store = InMemoryStatusStore()
    dispatcher = dispatcher or RecordingDispatcher()
    return SearchService(store, dispatcher), store, dispatcher
