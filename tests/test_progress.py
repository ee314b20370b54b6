"""
Tests for progress computation and best-effort status writes.
"""

import pytest

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fakes import InMemoryStatusStore


class TestComputeProgress:
    """Tests for compute_progress."""

    def test_rounds_half_up(self):
        """Test percentages round half up."""
        from pipeline.progress import compute_progress

        assert compute_progress(1, 8) == 13   # 12.5
        assert compute_progress(1, 3) == 33
        assert compute_progress(2, 3) == 67
        assert compute_progress(5, 12) == 42

    def test_bounds(self):
        """Test 0 and full progress, and an empty total reads as done."""
        from pipeline.progress import compute_progress

        assert compute_progress(0, 10) == 0
        assert compute_progress(10, 10) == 100
        assert compute_progress(12, 10) == 100
        assert compute_progress(0, 0) == 100


class TestProgressTracker:
    """Tests for ProgressTracker."""

    @pytest.mark.asyncio
    async def test_start_creates_record(self):
        """Test start creates a processing record and returns None."""
        from pipeline.models import SearchRequest
        from pipeline.progress import ProgressTracker

        store = InMemoryStatusStore()
        request = SearchRequest.create(image=b"x")

        assert await ProgressTracker(store).start(request) is None
        assert store.records[request.request_id].status.value == "processing"

    @pytest.mark.asyncio
    async def test_start_returns_terminal_record(self):
        """Test start hands back an existing terminal record."""
        from pipeline.models import SearchRequest, SearchState, SearchStatus
        from pipeline.progress import ProgressTracker

        store = InMemoryStatusStore()
        request = SearchRequest.create(image=b"x")
        await store.create(SearchStatus(request_id=request.request_id, status=SearchState.COMPLETED, progress=100))

        existing = await ProgressTracker(store).start(request)

        assert existing.status is SearchState.COMPLETED

    @pytest.mark.asyncio
    async def test_rejected_write_returns_none(self):
        """Test a write against a terminal record is swallowed."""
        from pipeline.models import SearchState, SearchStatus
        from pipeline.progress import ProgressTracker

        store = InMemoryStatusStore()
        await store.create(SearchStatus(request_id="r1", status=SearchState.FAILED))

        result = await ProgressTracker(store).record_batch("r1", 1, 2, [])

        assert result is None
        assert store.records["r1"].status is SearchState.FAILED

    @pytest.mark.asyncio
    async def test_store_outage_returns_fallback(self):
        """Test a failing store yields the locally built terminal status."""
        from pipeline.progress import ProgressTracker

        class BrokenStore(InMemoryStatusStore):
            async def update(self, request_id, update):
                raise OSError("connection reset")

        status = await ProgressTracker(BrokenStore()).fail("r1", "probe missing")

        assert status.status.value == "failed"
        assert status.failure_reason == "probe missing"
        assert status.progress == 0

    @pytest.mark.asyncio
    async def test_record_batch_appends_matches(self):
        """Test each batch write appends its matches and updates counters."""
        from pipeline.models import Candidate, Match, SearchStatus
        from pipeline.progress import ProgressTracker

        store = InMemoryStatusStore()
        await store.create(SearchStatus(request_id="r1"))
        tracker = ProgressTracker(store)
        match = Match.from_candidate("r1", Candidate(source="t", host_page_url=None, target_url="https://img.example/1.jpg"), 99.0)

        await tracker.record_batch("r1", 5, 10, [match])
        status = await tracker.record_batch("r1", 10, 10, [])

        assert status.progress == 100
        assert status.total_processed == 10
        assert len(status.matches) == 1
        assert status.matches[0]["url"] == "https://img.example/1.jpg"

    @pytest.mark.asyncio
    async def test_retried_batch_write_appends_matches_once(self):
        """Test a batch write that landed but timed out is not appended again on retry."""
        from botocore.exceptions import ReadTimeoutError

        from pipeline.models import Candidate, Match, SearchStatus
        from pipeline.progress import ProgressTracker
        from pipeline.retry import RetryPolicy

        class TimeoutAfterWriteStore(InMemoryStatusStore):
            timeouts = 1

            async def update(self, request_id, update):
                status = await super().update(request_id, update)
                if self.timeouts:
                    self.timeouts -= 1
                    raise ReadTimeoutError(endpoint_url="https://dynamodb.test")
                return status

        store = TimeoutAfterWriteStore()
        await store.create(SearchStatus(request_id="r1"))
        tracker = ProgressTracker(store, retry_policy=RetryPolicy(max_attempts=3, backoff_seconds=0))
        match = Match.from_candidate("r1", Candidate(source="t", host_page_url=None, target_url="https://img.example/1.jpg"), 99.0)

        await tracker.record_batch("r1", 5, 10, [match])

        stored = store.records["r1"]
        assert [m["matchId"] for m in stored.matches] == [match.match_id]
        assert stored.total_processed == 5
        assert stored.progress == 50
