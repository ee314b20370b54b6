"""
Tests for status record transitions and both store backends.
"""

from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def conditional_failure():
    return ClientError({"Error": {"Code": "ConditionalCheckFailedException"}}, "UpdateItem")


class TestTransitions:
    """Tests for apply_update and check_transition."""

    def test_apply_update_fills_fields_and_bumps_version(self):
        """Test only given fields change and version increments."""
        from pipeline.models import SearchStatus, StatusUpdate
        from pipeline.transitions import apply_update

        current = SearchStatus(request_id="r1", progress=20, total_available=10)
        updated = apply_update(current, "r1", StatusUpdate(progress=40, total_processed=4))

        assert updated.progress == 40
        assert updated.total_processed == 4
        assert updated.total_available == 10
        assert updated.version == current.version + 1

    def test_append_matches_never_replaces(self):
        """Test appended matches extend the stored list."""
        from pipeline.models import SearchStatus, StatusUpdate
        from pipeline.transitions import apply_update

        current = SearchStatus(request_id="r1", matches=[{"matchId": "a"}])
        updated = apply_update(current, "r1", StatusUpdate(append_matches=[{"matchId": "b"}]))

        assert [m["matchId"] for m in updated.matches] == ["a", "b"]

    def test_terminal_record_rejects_writes(self):
        """Test completed and failed records accept no further update."""
        from pipeline.errors import StatusTransitionError
        from pipeline.models import SearchState, SearchStatus, StatusUpdate
        from pipeline.transitions import apply_update

        for state in (SearchState.COMPLETED, SearchState.FAILED):
            current = SearchStatus(request_id="r1", status=state)
            with pytest.raises(StatusTransitionError):
                apply_update(current, "r1", StatusUpdate(progress=50))

    def test_progress_cannot_decrease_while_processing(self):
        """Test a backward progress write is rejected."""
        from pipeline.errors import StatusTransitionError
        from pipeline.models import SearchStatus, StatusUpdate
        from pipeline.transitions import apply_update

        current = SearchStatus(request_id="r1", progress=60)
        with pytest.raises(StatusTransitionError):
            apply_update(current, "r1", StatusUpdate(progress=30))

    def test_replayed_batch_append_rejected(self):
        """Test a batch append that does not advance total_processed is rejected."""
        from pipeline.errors import StatusTransitionError
        from pipeline.models import SearchStatus, StatusUpdate
        from pipeline.transitions import apply_update

        update = StatusUpdate(progress=50, total_processed=5, append_matches=[{"matchId": "m1"}])
        applied = apply_update(SearchStatus(request_id="r1"), "r1", update)

        with pytest.raises(StatusTransitionError):
            apply_update(applied, "r1", update)
        assert [m["matchId"] for m in applied.matches] == ["m1"]

    def test_failure_resets_progress(self):
        """Test the failed transition may write progress 0."""
        from pipeline.models import SearchState, SearchStatus, StatusUpdate
        from pipeline.transitions import apply_update

        current = SearchStatus(request_id="r1", progress=60)
        updated = apply_update(current, "r1", StatusUpdate(status=SearchState.FAILED, progress=0, replace_matches=[]))

        assert updated.status is SearchState.FAILED
        assert updated.progress == 0
        assert updated.matches == []


class TestSqlStatusStore:
    """Tests for the SQLAlchemy backend on in-memory SQLite."""

    @pytest.fixture
    def store(self):
        from storage.status_store import SqlStatusStore
        return SqlStatusStore.from_url("sqlite://")

    @pytest.mark.asyncio
    async def test_create_is_idempotent(self, store):
        """Test creating an existing record returns False and keeps it."""
        from pipeline.models import SearchStatus

        assert await store.create(SearchStatus(request_id="r1")) is True
        assert await store.create(SearchStatus(request_id="r1", progress=50)) is False

        stored = await store.get("r1")
        assert stored.progress == 0
        assert stored.status.value == "processing"

    @pytest.mark.asyncio
    async def test_get_unknown_is_none(self, store):
        """Test an unknown id reads as None."""
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_update_sequence_to_completed(self, store):
        """Test progress writes, appended matches and the terminal write."""
        from pipeline.errors import StatusTransitionError
        from pipeline.models import SearchState, SearchStatus, StatusUpdate

        await store.create(SearchStatus(request_id="r1"))
        await store.update("r1", StatusUpdate(progress=50, total_processed=5, total_available=10,
                                              append_matches=[{"matchId": "m1"}]))
        await store.update("r1", StatusUpdate(progress=100, total_processed=10,
                                              append_matches=[{"matchId": "m2"}]))

        mid = await store.get("r1")
        assert [m["matchId"] for m in mid.matches] == ["m1", "m2"]
        assert mid.total_available == 10

        with pytest.raises(StatusTransitionError):
            await store.update("r1", StatusUpdate(progress=40))

        final = await store.update("r1", StatusUpdate(status=SearchState.COMPLETED, progress=100))
        assert final.status is SearchState.COMPLETED

        with pytest.raises(StatusTransitionError):
            await store.update("r1", StatusUpdate(status=SearchState.FAILED, progress=0))

        assert (await store.get("r1")).status is SearchState.COMPLETED

    @pytest.mark.asyncio
    async def test_put_match_appends_rows(self, store):
        """Test match records are stored per request."""
        from pipeline.models import Candidate, Match

        candidate = Candidate(source="t", host_page_url="https://site.example/a", target_url="https://img.example/a.jpg")
        await store.put_match(Match.from_candidate("r1", candidate, 99.1))
        await store.put_match(Match.from_candidate("r1", candidate, 98.4))

        rows = store.list_matches("r1")
        assert len(rows) == 2
        assert {row.similarity for row in rows} == {99.1, 98.4}


class TestDynamoDBStatusStore:
    """Tests for the DynamoDB backend over a mocked table."""

    def make_store(self, table):
        from storage.status_store import DynamoDBStatusStore

        resource = Mock()
        resource.Table.return_value = table
        return DynamoDBStatusStore("status", "matches", resource=resource)

    def test_update_expression_appends_matches(self):
        """Test appended matches use list_append and progress is guarded."""
        from pipeline.models import StatusUpdate

        store = self.make_store(Mock())
        kwargs = store.build_update_expression(
            StatusUpdate(progress=42, total_processed=5, append_matches=[{"similarity": 99.5}])
        )

        assert kwargs["UpdateExpression"].startswith("SET ")
        assert "list_append(if_not_exists(#matches, :empty), :matches)" in kwargs["UpdateExpression"]
        assert "#version = if_not_exists(#version, :zero) + :one" in kwargs["UpdateExpression"]
        assert "#progress <= :progress" in kwargs["ConditionExpression"]
        assert "#status = :processing" in kwargs["ConditionExpression"]
        assert str(kwargs["ExpressionAttributeValues"][":matches"][0]["similarity"]) == "99.5"
        assert kwargs["ReturnValues"] == "ALL_NEW"
        assert "#totalProcessed < :totalProcessed" in kwargs["ConditionExpression"]

    def test_terminal_update_replaces_matches(self):
        """Test a terminal write sets status and replaces the match list without a progress guard."""
        from pipeline.models import SearchState, StatusUpdate

        store = self.make_store(Mock())
        kwargs = store.build_update_expression(
            StatusUpdate(status=SearchState.FAILED, progress=0, replace_matches=[], failure_reason="boom")
        )

        assert "#matches = :matches" in kwargs["UpdateExpression"]
        assert "#status = :status" in kwargs["UpdateExpression"]
        assert "#progress <= :progress" not in kwargs["ConditionExpression"]
        assert kwargs["ExpressionAttributeValues"][":failureReason"] == "boom"
        assert "#totalProcessed < :totalProcessed" not in kwargs["ConditionExpression"]

    @pytest.mark.asyncio
    async def test_conditional_failure_becomes_transition_error(self):
        """Test a failed condition on a terminal record raises StatusTransitionError."""
        from pipeline.errors import StatusTransitionError
        from pipeline.models import StatusUpdate

        table = Mock()
        table.update_item.side_effect = conditional_failure()
        table.get_item.return_value = {"Item": {"requestId": "r1", "status": "completed", "progress": 100}}
        store = self.make_store(table)

        with pytest.raises(StatusTransitionError) as exc_info:
            await store.update("r1", StatusUpdate(progress=50))

        assert "already completed" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_create_conflict_returns_false(self):
        """Test an existing record makes create return False."""
        from pipeline.models import SearchStatus

        table = Mock()
        table.put_item.side_effect = ClientError({"Error": {"Code": "ConditionalCheckFailedException"}}, "PutItem")
        store = self.make_store(table)

        assert await store.create(SearchStatus(request_id="r1")) is False

    @pytest.mark.asyncio
    async def test_update_returns_stored_record(self):
        """Test the ALL_NEW attributes are converted back into a SearchStatus."""
        from decimal import Decimal

        from pipeline.models import StatusUpdate

        table = Mock()
        table.update_item.return_value = {"Attributes": {
            "requestId": "r1", "status": "processing", "progress": Decimal("42"),
            "matches": [{"similarity": Decimal("99.5")}], "version": Decimal("3"),
        }}
        store = self.make_store(table)

        status = await store.update("r1", StatusUpdate(progress=42))

        assert status.progress == 42
        assert status.version == 3
        assert status.matches == [{"similarity": 99.5}]
