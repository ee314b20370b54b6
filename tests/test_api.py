"""
Tests for the HTTP API routes and service layer.
"""

import base64

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fakes import RecordingDispatcher, build_service


@pytest.fixture
def api():
    """Test client over the router with an in-memory service."""
    from api.routes import router
    from services.search_service import get_search_service

    service, store, dispatcher = build_service()
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_search_service] = lambda: service
    return TestClient(app), store, dispatcher


class TestInitiateSearch:
    """Tests for POST /initiateSearch."""

    def test_accepts_and_dispatches(self, api):
        """Test a search is accepted with 202 and a processing record."""
        client, store, dispatcher = api
        image = base64.b64encode(b"image-bytes").decode("ascii")

        response = client.post("/initiateSearch", json={
            "image": image,
            "identityMetadata": {"name": "Jane Doe", "location": "Austin"},
        })

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "processing"
        assert store.records[body["requestId"]].status.value == "processing"
        assert dispatcher.dispatched[0].request_id == body["requestId"]
        assert dispatcher.dispatched[0].identity.name == "Jane Doe"

    def test_dispatch_failure_marks_record_failed(self):
        """Test a dispatch error leaves a failed record with its reason."""
        from api.routes import router
        from services.dispatcher import DispatchError
        from services.search_service import get_search_service

        service, store, _ = build_service(RecordingDispatcher(error=DispatchError("payload too large")))
        app = FastAPI()
        app.include_router(router)
        app.dependency_overrides[get_search_service] = lambda: service
        client = TestClient(app)

        request_id = client.post("/initiateSearch", json={"image": "https://img.example/a.jpg"}).json()["requestId"]
        status = client.get(f"/status/{request_id}").json()

        assert status["status"] == "failed"
        assert status["failureReason"] == "payload too large"
        assert status["progress"] == 0

    def test_dispatch_failure_with_store_outage_still_returns_id(self):
        """Test a failed-dispatch record write that itself fails does not lose the request id."""
        import asyncio

        from fakes import InMemoryStatusStore
        from services.dispatcher import DispatchError
        from services.search_service import SearchService

        class NoUpdateStore(InMemoryStatusStore):
            async def update(self, request_id, update):
                raise OSError("status store unavailable")

        store = NoUpdateStore()
        service = SearchService(store, RecordingDispatcher(error=DispatchError("invoke failed")))

        request = asyncio.run(service.initiate(image="https://img.example/a.jpg"))

        assert request.request_id in store.records


class TestInitiateBatch:
    """Tests for POST /initiateBatch."""

    def test_each_item_is_a_request(self, api):
        """Test a batch returns one request id per image."""
        client, store, dispatcher = api

        response = client.post("/initiateBatch", json=[
            {"image": "https://img.example/a.jpg", "referenceId": "ref-a"},
            {"image": "https://img.example/b.jpg", "priority": "low"},
        ])

        assert response.status_code == 202
        body = response.json()
        assert body["totalImages"] == 2
        assert len(set(body["requestIds"])) == 2
        assert [r.reference_id for r in dispatcher.dispatched] == ["ref-a", None]
        assert dispatcher.dispatched[1].priority == "low"

    def test_empty_batch_rejected(self, api):
        """Test an empty batch is a 400."""
        client, _, _ = api

        assert client.post("/initiateBatch", json=[]).status_code == 400

    def test_failing_item_does_not_orphan_accepted_items(self):
        """Test an item whose record cannot be created is reported while the others are accepted."""
        from api.routes import router
        from fakes import InMemoryStatusStore
        from services.search_service import SearchService, get_search_service

        class FlakyCreateStore(InMemoryStatusStore):
            creates = 0

            async def create(self, status):
                self.creates += 1
                if self.creates == 2:
                    raise OSError("status store unavailable")
                return await super().create(status)

        store = FlakyCreateStore()
        dispatcher = RecordingDispatcher()
        app = FastAPI()
        app.include_router(router)
        app.dependency_overrides[get_search_service] = lambda: SearchService(store, dispatcher)
        client = TestClient(app)

        response = client.post("/initiateBatch", json=[
            {"image": "https://img.example/a.jpg"},
            {"image": "https://img.example/b.jpg"},
            {"image": "https://img.example/c.jpg"},
        ])

        assert response.status_code == 202
        body = response.json()
        assert body["failedIndexes"] == [1]
        assert body["requestIds"] == [r.request_id for r in dispatcher.dispatched]
        assert [r.image for r in dispatcher.dispatched] == ["https://img.example/a.jpg", "https://img.example/c.jpg"]

    def test_nothing_accepted_is_503(self):
        """Test a batch with no accepted item is a 503."""
        from api.routes import router
        from fakes import InMemoryStatusStore
        from services.search_service import SearchService, get_search_service

        class DownStore(InMemoryStatusStore):
            async def create(self, status):
                raise OSError("status store unavailable")

        app = FastAPI()
        app.include_router(router)
        app.dependency_overrides[get_search_service] = lambda: SearchService(DownStore(), RecordingDispatcher())

        response = TestClient(app).post("/initiateBatch", json=[{"image": "https://img.example/a.jpg"}])

        assert response.status_code == 503


class TestStatus:
    """Tests for GET /status/{request_id}."""

    def test_unknown_request_is_404(self, api):
        """Test an unknown id is a 404."""
        client, _, _ = api

        assert client.get("/status/does-not-exist").status_code == 404

    def test_completed_status_payload(self, api):
        """Test a completed record is returned with matches and counters."""
        import asyncio

        from pipeline.models import SearchState, SearchStatus

        client, store, _ = api
        match = {"matchId": "m1", "title": "Match (99% similar)", "url": "https://site.example/a",
                 "targetUrl": "https://img.example/a.jpg", "thumbnailUrl": "https://img.example/a.jpg",
                 "similarity": 99.2}
        asyncio.run(store.create(SearchStatus(
            request_id="r1", status=SearchState.COMPLETED, progress=100,
            matches=[match], total_processed=4, total_available=4,
        )))

        body = client.get("/status/r1").json()

        assert body["status"] == "completed"
        assert body["progress"] == 100
        assert body["totalProcessed"] == 4
        assert body["matches"][0]["url"] == "https://site.example/a"
        assert "failureReason" not in body


class TestSettings:
    """Tests for settings validation."""

    def test_validate_settings_reports_issues(self):
        """Test invalid combinations are reported."""
        from config import Settings

        settings = Settings(
            bing_api_key="", google_api_key="k", google_cx="",
            comparator_failure_policy="retry", dispatch_mode="lambda", processor_function="",
        )
        issues = settings.validate_settings()

        assert any("failure policy" in issue for issue in issues)
        assert any("PROCESSOR_FUNCTION" in issue for issue in issues)
        assert any("Google search partially configured" in issue for issue in issues)

    def test_log_level_number(self):
        """Test log_level maps onto logging levels, falling back to INFO."""
        import logging

        from config import Settings

        assert Settings(log_level="debug").log_level_number == logging.DEBUG
        assert Settings(log_level="WARNING").log_level_number == logging.WARNING
        assert Settings(log_level="chatty").log_level_number == logging.INFO
