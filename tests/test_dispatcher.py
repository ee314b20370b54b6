"""
Tests for request payloads and both dispatchers.
"""

import base64
import json
from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


class TestPayload:
    """Tests for request_to_payload / request_from_payload."""

    def test_bytes_image_is_base64_encoded(self):
        """Test raw bytes travel as base64 and identity is kept."""
        from pipeline.models import IdentityMetadata, SearchRequest
        from services.dispatcher import request_from_payload, request_to_payload

        request = SearchRequest.create(image=b"\x89PNG", identity=IdentityMetadata(name="Jane"), reference_id="ref-1")
        payload = json.loads(json.dumps(request_to_payload(request)))
        restored = request_from_payload(payload)

        assert payload["image"] == base64.b64encode(b"\x89PNG").decode("ascii")
        assert restored.request_id == request.request_id
        assert restored.identity.name == "Jane"
        assert restored.reference_id == "ref-1"
        assert restored.created_at == request.created_at

    def test_missing_request_id_rejected(self):
        """Test a payload without requestId is invalid."""
        from services.dispatcher import request_from_payload

        with pytest.raises(ValueError):
            request_from_payload({"image": "https://img.example/a.jpg"})


class TestLambdaDispatcher:
    """Tests for LambdaDispatcher over a mocked client."""

    @pytest.mark.asyncio
    async def test_invokes_asynchronously(self):
        """Test the processor is invoked with InvocationType Event."""
        from pipeline.models import SearchRequest
        from services.dispatcher import LambdaDispatcher

        client = Mock()
        client.invoke.return_value = {"StatusCode": 202}
        dispatcher = LambdaDispatcher("processor-fn", client=client)
        request = SearchRequest.create(image="https://img.example/a.jpg")

        await dispatcher.dispatch(request)

        kwargs = client.invoke.call_args.kwargs
        assert kwargs["FunctionName"] == "processor-fn"
        assert kwargs["InvocationType"] == "Event"
        assert json.loads(kwargs["Payload"])["requestId"] == request.request_id

    @pytest.mark.asyncio
    async def test_oversized_payload_rejected(self):
        """Test inline images above the event limit are refused without invoking."""
        from pipeline.models import SearchRequest
        from services.dispatcher import DispatchError, LambdaDispatcher

        client = Mock()
        dispatcher = LambdaDispatcher("processor-fn", client=client)

        with pytest.raises(DispatchError):
            await dispatcher.dispatch(SearchRequest.create(image=b"x" * (300 * 1024)))

        client.invoke.assert_not_called()

    @pytest.mark.asyncio
    async def test_client_error_becomes_dispatch_error(self):
        """Test AWS errors surface as DispatchError."""
        from pipeline.models import SearchRequest
        from services.dispatcher import DispatchError, LambdaDispatcher

        client = Mock()
        client.invoke.side_effect = ClientError({"Error": {"Code": "ResourceNotFoundException"}}, "Invoke")
        dispatcher = LambdaDispatcher("processor-fn", client=client)

        with pytest.raises(DispatchError) as exc_info:
            await dispatcher.dispatch(SearchRequest.create(image="https://img.example/a.jpg"))

        assert "ResourceNotFoundException" in str(exc_info.value)


class TestLocalDispatcher:
    """Tests for LocalDispatcher."""

    @pytest.mark.asyncio
    async def test_runs_request_in_task(self):
        """Test a dispatched request runs to completion once drained."""
        from fakes import FakeProvider, build_orchestrator, make_image_bytes
        from pipeline.models import SearchRequest
        from services.dispatcher import LocalDispatcher

        orchestrator, parts = build_orchestrator([FakeProvider("a", [])])
        dispatcher = LocalDispatcher(lambda: orchestrator)
        request = SearchRequest.create(image=make_image_bytes())

        await dispatcher.dispatch(request)
        await dispatcher.drain()

        assert parts["store"].records[request.request_id].status.value == "completed"

    @pytest.mark.asyncio
    async def test_uses_background_tasks_when_given(self):
        """Test FastAPI background tasks receive the run."""
        from pipeline.models import SearchRequest
        from services.dispatcher import LocalDispatcher

        background = Mock()
        dispatcher = LocalDispatcher(lambda: None)
        request = SearchRequest.create(image=b"x")

        await dispatcher.dispatch(request, background_tasks=background)

        background.add_task.assert_called_once_with(dispatcher.run, request)
