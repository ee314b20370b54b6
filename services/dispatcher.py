"""
Asynchronous hand-off of accepted requests to the orchestrator.

- LocalDispatcher: runs the orchestrator in-process, as a FastAPI background
  task when one is available and as an asyncio task otherwise
- LambdaDispatcher: fire-and-forget invocation of the processor Lambda
"""

import asyncio
import base64
import json
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from pipeline.errors import PipelineError
from pipeline.models import IdentityMetadata, SearchRequest

logger = structlog.get_logger()

# Asynchronous Lambda invocations accept at most 256 KB of payload
MAX_EVENT_PAYLOAD_BYTES = 256 * 1024


class DispatchError(PipelineError):
    """The request could not be handed to a processor."""


def request_to_payload(request: SearchRequest) -> dict:
    """JSON-safe form of a request, as sent to the processor."""
    image = request.image
    if isinstance(image, (bytes, bytearray)):
        image = base64.b64encode(image).decode("ascii")
    return {
        "requestId": request.request_id,
        "image": image,
        "identityMetadata": request.identity.to_dict() if request.identity else None,
        "referenceId": request.reference_id,
        "priority": request.priority,
        "createdAt": request.created_at,
    }


def request_from_payload(payload: dict) -> SearchRequest:
    """Inverse of request_to_payload. The image stays a base64 or URL string."""
    if not payload.get("requestId"):
        raise ValueError("Missing requestId")
    kwargs = {}
    if payload.get("createdAt"):
        kwargs["created_at"] = payload["createdAt"]
    return SearchRequest(
        request_id=payload["requestId"],
        image=payload.get("image"),
        identity=IdentityMetadata.from_dict(payload.get("identityMetadata")),
        reference_id=payload.get("referenceId"),
        priority=payload.get("priority") or "high",
        **kwargs
    )


class Dispatcher(ABC):
    """Hands a created request to whatever processes it."""

    @abstractmethod
    async def dispatch(self, request: SearchRequest, background_tasks: Optional[Any] = None) -> None:
        """
        Schedule processing without waiting for it.

        Raises:
            DispatchError: If the request could not be scheduled
        """


class LocalDispatcher(Dispatcher):
    """
    Runs the orchestrator in the current process.
    """

    def __init__(self, orchestrator_factory: Callable[[], Any]):
        """
        Args:
            orchestrator_factory: Returns the SearchOrchestrator to run requests with
        """
        self.orchestrator_factory = orchestrator_factory
        self._orchestrator = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def orchestrator(self):
        if self._orchestrator is None:
            self._orchestrator = self.orchestrator_factory()
        return self._orchestrator

    async def run(self, request: SearchRequest) -> None:
        try:
            await self.orchestrator.run(request)
        except Exception as e:
            logger.error("Local processing crashed", request_id=request.request_id, error=str(e))

    async def dispatch(self, request: SearchRequest, background_tasks: Optional[Any] = None) -> None:
        if background_tasks is not None:
            background_tasks.add_task(self.run, request)
        else:
            task = asyncio.create_task(self.run(request))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        logger.info("Request dispatched locally", request_id=request.request_id)

    async def drain(self) -> None:
        """Wait for requests started with asyncio tasks."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def release(self) -> None:
        """
        Wait for running requests, then close the orchestrator.

        The next dispatch builds a fresh orchestrator, so HTTP clients never
        outlive the event loop they were created on.
        """
        await self.drain()
        orchestrator, self._orchestrator = self._orchestrator, None
        if orchestrator is not None:
            await orchestrator.aclose()

    async def aclose(self) -> None:
        await self.release()


class LambdaDispatcher(Dispatcher):
    """
    Invokes the processor Lambda asynchronously (InvocationType='Event').
    """

    def __init__(
        self,
        function_name: str,
        aws_client_kwargs: Optional[dict] = None,
        timeout: float = 30.0,
        client=None
    ):
        """
        Initialize Lambda dispatcher.

        Args:
            function_name: Processor function name or ARN
            aws_client_kwargs: Region and optional explicit credentials
            timeout: Connect and read timeout
            client: Preconfigured boto3 Lambda client (tests)
        """
        self.function_name = function_name
        self._client = client
        self._client_kwargs = aws_client_kwargs or {}
        self._config = Config(connect_timeout=timeout, read_timeout=timeout)

    @classmethod
    def from_settings(cls, settings) -> "LambdaDispatcher":
        return cls(
            function_name=settings.processor_function,
            aws_client_kwargs=settings.aws_client_kwargs(),
            timeout=settings.request_timeout,
        )

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("lambda", config=self._config, **self._client_kwargs)
            logger.info("AWS Lambda client initialized", function_name=self.function_name)
        return self._client

    async def dispatch(self, request: SearchRequest, background_tasks: Optional[Any] = None) -> None:
        payload = json.dumps(request_to_payload(request))
        if len(payload.encode("utf-8")) > MAX_EVENT_PAYLOAD_BYTES:
            raise DispatchError("Image payload too large for asynchronous processing; submit an image URL")

        try:
            response = await asyncio.to_thread(
                self.client.invoke,
                FunctionName=self.function_name,
                InvocationType="Event",
                Payload=payload
            )
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            logger.error("AWS Lambda client error", request_id=request.request_id, error_code=error_code, error=str(e))
            raise DispatchError(f"Could not dispatch request ({error_code})") from e
        except BotoCoreError as e:
            logger.error("AWS Lambda invocation failed", request_id=request.request_id, error=str(e))
            raise DispatchError("Could not dispatch request") from e

        logger.info(
            "Request dispatched to Lambda",
            request_id=request.request_id,
            function_name=self.function_name,
            status_code=response.get("StatusCode")
        )


def build_dispatcher(
    settings,
    status_store=None,
    orchestrator_factory: Optional[Callable[[], Any]] = None
) -> Dispatcher:
    """Dispatcher for the configured mode. Local runs share status_store with the caller."""
    if settings.dispatch_mode == "lambda":
        return LambdaDispatcher.from_settings(settings)
    if orchestrator_factory is None:
        from pipeline.orchestrator import build_orchestrator
        orchestrator_factory = lambda: build_orchestrator(settings, status_store=status_store)  # noqa: E731
    return LocalDispatcher(orchestrator_factory)
