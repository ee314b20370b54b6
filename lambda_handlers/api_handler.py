"""
AWS Lambda Handler for the Visual Match HTTP API

Routes API Gateway (HTTP API, payload v2) events to the same service layer
as the FastAPI app:
- POST /initiateSearch
- POST /initiateBatch
- GET /status/{requestId}

With VISUAL_MATCH_DISPATCH_MODE=lambda each accepted request is handed to
the processor function (see processor_handler.py) with an asynchronous
invocation.
"""

import asyncio
import base64
import json
import os
import sys
from typing import Any, Dict, Optional

# Add project root to path for local imports
# (In production Lambda, package as layer or include in deployment)
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

CORS_HEADERS = {
    "Content-Type": "application/json",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type,Authorization",
}


def response(status_code: int, body: Any) -> Dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": dict(CORS_HEADERS),
        "body": json.dumps(body),
    }


def parse_body(event: Dict[str, Any]) -> Any:
    """Decode the JSON body, honouring isBase64Encoded."""
    raw = event.get("body")
    if not raw:
        return None
    if event.get("isBase64Encoded"):
        raw = base64.b64decode(raw).decode("utf-8")
    return json.loads(raw)


async def route(event: Dict[str, Any], service, logger) -> Dict[str, Any]:
    """Dispatch one API Gateway event to the service layer."""
    route_key = event.get("routeKey", "")

    try:
        body = parse_body(event)
    except (ValueError, UnicodeDecodeError):
        return response(400, {"error": "Request body must be JSON"})

    if route_key == "POST /initiateSearch":
        if not isinstance(body, dict):
            return response(400, {"error": "Expected a JSON object"})
        request = await service.initiate(
            image=body.get("image"),
            identity=body.get("identityMetadata"),
        )
        return response(202, {"requestId": request.request_id, "status": "processing"})

    if route_key == "POST /initiateBatch":
        if not isinstance(body, list) or not body:
            return response(400, {"error": "Expected a non-empty JSON array"})
        if not all(isinstance(item, dict) for item in body):
            return response(400, {"error": "Every batch item must be an object"})
        request_ids, failed_indexes = await service.initiate_batch(body)
        if not request_ids:
            return response(503, {"error": "Could not accept the batch", "failedIndexes": failed_indexes})
        return response(202, {
            "requestIds": request_ids,
            "totalImages": len(request_ids),
            "failedIndexes": failed_indexes,
        })

    if route_key == "GET /status/{requestId}":
        request_id = (event.get("pathParameters") or {}).get("requestId")
        if not request_id:
            return response(400, {"error": "requestId is required"})
        status = await service.get_status(request_id)
        if status is None:
            return response(404, {"error": "Request not found"})
        return response(200, status)

    logger.warning("Unknown route", route_key=route_key)
    return response(404, {"error": f"Unknown route: {route_key}"})


async def handle(event: Dict[str, Any], service, logger) -> Dict[str, Any]:
    try:
        return await route(event, service, logger)
    finally:
        # Requests dispatched in-process must finish inside this invocation, and
        # their clients are bound to this invocation's event loop
        release = getattr(service.dispatcher, "release", None)
        if release is not None:
            await release()


def handler(event: Dict[str, Any], context: Any, service: Optional[Any] = None) -> Dict[str, Any]:
    """
    AWS Lambda handler for the HTTP API.

    Args:
        event: API Gateway event
        context: Lambda context
        service: SearchService override (tests)

    Returns:
        API Gateway proxy response
    """
    import structlog

    from config import get_settings

    # Configure logging
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(get_settings().log_level_number)
    )
    logger = structlog.get_logger()

    logger.info("Lambda API handler invoked", route_key=event.get("routeKey"))

    try:
        if service is None:
            from services.search_service import get_search_service
            service = get_search_service()
        return asyncio.run(handle(event, service, logger))
    except Exception as e:
        logger.error("Lambda handler error", error=str(e))
        return response(500, {"error": "Internal server error"})
