"""
AWS Lambda Handler for the visual match processor

Invoked asynchronously (InvocationType='Event') by the API with the payload
built by services.dispatcher.request_to_payload. Runs one orchestrator pass
to a terminal status, then flushes buffered downstream notifications.
"""

import asyncio
import json
import os
import sys
from typing import Any, Callable, Dict, Optional

# Add project root to path for local imports
# (In production Lambda, package as layer or include in deployment)
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def process(event: Dict[str, Any], orchestrator_factory: Callable[[], Any], logger) -> Dict[str, Any]:
    """Run one request and close the orchestrator's clients."""
    from services.dispatcher import request_from_payload

    try:
        request = request_from_payload(event)
    except ValueError as e:
        logger.error("Invalid processor event", error=str(e), event_keys=list(event.keys()))
        return {"statusCode": 400, "body": json.dumps({"error": str(e)})}

    orchestrator = orchestrator_factory()
    try:
        status = await orchestrator.run(request)
    finally:
        await orchestrator.aclose()

    logger.info(
        "Processor finished",
        request_id=request.request_id,
        status=status.status.value,
        matches=len(status.matches),
        total_processed=status.total_processed
    )
    return {
        "statusCode": 200,
        "body": json.dumps({
            "requestId": request.request_id,
            "status": status.status.value,
            "matches": len(status.matches),
        })
    }


def handler(
    event: Dict[str, Any],
    context: Any,
    orchestrator_factory: Optional[Callable[[], Any]] = None
) -> Dict[str, Any]:
    """
    AWS Lambda handler for the processor.

    Args:
        event: Request payload
        context: Lambda context
        orchestrator_factory: Orchestrator builder override (tests)

    Returns:
        Response dict with the terminal status
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

    logger.info("Lambda processor invoked", request_id=event.get("requestId"))

    if orchestrator_factory is None:
        from pipeline.orchestrator import build_orchestrator

        settings = get_settings()
        orchestrator_factory = lambda: build_orchestrator(settings)  # noqa: E731

    try:
        return asyncio.run(process(event, orchestrator_factory, logger))
    except Exception as e:
        logger.error("Lambda processor error", request_id=event.get("requestId"), error=str(e))
        return {"statusCode": 500, "body": json.dumps({"error": str(e)})}
