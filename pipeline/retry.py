"""Single retry policy shared by provider, fetch, comparator and status calls."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx
import structlog
from botocore.exceptions import BotoCoreError, ClientError, ConnectTimeoutError, EndpointConnectionError, ReadTimeoutError

logger = structlog.get_logger()

T = TypeVar("T")

RETRYABLE_HTTP_STATUS = frozenset({429, 500, 502, 503, 504})

RETRYABLE_AWS_CODES = frozenset({
    "ThrottlingException",
    "Throttling",
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "SlowDown",
    "InternalServerError",
    "InternalFailure",
    "ServiceUnavailable",
    "ServiceUnavailableException",
})


def is_retryable(exc: BaseException) -> bool:
    """
    Classify an error as transient.

    Timeouts, connection failures, HTTP 429/5xx and AWS throttling or
    server-side codes are retried. Client errors (4xx, validation, missing
    objects) are not.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_HTTP_STATUS
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(exc, asyncio.TimeoutError):
        return True
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return code in RETRYABLE_AWS_CODES or status >= 500
    if isinstance(exc, (ConnectTimeoutError, ReadTimeoutError, EndpointConnectionError)):
        return True
    if isinstance(exc, BotoCoreError):
        return False
    # Wrapped errors (ProviderError, ArtifactStoreError, ...) follow their cause
    if exc.__cause__ is not None and exc.__cause__ is not exc:
        return is_retryable(exc.__cause__)
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry with linear backoff: delay * attempt between attempts.

    max_attempts counts the first call, so 1 disables retries.
    """
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    classifier: Callable[[BaseException], bool] = is_retryable

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, settings.retry_max_attempts),
            backoff_seconds=settings.retry_backoff_seconds,
        )

    async def run(self, operation: Callable[[], Awaitable[T]], *, label: str = "operation", **context) -> T:
        """Await operation(), retrying transient failures. The last error propagates."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except Exception as e:
                if attempt >= self.max_attempts or not self.classifier(e):
                    raise
                delay = self.backoff_seconds * attempt
                logger.warning(
                    "Transient failure, retrying",
                    label=label,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay=delay,
                    error=str(e),
                    **context
                )
                await asyncio.sleep(delay)
        raise RuntimeError("unreachable")


NO_RETRY = RetryPolicy(max_attempts=1, backoff_seconds=0.0)
