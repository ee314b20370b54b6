"""Bounded fan-out/fan-in: run a coroutine over items in fixed-width chunks."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Generic, Optional, Sequence, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class BatchProgress(Generic[R]):
    """Running aggregate after one chunk has fully resolved."""
    batch_index: int
    processed: int
    total: int
    batch_results: list[R] = field(default_factory=list)
    results: list[R] = field(default_factory=list)
    failures: int = 0

    @property
    def done(self) -> bool:
        return self.processed >= self.total


class ConcurrencyBatcher:
    """
    Processes items chunk by chunk.

    Each chunk of `width` items runs fully in parallel; the next chunk does not
    start until every item of the current one has finished. A failing item is
    logged and left out of the aggregate, unless its exception type is listed
    in `propagate`, in which case it escapes after the chunk settles.
    """

    def __init__(self, width: int, propagate: tuple[type[BaseException], ...] = ()):
        if width < 1:
            raise ValueError(f"Batch width must be at least 1, got {width}")
        self.width = width
        self.propagate = propagate

    def chunks(self, items: Sequence[T]) -> list[list[T]]:
        return [list(items[i:i + self.width]) for i in range(0, len(items), self.width)]

    async def run(
        self,
        items: Sequence[T],
        worker: Callable[[T], Awaitable[Optional[R]]],
    ) -> AsyncIterator[BatchProgress[R]]:
        """Yield a BatchProgress after each chunk. Yields nothing for an empty input."""
        total = len(items)
        processed = 0
        failures = 0
        results: list[R] = []

        for batch_index, chunk in enumerate(self.chunks(items)):
            outcomes = await asyncio.gather(*(worker(item) for item in chunk), return_exceptions=True)

            batch_results: list[R] = []
            fatal: Optional[BaseException] = None
            for item, outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException):
                    if self.propagate and isinstance(outcome, self.propagate):
                        fatal = fatal or outcome
                        continue
                    if not isinstance(outcome, Exception):
                        raise outcome
                    failures += 1
                    logger.warning(
                        "Batch item failed",
                        batch=batch_index,
                        item=repr(item)[:200],
                        error=str(outcome),
                        error_type=type(outcome).__name__
                    )
                    continue
                if outcome is not None:
                    batch_results.append(outcome)

            if fatal is not None:
                raise fatal

            processed += len(chunk)
            results.extend(batch_results)

            logger.debug(
                "Batch complete",
                batch=batch_index,
                processed=processed,
                total=total,
                batch_results=len(batch_results)
            )

            yield BatchProgress(
                batch_index=batch_index,
                processed=processed,
                total=total,
                batch_results=batch_results,
                results=list(results),
                failures=failures,
            )
