#!/usr/bin/env python3
"""
Batch Execution

Splits large workloads (vector upserts, document indexing, block and part
uploads) into chunks and runs them with bounded concurrency.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterator, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


def chunked(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    """Yield consecutive slices of at most ``size`` items."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield items[start : start + size]


@dataclass
class BatchResult:
    """Outcome of a batch run, in chunk order."""

    succeeded: List[Any] = field(default_factory=list)
    failed: List[Tuple[int, Exception]] = field(default_factory=list)
    total_chunks: int = 0
    total_items: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed

    def raise_for_failures(self):
        """Raise the first chunk error, if any."""
        if self.failed:
            raise self.failed[0][1]


class BatchExecutor:
    """
    Runs an async worker over chunks with a semaphore-bounded fan out.

    Args:
        concurrency: Maximum chunks in flight at once
        chunk_size: Items per chunk
        fail_fast: Cancel outstanding chunks and raise on the first failure
    """

    def __init__(self, concurrency: int = 4, chunk_size: int = 100, fail_fast: bool = False):
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        self.concurrency = concurrency
        self.chunk_size = chunk_size
        self.fail_fast = fail_fast

    async def run(
        self,
        items: Sequence[Any],
        worker: Callable[[int, Sequence[Any]], Awaitable[Any]],
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> BatchResult:
        """
        Run ``worker(chunk_index, chunk)`` for every chunk of ``items``.

        Returns:
            BatchResult with worker results in chunk order and any failures
        """
        chunks = list(chunked(items, self.chunk_size)) if items else []
        result = BatchResult(total_chunks=len(chunks), total_items=len(items))
        if not chunks:
            return result

        semaphore = asyncio.Semaphore(self.concurrency)
        outcomes: List[Any] = [None] * len(chunks)
        completed = 0

        async def run_chunk(index: int, chunk: Sequence[Any]):
            nonlocal completed
            async with semaphore:
                outcomes[index] = await worker(index, chunk)
            completed += 1
            if on_progress:
                on_progress(completed, len(chunks))

        tasks = [asyncio.ensure_future(run_chunk(i, c)) for i, c in enumerate(chunks)]

        if self.fail_fast:
            try:
                await asyncio.gather(*tasks)
            except Exception:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
            result.succeeded = outcomes
            return result

        finished = await asyncio.gather(*tasks, return_exceptions=True)
        for index, outcome in enumerate(finished):
            if isinstance(outcome, Exception):
                logger.warning("Batch chunk %d failed: %s", index, outcome)
                result.failed.append((index, outcome))
            else:
                result.succeeded.append(outcomes[index])
        return result
