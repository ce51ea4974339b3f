#!/usr/bin/env python3
"""
Tests for chunked batch execution.
"""

import asyncio

import pytest

from integrations.batch import BatchExecutor, BatchResult, chunked


class TestChunked:
    """Test the chunking helper."""

    def test_even_and_remainder(self):
        assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]

    def test_empty(self):
        assert list(chunked([], 3)) == []

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            list(chunked([1], 0))


class TestBatchExecutor:
    """Test bounded concurrent execution."""

    def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            BatchExecutor(concurrency=0)

    @pytest.mark.asyncio
    async def test_results_in_chunk_order(self):
        """Test results keep chunk order even when chunks finish out of order."""

        async def worker(index, chunk):
            await asyncio.sleep(0.01 * (3 - index))
            return sum(chunk)

        executor = BatchExecutor(concurrency=3, chunk_size=2)
        result = await executor.run([1, 2, 3, 4, 5, 6], worker)

        assert result.succeeded == [3, 7, 11]
        assert result.total_chunks == 3
        assert result.total_items == 6
        assert result.ok

    @pytest.mark.asyncio
    async def test_concurrency_bound(self):
        in_flight = 0
        peak = 0

        async def worker(index, chunk):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return index

        executor = BatchExecutor(concurrency=2, chunk_size=1)
        await executor.run(list(range(6)), worker)
        assert peak == 2

    @pytest.mark.asyncio
    async def test_failures_collected(self):
        async def worker(index, chunk):
            if index == 1:
                raise RuntimeError("chunk failed")
            return index

        executor = BatchExecutor(concurrency=2, chunk_size=1)
        result = await executor.run(["a", "b", "c"], worker)

        assert result.succeeded == [0, 2]
        assert len(result.failed) == 1
        assert result.failed[0][0] == 1
        assert not result.ok
        with pytest.raises(RuntimeError):
            result.raise_for_failures()

    @pytest.mark.asyncio
    async def test_fail_fast(self):
        started = []

        async def worker(index, chunk):
            started.append(index)
            if index == 0:
                raise RuntimeError("first chunk failed")
            await asyncio.sleep(1)
            return index

        executor = BatchExecutor(concurrency=1, chunk_size=1, fail_fast=True)
        with pytest.raises(RuntimeError):
            await executor.run([1, 2, 3], worker)
        assert 2 not in started

    @pytest.mark.asyncio
    async def test_progress_callback(self):
        progress = []

        async def worker(index, chunk):
            return chunk

        executor = BatchExecutor(concurrency=1, chunk_size=2)
        await executor.run(
            [1, 2, 3], worker, on_progress=lambda done, total: progress.append((done, total))
        )
        assert progress == [(1, 2), (2, 2)]

    @pytest.mark.asyncio
    async def test_empty_input(self):
        async def worker(index, chunk):
            raise AssertionError("not called")

        result = await BatchExecutor().run([], worker)
        assert result == BatchResult()
