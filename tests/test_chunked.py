import math

import pytest

from escape_gateway.chunked import PartialChunkFailure, apply_in_chunks, split
from escape_gateway.store import InMemoryDocumentStore


class FailingStore(InMemoryDocumentStore):
    """Fails the N-th committed batch."""

    def __init__(self, fail_on: int, **kwargs):
        super().__init__(**kwargs)
        self.fail_on = fail_on
        self._attempts = 0

    def _commit_ops(self, ops, preconditions):
        if len(ops) > 1:
            self._attempts += 1
            if self._attempts == self.fail_on:
                raise RuntimeError("backend unavailable")
        super()._commit_ops(ops, preconditions)


def _stage(batch, i):
    batch.set("deviceCommands", f"c{i:04d}", {"n": i, "sealed": True})


def test_split_sizes():
    chunks = split(list(range(1001)), 500)
    assert [len(c) for c in chunks] == [500, 500, 1]
    assert split([], 10) == []
    with pytest.raises(ValueError):
        split([1], 0)


@pytest.mark.asyncio
@pytest.mark.parametrize("n,chunk", [(1, 500), (499, 500), (500, 500), (501, 500), (1200, 500), (25, 10)])
async def test_commit_count_is_ceil_n_over_c(n, chunk):
    store = InMemoryDocumentStore()
    applied = await apply_in_chunks(store, list(range(n)), _stage, chunk_size=chunk)
    assert applied == n
    assert store.batch_commits == math.ceil(n / chunk)
    assert await store.count("deviceCommands") == n


@pytest.mark.asyncio
async def test_chunk_size_is_capped_by_store_limit():
    store = InMemoryDocumentStore(batch_limit=100)
    await apply_in_chunks(store, list(range(250)), _stage, chunk_size=10_000)
    assert store.batch_commits == 3


@pytest.mark.asyncio
async def test_empty_input_commits_nothing():
    store = InMemoryDocumentStore()
    assert await apply_in_chunks(store, [], _stage) == 0
    assert store.batch_commits == 0


@pytest.mark.asyncio
async def test_partial_failure_keeps_earlier_chunks_and_stops():
    store = FailingStore(fail_on=2)
    with pytest.raises(PartialChunkFailure) as ei:
        await apply_in_chunks(store, list(range(1200)), _stage, chunk_size=500)

    err = ei.value
    assert err.total_applied == 500
    assert err.failed_chunk == 2
    assert isinstance(err.cause, RuntimeError)
    # First chunk stays applied; the third was never attempted.
    assert await store.count("deviceCommands") == 500
    assert store.batch_commits == 1


@pytest.mark.asyncio
async def test_rerun_after_partial_failure_converges():
    store = FailingStore(fail_on=2)
    items = list(range(1200))
    with pytest.raises(PartialChunkFailure):
        await apply_in_chunks(store, items, _stage, chunk_size=500)
    await apply_in_chunks(store, items, _stage, chunk_size=500)
    assert await store.count("deviceCommands") == 1200
