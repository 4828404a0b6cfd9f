"""Chunked batch writer.

The store commits at most `batch_limit` operations atomically. Larger mutation
sets are split into chunks and committed one after another. There is no
atomicity across chunks: if chunk k fails, chunks before it stay applied and
chunks after it are never attempted. Callers stage set-to-value mutations, so
re-running the whole operation after a partial failure is safe.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, Sequence, TypeVar

from .config import STORE_BATCH_CEILING
from .lockdown import StorageLockdownError
from .metrics import CHUNK_COMMITS
from .store import DocumentStore, WriteBatch

T = TypeVar("T")

logger = logging.getLogger("escape_gateway.chunked")


class PartialChunkFailure(RuntimeError):
    """A chunk failed after `total_applied` items had already been committed."""

    def __init__(self, total_applied: int, failed_chunk: int, cause: BaseException):
        super().__init__(f"chunk {failed_chunk} failed after {total_applied} items applied")
        self.total_applied = total_applied
        self.failed_chunk = failed_chunk
        self.cause = cause


def split(items: Sequence[T], chunk_size: int) -> List[Sequence[T]]:
    if chunk_size < 1:
        raise ValueError("chunk_size must be positive")
    return [items[i:i + chunk_size] for i in range(0, len(items), chunk_size)]


async def apply_in_chunks(
    store: DocumentStore,
    items: Sequence[T],
    stage: Callable[[WriteBatch, T], None],
    chunk_size: Optional[int] = None,
) -> int:
    """Stage each item into a batch and commit batches of `chunk_size`.

    Returns the number of items applied. Raises PartialChunkFailure (with the
    applied count and 1-based chunk number) if any chunk fails.
    """
    size = min(int(chunk_size or store.batch_limit), store.batch_limit, STORE_BATCH_CEILING)
    applied = 0
    for index, chunk in enumerate(split(items, size), start=1):
        try:
            batch = store.batch()
            for item in chunk:
                stage(batch, item)
            await batch.commit()
        except Exception as e:
            CHUNK_COMMITS.labels(outcome="lockdown" if isinstance(e, StorageLockdownError) else "failed").inc()
            logger.error("chunk %d failed after %d items applied: %s", index, applied, type(e).__name__)
            raise PartialChunkFailure(applied, index, e) from e
        CHUNK_COMMITS.labels(outcome="committed").inc()
        applied += len(chunk)
    return applied
