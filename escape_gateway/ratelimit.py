"""Store-backed sliding-window rate limiting for escape submissions.

The limiter is keyed by a hashed caller identifier (see `hash_caller_key`);
raw IP addresses never reach the store. Each key owns one `rateLimits`
document holding the epoch timestamps of its recent submissions:

    {key: <hashed>, submissions: [epochSeconds, ...], updatedAt: epochSeconds}

The check-and-append runs inside a single-document transaction so concurrent
submissions from one key cannot both squeeze under the limit.

Storage failures fail OPEN: a victim trying to reach help must not be turned
away because the limiter's backing store is unhealthy. Every such event is
logged and counted.
"""

from __future__ import annotations

import hashlib
import logging
import time
from typing import Callable

from .metrics import record_fail_open
from .registry import Collection
from .store import DocumentStore, Transaction

logger = logging.getLogger("escape_gateway.ratelimit")


def hash_caller_key(raw: str, salt: str = "") -> str:
    """SHA-256 hex of salt + raw identifier."""
    return hashlib.sha256((salt + (raw or "")).encode("utf-8")).hexdigest()


class SubmissionRateLimiter:
    def __init__(
        self,
        store: DocumentStore,
        window_seconds: int = 3600,
        max_submissions: int = 5,
        clock: Callable[[], float] = time.time,
    ):
        if window_seconds <= 0 or max_submissions <= 0:
            raise ValueError("window_seconds and max_submissions must be positive")
        self.store = store
        self.window_seconds = int(window_seconds)
        self.max_submissions = int(max_submissions)
        self.clock = clock

    async def allow(self, hashed_key: str) -> bool:
        """Record one submission for `hashed_key` if the window has room."""
        now = float(self.clock())

        async def _txn(txn: Transaction) -> bool:
            doc = await txn.get(Collection.RATE_LIMITS.value, hashed_key)
            if doc is None:
                txn.set(Collection.RATE_LIMITS.value, hashed_key, {
                    "key": hashed_key,
                    "submissions": [now],
                    "updatedAt": now,
                })
                return True

            recent = [
                float(t) for t in doc.get("submissions") or []
                if now - float(t) < self.window_seconds
            ]
            if len(recent) >= self.max_submissions:
                return False
            recent.append(now)
            txn.set(Collection.RATE_LIMITS.value, hashed_key, {
                "key": hashed_key,
                "submissions": recent,
                "updatedAt": now,
            })
            return True

        try:
            return await self.store.run_transaction(_txn)
        except Exception as e:
            logger.warning("rate limit check failed, allowing submission (%s)", type(e).__name__)
            record_fail_open("ratelimit")
            return True
