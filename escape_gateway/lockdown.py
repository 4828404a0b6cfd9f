"""Fail-closed guard for the SQLite document store.

Escape actions commit their side effects as a run of chunks. When the
database starts refusing writes halfway through, carrying on only produces
more partially applied actions that a reviewer has to re-run. The guard
counts consecutive failed or slow store operations; once `trip_after` of them
pile up it refuses every store operation for `hold_seconds`, so handlers stop
at the next chunk with a PartialChunkFailure instead of limping along.

The rate limiter and completion tracker fail open on storage errors. A
refusal reaches them as an ordinary error, so they keep that behaviour.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from .config import _env_bool, _get_int
from .metrics import STORE_LOCKDOWN_TRIPS

logger = logging.getLogger("escape_gateway.lockdown")

CONTENTION_CODES = ("SQLITE_BUSY", "SQLITE_LOCKED")


class StorageLockdownError(RuntimeError):
    """The store refused an operation while locked down."""

    def __init__(self, retry_after: float):
        super().__init__(f"store locked down, retry in {retry_after:.0f}s")
        self.retry_after = retry_after


def is_contention(exc: BaseException) -> bool:
    """True for SQLite busy/locked errors (including extended codes)."""
    name = getattr(exc, "sqlite_errorname", None)
    if name:
        return str(name).startswith(CONTENTION_CODES)
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


@dataclass(frozen=True)
class LockdownPolicy:
    """When the store guard trips and for how long.

    Environment variables:
    - ESCAPE_STORE_LOCKDOWN_AFTER: consecutive failures that trip the guard.
    - ESCAPE_STORE_LOCKDOWN_SECONDS: how long every store op is refused.
    - ESCAPE_STORE_SLOW_OP_MS: an op at least this slow counts as a failure.
    - ESCAPE_STORE_LOCKDOWN_ANY_ERROR: count every OperationalError, not just
      busy/locked contention (default on).
    """

    trip_after: int = 3
    hold_seconds: int = 30
    slow_op_ms: int = 1000
    any_error: bool = True

    @classmethod
    def from_env(cls) -> "LockdownPolicy":
        trip_after = _get_int("ESCAPE_STORE_LOCKDOWN_AFTER", cls.trip_after)
        hold = _get_int("ESCAPE_STORE_LOCKDOWN_SECONDS", cls.hold_seconds)
        slow = _get_int("ESCAPE_STORE_SLOW_OP_MS", cls.slow_op_ms)
        return cls(
            trip_after=max(1, trip_after),
            hold_seconds=max(1, hold),
            slow_op_ms=slow if slow > 0 else cls.slow_op_ms,
            any_error=_env_bool("ESCAPE_STORE_LOCKDOWN_ANY_ERROR", cls.any_error),
        )


class StoreGuard:
    def __init__(
        self,
        policy: Optional[LockdownPolicy] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.policy = policy or LockdownPolicy.from_env()
        self._monotonic = monotonic
        self._strikes = 0
        self._locked_until = 0.0

    @property
    def strikes(self) -> int:
        return self._strikes

    def locked(self) -> bool:
        return self._monotonic() < self._locked_until

    def retry_after(self) -> float:
        return max(0.0, self._locked_until - self._monotonic())

    @contextmanager
    def operation(self, op: str) -> Iterator[None]:
        """Wrap one store operation; refuses it outright while locked down."""
        if self.locked():
            raise StorageLockdownError(self.retry_after())
        start = self._monotonic()
        try:
            yield
        except sqlite3.OperationalError as e:
            if self.policy.any_error or is_contention(e):
                self._strike(op, "error")
            raise
        elapsed_ms = (self._monotonic() - start) * 1000.0
        if elapsed_ms >= self.policy.slow_op_ms:
            logger.warning("slow store op %s: %.1fms", op, elapsed_ms)
            self._strike(op, "slow")
        else:
            self._strikes = 0

    def _strike(self, op: str, cause: str) -> None:
        self._strikes += 1
        if self._strikes < self.policy.trip_after:
            return
        self._strikes = 0
        self._locked_until = self._monotonic() + float(self.policy.hold_seconds)
        STORE_LOCKDOWN_TRIPS.labels(op=op, cause=cause).inc()
        logger.error("store locked down for %ds after repeated %s on %s", self.policy.hold_seconds, cause, op)
