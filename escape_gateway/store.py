"""Async document store boundary.

Handlers never talk to a database directly. They use a `DocumentStore`, which
offers:

- point reads, filtered queries and counts over named collections
- atomic write batches of at most `batch_limit` operations
- optimistic single-round transactions (`run_transaction`)

Transactions record the version of every document they read and buffer their
writes. At commit the backend re-checks those versions; if any changed, the
whole transaction is retried (up to `MAX_TRANSACTION_ATTEMPTS` times) and
finally fails with `TransactionConflict`.

Backends implement three primitives: `_read`, `_scan` and `_commit_ops`.
Everything else is shared.
"""

from __future__ import annotations

import copy
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from .config import STORE_BATCH_CEILING
from .errors import BatchLimitExceeded, DocumentNotFound, TransactionConflict

T = TypeVar("T")

MAX_TRANSACTION_ATTEMPTS = 5

# (field path, operator, value)
Filter = Tuple[str, str, Any]

FILTER_OPS = frozenset({"==", "!=", "in", "not-in", "array-contains", "<", "<=", ">", ">="})

# Version recorded for a document that did not exist when read.
MISSING = 0


# ---------------------------
# Documents and write ops
# ---------------------------

@dataclass(frozen=True)
class Document:
    collection: str
    id: str
    data: Dict[str, Any]

    def get(self, path: str, default: Any = None) -> Any:
        value = lookup(self.data, path)
        return default if value is None else value


@dataclass
class WriteOp:
    kind: str  # "set" | "update" | "delete"
    collection: str
    doc_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    merge: bool = False


def lookup(data: Dict[str, Any], path: str) -> Any:
    """Resolve a dotted field path; missing segments yield None."""
    cur: Any = data
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return None
        cur = cur[part]
    return cur


def _assign(data: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = data
    for part in parts[:-1]:
        nxt = cur.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            cur[part] = nxt
        cur = nxt
    cur[parts[-1]] = value


def _deep_merge(base: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in incoming.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out


def apply_op(current: Optional[Dict[str, Any]], op: WriteOp) -> Optional[Dict[str, Any]]:
    """Return the document that results from applying `op` to `current`.

    `None` means the document does not exist (before) or is deleted (after).
    """
    if op.kind == "delete":
        return None
    if op.kind == "set":
        if op.merge and current is not None:
            return _deep_merge(current, op.data)
        return copy.deepcopy(op.data)
    if op.kind == "update":
        if current is None:
            raise DocumentNotFound(op.collection, op.doc_id)
        out = copy.deepcopy(current)
        for path, value in op.data.items():
            _assign(out, path, copy.deepcopy(value))
        return out
    raise ValueError(f"unknown write op: {op.kind}")


def matches(data: Dict[str, Any], filters: Sequence[Filter]) -> bool:
    for path, op, expected in filters:
        actual = lookup(data, path)
        if op == "==":
            ok = actual == expected
        elif op == "!=":
            ok = actual != expected
        elif op == "in":
            ok = actual in expected
        elif op == "not-in":
            ok = actual not in expected
        elif op == "array-contains":
            ok = isinstance(actual, list) and expected in actual
        else:
            if actual is None:
                return False
            try:
                if op == "<":
                    ok = actual < expected
                elif op == "<=":
                    ok = actual <= expected
                elif op == ">":
                    ok = actual > expected
                elif op == ">=":
                    ok = actual >= expected
                else:
                    raise ValueError(f"unsupported filter operator: {op}")
            except TypeError:
                ok = False
        if not ok:
            return False
    return True


def _validate_filters(filters: Sequence[Filter]) -> None:
    for f in filters:
        if len(f) != 3 or f[1] not in FILTER_OPS:
            raise ValueError(f"unsupported filter: {f!r}")


# ---------------------------
# Batches and transactions
# ---------------------------

class WriteBatch:
    """Atomic group of writes, committed all-or-nothing."""

    def __init__(self, store: "DocumentStore", limit: int):
        self._store = store
        self._limit = int(limit)
        self._ops: List[WriteOp] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._ops)

    def _stage(self, op: WriteOp) -> "WriteBatch":
        if self._committed:
            raise RuntimeError("batch already committed")
        if len(self._ops) >= self._limit:
            raise BatchLimitExceeded(f"batch exceeds {self._limit} operations")
        self._ops.append(op)
        return self

    def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> "WriteBatch":
        return self._stage(WriteOp("set", collection, doc_id, dict(data), merge))

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> "WriteBatch":
        return self._stage(WriteOp("update", collection, doc_id, dict(fields)))

    def delete(self, collection: str, doc_id: str) -> "WriteBatch":
        return self._stage(WriteOp("delete", collection, doc_id))

    async def commit(self) -> None:
        if self._committed:
            raise RuntimeError("batch already committed")
        if self._ops:
            self._store._commit_ops(self._ops, {})
            self._store.batch_commits += 1
        self._committed = True


class Transaction:
    """Reads are versioned; writes are buffered until the transaction commits."""

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._reads: Dict[Tuple[str, str], int] = {}
        self._ops: List[WriteOp] = []

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        row = self._store._read(collection, doc_id)
        if row is None:
            self._reads[(collection, doc_id)] = MISSING
            return None
        data, version = row
        self._reads[(collection, doc_id)] = version
        return copy.deepcopy(data)

    def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        self._ops.append(WriteOp("set", collection, doc_id, dict(data), merge))

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        self._ops.append(WriteOp("update", collection, doc_id, dict(fields)))

    def delete(self, collection: str, doc_id: str) -> None:
        self._ops.append(WriteOp("delete", collection, doc_id))


# ---------------------------
# Store base
# ---------------------------

class DocumentStore(ABC):
    """Collection/document store with batches and optimistic transactions."""

    batch_limit: int = STORE_BATCH_CEILING

    def __init__(self) -> None:
        self.batch_commits = 0

    # Backend primitives -------------------------------------------------

    @abstractmethod
    def _read(self, collection: str, doc_id: str) -> Optional[Tuple[Dict[str, Any], int]]:
        """Return (data, version) or None."""

    @abstractmethod
    def _scan(self, collection: str) -> Iterable[Tuple[str, Dict[str, Any]]]:
        """Yield (doc_id, data) for every document in a collection."""

    @abstractmethod
    def _commit_ops(self, ops: Sequence[WriteOp], preconditions: Dict[Tuple[str, str], int]) -> None:
        """Apply `ops` atomically if every precondition version still holds.

        Raises TransactionConflict on a version mismatch and DocumentNotFound
        when an update targets a missing document. Nothing is applied in
        either case.
        """

    # Reads ---------------------------------------------------------------

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        row = self._read(collection, doc_id)
        return None if row is None else copy.deepcopy(row[0])

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Document]:
        _validate_filters(filters)
        docs = [
            Document(collection, doc_id, copy.deepcopy(data))
            for doc_id, data in self._scan(collection)
            if matches(data, filters)
        ]
        if order_by:
            # Documents without the field sort last in either direction.
            present = [d for d in docs if lookup(d.data, order_by) is not None]
            absent = [d for d in docs if lookup(d.data, order_by) is None]
            present.sort(key=lambda d: lookup(d.data, order_by), reverse=descending)
            docs = present + absent
        else:
            docs.sort(key=lambda d: d.id)
        if offset:
            docs = docs[int(offset):]
        if limit is not None:
            docs = docs[: int(limit)]
        return docs

    async def count(self, collection: str, filters: Sequence[Filter] = ()) -> int:
        _validate_filters(filters)
        return sum(1 for _, data in self._scan(collection) if matches(data, filters))

    # Writes --------------------------------------------------------------

    def batch(self) -> WriteBatch:
        return WriteBatch(self, self.batch_limit)

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex
        self._commit_ops([WriteOp("set", collection, doc_id, dict(data))], {(collection, doc_id): MISSING})
        return doc_id

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        self._commit_ops([WriteOp("set", collection, doc_id, dict(data), merge)], {})

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        self._commit_ops([WriteOp("update", collection, doc_id, dict(fields))], {})

    async def delete(self, collection: str, doc_id: str) -> None:
        self._commit_ops([WriteOp("delete", collection, doc_id)], {})

    async def run_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        max_attempts: int = MAX_TRANSACTION_ATTEMPTS,
    ) -> T:
        for _ in range(max(1, int(max_attempts))):
            txn = Transaction(self)
            result = await fn(txn)
            try:
                self._commit_ops(txn._ops, txn._reads)
            except TransactionConflict:
                continue
            return result
        raise TransactionConflict(f"transaction did not commit after {max_attempts} attempts")


class InMemoryDocumentStore(DocumentStore):
    """Process-local store. Used in tests and single-process deployments."""

    def __init__(self, batch_limit: int = STORE_BATCH_CEILING):
        super().__init__()
        self.batch_limit = max(1, min(int(batch_limit), STORE_BATCH_CEILING))
        self._docs: Dict[str, Dict[str, Tuple[Dict[str, Any], int]]] = {}
        self._seq = 0
        self._lock = threading.Lock()

    def _read(self, collection: str, doc_id: str) -> Optional[Tuple[Dict[str, Any], int]]:
        with self._lock:
            return self._docs.get(collection, {}).get(doc_id)

    def _scan(self, collection: str) -> Iterable[Tuple[str, Dict[str, Any]]]:
        with self._lock:
            rows = list(self._docs.get(collection, {}).items())
        return [(doc_id, data) for doc_id, (data, _) in rows]

    def _commit_ops(self, ops: Sequence[WriteOp], preconditions: Dict[Tuple[str, str], int]) -> None:
        with self._lock:
            for (coll, doc_id), expected in preconditions.items():
                row = self._docs.get(coll, {}).get(doc_id)
                current = MISSING if row is None else row[1]
                if current != expected:
                    raise TransactionConflict(f"{coll}/{doc_id}")

            # Stage into a scratch view so a failing op leaves nothing applied.
            staged: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}
            for op in ops:
                key = (op.collection, op.doc_id)
                if key in staged:
                    current = staged[key]
                else:
                    row = self._docs.get(op.collection, {}).get(op.doc_id)
                    current = None if row is None else row[0]
                staged[key] = apply_op(current, op)

            for (coll, doc_id), data in staged.items():
                docs = self._docs.setdefault(coll, {})
                if data is None:
                    docs.pop(doc_id, None)
                else:
                    self._seq += 1
                    docs[doc_id] = (data, self._seq)
