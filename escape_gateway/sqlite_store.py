"""SQLite-backed document store.

Storage properties:
- one `documents` table keyed by (collection, id), data stored as JSON text
- every write stamps a fresh value from a store-wide sequence as the row
  version, which transactions compare at commit
- secure_delete + WAL, as deleted notification rows may hold sensitive text

NOTE: secure_delete zeroes freed pages but WAL frames and backups may still
hold old data. Use encrypted storage where forensic recovery matters.

Filters are evaluated in Python after loading a collection. The store is
meant for single-node deployments with modest collection sizes.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

from .config import STORE_BATCH_CEILING
from .errors import TransactionConflict
from .lockdown import LockdownPolicy, StoreGuard
from .store import MISSING, DocumentStore, WriteOp, apply_op

logger = logging.getLogger("escape_gateway.sqlite_store")


def _dumps(data: Dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class SQLiteDocumentStore(DocumentStore):
    """Persistent document store that locks down under repeated storage failures."""

    def __init__(
        self,
        db_path: str = "escape_gateway.db",
        batch_limit: int = STORE_BATCH_CEILING,
        lockdown: Optional[LockdownPolicy] = None,
        busy_timeout_seconds: float = 5.0,
    ):
        super().__init__()
        self.db_path = db_path
        self.batch_limit = max(1, min(int(batch_limit), STORE_BATCH_CEILING))
        self.busy_timeout_seconds = float(busy_timeout_seconds)
        self.guard = StoreGuard(lockdown)
        self._init_db()

    @contextmanager
    def _db(self, op_name: str):
        """Open a connection for one store operation, under the lockdown guard."""
        with self.guard.operation(op_name):
            conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout_seconds, isolation_level=None)
            try:
                yield conn
            finally:
                conn.close()

    def _init_db(self) -> None:
        with self._db("init") as conn:
            conn.execute("PRAGMA secure_delete = ON")
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_seconds * 1000)}")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                id TEXT NOT NULL,
                data TEXT NOT NULL,
                version INTEGER NOT NULL,
                PRIMARY KEY (collection, id)
            )
            """)
            conn.execute("""
            CREATE TABLE IF NOT EXISTS version_seq (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                value INTEGER NOT NULL
            )
            """)
            conn.execute("INSERT OR IGNORE INTO version_seq (id, value) VALUES (1, 0)")

    # ---------------------------
    # Primitives
    # ---------------------------

    def _read(self, collection: str, doc_id: str) -> Optional[Tuple[Dict[str, Any], int]]:
        with self._db("read") as conn:
            row = conn.execute(
                "SELECT data, version FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            ).fetchone()
        if row is None:
            return None
        return json.loads(row[0]), int(row[1])

    def _scan(self, collection: str) -> Iterable[Tuple[str, Dict[str, Any]]]:
        with self._db("scan") as conn:
            rows = conn.execute(
                "SELECT id, data FROM documents WHERE collection = ?",
                (collection,),
            ).fetchall()
        return [(r[0], json.loads(r[1])) for r in rows]

    def _commit_ops(self, ops: Sequence[WriteOp], preconditions: Dict[Tuple[str, str], int]) -> None:
        with self._db("commit") as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for (coll, doc_id), expected in preconditions.items():
                    row = conn.execute(
                        "SELECT version FROM documents WHERE collection = ? AND id = ?",
                        (coll, doc_id),
                    ).fetchone()
                    current = MISSING if row is None else int(row[0])
                    if current != expected:
                        raise TransactionConflict(f"{coll}/{doc_id}")

                for op in ops:
                    row = conn.execute(
                        "SELECT data FROM documents WHERE collection = ? AND id = ?",
                        (op.collection, op.doc_id),
                    ).fetchone()
                    current = None if row is None else json.loads(row[0])
                    result = apply_op(current, op)
                    if result is None:
                        conn.execute(
                            "DELETE FROM documents WHERE collection = ? AND id = ?",
                            (op.collection, op.doc_id),
                        )
                        continue
                    conn.execute("UPDATE version_seq SET value = value + 1 WHERE id = 1")
                    version = conn.execute("SELECT value FROM version_seq WHERE id = 1").fetchone()[0]
                    conn.execute(
                        """
                        INSERT INTO documents (collection, id, data, version) VALUES (?, ?, ?, ?)
                        ON CONFLICT(collection, id) DO UPDATE SET data = excluded.data, version = excluded.version
                        """,
                        (op.collection, op.doc_id, _dumps(result), int(version)),
                    )
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
