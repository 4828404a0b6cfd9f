"""Runtime configuration for the escape gateway.

All knobs come from environment variables and are clamped to safe values.

Environment variables:
- ESCAPE_BATCH_LIMIT: max operations per atomic batch (1..500, default 500).
- ESCAPE_RATE_LIMIT_WINDOW_SECONDS: submission window (default 3600).
- ESCAPE_RATE_LIMIT_MAX_SUBMISSIONS: submissions allowed per window (default 5).
- ESCAPE_IP_HASH_SALT: salt mixed into hashed caller identifiers.
- ESCAPE_DEVICE_COMMAND_TTL_SECONDS: device command lifetime (default 7 days).
- ESCAPE_LEGACY_COMPLETION_BY_STATUS: treat requests without requestedActions
  as complete once reviewed (default on).
- ESCAPE_STORE: "memory" or "sqlite" (default "memory").
- ESCAPE_DB_PATH: SQLite path when ESCAPE_STORE=sqlite.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

# Hard ceiling of the backing store; no batch may exceed it.
STORE_BATCH_CEILING = 500


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)).strip())
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class EngineConfig:
    batch_limit: int = STORE_BATCH_CEILING
    rate_limit_window_seconds: int = 3600
    rate_limit_max_submissions: int = 5
    ip_hash_salt: str = ""
    device_command_ttl_seconds: int = 7 * 24 * 3600
    legacy_completion_by_status: bool = True
    store_backend: str = "memory"
    db_path: str = "escape_gateway.db"

    @classmethod
    def from_env(cls) -> "EngineConfig":
        batch = _get_int("ESCAPE_BATCH_LIMIT", cls.batch_limit)
        window = _get_int("ESCAPE_RATE_LIMIT_WINDOW_SECONDS", cls.rate_limit_window_seconds)
        max_subs = _get_int("ESCAPE_RATE_LIMIT_MAX_SUBMISSIONS", cls.rate_limit_max_submissions)
        ttl = _get_int("ESCAPE_DEVICE_COMMAND_TTL_SECONDS", cls.device_command_ttl_seconds)
        backend = (os.getenv("ESCAPE_STORE", cls.store_backend) or cls.store_backend).strip().lower()

        # Clamp
        batch = max(1, min(batch, STORE_BATCH_CEILING))
        if window < 1:
            window = cls.rate_limit_window_seconds
        if max_subs < 1:
            max_subs = cls.rate_limit_max_submissions
        if ttl < 60:
            ttl = cls.device_command_ttl_seconds
        if backend not in ("memory", "sqlite"):
            backend = cls.store_backend

        return cls(
            batch_limit=batch,
            rate_limit_window_seconds=window,
            rate_limit_max_submissions=max_subs,
            ip_hash_salt=os.getenv("ESCAPE_IP_HASH_SALT", ""),
            device_command_ttl_seconds=ttl,
            legacy_completion_by_status=_env_bool("ESCAPE_LEGACY_COMPLETION_BY_STATUS", True),
            store_backend=backend,
            db_path=os.getenv("ESCAPE_DB_PATH", cls.db_path).strip() or cls.db_path,
        )
