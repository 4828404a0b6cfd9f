"""Escape Gateway package.

Sealed audit and escape-propagation engine for shared-family monitoring:

- integrity-hashed (optionally Ed25519-signed) sealed audit entries
- seal / unseal propagation across related record collections
- a verification gate in front of every escape action
- chunked bulk mutation under a fixed per-batch operation ceiling
- rate-limited anonymous escape request submission

Convenience imports
------------------
The package avoids heavy import-time side effects. These are available as
top-level imports and are loaded lazily:

    from escape_gateway import EscapeGateway, create_app, Capabilities
    from escape_gateway import InMemoryDocumentStore, SQLiteDocumentStore
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments."""

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except Exception:
        return None


__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "EscapeGateway",
    "create_app",
    "Capabilities",
    "EscapeError",
    "EngineConfig",
    "InMemoryDocumentStore",
    "SQLiteDocumentStore",
    "AuditSigner",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "EscapeGateway": ("escape_gateway.gateway", "EscapeGateway"),
    "create_app": ("escape_gateway.server", "create_app"),
    "Capabilities": ("escape_gateway.auth", "Capabilities"),
    "EscapeError": ("escape_gateway.errors", "EscapeError"),
    "EngineConfig": ("escape_gateway.config", "EngineConfig"),
    "InMemoryDocumentStore": ("escape_gateway.store", "InMemoryDocumentStore"),
    "SQLiteDocumentStore": ("escape_gateway.sqlite_store", "SQLiteDocumentStore"),
    "AuditSigner": ("escape_gateway.signing", "AuditSigner"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name), attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'escape_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
