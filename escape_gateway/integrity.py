"""Integrity digests for sealed audit records.

A digest is SHA-256 over the canonical JSON form of a record:

- keys sorted at every nesting level
- no insignificant whitespace
- strings (and keys) normalized to NFC
- non-finite floats and non-JSON types rejected

Two records holding the same values therefore hash identically no matter how
their fields were inserted. Verification recomputes the digest over every
field except the integrity fields themselves.
"""

from __future__ import annotations

import hashlib
import json
import math
import re
import unicodedata
from typing import Any, Dict, Mapping

from .errors import escape_error, INVALID_ARGUMENT

INTEGRITY_HASH_FIELD = "integrityHash"
SIGNATURE_FIELD = "integritySignature"
SIGNING_KEY_ID_FIELD = "signingKeyId"

# Attached after the digest is computed, never part of it.
INTEGRITY_FIELDS = frozenset({INTEGRITY_HASH_FIELD, SIGNATURE_FIELD, SIGNING_KEY_ID_FIELD})

_MAX_DEPTH = 64
_HEX64 = re.compile(r"^[0-9a-f]{64}$")


def _canonicalize(obj: Any, _path: str = "$", _depth: int = 0) -> Any:
    if _depth > _MAX_DEPTH:
        raise escape_error(INVALID_ARGUMENT, "max nesting depth exceeded", path=_path)

    if obj is None or isinstance(obj, bool):
        return obj
    if isinstance(obj, str):
        return unicodedata.normalize("NFC", obj)
    if isinstance(obj, int):
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise escape_error(INVALID_ARGUMENT, "non-finite float", path=_path)
        return obj

    if isinstance(obj, Mapping):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if not isinstance(k, str):
                raise escape_error(INVALID_ARGUMENT, "record key must be str", path=_path)
            nk = unicodedata.normalize("NFC", k)
            if nk in out:
                raise escape_error(INVALID_ARGUMENT, "duplicate key after unicode normalization", path=_path)
            out[nk] = _canonicalize(v, f"{_path}['{nk}']", _depth + 1)
        return out

    if isinstance(obj, (list, tuple)):
        return [_canonicalize(v, f"{_path}[{i}]", _depth + 1) for i, v in enumerate(obj)]

    raise escape_error(INVALID_ARGUMENT, "non-JSON-serializable type", path=_path, got=type(obj).__name__)


def canonical_json(obj: Any) -> str:
    """Deterministic JSON text for hashing."""
    return json.dumps(
        _canonicalize(obj),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def digest(record: Mapping[str, Any]) -> str:
    """SHA-256 hex digest (64 chars) of the canonical form of `record`."""
    return hashlib.sha256(canonical_json(record).encode("utf-8")).hexdigest()


def hashable_fields(record: Mapping[str, Any]) -> Dict[str, Any]:
    """The part of a stored record that its integrity digest covers."""
    return {k: v for k, v in record.items() if k not in INTEGRITY_FIELDS}


def seal_record(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of `record` with its integrity digest attached."""
    body = hashable_fields(record)
    out = dict(body)
    out[INTEGRITY_HASH_FIELD] = digest(body)
    return out


def is_well_formed_digest(value: Any) -> bool:
    return isinstance(value, str) and bool(_HEX64.match(value))


def verify_integrity(record: Mapping[str, Any]) -> bool:
    """Recompute and compare the digest of a stored record.

    Never raises: a missing, truncated or non-hex digest, or a record that no
    longer canonicalizes, simply fails verification.
    """
    stored = record.get(INTEGRITY_HASH_FIELD)
    if not is_well_formed_digest(stored):
        return False
    try:
        expected = digest(hashable_fields(record))
    except Exception:
        return False
    return expected == stored
