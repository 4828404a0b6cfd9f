"""Stable error taxonomy for the escape gateway.

Every operation raises a single exception type, `EscapeError`, carrying a
machine-readable `code` from the list below.

Design goals:
- Stable `code` string suitable for programmatic handling by the caller.
- `http_status` for the transport layer.
- Messages are generic. They never contain caller-supplied reason or
  justification text, and never name identifiers the caller did not supply.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


UNAUTHENTICATED = "unauthenticated"
PERMISSION_DENIED = "permission-denied"
INVALID_ARGUMENT = "invalid-argument"
NOT_FOUND = "not-found"
FAILED_PRECONDITION = "failed-precondition"
RESOURCE_EXHAUSTED = "resource-exhausted"
ABORTED = "aborted"
INTERNAL = "internal"

HTTP_STATUS_BY_CODE: Dict[str, int] = {
    UNAUTHENTICATED: 401,
    PERMISSION_DENIED: 403,
    INVALID_ARGUMENT: 400,
    NOT_FOUND: 404,
    FAILED_PRECONDITION: 412,
    RESOURCE_EXHAUSTED: 429,
    ABORTED: 409,
    INTERNAL: 500,
}


@dataclass
class EscapeError(Exception):
    """Base gateway exception with stable error code."""

    code: str
    message: str
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def escape_error(code: str, message: str, **details: Any) -> EscapeError:
    return EscapeError(
        code=code,
        message=message,
        http_status=HTTP_STATUS_BY_CODE.get(code, 400),
        details=details,
    )


class DocumentNotFound(LookupError):
    """Raised by a store when an update targets a document that does not exist."""

    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id}")
        self.collection = collection
        self.doc_id = doc_id


class BatchLimitExceeded(ValueError):
    """Raised when a single write batch stages more operations than the store allows."""


class TransactionConflict(RuntimeError):
    """Raised when a document read inside a transaction changed before commit."""
