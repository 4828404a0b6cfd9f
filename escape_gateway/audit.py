"""Sealed admin-audit entries.

Every escape action, seal, unseal and reviewer update leaves one entry in
`adminAuditLog`. Entries written here are born sealed: they carry
`sealed=True` plus seal metadata, and their integrity digest is computed over
that final form, so the seal engine never needs to touch them again.

Entry shape:

    {action, resourceType, resourceId, performedBy, familyId, timestamp,
     sealed, sealedAt, sealedBy, sealReason, safetyRequestId, details,
     integrityHash[, integritySignature, signingKeyId]}

Note: the digest makes edits detectable, not impossible. An attacker with
store write access can recompute it unless an audit signer is configured.
"""

from __future__ import annotations

import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from .integrity import seal_record
from .registry import Collection, SealReason
from .signing import AuditSigner
from .store import DocumentStore, WriteBatch

Clock = Callable[[], datetime]

logger = logging.getLogger("escape_gateway.audit")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AuditWriter:
    """Builds and stores integrity-hashed audit entries."""

    def __init__(
        self,
        store: DocumentStore,
        signer: Optional[AuditSigner] = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.signer = signer
        self.clock = clock

    def build_entry(
        self,
        action: str,
        resource_type: str,
        resource_id: str,
        performed_by: Optional[str],
        family_id: Optional[str] = None,
        safety_request_id: Optional[str] = None,
        seal_reason: str = SealReason.ESCAPE_ACTION.value,
        details: Optional[Dict[str, Any]] = None,
        sealed: bool = True,
    ) -> Dict[str, Any]:
        ts = self.clock().isoformat()
        entry: Dict[str, Any] = {
            "action": action,
            "resourceType": resource_type,
            "resourceId": resource_id,
            "performedBy": performed_by,
            "familyId": family_id,
            "timestamp": ts,
            "sealed": bool(sealed),
            "details": dict(details or {}),
        }
        if sealed:
            entry["sealedAt"] = ts
            entry["sealedBy"] = performed_by
            entry["sealReason"] = str(seal_reason)
        if safety_request_id is not None:
            entry["safetyRequestId"] = safety_request_id

        entry = seal_record(entry)
        if self.signer is not None:
            entry = self.signer.attach(entry)
        return entry

    async def append(self, collection: Collection = Collection.ADMIN_AUDIT_LOG, **kwargs: Any) -> str:
        """Write one entry and return its id."""
        return await self.store.add(collection.value, self.build_entry(**kwargs))

    def stage(self, batch: WriteBatch, doc_id: str, collection: Collection = Collection.ADMIN_AUDIT_LOG, **kwargs: Any) -> Dict[str, Any]:
        """Stage an entry into an existing batch so it commits with other writes."""
        entry = self.build_entry(**kwargs)
        batch.set(collection.value, doc_id, entry)
        return entry

    async def record_internal_error(
        self,
        operation: str,
        error_id: str,
        exc: BaseException,
        actor_id: Optional[str],
    ) -> None:
        """Keep the full failure detail where only the legal path can read it."""
        detail = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        await self.append(
            action=f"{operation}_error",
            resource_type="error",
            resource_id=error_id,
            performed_by=actor_id,
            seal_reason=SealReason.MANUAL.value,
            details={
                "errorId": error_id,
                "errorType": type(exc).__name__,
                "errorMessage": str(exc),
                "traceback": detail,
            },
        )
