"""Sealed-record access for the safety, legal and compliance teams.

Three privileged surfaces and one ordinary one:

- sealing (safety team): seal every record of a request, or a listed subset
- unsealing (legal team only): requires a court order reference and a long
  legal justification
- sealed reads (compliance or legal): every read is itself logged to the
  sealed access log
- the family audit log (guardians): sealed entries never appear here
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List

from .auth import Capabilities
from .context import EngineContext
from .errors import FAILED_PRECONDITION, NOT_FOUND, PERMISSION_DENIED, escape_error
from .integrity import verify_integrity
from .models import FamilyAuditQuery, SealedQueryInput, SealInput, UnsealInput
from .registry import Collection, SealReason
from .sealing import EntryRef
from .store import Document, Filter
from .verification import require_family

logger = logging.getLogger("escape_gateway.compliance")

SEALED_ACCESS_ACTION = "sealed-audit-access"


async def seal_escape_audit_entries(ctx: EngineContext, actor_id: str, data: SealInput) -> Dict[str, Any]:
    # Sealing only ever hides records, so it does not wait for the verification gate.
    request = await ctx.store.get(Collection.SAFETY_REQUESTS.value, data.safety_request_id)
    if request is None:
        raise escape_error(NOT_FOUND, "Safety request not found")
    if request.get("familyId") and request["familyId"] != data.family_id:
        raise escape_error(FAILED_PRECONDITION, "Safety request does not match the specified family")

    if data.entry_ids:
        refs = [EntryRef(e.collection, e.id) for e in data.entry_ids]
        result = await ctx.sealer.seal_entries(
            refs,
            data.safety_request_id,
            data.family_id,
            actor_id,
            (data.seal_reason or SealReason.MANUAL).value,
            data.reason,
        )
    else:
        result = await ctx.sealer.seal(
            data.safety_request_id,
            data.family_id,
            actor_id,
            (data.seal_reason or SealReason.ESCAPE_ACTION).value,
            data.reason,
        )

    return {
        "sealed": True,
        "totalSealed": result["totalSealed"],
        "byCollection": result["byCollection"],
        "alreadySealed": result["alreadySealed"],
        "sealedAt": result["sealedAt"],
        "familyId": data.family_id,
        "safetyRequestId": data.safety_request_id,
    }


async def unseal_audit_entries(ctx: EngineContext, actor_id: str, data: UnsealInput) -> Dict[str, Any]:
    refs = [EntryRef(e.collection, e.id) for e in data.entries]
    return await ctx.sealer.unseal(
        refs,
        actor_id,
        legal_justification=data.legal_justification,
        court_order_reference=data.court_order_reference,
        case_number=data.case_number,
        requesting_party=data.requesting_party,
    )


def _in_range(doc: Document, start: datetime, end: datetime) -> bool:
    try:
        ts = datetime.fromisoformat(str(doc.data.get("timestamp")))
    except (TypeError, ValueError):
        return False
    if ts.tzinfo is None:
        return False
    return start <= ts <= end


async def get_sealed_audit_entries(ctx: EngineContext, caps: Capabilities, data: SealedQueryInput) -> Dict[str, Any]:
    filters: List[Filter] = [("familyId", "==", data.family_id), ("sealed", "==", True)]
    if data.action_types:
        filters.append(("action", "in", list(data.action_types)))

    docs = await ctx.store.query(
        Collection.ADMIN_AUDIT_LOG.value,
        filters,
        order_by="timestamp",
        descending=True,
    )
    if data.date_range is not None:
        docs = [d for d in docs if _in_range(d, data.date_range.start, data.date_range.end)]
    docs = docs[: data.limit]

    entries = []
    for d in docs:
        entry = {"id": d.id, **d.data, "integrityVerified": verify_integrity(d.data)}
        if ctx.signer is not None:
            entry["signatureVerified"] = ctx.signer.verify_record(d.data)
        entries.append(entry)

    await ctx.audit.append(
        collection=Collection.SEALED_AUDIT_ACCESS_LOG,
        action=SEALED_ACCESS_ACTION,
        resource_type="adminAuditLog",
        resource_id=data.family_id,
        performed_by=caps.uid,
        family_id=data.family_id,
        seal_reason=SealReason.MANUAL.value,
        details={
            "accessorRole": "legal" if caps.is_legal_team else "compliance",
            "justification": data.justification,
            "query": {
                "dateRange": None if data.date_range is None else {
                    "start": data.date_range.start.isoformat(),
                    "end": data.date_range.end.isoformat(),
                },
                "actionTypes": data.action_types,
                "limit": data.limit,
            },
            "resultCount": len(entries),
        },
    )
    return {"entries": entries, "count": len(entries)}


async def get_family_audit_log(ctx: EngineContext, actor_id: str, data: FamilyAuditQuery) -> Dict[str, Any]:
    family = await require_family(ctx.store, data.family_id)
    if actor_id not in (family.get("guardianUids") or []):
        raise escape_error(PERMISSION_DENIED, "Guardian access required")

    docs = await ctx.store.query(
        Collection.FAMILY_AUDIT_LOG.value,
        [("familyId", "==", data.family_id), ("sealed", "!=", True)],
        order_by="timestamp",
        descending=True,
        limit=data.limit,
    )
    entries = [{"id": d.id, **d.data} for d in docs]
    return {"entries": entries, "count": len(entries)}
