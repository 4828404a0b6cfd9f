"""Escape request lifecycle: anonymous submission and reviewer updates.

Submission is open to anyone, signed in or not, and rate limited on a hashed
client address. Requests start `pending` with nothing verified and nothing
requested. Safety-team reviewers then move the status forward, tick the
verification checklist, choose the remediation actions and leave notes.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Union

from .auth import Capabilities
from .context import EngineContext
from .errors import FAILED_PRECONDITION, NOT_FOUND, RESOURCE_EXHAUSTED, escape_error
from .metrics import record_rate_limited
from .models import (
    NoteUpdate,
    RequestedActionsUpdate,
    StatusUpdate,
    SubmitEscapeInput,
    VerificationUpdate,
)
from .ratelimit import SubmissionRateLimiter, hash_caller_key
from .registry import Collection, SealReason
from .store import Transaction

logger = logging.getLogger("escape_gateway.escape_requests")

STATUS_ORDER = {"pending": 0, "in-progress": 1, "resolved": 2}

AnyUpdate = Union[StatusUpdate, VerificationUpdate, RequestedActionsUpdate, NoteUpdate]


async def submit_escape_request(
    ctx: EngineContext,
    caps: Capabilities,
    data: SubmitEscapeInput,
    client_ip: Optional[str],
    limiter: SubmissionRateLimiter,
) -> Dict[str, Any]:
    ip_hash = hash_caller_key(client_ip or "unknown", ctx.config.ip_hash_salt)
    if not await limiter.allow(ip_hash):
        record_rate_limited("escape_submit")
        raise escape_error(RESOURCE_EXHAUSTED, "Too many requests. Please try again later.")

    ts = ctx.clock().isoformat()
    doc: Dict[str, Any] = {
        "status": "pending",
        "message": data.message,
        "urgency": data.urgency,
        "verificationChecklist": {
            "accountOwnershipVerified": False,
            "idMatched": False,
            "phoneVerified": False,
            "safeContactConfirmed": False,
        },
        "requestedActions": {},
        "completedActions": {},
        "adminNotes": [],
        "submittedBy": caps.uid,
        "ipHash": ip_hash,
        "createdAt": ts,
        "updatedAt": ts,
    }
    if data.safe_contact_info is not None:
        info = data.safe_contact_info.model_dump(by_alias=True, exclude_none=True)
        doc["safeContactInfo"] = info
        if info.get("email"):
            doc["safeContactEmail"] = info["email"]
    if caps.uid:
        user = await ctx.store.get(Collection.USERS.value, caps.uid) or {}
        if user.get("familyId"):
            doc["familyId"] = user["familyId"]

    request_id = await ctx.store.add(Collection.SAFETY_REQUESTS.value, doc)
    return {"requestId": request_id}


async def update_escape_request(ctx: EngineContext, actor_id: str, update: AnyUpdate) -> Dict[str, Any]:
    ts = ctx.clock().isoformat()
    coll = Collection.SAFETY_REQUESTS.value

    async def _txn(txn: Transaction) -> Dict[str, Any]:
        request = await txn.get(coll, update.request_id)
        if request is None:
            raise escape_error(NOT_FOUND, "Safety request not found")

        fields: Dict[str, Any] = {"updatedAt": ts}
        if isinstance(update, StatusUpdate):
            current = request.get("status", "pending")
            if STATUS_ORDER[update.status] < STATUS_ORDER.get(current, 0):
                raise escape_error(FAILED_PRECONDITION, "Safety request status can only move forward")
            if update.family_id:
                if request.get("familyId") and request["familyId"] != update.family_id:
                    raise escape_error(FAILED_PRECONDITION, "Safety request does not match the specified family")
                fields["familyId"] = update.family_id
            fields["status"] = update.status
            if current == "pending" and update.status != "pending":
                fields["reviewedAt"] = ts
                fields["reviewedBy"] = actor_id
            if update.status == "resolved" and current != "resolved":
                fields["resolvedAt"] = ts
        elif isinstance(update, VerificationUpdate):
            patch = update.checklist.model_dump(by_alias=True, exclude_none=True)
            for key, value in patch.items():
                fields[f"verificationChecklist.{key}"] = value
            fields["verifiedBy"] = actor_id
            fields["verifiedAt"] = ts
        elif isinstance(update, RequestedActionsUpdate):
            fields["requestedActions"] = dict(update.requested_actions)
        else:
            notes = list(request.get("adminNotes") or [])
            notes.append({"note": update.note, "addedBy": actor_id, "addedAt": ts})
            fields["adminNotes"] = notes

        txn.update(coll, update.request_id, fields)
        return request

    request = await ctx.store.run_transaction(_txn)

    await ctx.audit.append(
        action="safety-request-update",
        resource_type="safety-request",
        resource_id=update.request_id,
        performed_by=actor_id,
        family_id=request.get("familyId") or getattr(update, "family_id", None),
        safety_request_id=update.request_id,
        seal_reason=SealReason.ESCAPE_ACTION.value,
        details={"updateType": update.update_type},
    )
    return {"updated": True, "requestId": update.request_id, "updateType": update.update_type}
