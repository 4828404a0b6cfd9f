"""Resource-referral email queueing.

Once an escape is complete the victim can be sent a referral to support
resources. The email is written to `emailQueue`, which a separate sender
drains. Referral is strictly best-effort: any failure is logged and reported
as "not queued", never raised, so it cannot undo an action that has already
taken effect.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .audit import Clock, utc_now
from .registry import Collection
from .store import DocumentStore
from .tracker import is_escape_complete

logger = logging.getLogger("escape_gateway.referral")

REFERRAL_EMAIL_TYPE = "resource-referral"


@dataclass
class ReferralResult:
    queued: bool
    queue_id: Optional[str] = None


async def has_referral_been_sent(store: DocumentStore, request_id: str, request: Optional[Dict[str, Any]] = None) -> bool:
    if request is None:
        request = await store.get(Collection.SAFETY_REQUESTS.value, request_id) or {}
    if request.get("resourceReferralTriggered") is True:
        return True
    existing = await store.count(
        Collection.EMAIL_QUEUE.value,
        [("safetyRequestId", "==", request_id), ("type", "==", REFERRAL_EMAIL_TYPE)],
    )
    return existing > 0


async def _recipient(store: DocumentStore, request: Dict[str, Any]):
    safe = request.get("safeContactEmail") or (request.get("safeContactInfo") or {}).get("email")
    if safe:
        return safe, True
    submitted_by = request.get("submittedBy")
    if not submitted_by:
        return None, False
    user = await store.get(Collection.USERS.value, submitted_by) or {}
    return user.get("email"), False


async def queue_resource_referral(
    store: DocumentStore,
    request_id: str,
    actor_id: Optional[str],
    legacy_completion_by_status: bool = True,
    clock: Clock = utc_now,
) -> ReferralResult:
    """Queue the referral email if the escape is complete and none was sent."""
    try:
        request = await store.get(Collection.SAFETY_REQUESTS.value, request_id)
        if request is None:
            return ReferralResult(False)
        if await has_referral_been_sent(store, request_id, request):
            logger.info("resource referral already sent; skipping")
            return ReferralResult(False)
        if not await is_escape_complete(store, request_id, legacy_completion_by_status):
            logger.info("escape not complete; resource referral deferred")
            return ReferralResult(False)

        to, used_safe_contact = await _recipient(store, request)
        if not to:
            logger.warning("no recipient for resource referral")
            return ReferralResult(False)

        now = clock().isoformat()
        queue_id = await store.add(Collection.EMAIL_QUEUE.value, {
            "type": REFERRAL_EMAIL_TYPE,
            "template": "escape-resource-referral",
            "to": to,
            "usedSafeContact": used_safe_contact,
            "safetyRequestId": request_id,
            "status": "pending",
            "createdAt": now,
        })
        await store.update(Collection.SAFETY_REQUESTS.value, request_id, {
            "resourceReferralTriggered": True,
            "resourceReferralTriggeredAt": now,
            "resourceReferralTriggeredBy": actor_id,
            "resourceReferralQueueId": queue_id,
            "resourceReferralStatus": "pending",
        })
        return ReferralResult(True, queue_id)
    except Exception as e:
        logger.warning("resource referral could not be queued (%s)", type(e).__name__)
        return ReferralResult(False)
