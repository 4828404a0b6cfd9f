"""Escape action handlers.

Each handler runs only after the verification gate passes, and performs its
side effects in a fixed order:

1. delete pending notifications that would reveal the action (committed
   immediately, before anything else can trigger delivery)
2. issue device enforcement commands
3. flip feature flags
4. redact historical records
5. write one sealed admin-audit entry, mark the action complete on the
   safety request and seal every record tagged with the request
6. optionally queue a resource referral (never fails the action)

Handlers never notify the family, never write to the family audit trail and
never return the caller's reason.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List

from .chunked import apply_in_chunks
from .context import EngineContext
from .errors import FAILED_PRECONDITION, INVALID_ARGUMENT, NOT_FOUND, escape_error
from .models import DisableLocationInput, NotificationStealthInput, SeverParentInput
from .referral import queue_resource_referral
from .registry import (
    ACTION_DISABLE_LOCATION,
    ACTION_NOTIFICATION_STEALTH,
    ACTION_SEVER_PARENT,
    Collection,
    SealReason,
)
from .store import Document, WriteBatch
from .tracker import mark_action_complete
from .verification import (
    USER_NOT_IN_FAMILY,
    require_family,
    require_family_members,
    verify_safety_request,
)

logger = logging.getLogger("escape_gateway.actions")

LOCATION_NOTIFICATION_TYPES = (
    "location-arrived",
    "location-departed",
    "location-alert",
    "location-rule-triggered",
    "work-mode-location",
    "new-location-detected",
)

STEALTH_SUPPRESSED_TYPES = (
    "safety-request-update",
    "escape-action",
    "member-removed",
    "membership-change",
    "location-disabled",
    "device-command",
    "family-settings-changed",
)

REDACTED_LOCATION_FIELDS = ("location", "locationName", "event", "address", "coordinates")


async def _pending_notifications(ctx: EngineContext, family_id: str, user_ids: List[str], types) -> List[Document]:
    docs = await ctx.store.query(
        Collection.NOTIFICATION_QUEUE.value,
        [("familyId", "==", family_id), ("status", "==", "pending"), ("type", "in", list(types))],
    )
    targets = set(user_ids)
    return [d for d in docs if d.data.get("targetUserId") in targets]


async def _delete_all(ctx: EngineContext, docs: List[Document]) -> int:
    def stage(batch: WriteBatch, doc: Document) -> None:
        batch.delete(doc.collection, doc.id)

    return await apply_in_chunks(ctx.store, docs, stage, ctx.config.batch_limit)


async def _finish(ctx: EngineContext, request_id: str, family_id: str, actor_id: str, action: str, seal_reason: SealReason) -> None:
    await mark_action_complete(ctx.store, request_id, action)
    await ctx.sealer.seal(request_id, family_id, actor_id, seal_reason.value, reason=f"{action} completed")


# ---------------------------
# disable-location
# ---------------------------

async def disable_location_features(ctx: EngineContext, actor_id: str, data: DisableLocationInput) -> Dict[str, Any]:
    await verify_safety_request(ctx.store, data.request_id, data.family_id, "location disable")
    await require_family(ctx.store, data.family_id)
    await require_family_members(ctx.store, data.family_id, data.target_user_ids)

    now = ctx.clock()
    ts = now.isoformat()

    # 1. Pending location notifications go first.
    notifications = await _pending_notifications(ctx, data.family_id, data.target_user_ids, LOCATION_NOTIFICATION_TYPES)
    deleted = await _delete_all(ctx, notifications)

    # 2. Device commands.
    devices: List[Document] = []
    for uid in data.target_user_ids:
        devices.extend(await ctx.store.query(
            Collection.DEVICES.value,
            [("childId", "==", uid), ("familyId", "==", data.family_id), ("status", "!=", "unenrolled")],
        ))
    expires_at = (now + timedelta(seconds=ctx.config.device_command_ttl_seconds)).isoformat()

    def stage_command(batch: WriteBatch, device: Document) -> None:
        batch.set(Collection.DEVICE_COMMANDS.value, uuid.uuid4().hex, {
            "deviceId": device.id,
            "childId": device.data.get("childId"),
            "familyId": data.family_id,
            "command": "disable-location",
            "status": "pending",
            "issuedAt": ts,
            "expiresAt": expires_at,
            "source": "safety-request",
            "safetyRequestId": data.request_id,
            "sealed": True,
            "sealedAt": ts,
            "sealedBy": actor_id,
            "sealReason": SealReason.LOCATION_DISABLE.value,
        })

    command_count = await apply_in_chunks(ctx.store, devices, stage_command, ctx.config.batch_limit)

    # 3. Location feature flags, locked against re-enable.
    def stage_settings(batch: WriteBatch, uid: str) -> None:
        batch.set(Collection.LOCATION_SETTINGS.value, uid, {
            "locationRulesEnabled": False,
            "locationWorkModeEnabled": False,
            "locationAlertsEnabled": False,
            "disabledBySafetyRequest": True,
            "safetyDisabledAt": ts,
            "safetyDisabledBy": actor_id,
            "safetyRequestId": data.request_id,
        }, merge=True)

    await apply_in_chunks(ctx.store, list(data.target_user_ids), stage_settings, ctx.config.batch_limit)

    # 4. Redact history, keeping timestamps.
    history: List[Document] = []
    for uid in data.target_user_ids:
        for doc in await ctx.store.query(
            Collection.LOCATION_HISTORY.value,
            [("childId", "==", uid), ("familyId", "==", data.family_id)],
        ):
            if doc.data.get("sealed") is not True:
                history.append(doc)

    redaction = {f: None for f in REDACTED_LOCATION_FIELDS}
    redaction.update({
        "sealed": True,
        "sealedAt": ts,
        "sealedBy": actor_id,
        "sealReason": SealReason.LOCATION_DISABLE.value,
        "safetyRequestId": data.request_id,
    })

    def stage_redaction(batch: WriteBatch, doc: Document) -> None:
        batch.update(doc.collection, doc.id, redaction)

    redacted = await apply_in_chunks(ctx.store, history, stage_redaction, ctx.config.batch_limit)

    # 5. Sealed audit, completion, propagation.
    await ctx.audit.append(
        action="location-features-disable",
        resource_type="location-settings",
        resource_id=data.family_id,
        performed_by=actor_id,
        family_id=data.family_id,
        safety_request_id=data.request_id,
        seal_reason=SealReason.LOCATION_DISABLE.value,
        details={
            "affectedUserIds": list(data.target_user_ids),
            "reason": data.reason,
            "deletedNotificationCount": deleted,
            "deviceCommandCount": command_count,
            "redactedHistoryCount": redacted,
        },
    )
    await _finish(ctx, data.request_id, data.family_id, actor_id, ACTION_DISABLE_LOCATION, SealReason.LOCATION_DISABLE)

    return {
        "disabled": True,
        "familyId": data.family_id,
        "affectedUserIds": list(data.target_user_ids),
        "disabledAt": ts,
        "deletedNotificationCount": deleted,
        "deviceCommandCount": command_count,
        "redactedHistoryCount": redacted,
    }


# ---------------------------
# sever-parent
# ---------------------------

async def sever_parent_access(ctx: EngineContext, actor_id: str, data: SeverParentInput) -> Dict[str, Any]:
    await verify_safety_request(ctx.store, data.request_id, data.family_id, "parent severing")
    await require_family(ctx.store, data.family_id)

    membership_id = f"{data.target_user_id}_{data.family_id}"
    membership = await ctx.store.get(Collection.FAMILY_MEMBERSHIPS.value, membership_id)
    if membership is None or membership.get("familyId", data.family_id) != data.family_id:
        raise escape_error(NOT_FOUND, USER_NOT_IN_FAMILY)
    if membership.get("isActive") is False:
        raise escape_error(FAILED_PRECONDITION, "Parent access has already been severed")
    if membership.get("role") != "parent":
        raise escape_error(INVALID_ARGUMENT, "Can only sever parent access, not child access")

    ts = ctx.clock().isoformat()
    # The reason lives only in the sealed audit entry, never on the membership.
    await ctx.store.update(Collection.FAMILY_MEMBERSHIPS.value, membership_id, {
        "isActive": False,
        "severedAt": ts,
        "severedBy": actor_id,
        "safetyRequestId": data.request_id,
    })

    await ctx.audit.append(
        action="parent-severing",
        resource_type="familyMembership",
        resource_id=membership_id,
        performed_by=actor_id,
        family_id=data.family_id,
        safety_request_id=data.request_id,
        seal_reason=SealReason.PARENT_SEVERING.value,
        details={
            "targetUserId": data.target_user_id,
            "reason": data.reason,
        },
    )
    await _finish(ctx, data.request_id, data.family_id, actor_id, ACTION_SEVER_PARENT, SealReason.PARENT_SEVERING)

    result: Dict[str, Any] = {
        "severed": True,
        "targetUserId": data.target_user_id,
        "familyId": data.family_id,
        "severedAt": ts,
        "resourceReferralQueued": False,
    }
    if data.trigger_resource_referral:
        referral = await queue_resource_referral(
            ctx.store,
            data.request_id,
            actor_id,
            ctx.config.legacy_completion_by_status,
            ctx.clock,
        )
        result["resourceReferralQueued"] = referral.queued
        if referral.queue_id:
            result["resourceReferralQueueId"] = referral.queue_id
    return result


# ---------------------------
# notification-stealth
# ---------------------------

def _parse_ts(value: Any) -> datetime:
    return datetime.fromisoformat(str(value))


async def activate_notification_stealth(ctx: EngineContext, actor_id: str, data: NotificationStealthInput) -> Dict[str, Any]:
    await verify_safety_request(ctx.store, data.request_id, data.family_id, "notification stealth")
    await require_family(ctx.store, data.family_id)
    await require_family_members(ctx.store, data.family_id, data.target_user_ids)

    now = ctx.clock()
    for queue in await ctx.store.query(
        Collection.STEALTH_QUEUES.value,
        [("familyId", "==", data.family_id), ("status", "==", "active")],
    ):
        try:
            unexpired = _parse_ts(queue.data.get("expiresAt")) > now
        except (TypeError, ValueError):
            unexpired = False
        if unexpired:
            return {"activated": False, "alreadyActive": True, "queueId": queue.id}

    notifications = await _pending_notifications(ctx, data.family_id, data.target_user_ids, STEALTH_SUPPRESSED_TYPES)
    deleted = await _delete_all(ctx, notifications)

    ts = now.isoformat()
    expires_at = (now + timedelta(hours=data.duration_hours)).isoformat()
    queue_id = await ctx.store.add(Collection.STEALTH_QUEUES.value, {
        "familyId": data.family_id,
        "targetUserIds": list(data.target_user_ids),
        "notificationTypesToSuppress": list(STEALTH_SUPPRESSED_TYPES),
        "activatedAt": ts,
        "activatedBy": actor_id,
        "expiresAt": expires_at,
        "durationHours": data.duration_hours,
        "safetyRequestId": data.request_id,
        "status": "active",
        "sealed": True,
        "sealedAt": ts,
        "sealedBy": actor_id,
        "sealReason": SealReason.NOTIFICATION_STEALTH.value,
    })

    await ctx.audit.append(
        action="notification-stealth-activate",
        resource_type="stealth-queue",
        resource_id=queue_id,
        performed_by=actor_id,
        family_id=data.family_id,
        safety_request_id=data.request_id,
        seal_reason=SealReason.NOTIFICATION_STEALTH.value,
        details={
            "targetUserIds": list(data.target_user_ids),
            "durationHours": data.duration_hours,
            "deletedNotificationCount": deleted,
            "reason": data.reason,
        },
    )
    await _finish(ctx, data.request_id, data.family_id, actor_id, ACTION_NOTIFICATION_STEALTH, SealReason.NOTIFICATION_STEALTH)

    return {
        "activated": True,
        "queueId": queue_id,
        "familyId": data.family_id,
        "targetUserIds": list(data.target_user_ids),
        "durationHours": data.duration_hours,
        "expiresAt": expires_at,
    }
