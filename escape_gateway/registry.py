"""Collections, escape actions and the sealable record table."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple


class Collection(str, Enum):
    ADMIN_AUDIT_LOG = "adminAuditLog"
    FAMILY_AUDIT_LOG = "familyAuditLog"
    SEALED_AUDIT_ACCESS_LOG = "sealedAuditAccessLog"
    DEVICE_COMMANDS = "deviceCommands"
    LOCATION_HISTORY = "locationHistory"
    NOTIFICATION_QUEUE = "notificationQueue"
    STEALTH_QUEUES = "stealthQueues"
    SAFETY_REQUESTS = "safetyRequests"
    FAMILIES = "families"
    USERS = "users"
    DEVICES = "devices"
    FAMILY_MEMBERSHIPS = "familyMemberships"
    LOCATION_SETTINGS = "locationSettings"
    EMAIL_QUEUE = "emailQueue"
    RATE_LIMITS = "rateLimits"

    def __str__(self) -> str:
        return self.value


# Keys of requestedActions / completedActions on a safety request.
ACTION_DISABLE_LOCATION = "disable-location"
ACTION_SEVER_PARENT = "sever-parent"
ACTION_NOTIFICATION_STEALTH = "notification-stealth"

ESCAPE_ACTIONS: Tuple[str, ...] = (
    ACTION_DISABLE_LOCATION,
    ACTION_SEVER_PARENT,
    ACTION_NOTIFICATION_STEALTH,
)


class SealReason(str, Enum):
    ESCAPE_ACTION = "escape-action"
    DEVICE_UNENROLLMENT = "device-unenrollment"
    LOCATION_DISABLE = "location-disable"
    PARENT_SEVERING = "parent-severing"
    NOTIFICATION_STEALTH = "notification-stealth"
    RETROACTIVE = "retroactive"
    MANUAL = "manual"


@dataclass(frozen=True)
class SealTarget:
    """A collection whose records can be sealed, and how they link to a request."""

    collection: Collection
    record_type: str
    request_field: str = "safetyRequestId"


SEALABLE: Dict[Collection, SealTarget] = {
    t.collection: t
    for t in (
        SealTarget(Collection.DEVICE_COMMANDS, "device-command"),
        SealTarget(Collection.LOCATION_HISTORY, "location-history"),
        SealTarget(Collection.NOTIFICATION_QUEUE, "notification"),
        SealTarget(Collection.STEALTH_QUEUES, "stealth-queue"),
        SealTarget(Collection.FAMILY_AUDIT_LOG, "family-audit"),
        SealTarget(Collection.ADMIN_AUDIT_LOG, "admin-audit"),
    )
}


SEALABLE_NAMES = frozenset(c.value for c in SEALABLE)


def is_sealable(name: str) -> bool:
    return name in SEALABLE_NAMES
