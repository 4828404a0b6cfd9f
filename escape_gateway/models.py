"""Request payload models.

Every gateway operation validates its payload with one of these before doing
anything else. Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .errors import INVALID_ARGUMENT, EscapeError, escape_error
from .registry import SealReason

Id = Annotated[str, Field(min_length=1, max_length=128)]
Reason = Annotated[str, Field(min_length=20, max_length=5000)]

EscapeAction = Literal["disable-location", "sever-parent", "notification-stealth"]
SealableCollectionName = Literal[
    "deviceCommands",
    "locationHistory",
    "notificationQueue",
    "stealthQueues",
    "familyAuditLog",
    "adminAuditLog",
]

_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


# ---------------------------
# Escape actions
# ---------------------------

class DisableLocationInput(_Payload):
    request_id: Id
    family_id: Id
    target_user_ids: List[Id] = Field(min_length=1, max_length=50)
    reason: Reason


class SeverParentInput(_Payload):
    request_id: Id
    target_user_id: Id
    family_id: Id
    reason: Reason
    trigger_resource_referral: bool = False


class NotificationStealthInput(_Payload):
    request_id: Id
    family_id: Id
    target_user_ids: List[Id] = Field(min_length=1, max_length=50)
    reason: Reason
    duration_hours: int = Field(default=72, ge=24, le=168)


# ---------------------------
# Escape requests
# ---------------------------

class SafeContactInfo(_Payload):
    phone: Optional[str] = Field(default=None, max_length=30)
    email: Optional[str] = Field(default=None, max_length=254, pattern=_EMAIL_PATTERN)
    preferred_method: Optional[Literal["phone", "email", "either"]] = None
    safe_time_to_contact: Optional[str] = Field(default=None, max_length=200)


class SubmitEscapeInput(_Payload):
    message: str = Field(min_length=1, max_length=5000)
    safe_contact_info: Optional[SafeContactInfo] = None
    urgency: Literal["when_you_can", "soon", "urgent"] = "when_you_can"


class StatusUpdate(_Payload):
    update_type: Literal["status"]
    request_id: Id
    status: Literal["pending", "in-progress", "resolved"]
    family_id: Optional[Id] = None


class ChecklistPatch(_Payload):
    account_ownership_verified: Optional[bool] = None
    id_matched: Optional[bool] = None
    phone_verified: Optional[bool] = None
    safe_contact_confirmed: Optional[bool] = None


class VerificationUpdate(_Payload):
    update_type: Literal["verification"]
    request_id: Id
    checklist: ChecklistPatch


class RequestedActionsUpdate(_Payload):
    update_type: Literal["requested-actions"]
    request_id: Id
    requested_actions: Dict[EscapeAction, bool]


class NoteUpdate(_Payload):
    update_type: Literal["note"]
    request_id: Id
    note: str = Field(min_length=1, max_length=5000)


EscapeRequestUpdate = Annotated[
    Union[StatusUpdate, VerificationUpdate, RequestedActionsUpdate, NoteUpdate],
    Field(discriminator="update_type"),
]

escape_request_update_adapter: TypeAdapter = TypeAdapter(EscapeRequestUpdate)


# ---------------------------
# Sealing and legal access
# ---------------------------

class EntryRefInput(_Payload):
    collection: SealableCollectionName
    id: Id


class SealInput(_Payload):
    safety_request_id: Id
    family_id: Id
    reason: Reason
    seal_reason: Optional[SealReason] = None
    entry_ids: Optional[List[EntryRefInput]] = Field(default=None, min_length=1, max_length=5000)


class UnsealInput(_Payload):
    entries: List[EntryRefInput] = Field(min_length=1, max_length=100)
    court_order_reference: str = Field(min_length=5, max_length=200)
    legal_justification: str = Field(min_length=100, max_length=10000)
    case_number: Optional[str] = Field(default=None, max_length=200)
    requesting_party: Optional[str] = Field(default=None, max_length=200)


class DateRange(_Payload):
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        # Stored timestamps are UTC; naive bounds are read as UTC too.
        return v.replace(tzinfo=timezone.utc) if v.tzinfo is None else v.astimezone(timezone.utc)

    @model_validator(mode="after")
    def _ordered(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError("start must not be after end")
        return self


class SealedQueryInput(_Payload):
    justification: str = Field(min_length=50, max_length=5000)
    family_id: Id
    date_range: Optional[DateRange] = None
    action_types: Optional[List[str]] = Field(default=None, min_length=1, max_length=10)
    limit: int = Field(default=100, ge=1, le=500)


class FamilyAuditQuery(_Payload):
    family_id: Id
    limit: int = Field(default=50, ge=1, le=500)


def invalid_input(exc: ValidationError) -> EscapeError:
    """Map a ValidationError to invalid-argument without echoing input values."""
    fields = [
        {"loc": ".".join(str(p) for p in err.get("loc", ())), "type": err.get("type", "")}
        for err in exc.errors(include_url=False, include_input=False, include_context=False)
    ]
    return escape_error(INVALID_ARGUMENT, "Invalid input", fields=fields)
