"""Verification gate run before any escape action.

Checks, in order:

1. the safety request exists
2. it has been reviewed (status is no longer pending)
3. its family, when it names one, is the family the caller targets
4. the requester's identity was verified (account ownership or ID match)

Then the target family must exist and every target user must belong to it.
A missing user and a user from another family get the same message, so the
caller cannot probe which accounts exist.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable

from .errors import FAILED_PRECONDITION, NOT_FOUND, escape_error
from .registry import Collection
from .store import DocumentStore

USER_NOT_IN_FAMILY = "One or more users not found or do not belong to this family"


async def verify_safety_request(
    store: DocumentStore,
    request_id: str,
    family_id: str,
    action_label: str,
) -> Dict[str, Any]:
    """Run the gate and return the safety request document."""
    request = await store.get(Collection.SAFETY_REQUESTS.value, request_id)
    if request is None:
        raise escape_error(NOT_FOUND, "Safety request not found")

    if request.get("status", "pending") == "pending":
        raise escape_error(
            FAILED_PRECONDITION,
            f"Safety request must be reviewed before {action_label} can proceed",
        )

    request_family = request.get("familyId")
    if request_family and request_family != family_id:
        raise escape_error(FAILED_PRECONDITION, "Safety request does not match the specified family")

    checklist = request.get("verificationChecklist") or {}
    if not (checklist.get("accountOwnershipVerified") is True or checklist.get("idMatched") is True):
        raise escape_error(FAILED_PRECONDITION, f"Identity verification required before {action_label}")

    return request


async def require_family(store: DocumentStore, family_id: str) -> Dict[str, Any]:
    family = await store.get(Collection.FAMILIES.value, family_id)
    if family is None:
        raise escape_error(NOT_FOUND, "Family not found")
    return family


def belongs_to_family(user: Dict[str, Any], family_id: str) -> bool:
    if user.get("familyId") == family_id:
        return True
    return family_id in (user.get("familyIds") or [])


async def require_family_members(store: DocumentStore, family_id: str, user_ids: Iterable[str]) -> None:
    for uid in user_ids:
        user = await store.get(Collection.USERS.value, uid)
        if user is None or not belongs_to_family(user, family_id):
            raise escape_error(NOT_FOUND, USER_NOT_IN_FAMILY)
