"""Escape-completion tracking.

A safety request lists the remediation actions a reviewer asked for in
`requestedActions` and records finished ones in `completedActions`. The escape
is complete when every requested action is marked done. An action missing
from `completedActions` means "not yet attempted", never "not required".

Requests created before `requestedActions` existed carry an empty map. For
those the tracker falls back to the request status (resolved or in-progress
counts as complete) when `legacy_completion_by_status` is on.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .metrics import record_fail_open
from .registry import Collection
from .store import DocumentStore, Transaction

logger = logging.getLogger("escape_gateway.tracker")

LEGACY_COMPLETE_STATUSES = frozenset({"resolved", "in-progress"})


def completion_from_request(request: Dict[str, Any], legacy_completion_by_status: bool = True) -> bool:
    requested = request.get("requestedActions") or {}
    completed = request.get("completedActions") or {}
    if requested:
        return all(completed.get(action) is True for action in requested)
    if legacy_completion_by_status:
        return request.get("status") in LEGACY_COMPLETE_STATUSES
    return False


async def is_escape_complete(
    store: DocumentStore,
    request_id: str,
    legacy_completion_by_status: bool = True,
) -> bool:
    """True when every requested action is done. Fails open on read errors."""
    try:
        request: Optional[Dict[str, Any]] = await store.get(Collection.SAFETY_REQUESTS.value, request_id)
    except Exception as e:
        logger.warning("completion check failed, treating as complete (%s)", type(e).__name__)
        record_fail_open("tracker")
        return True
    if request is None:
        return False
    return completion_from_request(request, legacy_completion_by_status)


async def mark_action_complete(store: DocumentStore, request_id: str, action: str) -> None:
    """Set completedActions[action] = True in a single-document transaction."""

    async def _txn(txn: Transaction) -> None:
        request = await txn.get(Collection.SAFETY_REQUESTS.value, request_id)
        if request is None:
            return
        txn.update(Collection.SAFETY_REQUESTS.value, request_id, {f"completedActions.{action}": True})

    await store.run_transaction(_txn)
