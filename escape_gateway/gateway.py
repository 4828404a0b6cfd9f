"""EscapeGateway: the callable surface of the engine.

Every public operation follows the same shape:

1. check the caller's capabilities
2. validate the payload
3. run the handler
4. map failures

Failure mapping:
- EscapeError propagates unchanged (its code is logged, never its message)
- pydantic ValidationError becomes invalid-argument "Invalid input"
- TransactionConflict becomes aborted
- anything else gets an opaque error id. The standard log receives only the
  operation name, the id and the error kind. The full detail goes to a sealed
  `<operation>_error` entry in adminAuditLog, and the caller sees
  "Failed to <operation>. Error ID: <id>".
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from pydantic import ValidationError

from . import actions, compliance, escape_requests
from .audit import Clock, utc_now
from .auth import (
    Capabilities,
    require_authenticated,
    require_compliance_or_legal,
    require_legal_team,
    require_safety_team,
)
from .config import EngineConfig
from .context import EngineContext
from .errors import ABORTED, INTERNAL, EscapeError, TransactionConflict, escape_error
from .metrics import record_operation
from .models import (
    DisableLocationInput,
    FamilyAuditQuery,
    NotificationStealthInput,
    SealedQueryInput,
    SealInput,
    SeverParentInput,
    SubmitEscapeInput,
    UnsealInput,
    escape_request_update_adapter,
    invalid_input,
)
from .ratelimit import SubmissionRateLimiter
from .signing import AuditSigner, load_audit_signer_from_env
from .sqlite_store import SQLiteDocumentStore
from .store import DocumentStore, InMemoryDocumentStore

logger = logging.getLogger("escape_gateway")

Payload = Mapping[str, Any]


def build_store(config: EngineConfig) -> DocumentStore:
    if config.store_backend == "sqlite":
        return SQLiteDocumentStore(config.db_path, config.batch_limit)
    return InMemoryDocumentStore(config.batch_limit)


class EscapeGateway:
    """Facade binding capabilities, validation and error handling to the handlers."""

    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        config: Optional[EngineConfig] = None,
        signer: Optional[AuditSigner] = None,
        clock: Clock = utc_now,
        rate_clock: Callable[[], float] = time.time,
    ):
        self.config = config or EngineConfig()
        self.store = store if store is not None else build_store(self.config)
        self.ctx = EngineContext(self.store, self.config, signer, clock)
        self.limiter = SubmissionRateLimiter(
            self.store,
            self.config.rate_limit_window_seconds,
            self.config.rate_limit_max_submissions,
            rate_clock,
        )

    @classmethod
    def from_env(cls) -> "EscapeGateway":
        return cls(config=EngineConfig.from_env(), signer=load_audit_signer_from_env())

    @property
    def signer(self) -> Optional[AuditSigner]:
        return self.ctx.signer

    # ---------------------------
    # Error handling
    # ---------------------------

    async def _run(
        self,
        operation: str,
        label: str,
        caps: Capabilities,
        fn: Callable[[], Awaitable[Dict[str, Any]]],
    ) -> Dict[str, Any]:
        try:
            result = await fn()
        except EscapeError as e:
            logger.warning("%s rejected: %s", operation, e.code)
            record_operation(operation, e.code)
            raise
        except ValidationError as e:
            logger.warning("%s rejected: invalid input", operation)
            record_operation(operation, "invalid-argument")
            raise invalid_input(e) from None
        except TransactionConflict:
            logger.warning("%s aborted: transaction conflict", operation)
            record_operation(operation, ABORTED)
            raise escape_error(ABORTED, "Concurrent modification. Please retry.") from None
        except Exception as e:
            error_id = secrets.token_hex(8)
            logger.error("%s failed: errorId=%s kind=%s", operation, error_id, type(e).__name__)
            try:
                await self.ctx.audit.record_internal_error(operation, error_id, e, caps.uid)
            except Exception as audit_exc:
                logger.error(
                    "could not record %s failure: errorId=%s kind=%s",
                    operation, error_id, type(audit_exc).__name__,
                )
            record_operation(operation, INTERNAL)
            raise escape_error(INTERNAL, f"Failed to {label}. Error ID: {error_id}", errorId=error_id) from None
        record_operation(operation, "ok")
        return result

    # ---------------------------
    # Escape actions
    # ---------------------------

    async def disable_location_features(self, caps: Capabilities, payload: Payload) -> Dict[str, Any]:
        async def run() -> Dict[str, Any]:
            actor = require_safety_team(caps)
            data = DisableLocationInput.model_validate(payload)
            return await actions.disable_location_features(self.ctx, actor, data)

        return await self._run("location_features_disable", "disable location features", caps, run)

    async def sever_parent_access(self, caps: Capabilities, payload: Payload) -> Dict[str, Any]:
        async def run() -> Dict[str, Any]:
            actor = require_safety_team(caps)
            data = SeverParentInput.model_validate(payload)
            return await actions.sever_parent_access(self.ctx, actor, data)

        return await self._run("parent_severing", "sever parent access", caps, run)

    async def activate_notification_stealth(self, caps: Capabilities, payload: Payload) -> Dict[str, Any]:
        async def run() -> Dict[str, Any]:
            actor = require_safety_team(caps)
            data = NotificationStealthInput.model_validate(payload)
            return await actions.activate_notification_stealth(self.ctx, actor, data)

        return await self._run("notification_stealth", "activate notification stealth", caps, run)

    # ---------------------------
    # Escape requests
    # ---------------------------

    async def submit_escape_request(
        self,
        caps: Capabilities,
        payload: Payload,
        client_ip: Optional[str] = None,
    ) -> Dict[str, Any]:
        async def run() -> Dict[str, Any]:
            data = SubmitEscapeInput.model_validate(payload)
            return await escape_requests.submit_escape_request(self.ctx, caps, data, client_ip, self.limiter)

        return await self._run("escape_request_submit", "submit escape request", caps, run)

    async def update_escape_request(self, caps: Capabilities, payload: Payload) -> Dict[str, Any]:
        async def run() -> Dict[str, Any]:
            actor = require_safety_team(caps)
            update = escape_request_update_adapter.validate_python(payload)
            return await escape_requests.update_escape_request(self.ctx, actor, update)

        return await self._run("escape_request_update", "update escape request", caps, run)

    # ---------------------------
    # Sealing and legal access
    # ---------------------------

    async def seal_escape_audit_entries(self, caps: Capabilities, payload: Payload) -> Dict[str, Any]:
        async def run() -> Dict[str, Any]:
            actor = require_safety_team(caps)
            data = SealInput.model_validate(payload)
            return await compliance.seal_escape_audit_entries(self.ctx, actor, data)

        return await self._run("escape_audit_seal", "seal audit entries", caps, run)

    async def unseal_audit_entries(self, caps: Capabilities, payload: Payload) -> Dict[str, Any]:
        async def run() -> Dict[str, Any]:
            actor = require_legal_team(caps)
            data = UnsealInput.model_validate(payload)
            return await compliance.unseal_audit_entries(self.ctx, actor, data)

        return await self._run("audit_unseal", "unseal audit entries", caps, run)

    async def get_sealed_audit_entries(self, caps: Capabilities, payload: Payload) -> Dict[str, Any]:
        async def run() -> Dict[str, Any]:
            require_compliance_or_legal(caps)
            data = SealedQueryInput.model_validate(payload)
            return await compliance.get_sealed_audit_entries(self.ctx, caps, data)

        return await self._run("sealed_audit_read", "retrieve sealed audit entries", caps, run)

    async def get_family_audit_log(self, caps: Capabilities, payload: Payload) -> Dict[str, Any]:
        async def run() -> Dict[str, Any]:
            actor = require_authenticated(caps)
            data = FamilyAuditQuery.model_validate(payload)
            return await compliance.get_family_audit_log(self.ctx, actor, data)

        return await self._run("family_audit_read", "retrieve family audit log", caps, run)
