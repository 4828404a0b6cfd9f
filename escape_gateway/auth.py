"""Caller identity and role checks.

Identity is an explicit, immutable `Capabilities` value passed into every
operation; nothing reads the caller from ambient state. Over HTTP it is
resolved from `Authorization: Bearer <token>` using a token map:

Env vars:
  - ESCAPE_API_TOKENS_JSON: JSON object mapping token -> {"uid": ..., "claims": {...}}
  - ESCAPE_API_TOKENS_FILE: path to a JSON file with the same mapping

Recognised claims: isAdmin, isSafetyTeam, isLegalTeam, isComplianceTeam.
If a token map is configured but malformed, every request is rejected.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import PERMISSION_DENIED, UNAUTHENTICATED, EscapeError, escape_error

ENV_API_TOKENS_JSON = "ESCAPE_API_TOKENS_JSON"
ENV_API_TOKENS_FILE = "ESCAPE_API_TOKENS_FILE"


@dataclass(frozen=True)
class Capabilities:
    """Resolved caller identity. `uid=None` means unauthenticated."""

    uid: Optional[str] = None
    is_admin: bool = False
    is_safety_team: bool = False
    is_legal_team: bool = False
    is_compliance_team: bool = False

    @property
    def authenticated(self) -> bool:
        return bool(self.uid)

    @classmethod
    def anonymous(cls) -> "Capabilities":
        return cls()

    @classmethod
    def from_claims(cls, uid: str, claims: Dict[str, Any]) -> "Capabilities":
        return cls(
            uid=uid,
            is_admin=claims.get("isAdmin") is True,
            is_safety_team=claims.get("isSafetyTeam") is True,
            is_legal_team=claims.get("isLegalTeam") is True,
            is_compliance_team=claims.get("isComplianceTeam") is True,
        )


# ---------------------------
# Role checks
# ---------------------------

def require_authenticated(caps: Capabilities) -> str:
    if not caps.authenticated:
        raise escape_error(UNAUTHENTICATED, "Authentication required")
    return str(caps.uid)


def require_safety_team(caps: Capabilities) -> str:
    # isAdmin alone is not enough for escape operations.
    uid = require_authenticated(caps)
    if not caps.is_safety_team:
        raise escape_error(PERMISSION_DENIED, "Safety team access required")
    return uid


def require_legal_team(caps: Capabilities) -> str:
    uid = require_authenticated(caps)
    if not caps.is_legal_team:
        raise escape_error(PERMISSION_DENIED, "Legal team access required")
    return uid


def require_compliance_or_legal(caps: Capabilities) -> str:
    uid = require_authenticated(caps)
    if not (caps.is_compliance_team or caps.is_legal_team):
        raise escape_error(PERMISSION_DENIED, "Compliance or legal team access required")
    return uid


# ---------------------------
# Bearer tokens
# ---------------------------

def _parse_mapping(data: Any) -> Dict[str, Capabilities]:
    if not isinstance(data, dict):
        raise ValueError("token map must be a JSON object")
    out: Dict[str, Capabilities] = {}
    for token, entry in data.items():
        if not isinstance(entry, dict) or not entry.get("uid"):
            raise ValueError("token entry must be an object with a uid")
        claims = entry.get("claims") or {}
        if not isinstance(claims, dict):
            raise ValueError("claims must be an object")
        out[str(token)] = Capabilities.from_claims(str(entry["uid"]), claims)
    return out


@dataclass(frozen=True)
class TokenAuth:
    """Bearer token -> Capabilities mapping."""

    tokens: Dict[str, Capabilities]
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "TokenAuth":
        """Load the token map from env/file.

        If configuration is present but malformed the instance carries
        config_error, and every resolve fails closed.
        """
        raw_json = os.getenv(ENV_API_TOKENS_JSON)
        file_path = os.getenv(ENV_API_TOKENS_FILE)
        configured = bool(raw_json or file_path)
        tokens: Dict[str, Capabilities] = {}
        config_error: Optional[str] = None

        try:
            if raw_json:
                tokens = _parse_mapping(json.loads(raw_json))
            elif file_path:
                with open(file_path, "r", encoding="utf-8") as f:
                    tokens = _parse_mapping(json.load(f))
        except Exception:
            config_error = "TOKEN_CONFIG_INVALID"
            tokens = {}

        return cls(tokens=tokens, configured=configured, config_error=config_error)

    def resolve(self, authorization: Optional[str]) -> Capabilities:
        """Resolve an Authorization header value.

        No header means anonymous (some operations allow that). A header that
        does not resolve to a known token is rejected outright.
        """
        if self.config_error:
            raise EscapeError(code=UNAUTHENTICATED, message="Authentication unavailable", http_status=401)
        if not authorization:
            return Capabilities.anonymous()
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise escape_error(UNAUTHENTICATED, "Invalid authorization header")
        caps = self.tokens.get(token.strip())
        if caps is None:
            raise escape_error(UNAUTHENTICATED, "Invalid token")
        return caps
