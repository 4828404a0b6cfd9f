"""Ed25519 signatures over sealed-entry integrity digests.

A digest alone detects accidental or naive tampering, but anyone with write
access to the store can recompute it after editing a record. When an audit
signing key is configured, every sealed entry also carries a signature over
its digest, which cannot be recomputed without the key.

Env vars:
  - ESCAPE_AUDIT_SIGNING_KEY: 32-byte Ed25519 seed as 64 hex chars
  - ESCAPE_AUDIT_SIGNING_KEY_ID: key identifier stored with each signature
"""

from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from .integrity import (
    INTEGRITY_HASH_FIELD,
    SIGNATURE_FIELD,
    SIGNING_KEY_ID_FIELD,
    is_well_formed_digest,
)

ENV_SIGNING_KEY = "ESCAPE_AUDIT_SIGNING_KEY"
ENV_SIGNING_KEY_ID = "ESCAPE_AUDIT_SIGNING_KEY_ID"

logger = logging.getLogger("escape_gateway.signing")


def _payload(digest_hex: str) -> bytes:
    # Domain-separated so a signature can't be replayed as some other message.
    return b"ESCAPE_AUDIT_V1\x00" + digest_hex.encode("ascii")


@dataclass
class AuditSigner:
    """Ed25519 key pair used to sign sealed audit digests."""

    key_id: str
    public_key_bytes: bytes
    private_key_bytes: Optional[bytes] = None

    @classmethod
    def generate(cls, key_id: str = "audit") -> "AuditSigner":
        private_key = Ed25519PrivateKey.generate()
        return cls._from_private_key(private_key, key_id)

    @classmethod
    def from_seed(cls, seed: bytes, key_id: str = "audit") -> "AuditSigner":
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        return cls._from_private_key(Ed25519PrivateKey.from_private_bytes(seed), key_id)

    @classmethod
    def _from_private_key(cls, private_key: Ed25519PrivateKey, key_id: str) -> "AuditSigner":
        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return cls(key_id=key_id, public_key_bytes=public_bytes, private_key_bytes=private_bytes)

    def public_key_hex(self) -> str:
        return self.public_key_bytes.hex()

    def sign_digest(self, digest_hex: str) -> str:
        """Return the base64 signature over a 64-char hex digest."""
        if self.private_key_bytes is None:
            raise ValueError(f"Key {self.key_id} has no private key - cannot sign")
        private_key = Ed25519PrivateKey.from_private_bytes(self.private_key_bytes)
        return base64.b64encode(private_key.sign(_payload(digest_hex))).decode("ascii")

    def verify_digest(self, digest_hex: str, signature_b64: str) -> bool:
        try:
            sig = base64.b64decode(signature_b64, validate=True)
            Ed25519PublicKey.from_public_bytes(self.public_key_bytes).verify(sig, _payload(digest_hex))
            return True
        except InvalidSignature:
            return False
        except Exception:
            return False

    def attach(self, sealed_record: Mapping[str, Any]) -> dict:
        """Add signature fields to a record that already carries its digest."""
        out = dict(sealed_record)
        out[SIGNATURE_FIELD] = self.sign_digest(str(out[INTEGRITY_HASH_FIELD]))
        out[SIGNING_KEY_ID_FIELD] = self.key_id
        return out

    def verify_record(self, record: Mapping[str, Any]) -> bool:
        """Check a stored record's signature. Does not re-check the digest itself."""
        digest_hex = record.get(INTEGRITY_HASH_FIELD)
        signature = record.get(SIGNATURE_FIELD)
        if not is_well_formed_digest(digest_hex) or not isinstance(signature, str):
            return False
        if record.get(SIGNING_KEY_ID_FIELD) != self.key_id:
            return False
        return self.verify_digest(digest_hex, signature)


def load_audit_signer_from_env() -> Optional[AuditSigner]:
    """Load the audit signing key from env. Returns None if not configured or invalid."""
    key_hex = (os.getenv(ENV_SIGNING_KEY) or "").strip()
    if not key_hex:
        return None
    key_id = (os.getenv(ENV_SIGNING_KEY_ID) or "audit").strip() or "audit"
    try:
        if len(key_hex) != 64:
            raise ValueError(f"Key must be 64 hex chars (32 bytes), got {len(key_hex)}")
        return AuditSigner.from_seed(bytes.fromhex(key_hex), key_id)
    except Exception as e:
        logger.warning("Failed to load audit signing key from %s: %s", ENV_SIGNING_KEY, e)
        return None
