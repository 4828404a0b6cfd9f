import pytest

from escape_gateway.errors import EscapeError
from escape_gateway.integrity import (
    INTEGRITY_HASH_FIELD,
    canonical_json,
    digest,
    seal_record,
    verify_integrity,
)
from escape_gateway.signing import AuditSigner, load_audit_signer_from_env


def _entry():
    return {
        "action": "parent-severing",
        "resourceType": "familyMembership",
        "resourceId": "parent-1_fam-1",
        "performedBy": "safety-1",
        "familyId": "fam-1",
        "timestamp": "2026-03-01T12:00:00+00:00",
        "sealed": True,
        "details": {"targetUserId": "parent-1", "counts": [1, 2, 3]},
    }


def test_digest_ignores_key_order():
    a = _entry()
    b = dict(reversed(list(a.items())))
    b["details"] = {"counts": [1, 2, 3], "targetUserId": "parent-1"}
    assert digest(a) == digest(b)


def test_digest_is_deterministic_lowercase_hex():
    d1 = digest(_entry())
    d2 = digest(_entry())
    assert d1 == d2
    assert len(d1) == 64
    assert d1 == d1.lower()


def test_canonical_json_is_compact_and_sorted():
    assert canonical_json({"b": 1, "a": [True, None]}) == '{"a":[true,null],"b":1}'


def test_canonical_json_normalizes_unicode():
    # "é" precomposed vs. decomposed
    assert digest({"name": "caf\u00e9"}) == digest({"name": "cafe\u0301"})


def test_canonical_json_rejects_nan():
    with pytest.raises(EscapeError) as ei:
        canonical_json({"x": float("nan")})
    assert ei.value.code == "invalid-argument"


def test_sealed_record_verifies():
    rec = seal_record(_entry())
    assert verify_integrity(rec) is True


@pytest.mark.parametrize("field,value", [
    ("action", "something-else"),
    ("familyId", "fam-2"),
    ("sealed", False),
    ("timestamp", "2026-03-01T12:00:01+00:00"),
])
def test_any_field_mutation_fails_verification(field, value):
    rec = seal_record(_entry())
    rec[field] = value
    assert verify_integrity(rec) is False


def test_added_field_fails_verification():
    rec = seal_record(_entry())
    rec["unsealedBy"] = "someone"
    assert verify_integrity(rec) is False


def test_malformed_digest_fails_without_raising():
    rec = seal_record(_entry())
    rec[INTEGRITY_HASH_FIELD] = rec[INTEGRITY_HASH_FIELD][:63]
    assert verify_integrity(rec) is False
    rec[INTEGRITY_HASH_FIELD] = "Z" * 64
    assert verify_integrity(rec) is False
    rec[INTEGRITY_HASH_FIELD] = None
    assert verify_integrity(rec) is False


def test_missing_digest_fails():
    assert verify_integrity(_entry()) is False


def test_signature_fields_do_not_affect_digest():
    signer = AuditSigner.from_seed(bytes(range(32)), key_id="k1")
    rec = signer.attach(seal_record(_entry()))
    assert verify_integrity(rec) is True
    assert signer.verify_record(rec) is True


def test_signature_rejects_other_key_and_tamper():
    signer = AuditSigner.from_seed(bytes(range(32)), key_id="k1")
    other = AuditSigner.from_seed(bytes(32), key_id="k1")
    rec = signer.attach(seal_record(_entry()))
    assert other.verify_record(rec) is False

    forged = seal_record(dict(rec, familyId="fam-2"))
    forged["integritySignature"] = rec["integritySignature"]
    forged["signingKeyId"] = "k1"
    # The attacker can recompute the digest but not the signature.
    assert verify_integrity(forged) is True
    assert signer.verify_record(forged) is False


def test_load_signer_from_env(monkeypatch):
    monkeypatch.setenv("ESCAPE_AUDIT_SIGNING_KEY", "11" * 32)
    monkeypatch.setenv("ESCAPE_AUDIT_SIGNING_KEY_ID", "audit-2026")
    signer = load_audit_signer_from_env()
    assert signer is not None
    assert signer.key_id == "audit-2026"
    assert signer == AuditSigner.from_seed(bytes.fromhex("11" * 32), "audit-2026")


def test_load_signer_from_env_invalid_or_missing(monkeypatch):
    monkeypatch.delenv("ESCAPE_AUDIT_SIGNING_KEY", raising=False)
    assert load_audit_signer_from_env() is None
    monkeypatch.setenv("ESCAPE_AUDIT_SIGNING_KEY", "abc")
    assert load_audit_signer_from_env() is None
