import pytest

from escape_gateway.auth import Capabilities
from escape_gateway.errors import EscapeError
from escape_gateway.gateway import EscapeGateway
from escape_gateway.signing import AuditSigner

from conftest import put

SAFETY = Capabilities(uid="safety-1", is_safety_team=True)
LEGAL = Capabilities(uid="legal-1", is_legal_team=True)
COMPLIANCE = Capabilities(uid="comp-1", is_compliance_team=True)
GUARDIAN = Capabilities(uid="parent-1")
CHILD = Capabilities(uid="child-1")

REASON = "Sealing everything tied to this safety request"
JUSTIFICATION = "Quarterly compliance review of sealed escape records for family one"
LEGAL_JUSTIFICATION = "Court ordered disclosure of the specified records. " * 3


def _seal(**overrides):
    payload = {"safetyRequestId": "req-1", "familyId": "fam-1", "reason": REASON}
    payload.update(overrides)
    return payload


def _query(**overrides):
    payload = {"justification": JUSTIFICATION, "familyId": "fam-1"}
    payload.update(overrides)
    return payload


# ---------------------------
# Seal
# ---------------------------

@pytest.mark.asyncio
async def test_auto_seal_from_request(gateway, seeded):
    put(seeded, "notificationQueue", "n-req", {
        "familyId": "fam-1", "safetyRequestId": "req-1", "status": "pending", "type": "escape-action",
    })
    result = await gateway.seal_escape_audit_entries(SAFETY, _seal())
    assert result["sealed"] is True
    assert result["totalSealed"] == 1
    assert result["byCollection"] == {"notificationQueue": 1}
    assert result["safetyRequestId"] == "req-1"

    doc = await seeded.get("notificationQueue", "n-req")
    assert doc["sealReason"] == "escape-action"


@pytest.mark.asyncio
async def test_manual_seal_of_family_audit_entry(gateway, seeded):
    result = await gateway.seal_escape_audit_entries(SAFETY, _seal(
        entryIds=[{"collection": "familyAuditLog", "id": "fa-1"}],
        sealReason="retroactive",
    ))
    assert result["totalSealed"] == 1
    doc = await seeded.get("familyAuditLog", "fa-1")
    assert doc["sealed"] is True
    assert doc["sealReason"] == "retroactive"

    # Sealed entries disappear from the guardian view.
    log = await gateway.get_family_audit_log(GUARDIAN, {"familyId": "fam-1"})
    assert log == {"entries": [], "count": 0}


@pytest.mark.asyncio
async def test_seal_rejects_request_family_mismatch(gateway):
    with pytest.raises(EscapeError) as ei:
        await gateway.seal_escape_audit_entries(SAFETY, _seal(familyId="fam-2"))
    assert ei.value.code == "failed-precondition"


@pytest.mark.asyncio
async def test_seal_rejects_unsealable_collection_at_validation(gateway):
    with pytest.raises(EscapeError) as ei:
        await gateway.seal_escape_audit_entries(SAFETY, _seal(entryIds=[{"collection": "users", "id": "child-1"}]))
    assert ei.value.code == "invalid-argument"


@pytest.mark.asyncio
async def test_seal_requires_safety_team(gateway):
    with pytest.raises(EscapeError) as ei:
        await gateway.seal_escape_audit_entries(LEGAL, _seal())
    assert ei.value.code == "permission-denied"


# ---------------------------
# Unseal
# ---------------------------

@pytest.mark.asyncio
async def test_unseal_is_legal_only(gateway, seeded):
    await gateway.seal_escape_audit_entries(SAFETY, _seal(entryIds=[{"collection": "familyAuditLog", "id": "fa-1"}]))
    payload = {
        "entries": [{"collection": "familyAuditLog", "id": "fa-1"}],
        "courtOrderReference": "CO-2026-0042",
        "legalJustification": LEGAL_JUSTIFICATION,
    }

    for caps in (SAFETY, COMPLIANCE):
        with pytest.raises(EscapeError) as ei:
            await gateway.unseal_audit_entries(caps, payload)
        assert ei.value.code == "permission-denied"
        assert ei.value.message == "Legal team access required"

    result = await gateway.unseal_audit_entries(LEGAL, payload)
    assert result["unsealed"] == 1
    assert result["courtOrderReference"] == "CO-2026-0042"
    assert (await seeded.get("familyAuditLog", "fa-1"))["sealed"] is False

    with pytest.raises(EscapeError) as ei:
        await gateway.unseal_audit_entries(LEGAL, payload)
    assert ei.value.code == "not-found"
    assert ei.value.message == "Not sealed: familyAuditLog/fa-1"


@pytest.mark.asyncio
async def test_unseal_across_families_is_visible_to_each_family(gateway, seeded):
    put(seeded, "familyAuditLog", "fa-sealed", {"familyId": "fam-1", "action": "x", "sealed": True})
    put(seeded, "familyAuditLog", "fb-sealed", {"familyId": "fam-2", "action": "x", "sealed": True})
    await gateway.unseal_audit_entries(LEGAL, {
        "entries": [{"collection": "familyAuditLog", "id": "fa-sealed"}, {"collection": "familyAuditLog", "id": "fb-sealed"}],
        "courtOrderReference": "CO-2026-0043",
        "legalJustification": LEGAL_JUSTIFICATION,
    })

    for family_id in ("fam-1", "fam-2"):
        out = await gateway.get_sealed_audit_entries(LEGAL, _query(familyId=family_id, actionTypes=["audit-entries-unseal"]))
        assert out["count"] == 1
        assert out["entries"][0]["details"]["affectedFamilyIds"] == ["fam-1", "fam-2"]
        assert out["entries"][0]["integrityVerified"] is True


@pytest.mark.asyncio
async def test_unseal_requires_long_justification(gateway):
    with pytest.raises(EscapeError) as ei:
        await gateway.unseal_audit_entries(LEGAL, {
            "entries": [{"collection": "familyAuditLog", "id": "fa-1"}],
            "courtOrderReference": "CO-2026-0042",
            "legalJustification": "too short",
        })
    assert ei.value.code == "invalid-argument"


# ---------------------------
# Sealed reads
# ---------------------------

@pytest.mark.asyncio
async def test_sealed_read_verifies_and_logs_access(gateway, seeded):
    await gateway.sever_parent_access(SAFETY, {
        "requestId": "req-1", "familyId": "fam-1", "targetUserId": "parent-1", "reason": REASON,
    })

    out = await gateway.get_sealed_audit_entries(COMPLIANCE, _query(actionTypes=["parent-severing"]))
    assert out["count"] == 1
    entry = out["entries"][0]
    assert entry["action"] == "parent-severing"
    assert entry["integrityVerified"] is True
    assert "signatureVerified" not in entry

    (access,) = await seeded.query("sealedAuditAccessLog")
    assert access.data["performedBy"] == "comp-1"
    assert access.data["sealed"] is True
    assert access.data["details"]["accessorRole"] == "compliance"
    assert access.data["details"]["justification"] == JUSTIFICATION
    assert access.data["details"]["resultCount"] == 1


@pytest.mark.asyncio
async def test_sealed_read_flags_tampered_entries(gateway, seeded):
    await gateway.sever_parent_access(SAFETY, {
        "requestId": "req-1", "familyId": "fam-1", "targetUserId": "parent-1", "reason": REASON,
    })
    (doc,) = await seeded.query("adminAuditLog", [("action", "==", "parent-severing")])
    tampered = dict(doc.data, performedBy="someone-else")
    put(seeded, "adminAuditLog", doc.id, tampered)

    out = await gateway.get_sealed_audit_entries(LEGAL, _query(actionTypes=["parent-severing"]))
    assert out["entries"][0]["integrityVerified"] is False


@pytest.mark.asyncio
async def test_sealed_read_date_range_and_limit(gateway, seeded, clock):
    for day in (1, 2, 3):
        put(seeded, "adminAuditLog", f"e{day}", {
            "familyId": "fam-1", "sealed": True, "action": "parent-severing",
            "timestamp": f"2026-01-0{day}T10:00:00+00:00",
        })

    out = await gateway.get_sealed_audit_entries(LEGAL, _query(
        dateRange={"start": "2026-01-02T00:00:00", "end": "2026-01-03T23:59:59Z"},
    ))
    assert [e["id"] for e in out["entries"]] == ["e3", "e2"]

    out = await gateway.get_sealed_audit_entries(LEGAL, _query(limit=1))
    assert [e["id"] for e in out["entries"]] == ["e3"]

    with pytest.raises(EscapeError) as ei:
        await gateway.get_sealed_audit_entries(LEGAL, _query(
            dateRange={"start": "2026-01-03T00:00:00Z", "end": "2026-01-01T00:00:00Z"},
        ))
    assert ei.value.code == "invalid-argument"


@pytest.mark.asyncio
async def test_sealed_read_checks_signature_when_configured(seeded, clock, epoch):
    signer = AuditSigner.from_seed(bytes(range(32)), key_id="k1")
    gw = EscapeGateway(store=seeded, signer=signer, clock=clock, rate_clock=epoch)
    await gw.sever_parent_access(SAFETY, {
        "requestId": "req-1", "familyId": "fam-1", "targetUserId": "parent-1", "reason": REASON,
    })
    out = await gw.get_sealed_audit_entries(LEGAL, _query(actionTypes=["parent-severing"]))
    entry = out["entries"][0]
    assert entry["signingKeyId"] == "k1"
    assert entry["signatureVerified"] is True


@pytest.mark.asyncio
async def test_sealed_read_roles_and_justification(gateway):
    for caps in (SAFETY, GUARDIAN):
        with pytest.raises(EscapeError) as ei:
            await gateway.get_sealed_audit_entries(caps, _query())
        assert ei.value.code == "permission-denied"

    with pytest.raises(EscapeError) as ei:
        await gateway.get_sealed_audit_entries(LEGAL, _query(justification="x" * 49))
    assert ei.value.code == "invalid-argument"


# ---------------------------
# Family audit log
# ---------------------------

@pytest.mark.asyncio
async def test_family_audit_log_is_guardian_only(gateway, seeded):
    put(seeded, "familyAuditLog", "fa-sealed", {
        "familyId": "fam-1", "action": "x", "timestamp": "2026-02-02T00:00:00+00:00", "sealed": True,
    })
    out = await gateway.get_family_audit_log(GUARDIAN, {"familyId": "fam-1"})
    assert [e["id"] for e in out["entries"]] == ["fa-1"]

    with pytest.raises(EscapeError) as ei:
        await gateway.get_family_audit_log(CHILD, {"familyId": "fam-1"})
    assert ei.value.code == "permission-denied"
    assert ei.value.message == "Guardian access required"

    with pytest.raises(EscapeError) as ei:
        await gateway.get_family_audit_log(Capabilities.anonymous(), {"familyId": "fam-1"})
    assert ei.value.code == "unauthenticated"


@pytest.mark.asyncio
async def test_family_audit_log_never_shows_escape_activity(gateway):
    await gateway.sever_parent_access(SAFETY, {
        "requestId": "req-1", "familyId": "fam-1", "targetUserId": "parent-1", "reason": REASON,
    })
    out = await gateway.get_family_audit_log(Capabilities(uid="victim-1"), {"familyId": "fam-1"})
    assert [e["id"] for e in out["entries"]] == ["fa-1"]
