import pytest
from fastapi.testclient import TestClient

from escape_gateway.auth import Capabilities, TokenAuth
from escape_gateway.gateway import EscapeGateway
from escape_gateway.server import create_app
from escape_gateway.sqlite_store import SQLiteDocumentStore

REASON = "Victim requested removal of parent access"

TOKENS = TokenAuth(
    tokens={
        "safety-token": Capabilities(uid="safety-1", is_safety_team=True),
        "admin-token": Capabilities(uid="admin-1", is_admin=True),
        "guardian-token": Capabilities(uid="parent-1"),
    },
    configured=True,
)


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(gateway):
    return TestClient(create_app(gateway=gateway, token_auth=TOKENS))


def test_health(client):
    r = client.get("/v1/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "healthy"
    assert body["store"] == "InMemoryDocumentStore"
    assert body["signing_enabled"] is False


def test_health_reports_store_lockdown(tmp_path, clock, epoch):
    store = SQLiteDocumentStore(db_path=str(tmp_path / "gw.db"))
    client = TestClient(create_app(gateway=EscapeGateway(store=store, clock=clock, rate_clock=epoch), token_auth=TOKENS))
    assert client.get("/v1/health").json()["store_locked_down"] is False

    store.guard._locked_until = float("inf")
    body = client.get("/v1/health").json()
    assert body["status"] == "degraded"
    assert body["store_locked_down"] is True



def test_sever_parent_over_http(client):
    payload = {"requestId": "req-1", "familyId": "fam-1", "targetUserId": "parent-1", "reason": REASON}
    r = client.post("/v1/escape/sever-parent", json=payload, headers=_auth("safety-token"))
    assert r.status_code == 200
    assert r.json()["severed"] is True

    r = client.post("/v1/escape/sever-parent", json=payload, headers=_auth("safety-token"))
    assert r.status_code == 412
    assert r.json()["code"] == "failed-precondition"


def test_auth_failures(client):
    payload = {"requestId": "req-1", "familyId": "fam-1", "targetUserId": "parent-1", "reason": REASON}

    r = client.post("/v1/escape/sever-parent", json=payload)
    assert r.status_code == 401
    assert r.json()["code"] == "unauthenticated"

    r = client.post("/v1/escape/sever-parent", json=payload, headers=_auth("unknown"))
    assert r.status_code == 401
    assert r.json()["message"] == "Invalid token"

    r = client.post("/v1/escape/sever-parent", json=payload, headers={"Authorization": "Basic abc"})
    assert r.status_code == 401

    r = client.post("/v1/escape/sever-parent", json=payload, headers=_auth("admin-token"))
    assert r.status_code == 403
    assert r.json()["code"] == "permission-denied"


def test_invalid_body_does_not_echo_input(client):
    r = client.post(
        "/v1/escape/sever-parent",
        json={"requestId": "req-1", "familyId": "fam-1", "targetUserId": "parent-1", "reason": "too short"},
        headers=_auth("safety-token"),
    )
    assert r.status_code == 400
    body = r.json()
    assert body["code"] == "invalid-argument"
    assert body["message"] == "Invalid input"
    assert "too short" not in r.text

    r = client.post("/v1/escape/sever-parent", content=b"[not json", headers=_auth("safety-token"))
    assert r.status_code == 400
    assert r.json()["code"] == "invalid-argument"


def test_anonymous_submit_and_rate_limit(client):
    for _ in range(5):
        r = client.post("/v1/escape/submit", json={"message": "help"})
        assert r.status_code == 200
        assert "requestId" in r.json()
    r = client.post("/v1/escape/submit", json={"message": "help"})
    assert r.status_code == 429
    assert r.json()["code"] == "resource-exhausted"


def test_family_audit_log_route(client):
    r = client.get("/v1/audit/family/fam-1", headers=_auth("guardian-token"))
    assert r.status_code == 200
    assert [e["id"] for e in r.json()["entries"]] == ["fa-1"]

    r = client.get("/v1/audit/family/fam-1?limit=0", headers=_auth("guardian-token"))
    assert r.status_code == 400

    r = client.get("/v1/audit/family/fam-1", headers=_auth("safety-token"))
    assert r.status_code == 403


def test_metrics_endpoint(client):
    client.get("/v1/health")
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "escape_http_requests_total" in r.text
    assert "fam-1" not in r.text


def test_metrics_token_required_when_configured(gateway, monkeypatch):
    monkeypatch.setenv("ESCAPE_METRICS_TOKEN", "m-secret")
    client = TestClient(create_app(gateway=gateway, token_auth=TOKENS))
    assert client.get("/metrics").status_code == 403
    assert client.get("/metrics", headers=_auth("m-secret")).status_code == 200
    assert client.get("/metrics", headers={"X-Metrics-Token": "m-secret"}).status_code == 200


def test_misconfigured_tokens_fail_closed(gateway, monkeypatch):
    monkeypatch.setenv("ESCAPE_API_TOKENS_JSON", "{not json")
    client = TestClient(create_app(gateway=gateway, token_auth=TokenAuth.load_from_env()))
    r = client.post("/v1/escape/submit", json={"message": "help"})
    assert r.status_code == 401
    assert r.json()["message"] == "Authentication unavailable"
