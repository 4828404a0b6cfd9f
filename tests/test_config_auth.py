import json

import pytest

from escape_gateway.auth import (
    ENV_API_TOKENS_FILE,
    ENV_API_TOKENS_JSON,
    Capabilities,
    TokenAuth,
    require_compliance_or_legal,
)
from escape_gateway.config import EngineConfig
from escape_gateway.errors import EscapeError


def test_engine_config_defaults(monkeypatch):
    for name in ("ESCAPE_BATCH_LIMIT", "ESCAPE_STORE", "ESCAPE_RATE_LIMIT_MAX_SUBMISSIONS"):
        monkeypatch.delenv(name, raising=False)
    cfg = EngineConfig.from_env()
    assert cfg.batch_limit == 500
    assert cfg.rate_limit_window_seconds == 3600
    assert cfg.rate_limit_max_submissions == 5
    assert cfg.store_backend == "memory"
    assert cfg.legacy_completion_by_status is True


@pytest.mark.parametrize("raw,expected", [("900", 500), ("0", 1), ("250", 250), ("junk", 500)])
def test_batch_limit_is_clamped_to_store_ceiling(monkeypatch, raw, expected):
    monkeypatch.setenv("ESCAPE_BATCH_LIMIT", raw)
    assert EngineConfig.from_env().batch_limit == expected


def test_engine_config_rejects_bad_values(monkeypatch):
    monkeypatch.setenv("ESCAPE_STORE", "postgres")
    monkeypatch.setenv("ESCAPE_RATE_LIMIT_WINDOW_SECONDS", "-1")
    monkeypatch.setenv("ESCAPE_DEVICE_COMMAND_TTL_SECONDS", "5")
    monkeypatch.setenv("ESCAPE_LEGACY_COMPLETION_BY_STATUS", "off")
    cfg = EngineConfig.from_env()
    assert cfg.store_backend == "memory"
    assert cfg.rate_limit_window_seconds == 3600
    assert cfg.device_command_ttl_seconds == 7 * 24 * 3600
    assert cfg.legacy_completion_by_status is False


def test_capabilities_from_claims_requires_true():
    caps = Capabilities.from_claims("u1", {"isSafetyTeam": "yes", "isLegalTeam": True})
    assert caps.is_safety_team is False
    assert caps.is_legal_team is True
    assert caps.authenticated is True
    assert Capabilities.anonymous().authenticated is False
    assert require_compliance_or_legal(caps) == "u1"


def test_token_auth_resolves_bearer(monkeypatch):
    monkeypatch.setenv(ENV_API_TOKENS_JSON, json.dumps({
        "t1": {"uid": "safety-1", "claims": {"isSafetyTeam": True}},
    }))
    monkeypatch.delenv(ENV_API_TOKENS_FILE, raising=False)
    auth = TokenAuth.load_from_env()
    assert auth.configured is True
    assert auth.config_error is None

    caps = auth.resolve("Bearer t1")
    assert caps.uid == "safety-1"
    assert caps.is_safety_team is True
    assert auth.resolve(None) == Capabilities.anonymous()

    for header, message in (("Bearer nope", "Invalid token"), ("Token t1", "Invalid authorization header")):
        with pytest.raises(EscapeError) as ei:
            auth.resolve(header)
        assert ei.value.code == "unauthenticated"
        assert ei.value.message == message


def test_token_auth_loads_from_file(monkeypatch, tmp_path):
    path = tmp_path / "tokens.json"
    path.write_text(json.dumps({"t2": {"uid": "legal-1", "claims": {"isLegalTeam": True}}}), encoding="utf-8")
    monkeypatch.delenv(ENV_API_TOKENS_JSON, raising=False)
    monkeypatch.setenv(ENV_API_TOKENS_FILE, str(path))
    assert TokenAuth.load_from_env().resolve("Bearer t2").is_legal_team is True


@pytest.mark.parametrize("raw", ["not json", "[]", json.dumps({"t": {"claims": {}}}), json.dumps({"t": {"uid": "u", "claims": "admin"}})])
def test_token_auth_malformed_config_fails_closed(monkeypatch, raw):
    monkeypatch.setenv(ENV_API_TOKENS_JSON, raw)
    auth = TokenAuth.load_from_env()
    assert auth.config_error == "TOKEN_CONFIG_INVALID"
    for header in (None, "Bearer t"):
        with pytest.raises(EscapeError) as ei:
            auth.resolve(header)
        assert ei.value.http_status == 401
