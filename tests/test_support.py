import json

import pytest

from audit import AuditTrail, MemoryAuditSink, canonical_json, sha256_hex
from cli import main
from config import Settings
from session_utils import create_session_token, verify_session_token

SECRET = "unit-secret"


def test_session_token_round_trip():
    token = create_session_token(" User@X.com ", SECRET, ttl_seconds=60)
    payload = verify_session_token(token, SECRET)
    assert payload["email"] == "user@x.com"


def test_session_token_rejects_tampering_and_expiry():
    token = create_session_token("user@x.com", SECRET)
    with pytest.raises(ValueError):
        verify_session_token(token, "other-secret")
    with pytest.raises(ValueError):
        verify_session_token("no-dot-here", SECRET)

    expired = create_session_token("user@x.com", SECRET, ttl_seconds=-5)
    with pytest.raises(ValueError, match="expired"):
        verify_session_token(expired, SECRET)


def test_session_secret_is_required():
    with pytest.raises(RuntimeError):
        create_session_token("user@x.com", None)


def test_settings_defaults(monkeypatch):
    for name in ("OTP_LENGTH", "ALLOW_SELF_REGISTRATION", "LEDGER_BACKEND", "ALGORAND_APP_ID", "WALLET_CHALLENGE_TTL_SECONDS"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.otp_length == 6
    assert settings.otp_expiry_minutes == 10
    assert settings.allow_self_registration is False
    assert settings.ledger_backend == "local"
    assert settings.wallet_challenge_ttl_seconds == 300


def test_settings_parse_env(monkeypatch):
    monkeypatch.setenv("OTP_LENGTH", "8")
    monkeypatch.setenv("ALLOW_SELF_REGISTRATION", "yes")
    monkeypatch.setenv("LEDGER_BACKEND", "Algorand")
    monkeypatch.setenv("ALGORAND_APP_ID", "77")

    settings = Settings.from_env()

    assert settings.otp_length == 8
    assert settings.allow_self_registration is True
    assert settings.ledger_backend == "algorand"
    assert settings.algorand_app_id == 77


@pytest.mark.parametrize(
    "name,value",
    [
        ("OTP_LENGTH", "six"),
        ("OTP_LENGTH", "3"),
        ("OTP_EXPIRY_MINUTES", "0"),
        ("LEDGER_BACKEND", "ethereum"),
        ("WALLET_CHALLENGE_TTL_SECONDS", "0"),
    ],
)
def test_settings_reject_bad_values(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(RuntimeError):
        Settings.from_env()


def test_algorand_backend_needs_app_id(monkeypatch):
    monkeypatch.setenv("LEDGER_BACKEND", "algorand")
    monkeypatch.delenv("ALGORAND_APP_ID", raising=False)
    with pytest.raises(RuntimeError):
        Settings.from_env()


def test_audit_entries_are_hashed():
    sink = MemoryAuditSink()
    AuditTrail(sink).emit("vote_cast", "HIGH", wallet="0xbbbb...bbbb")

    event = sink.events[0]
    assert event["event_type"] == "vote_cast"
    assert event["payload"]["payload"] == {"wallet": "0xbbbb...bbbb"}
    assert event["entry_hash"] == sha256_hex(canonical_json(event["payload"]))


def test_audit_list_is_clamped():
    sink = MemoryAuditSink()
    trail = AuditTrail(sink)
    for index in range(3):
        trail.emit("login_success", index=index)

    assert len(trail.list_recent(0)) == 1
    assert trail.list_recent(10)[0]["payload"]["payload"]["index"] == 2


def test_cli_compiles_contract(capsys):
    assert main(["compile-contract"]) == 0
    assert capsys.readouterr().out.startswith("#pragma version 8")


def test_cli_sweep_on_memory_stores(monkeypatch, capsys):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("LEDGER_BACKEND", "local")
    monkeypatch.setenv("LEDGER_OWNER_ADDRESS", "0x" + "aa" * 20)
    monkeypatch.setenv("SESSION_SECRET", SECRET)

    assert main(["sweep-otp"]) == 0
    assert json.loads(capsys.readouterr().out.strip().splitlines()[-1]) == {"deleted": 0}
