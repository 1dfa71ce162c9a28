import threading
from datetime import timedelta

import pytest

from email_service import DeliveryResult, OutboxDelivery
from errors import ValidationError
from otp import GENERIC_OTP_FAILURE, MemoryPasscodeStore, PasscodeGate

from conftest import FakeClock


class _FailingDelivery:
    def __init__(self, raise_error: bool = False) -> None:
        self.raise_error = raise_error
        self.calls = 0

    def send(self, identity, code, purpose):
        self.calls += 1
        if self.raise_error:
            raise ConnectionError("smtp unreachable")
        return DeliveryResult(success=False, error="provider down")


def _gate(delivery=None, codes=None):
    clock = FakeClock()
    gate = PasscodeGate(MemoryPasscodeStore(), delivery or OutboxDelivery(), clock=clock)
    if codes is not None:
        sequence = iter(codes)
        gate._generate_code = lambda: next(sequence)
    return gate, clock


def test_issue_returns_numeric_code_with_ten_minute_expiry():
    gate, clock = _gate()
    issued = gate.issue("U@X.com ", "login")

    assert len(issued.code) == 6
    assert issued.code.isdigit()
    assert issued.expires_at == clock.now + timedelta(minutes=10)
    assert issued.delivered is True
    assert gate.delivery.last_code("u@x.com", "login") == issued.code


def test_configurable_length():
    clock = FakeClock()
    gate = PasscodeGate(MemoryPasscodeStore(), OutboxDelivery(), length=8, clock=clock)
    assert len(gate.issue("u@x.com", "login").code) == 8


def test_verify_succeeds_exactly_once():
    gate, _ = _gate()
    issued = gate.issue("u@x.com", "login")

    first = gate.verify("u@x.com", "login", issued.code)
    second = gate.verify("u@x.com", "login", issued.code)

    assert first.valid is True
    assert second.valid is False
    assert second.reason == GENERIC_OTP_FAILURE


def test_new_issue_invalidates_previous_code():
    gate, _ = _gate(codes=["111111", "222222"])
    old = gate.issue("u@x.com", "registration")
    new = gate.issue("u@x.com", "registration")

    assert gate.verify("u@x.com", "registration", old.code).valid is False
    assert gate.verify("u@x.com", "registration", new.code).valid is True


def test_issue_for_other_purpose_does_not_invalidate():
    gate, _ = _gate(codes=["111111", "222222"])
    login = gate.issue("u@x.com", "login")
    gate.issue("u@x.com", "password_reset")

    assert gate.verify("u@x.com", "login", login.code).valid is True


def test_expired_code_is_rejected_with_generic_reason():
    gate, clock = _gate()
    issued = gate.issue("u@x.com", "login")
    clock.advance(minutes=10, seconds=1)

    result = gate.verify("u@x.com", "login", issued.code)
    assert result.valid is False
    assert result.reason == GENERIC_OTP_FAILURE


def test_failures_are_indistinguishable():
    gate, _ = _gate(codes=["123456"])
    gate.issue("u@x.com", "login")

    wrong_code = gate.verify("u@x.com", "login", "654321")
    wrong_purpose = gate.verify("u@x.com", "registration", "123456")
    nobody = gate.verify("nobody@x.com", "login", "123456")
    malformed = gate.verify("u@x.com", "login", "12ab")

    assert {r.reason for r in (wrong_code, wrong_purpose, nobody, malformed)} == {GENERIC_OTP_FAILURE}
    assert not any(r.valid for r in (wrong_code, wrong_purpose, nobody, malformed))
    # none of the failures consumed the real code
    assert gate.verify("u@x.com", "login", "123456").valid is True


def test_delivery_failure_keeps_code_and_reports_it():
    gate, _ = _gate(delivery=_FailingDelivery())
    issued = gate.issue("u@x.com", "registration")

    assert issued.delivered is False
    assert issued.delivery_error == "provider down"
    assert gate.verify("u@x.com", "registration", issued.code).valid is True


def test_delivery_exception_is_reported_not_raised():
    gate, _ = _gate(delivery=_FailingDelivery(raise_error=True))
    issued = gate.issue("u@x.com", "registration")

    assert issued.delivered is False
    assert "smtp unreachable" in issued.delivery_error


def test_resend_delivers_the_active_code():
    gate, _ = _gate()
    issued = gate.issue("u@x.com", "login")
    resent = gate.resend("u@x.com", "login")

    assert resent.code == issued.code
    assert len(gate.delivery.outbox) == 2
    assert gate.resend("u@x.com", "password_reset") is None


def test_sweep_expired_is_idempotent():
    gate, clock = _gate()
    gate.issue("a@x.com", "login")
    gate.issue("b@x.com", "login")
    clock.advance(minutes=11)
    gate.issue("c@x.com", "login")

    assert gate.sweep_expired() == 2
    assert gate.sweep_expired() == 0


def test_unknown_purpose_is_rejected():
    gate, _ = _gate()
    with pytest.raises(ValidationError):
        gate.issue("u@x.com", "vote")


def test_concurrent_issue_leaves_one_active_code():
    gate, clock = _gate()
    threads = [threading.Thread(target=gate.issue, args=("u@x.com", "login")) for _ in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    active = [
        p for p in gate.store._codes
        if p.identity == "u@x.com" and p.purpose == "login" and not p.used and p.expires_at > clock.now
    ]
    assert len(active) == 1
