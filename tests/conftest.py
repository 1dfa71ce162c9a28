from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from accounts import MemoryAccountStore
from audit import AuditTrail, MemoryAuditSink
from email_service import OutboxDelivery
from ledger import LocalLedger
from orchestrator import AuthorizationOrchestrator
from otp import MemoryPasscodeStore, PasscodeGate
from wallets import WalletBindingVerifier

OWNER_KEY = Account.from_key("0x" + "a1" * 32)
VOTER_KEY = Account.from_key("0x" + "b2" * 32)
OTHER_KEY = Account.from_key("0x" + "c3" * 32)

OWNER = OWNER_KEY.address.lower()
VOTER = VOTER_KEY.address.lower()
OTHER = OTHER_KEY.address.lower()
PASSWORD = "correct-horse-battery"
SECRET = "test-session-secret"

_KEYS = {key.address.lower(): key for key in (OWNER_KEY, VOTER_KEY, OTHER_KEY)}


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def sign_message(address: str, message: str) -> str:
    signed = _KEYS[address].sign_message(encode_defunct(text=message))
    return "0x" + bytes(signed.signature).hex()


def bind_with_proof(verifier, identity: str, address: str, signer: str | None = None):
    """Request a challenge and bind ``address`` with a signature from ``signer`` (default: the address)."""
    challenge = verifier.challenge(identity)
    return verifier.bind(identity, address, sign_message(signer or address, challenge.message))


def link_wallet(env, session, address: str) -> dict:
    core = env.orchestrator
    challenge = core.wallet_challenge(session)
    return core.bind_wallet(session, address, sign_message(address, challenge["message"]))


def build_env(allow_self_registration: bool = False, delivery=None, sink=None) -> SimpleNamespace:
    clock = FakeClock()
    outbox = delivery or OutboxDelivery()
    accounts = MemoryAccountStore()
    passcodes = MemoryPasscodeStore()
    gate = PasscodeGate(passcodes, outbox, clock=clock)
    verifier = WalletBindingVerifier(accounts, passcodes, clock=clock)
    ledger = LocalLedger(OWNER)
    audit_sink = sink or MemoryAuditSink()
    orchestrator = AuthorizationOrchestrator(
        accounts=accounts,
        gate=gate,
        verifier=verifier,
        ledger=ledger,
        audit=AuditTrail(audit_sink),
        session_secret=SECRET,
        allow_self_registration=allow_self_registration,
    )
    return SimpleNamespace(
        clock=clock,
        outbox=outbox,
        accounts=accounts,
        gate=gate,
        verifier=verifier,
        ledger=ledger,
        audit_sink=audit_sink,
        orchestrator=orchestrator,
    )


@pytest.fixture
def env():
    return build_env()


def sign_in(env, email: str, password: str = PASSWORD):
    """Register (if needed) and log in through the full OTP flows; returns a Session."""
    core = env.orchestrator
    account = env.accounts.find_by_identity(email)
    if account is None or not account.verified:
        core.start_registration(email, password)
        core.complete_registration(email, env.outbox.last_code(email, "registration"))
    core.start_login(email, password)
    result = core.complete_login(email, env.outbox.last_code(email, "login"))
    return core.authenticate(result["session_token"])


def make_verified_account(accounts, email: str) -> None:
    accounts.create_account(email, PASSWORD)
    accounts.mark_verified(email)
