"""Wallet binding verifier.

Ties at most one wallet address to an account and answers, immediately before
every ledger-facing action, whether a presented address may act for an identity.
One wallet maps to at most one identity; an identity changes wallets only by
unbinding first. Binding requires a signature over a single-use challenge, so an
account can only bind a wallet whose key it holds.
"""

import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import structlog
from eth_account import Account
from eth_account.messages import encode_defunct

from accounts import AccountStore, normalize_email, utc_now
from errors import ConflictError
from otp import Passcode, PasscodeStore

logger = structlog.get_logger(__name__)

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

MSG_INVALID_ADDRESS = "Invalid wallet address format"
MSG_NOT_BOUND = "No wallet bound to this account"
MSG_MATCH = "Wallet address matches the bound wallet"
MSG_MISMATCH = "Connected wallet does not match the wallet bound to this account"
MSG_ACCOUNT_UNAVAILABLE = "Account is not eligible for wallet binding"

CHALLENGE_PURPOSE = "wallet_binding"
CHALLENGE_TEMPLATE = (
    "Please sign this message to verify wallet ownership.\n"
    "Account: {identity}\n"
    "Nonce: {nonce}\n"
    "Expires: {expires_at}"
)


def is_valid_address(address) -> bool:
    return isinstance(address, str) and bool(ADDRESS_RE.match(address.strip()))


def normalize_address(address: str) -> str:
    return address.strip().lower()


def mask_address(address: str) -> str:
    return f"{address[:6]}...{address[-4:]}"


def address_bytes(address: str) -> bytes:
    return bytes.fromhex(normalize_address(address)[2:])


@dataclass
class WalletStatus:
    has_wallet: bool
    address: str | None = None


@dataclass
class BindResult:
    success: bool
    reason: str | None = None
    address: str | None = None


@dataclass
class MatchResult:
    is_valid: bool
    is_matching: bool
    needs_registration: bool
    message: str


@dataclass
class WalletChallenge:
    message: str
    expires_at: datetime


def challenge_message(identity: str, nonce: str, expires_at: datetime) -> str:
    return CHALLENGE_TEMPLATE.format(identity=identity, nonce=nonce, expires_at=int(expires_at.timestamp()))


def verify_signature(address: str, signature: str, message: str) -> bool:
    """True when ``signature`` is a personal_sign signature of ``message`` by ``address``."""
    if not is_valid_address(address) or not signature or not message:
        return False
    try:
        recovered = Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as exc:  # noqa: BLE001
        logger.info("wallet_signature_unreadable", error=str(exc))
        return False
    return recovered.lower() == normalize_address(address)


class WalletBindingVerifier:
    def __init__(
        self,
        accounts: AccountStore,
        challenges: PasscodeStore,
        challenge_ttl_seconds: int = 300,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.accounts = accounts
        self.challenges = challenges
        self.challenge_ttl = timedelta(seconds=challenge_ttl_seconds)
        self.clock = clock

    def challenge(self, identity: str) -> WalletChallenge:
        """Issue a fresh challenge for ``identity``; any earlier one stops being accepted."""
        identity = normalize_email(identity)
        now = self.clock()
        nonce = secrets.token_hex(16)
        passcode = Passcode(
            identity=identity,
            purpose=CHALLENGE_PURPOSE,
            code=nonce,
            expires_at=now + self.challenge_ttl,
            created_at=now,
        )
        self.challenges.replace_active(passcode, now)
        return WalletChallenge(
            message=challenge_message(identity, nonce, passcode.expires_at),
            expires_at=passcode.expires_at,
        )

    def _prove_ownership(self, identity: str, address: str, signature: str) -> bool:
        now = self.clock()
        pending = self.challenges.active(identity, CHALLENGE_PURPOSE, now)
        if pending is None:
            return False
        message = challenge_message(identity, pending.code, pending.expires_at)
        if not verify_signature(address, signature, message):
            return False
        # single use: a concurrent bind with the same signature loses here
        return self.challenges.consume(identity, CHALLENGE_PURPOSE, pending.code, now)

    def _eligible(self, identity: str):
        account = self.accounts.find_by_identity(identity)
        if account is None or not account.active or not account.verified:
            return None
        return account

    def status(self, identity: str, viewer: str | None = None) -> WalletStatus:
        account = self.accounts.find_by_identity(identity)
        if account is None or not account.wallet_address:
            return WalletStatus(has_wallet=False)
        address = account.wallet_address
        if viewer is None or normalize_email(viewer) != account.identity:
            address = mask_address(address)
        return WalletStatus(has_wallet=True, address=address)

    def bind(self, identity: str, address: str, signature: str) -> BindResult:
        if not is_valid_address(address):
            return BindResult(success=False, reason="INVALID_ADDRESS")
        address = normalize_address(address)
        account = self._eligible(identity)
        if account is None:
            return BindResult(success=False, reason="ACCOUNT_UNAVAILABLE")
        if account.wallet_address == address:
            return BindResult(success=True, address=address)
        if account.wallet_address:
            return BindResult(success=False, reason="ALREADY_BOUND")
        if not self._prove_ownership(account.identity, address, signature):
            logger.info("wallet_bind_unproven", address=mask_address(address))
            return BindResult(success=False, reason="INVALID_SIGNATURE")

        holder = self.accounts.find_by_wallet(address)
        if holder is not None and holder.identity != account.identity:
            logger.info("wallet_bind_conflict")
            return BindResult(success=False, reason="ALREADY_BOUND_ELSEWHERE")
        try:
            self.accounts.update_bound_wallet(account.identity, address)
        except ConflictError as exc:
            logger.info("wallet_bind_conflict", code=exc.code)
            return BindResult(success=False, reason="ALREADY_BOUND_ELSEWHERE")
        logger.info("wallet_bound", address=mask_address(address))
        return BindResult(success=True, address=address)

    def verify_match(self, identity: str, presented_address: str) -> MatchResult:
        if not is_valid_address(presented_address):
            return MatchResult(False, False, False, MSG_INVALID_ADDRESS)
        account = self.accounts.find_by_identity(identity)
        if account is None or not account.active:
            return MatchResult(False, False, False, MSG_ACCOUNT_UNAVAILABLE)
        if not account.wallet_address:
            return MatchResult(True, False, True, MSG_NOT_BOUND)
        if account.wallet_address.lower() == normalize_address(presented_address):
            return MatchResult(True, True, False, MSG_MATCH)
        return MatchResult(True, False, False, MSG_MISMATCH)

    def unbind(self, identity: str, caller: str) -> BindResult:
        if normalize_email(identity) != normalize_email(caller):
            return BindResult(success=False, reason="NOT_OWNER")
        account = self.accounts.find_by_identity(identity)
        if account is None:
            return BindResult(success=False, reason="ACCOUNT_UNAVAILABLE")
        if not account.wallet_address:
            return BindResult(success=True)
        self.accounts.update_bound_wallet(account.identity, None)
        logger.info("wallet_unbound")
        return BindResult(success=True)
