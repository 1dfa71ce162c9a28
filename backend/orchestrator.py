"""Authorization orchestrator.

Composes the passcode gate, the wallet binding verifier and the voting ledger for
every privileged flow. Identity-level transitions require a passcode; every
ledger-facing action re-checks the wallet binding immediately before the call.
The orchestrator keeps no state between calls.
"""

from dataclasses import dataclass
from typing import Any, Callable

import structlog

from accounts import AccountStore, is_valid_email, mask_email, normalize_email
from audit import AuditTrail, sha256_hex
from errors import AuthError, ConflictError, StateError, TransientError, ValidationError, WalletGateError
from ledger import LedgerRevert, Receipt, VoterInfo, VotingLedger
from otp import GENERIC_OTP_FAILURE, PasscodeGate
from session_utils import create_session_token, verify_session_token
from wallets import (
    MSG_INVALID_ADDRESS,
    WalletBindingVerifier,
    is_valid_address,
    mask_address,
    verify_signature,
)

logger = structlog.get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MSG_REGISTRATION_STARTED = "If this email can be registered, a verification code has been sent."
MSG_RESET_REQUESTED = "If an account with this email exists, a password reset code has been sent."
MSG_CODE_RESENT = "If a code is pending for this email, it has been sent again."

BIND_FAILURES = {
    "INVALID_ADDRESS": (ValidationError, MSG_INVALID_ADDRESS),
    "ALREADY_BOUND_ELSEWHERE": (ConflictError, "This wallet address is already bound to another account"),
    "ALREADY_BOUND": (ConflictError, "Unbind the current wallet before binding a new one"),
    "ACCOUNT_UNAVAILABLE": (StateError, "Account is not eligible for wallet binding"),
    "NOT_OWNER": (AuthError, "Only the account owner may change its wallet"),
    "INVALID_SIGNATURE": (AuthError, "Wallet signature does not match an active challenge"),
}


@dataclass(frozen=True)
class Session:
    identity: str
    expires_at: int
    token: str


class AuthorizationOrchestrator:
    def __init__(
        self,
        accounts: AccountStore,
        gate: PasscodeGate,
        verifier: WalletBindingVerifier,
        ledger: VotingLedger,
        audit: AuditTrail,
        session_secret: str,
        session_ttl_seconds: int = 3600,
        allow_self_registration: bool = False,
    ) -> None:
        if not session_secret:
            raise RuntimeError("SESSION_SECRET is required")
        self.accounts = accounts
        self.gate = gate
        self.verifier = verifier
        self.ledger = ledger
        self.audit = audit
        self.session_secret = session_secret
        self.session_ttl_seconds = session_ttl_seconds
        self.allow_self_registration = allow_self_registration

    # -- identity flows ---------------------------------------------------

    @staticmethod
    def _validate_credentials(email: str, password: str) -> str:
        if not is_valid_email(email):
            raise ValidationError("INVALID_EMAIL", "A valid email address is required")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError("WEAK_PASSWORD", f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        return normalize_email(email)

    def _issue_or_raise(self, identity: str, purpose: str) -> None:
        issued = self.gate.issue(identity, purpose)
        if not issued.delivered:
            raise TransientError(
                "OTP_DELIVERY_FAILED",
                "The verification code could not be sent. Please request a resend shortly.",
            )

    def _new_session(self, identity: str) -> dict[str, Any]:
        token = create_session_token(identity, self.session_secret, ttl_seconds=self.session_ttl_seconds)
        return {"session_token": token, "email": identity, "expires_in": self.session_ttl_seconds}

    def start_registration(self, email: str, password: str) -> dict[str, Any]:
        identity = self._validate_credentials(email, password)
        account = self.accounts.find_by_identity(identity)
        if account is not None and (account.verified or not account.active):
            self.audit.emit("registration_start_ignored", "LOW", email_hash=_hash(identity))
            return {"message": MSG_REGISTRATION_STARTED, "masked_email": mask_email(identity)}

        if account is None:
            try:
                self.accounts.create_account(identity, password)
            except ConflictError:
                # lost a race with a concurrent registration; treat as existing
                self.accounts.set_password(identity, password)
        else:
            self.accounts.set_password(identity, password)
        self.audit.emit("registration_started", "LOW", email_hash=_hash(identity))
        self._issue_or_raise(identity, "registration")
        return {"message": MSG_REGISTRATION_STARTED, "masked_email": mask_email(identity)}

    def complete_registration(self, email: str, code: str) -> dict[str, Any]:
        identity = normalize_email(email)
        result = self.gate.verify(identity, "registration", code)
        self.audit.emit("otp_verify", "LOW" if result.valid else "MEDIUM",
                        email_hash=_hash(identity), purpose="registration", success=result.valid)
        if not result.valid:
            raise AuthError("OTP_INVALID", GENERIC_OTP_FAILURE)
        account = self.accounts.find_by_identity(identity)
        if account is None or not account.active:
            raise AuthError("OTP_INVALID", GENERIC_OTP_FAILURE)
        self.accounts.mark_verified(identity)
        self.audit.emit("registration_completed", "LOW", email_hash=_hash(identity))
        return self._new_session(identity)

    def start_login(self, email: str, password: str) -> dict[str, Any]:
        identity = normalize_email(email or "")
        if not password:
            raise ValidationError("PASSWORD_REQUIRED", "Password is required")
        account = self.accounts.find_by_identity(identity)
        if account is None or not account.active or not self.accounts.compare_password(identity, password):
            self.audit.emit("login_failed", "MEDIUM", email_hash=_hash(identity), stage="password")
            raise AuthError("INVALID_CREDENTIALS", "Invalid credentials")
        if not account.verified:
            self.audit.emit("login_failed", "MEDIUM", email_hash=_hash(identity), stage="unverified")
            raise AuthError("ACCOUNT_NOT_VERIFIED", "Please verify your email before logging in")
        self._issue_or_raise(identity, "login")
        return {"message": "Login code sent to your email", "masked_email": mask_email(identity)}

    def complete_login(self, email: str, code: str) -> dict[str, Any]:
        identity = normalize_email(email or "")
        result = self.gate.verify(identity, "login", code)
        self.audit.emit("otp_verify", "LOW" if result.valid else "MEDIUM",
                        email_hash=_hash(identity), purpose="login", success=result.valid)
        if not result.valid:
            self.audit.emit("login_failed", "MEDIUM", email_hash=_hash(identity), stage="otp")
            raise AuthError("OTP_INVALID", GENERIC_OTP_FAILURE)
        account = self.accounts.find_by_identity(identity)
        if account is None or not account.active or not account.verified:
            self.audit.emit("login_failed", "MEDIUM", email_hash=_hash(identity), stage="unverified")
            raise AuthError("ACCOUNT_NOT_VERIFIED", "Please verify your email before logging in")
        self.audit.emit("login_success", "LOW", email_hash=_hash(identity))
        return self._new_session(identity)

    def resend_code(self, email: str, purpose: str) -> dict[str, Any]:
        identity = normalize_email(email or "")
        issued = self.gate.resend(identity, purpose)
        if issued is not None and not issued.delivered:
            raise TransientError(
                "OTP_DELIVERY_FAILED",
                "The verification code could not be sent. Please try again shortly.",
            )
        return {"message": MSG_CODE_RESENT, "masked_email": mask_email(identity)}

    def request_password_reset(self, email: str) -> dict[str, Any]:
        identity = normalize_email(email or "")
        account = self.accounts.find_by_identity(identity) if is_valid_email(identity) else None
        if account is not None and account.active:
            issued = self.gate.issue(identity, "password_reset")
            if not issued.delivered:
                logger.warning("password_reset_delivery_failed")
            self.audit.emit("password_reset_requested", "MEDIUM", email_hash=_hash(identity))
        return {"message": MSG_RESET_REQUESTED, "masked_email": mask_email(identity)}

    def complete_password_reset(self, email: str, code: str, new_password: str) -> dict[str, Any]:
        identity = normalize_email(email or "")
        if len(new_password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError("WEAK_PASSWORD", f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        result = self.gate.verify(identity, "password_reset", code)
        self.audit.emit("otp_verify", "LOW" if result.valid else "MEDIUM",
                        email_hash=_hash(identity), purpose="password_reset", success=result.valid)
        account = self.accounts.find_by_identity(identity) if result.valid else None
        if account is None or not account.active:
            raise AuthError("OTP_INVALID", GENERIC_OTP_FAILURE)
        self.accounts.set_password(identity, new_password)
        self.audit.emit("password_reset_completed", "MEDIUM", email_hash=_hash(identity))
        return {"message": "Password reset successful"}

    def authenticate(self, token: str) -> Session:
        try:
            payload = verify_session_token(token or "", self.session_secret)
        except ValueError as exc:
            raise AuthError("INVALID_SESSION", str(exc)) from exc
        identity = normalize_email(str(payload.get("email", "")))
        account = self.accounts.find_by_identity(identity)
        if account is None or not account.active or not account.verified:
            raise AuthError("INVALID_SESSION", "Session is no longer valid")
        return Session(identity=identity, expires_at=int(payload["exp"]), token=token)

    def logout(self, session: Session) -> dict[str, Any]:
        self.audit.emit("logout", "LOW", email_hash=_hash(session.identity))
        return {"message": "Logged out successfully"}

    # -- wallet binding ---------------------------------------------------

    def wallet_status(self, session: Session, identity: str | None = None) -> dict[str, Any]:
        status = self.verifier.status(identity or session.identity, viewer=session.identity)
        return {"has_wallet": status.has_wallet, "wallet_address": status.address}

    def wallet_challenge(self, session: Session) -> dict[str, Any]:
        challenge = self.verifier.challenge(session.identity)
        self.audit.emit("wallet_challenge_issued", "LOW", email_hash=_hash(session.identity))
        return {"message": challenge.message, "expires_at": challenge.expires_at.isoformat()}

    def verify_wallet_signature(self, session: Session, address: str, signature: str, message: str) -> dict[str, Any]:
        if not is_valid_address(address):
            raise ValidationError("INVALID_ADDRESS", MSG_INVALID_ADDRESS)
        valid = verify_signature(address, signature, message)
        self.audit.emit(
            "wallet_signature_checked",
            "LOW" if valid else "MEDIUM",
            email_hash=_hash(session.identity),
            valid=valid,
        )
        return {"is_valid_signature": valid}

    def bind_wallet(self, session: Session, address: str, signature: str) -> dict[str, Any]:
        result = self.verifier.bind(session.identity, address, signature)
        self.audit.emit(
            "wallet_bind",
            "MEDIUM" if result.success else "HIGH",
            email_hash=_hash(session.identity),
            success=result.success,
            reason=result.reason,
        )
        if not result.success:
            error_cls, message = BIND_FAILURES.get(result.reason, (StateError, "Wallet could not be bound"))
            raise error_cls(result.reason, message)
        return {"message": "Wallet address bound successfully", "wallet_address": result.address}

    def unbind_wallet(self, session: Session) -> dict[str, Any]:
        account = self.accounts.find_by_identity(session.identity)
        bound = account.wallet_address if account else None
        # a wallet registered on the ledger stays bound to its identity
        if bound and self.ledger.get_voter(bound).is_registered:
            self.audit.emit(
                "wallet_unbind_refused",
                "HIGH",
                email_hash=_hash(session.identity),
                wallet=mask_address(bound),
            )
            raise ConflictError(
                "WALLET_REGISTERED",
                "This wallet is registered to vote and cannot be unbound from the account",
            )
        result = self.verifier.unbind(session.identity, caller=session.identity)
        self.audit.emit("wallet_unbind", "MEDIUM", email_hash=_hash(session.identity), success=result.success)
        if not result.success:
            error_cls, message = BIND_FAILURES.get(result.reason, (StateError, "Wallet could not be unbound"))
            raise error_cls(result.reason, message)
        return {"message": "Wallet address removed successfully"}

    def verify_wallet(self, session: Session, address: str) -> dict[str, Any]:
        result = self.verifier.verify_match(session.identity, address)
        self.audit.emit(
            "wallet_verify",
            "LOW" if result.is_matching else "MEDIUM",
            email_hash=_hash(session.identity),
            is_matching=result.is_matching,
        )
        return {
            "is_valid": result.is_valid,
            "is_matching": result.is_matching,
            "needs_registration": result.needs_registration,
            "message": result.message,
        }

    def _require_bound_wallet(self, session: Session, address: str) -> str:
        result = self.verifier.verify_match(session.identity, address)
        if result.is_matching:
            return address.strip().lower()
        self.audit.emit(
            "wallet_gate_refused",
            "HIGH",
            email_hash=_hash(session.identity),
            presented=mask_address(address) if is_valid_address(address) else None,
            needs_registration=result.needs_registration,
        )
        if not is_valid_address(address):
            raise ValidationError("INVALID_ADDRESS", result.message)
        if result.needs_registration:
            raise WalletGateError("WALLET_NOT_BOUND", result.message)
        if not result.is_valid:
            raise WalletGateError("ACCOUNT_UNAVAILABLE", result.message)
        raise WalletGateError("WALLET_MISMATCH", result.message)

    # -- ledger-facing actions --------------------------------------------

    def _ledger_action(
        self,
        session: Session,
        address: str,
        event_type: str,
        call: Callable[[str], Receipt],
        **details: Any,
    ) -> Receipt:
        signer = self._require_bound_wallet(session, address)
        try:
            receipt = call(signer)
        except LedgerRevert as exc:
            self.audit.emit(f"{event_type}_reverted", "MEDIUM", wallet=mask_address(signer), reason=exc.reason, **details)
            raise
        self.audit.emit(
            event_type,
            "HIGH",
            wallet=mask_address(signer),
            tx_id=receipt.tx_id,
            confirmed_round=receipt.confirmed_round,
            **details,
        )
        return receipt

    def register_to_vote(self, session: Session, address: str) -> Receipt:
        if self.allow_self_registration:
            return self._ledger_action(session, address, "voter_registered", self.ledger.register_self, mode="self")
        return self._ledger_action(
            session,
            address,
            "voter_registered",
            lambda signer: self.ledger.register_voter(signer, self.ledger.owner),
            mode="relayed",
        )

    def cast_vote(self, session: Session, address: str, candidate_id: int) -> Receipt:
        return self._ledger_action(
            session,
            address,
            "vote_cast",
            lambda signer: self.ledger.cast_vote(candidate_id, signer),
            candidate_id=candidate_id,
        )

    def add_candidate(self, session: Session, address: str, name: str) -> Receipt:
        return self._ledger_action(
            session,
            address,
            "candidate_added",
            lambda signer: self.ledger.add_candidate(name, signer),
            name=(name or "").strip(),
        )

    def open_voting(self, session: Session, address: str) -> Receipt:
        return self._ledger_action(session, address, "voting_opened", self.ledger.open_voting)

    def close_voting(self, session: Session, address: str) -> Receipt:
        return self._ledger_action(session, address, "voting_closed", self.ledger.close_voting)

    # -- reads ------------------------------------------------------------

    def results(self) -> dict[str, Any]:
        rows = self.ledger.get_results()
        return {
            "phase": self.ledger.phase().value,
            "voting_open": self.ledger.is_voting_open(),
            "results": [{"id": index, "name": name, "votes": votes} for index, (name, votes) in enumerate(rows)],
        }

    def voter_info(self, address: str) -> VoterInfo:
        if not is_valid_address(address):
            raise ValidationError("INVALID_ADDRESS", MSG_INVALID_ADDRESS)
        return self.ledger.get_voter(address)

    def audit_events(self, session: Session, address: str, limit: int = 100) -> list[dict[str, Any]]:
        signer = self._require_bound_wallet(session, address)
        if signer != self.ledger.owner:
            raise AuthError("NOT_OWNER", "Only the ledger owner may read audit events")
        return self.audit.list_recent(limit)


def _hash(identity: str) -> str:
    return sha256_hex(identity)
