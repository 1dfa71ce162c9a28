"""One-time passcode gate.

A passcode is bound to an (identity, purpose) pair. Issuing a new code for a pair
marks every outstanding code for that pair as used in the same atomic step, so at
most one unused, unexpired code exists per pair. Verification is single use and
reports every failure with the same generic reason.
"""

import secrets
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Protocol

import structlog

from accounts import normalize_email, utc_now
from db import get_connection, release_connection
from email_service import DeliveryResult
from errors import ValidationError

logger = structlog.get_logger(__name__)

PURPOSES = ("registration", "login", "password_reset")
GENERIC_OTP_FAILURE = "Invalid or expired code"


class Delivery(Protocol):
    def send(self, identity: str, code: str, purpose: str) -> DeliveryResult: ...


@dataclass
class Passcode:
    identity: str
    purpose: str
    code: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class IssuedPasscode:
    code: str
    expires_at: datetime
    delivered: bool
    delivery_error: str | None = None


@dataclass
class VerifyResult:
    valid: bool
    reason: str | None = None


class PasscodeStore(ABC):
    @abstractmethod
    def replace_active(self, passcode: Passcode, now: datetime) -> None:
        """Invalidate outstanding codes for the pair and persist ``passcode`` atomically."""

    @abstractmethod
    def consume(self, identity: str, purpose: str, code: str, now: datetime) -> bool:
        """Mark the newest matching unused, unexpired code as used. True if one was found."""

    @abstractmethod
    def active(self, identity: str, purpose: str, now: datetime) -> Passcode | None: ...

    @abstractmethod
    def delete_expired(self, now: datetime) -> int: ...


class MemoryPasscodeStore(PasscodeStore):
    def __init__(self) -> None:
        self._codes: list[Passcode] = []
        self._lock = threading.Lock()

    def replace_active(self, passcode: Passcode, now: datetime) -> None:
        with self._lock:
            for existing in self._codes:
                if (
                    existing.identity == passcode.identity
                    and existing.purpose == passcode.purpose
                    and not existing.used
                    and existing.expires_at > now
                ):
                    existing.used = True
            self._codes.append(replace(passcode))

    def consume(self, identity: str, purpose: str, code: str, now: datetime) -> bool:
        with self._lock:
            for existing in reversed(self._codes):
                if (
                    existing.identity == identity
                    and existing.purpose == purpose
                    and not existing.used
                    and existing.expires_at > now
                    and secrets.compare_digest(existing.code, code)
                ):
                    existing.used = True
                    return True
        return False

    def active(self, identity: str, purpose: str, now: datetime) -> Passcode | None:
        with self._lock:
            for existing in reversed(self._codes):
                if existing.identity == identity and existing.purpose == purpose:
                    if not existing.used and existing.expires_at > now:
                        return replace(existing)
        return None

    def delete_expired(self, now: datetime) -> int:
        with self._lock:
            before = len(self._codes)
            self._codes = [p for p in self._codes if p.expires_at > now]
            return before - len(self._codes)


class PostgresPasscodeStore(PasscodeStore):
    def replace_active(self, passcode: Passcode, now: datetime) -> None:
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(
                "SELECT pg_advisory_xact_lock(hashtext(%s))",
                (f"{passcode.identity}:{passcode.purpose}",),
            )
            cur.execute(
                """
                UPDATE passcodes
                SET used = TRUE
                WHERE identity = %s AND purpose = %s AND used = FALSE AND expires_at > %s
                """,
                (passcode.identity, passcode.purpose, now),
            )
            cur.execute(
                """
                INSERT INTO passcodes (identity, purpose, code, expires_at, used, created_at)
                VALUES (%s, %s, %s, %s, FALSE, %s)
                """,
                (passcode.identity, passcode.purpose, passcode.code, passcode.expires_at, passcode.created_at),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()
            release_connection(conn)

    def consume(self, identity: str, purpose: str, code: str, now: datetime) -> bool:
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                UPDATE passcodes
                SET used = TRUE
                WHERE id = (
                    SELECT id FROM passcodes
                    WHERE identity = %s AND purpose = %s AND code = %s
                    AND used = FALSE AND expires_at > %s
                    ORDER BY created_at DESC, id DESC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING id
                """,
                (identity, purpose, code, now),
            )
            row = cur.fetchone()
            conn.commit()
            return row is not None
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()
            release_connection(conn)

    def active(self, identity: str, purpose: str, now: datetime) -> Passcode | None:
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                SELECT identity, purpose, code, expires_at, used, created_at
                FROM passcodes
                WHERE identity = %s AND purpose = %s AND used = FALSE AND expires_at > %s
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (identity, purpose, now),
            )
            row = cur.fetchone()
            return Passcode(*row) if row else None
        finally:
            cur.close()
            release_connection(conn)

    def delete_expired(self, now: datetime) -> int:
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute("DELETE FROM passcodes WHERE expires_at <= %s", (now,))
            deleted = cur.rowcount
            conn.commit()
            return deleted
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()
            release_connection(conn)


class PasscodeGate:
    def __init__(
        self,
        store: PasscodeStore,
        delivery: Delivery,
        length: int = 6,
        expiry_minutes: int = 10,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.delivery = delivery
        self.length = length
        self.expiry = timedelta(minutes=expiry_minutes)
        self.clock = clock

    def _generate_code(self) -> str:
        return "".join(secrets.choice("0123456789") for _ in range(self.length))

    @staticmethod
    def _check_purpose(purpose: str) -> None:
        if purpose not in PURPOSES:
            raise ValidationError("INVALID_PURPOSE", f"Unknown passcode purpose: {purpose}")

    def _deliver(self, identity: str, code: str, purpose: str) -> DeliveryResult:
        try:
            return self.delivery.send(identity, code, purpose)
        except Exception as exc:  # noqa: BLE001
            logger.warning("otp_delivery_error", purpose=purpose, error=str(exc))
            return DeliveryResult(success=False, error=str(exc))

    def issue(self, identity: str, purpose: str) -> IssuedPasscode:
        self._check_purpose(purpose)
        identity = normalize_email(identity)
        now = self.clock()
        passcode = Passcode(
            identity=identity,
            purpose=purpose,
            code=self._generate_code(),
            expires_at=now + self.expiry,
            created_at=now,
        )
        self.store.replace_active(passcode, now)
        result = self._deliver(identity, passcode.code, purpose)
        logger.info("otp_issued", purpose=purpose, delivered=result.success)
        return IssuedPasscode(
            code=passcode.code,
            expires_at=passcode.expires_at,
            delivered=result.success,
            delivery_error=result.error,
        )

    def resend(self, identity: str, purpose: str) -> IssuedPasscode | None:
        """Deliver the active code again. Returns None when no code is active."""
        self._check_purpose(purpose)
        identity = normalize_email(identity)
        current = self.store.active(identity, purpose, self.clock())
        if current is None:
            return None
        result = self._deliver(identity, current.code, purpose)
        return IssuedPasscode(
            code=current.code,
            expires_at=current.expires_at,
            delivered=result.success,
            delivery_error=result.error,
        )

    def verify(self, identity: str, purpose: str, code: str) -> VerifyResult:
        self._check_purpose(purpose)
        code = str(code or "").strip()
        if len(code) != self.length or not code.isdigit():
            return VerifyResult(valid=False, reason=GENERIC_OTP_FAILURE)
        if self.store.consume(normalize_email(identity), purpose, code, self.clock()):
            return VerifyResult(valid=True)
        return VerifyResult(valid=False, reason=GENERIC_OTP_FAILURE)

    def sweep_expired(self) -> int:
        deleted = self.store.delete_expired(self.clock())
        logger.info("otp_sweep", deleted=deleted)
        return deleted
