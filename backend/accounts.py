"""Credential store: account records keyed by normalized e-mail identity."""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

import psycopg2
from werkzeug.security import check_password_hash, generate_password_hash

from db import get_connection, release_connection
from errors import ConflictError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_valid_email(email: str) -> bool:
    if not isinstance(email, str):
        return False
    local, sep, domain = normalize_email(email).partition("@")
    return bool(sep and local and "." in domain and " " not in domain)


def mask_email(email: str) -> str:
    local, _, domain = normalize_email(email).partition("@")
    if not local:
        return email
    return f"{local[0]}***@{domain}"


@dataclass
class Account:
    identity: str
    password_hash: str
    verified: bool = False
    wallet_address: str | None = None
    active: bool = True
    created_at: datetime = field(default_factory=utc_now)


class AccountStore(ABC):
    @abstractmethod
    def find_by_identity(self, identity: str) -> Account | None: ...

    @abstractmethod
    def find_by_wallet(self, address: str) -> Account | None: ...

    @abstractmethod
    def create_account(self, identity: str, password: str) -> Account: ...

    @abstractmethod
    def set_password(self, identity: str, password: str) -> None: ...

    @abstractmethod
    def mark_verified(self, identity: str) -> None: ...

    @abstractmethod
    def update_bound_wallet(self, identity: str, address: str | None) -> None:
        """Set or clear the bound address; raises ConflictError if another account holds it."""

    @abstractmethod
    def deactivate(self, identity: str) -> None: ...

    def compare_password(self, identity: str, password: str) -> bool:
        account = self.find_by_identity(identity)
        if account is None or not account.password_hash:
            return False
        return check_password_hash(account.password_hash, password)


class MemoryAccountStore(AccountStore):
    def __init__(self) -> None:
        self._accounts: dict[str, Account] = {}
        self._lock = threading.Lock()

    def find_by_identity(self, identity: str) -> Account | None:
        with self._lock:
            account = self._accounts.get(normalize_email(identity))
            return replace(account) if account else None

    def find_by_wallet(self, address: str) -> Account | None:
        wanted = address.lower()
        with self._lock:
            for account in self._accounts.values():
                if account.wallet_address == wanted:
                    return replace(account)
        return None

    def create_account(self, identity: str, password: str) -> Account:
        key = normalize_email(identity)
        with self._lock:
            if key in self._accounts:
                raise ConflictError("EMAIL_TAKEN", "Email already registered")
            account = Account(identity=key, password_hash=generate_password_hash(password))
            self._accounts[key] = account
            return replace(account)

    def set_password(self, identity: str, password: str) -> None:
        with self._lock:
            account = self._accounts.get(normalize_email(identity))
            if account:
                account.password_hash = generate_password_hash(password)

    def mark_verified(self, identity: str) -> None:
        with self._lock:
            account = self._accounts.get(normalize_email(identity))
            if account:
                account.verified = True

    def update_bound_wallet(self, identity: str, address: str | None) -> None:
        key = normalize_email(identity)
        wanted = address.lower() if address else None
        with self._lock:
            account = self._accounts.get(key)
            if account is None:
                return
            if wanted is not None:
                for other in self._accounts.values():
                    if other.identity != key and other.wallet_address == wanted:
                        raise ConflictError("ALREADY_BOUND_ELSEWHERE", "Wallet is bound to another account")
            account.wallet_address = wanted

    def deactivate(self, identity: str) -> None:
        with self._lock:
            account = self._accounts.get(normalize_email(identity))
            if account:
                account.active = False


class PostgresAccountStore(AccountStore):
    _COLUMNS = "identity, password_hash, verified, wallet_address, active, created_at"

    def _fetch_one(self, where: str, params: tuple) -> Account | None:
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(f"SELECT {self._COLUMNS} FROM accounts WHERE {where}", params)
            row = cur.fetchone()
            return Account(*row) if row else None
        finally:
            cur.close()
            release_connection(conn)

    def _execute(self, sql: str, params: tuple) -> None:
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(sql, params)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()
            release_connection(conn)

    def find_by_identity(self, identity: str) -> Account | None:
        return self._fetch_one("identity = %s", (normalize_email(identity),))

    def find_by_wallet(self, address: str) -> Account | None:
        return self._fetch_one("wallet_address = %s", (address.lower(),))

    def create_account(self, identity: str, password: str) -> Account:
        key = normalize_email(identity)
        try:
            self._execute(
                "INSERT INTO accounts (identity, password_hash) VALUES (%s, %s)",
                (key, generate_password_hash(password)),
            )
        except psycopg2.errors.UniqueViolation as exc:
            raise ConflictError("EMAIL_TAKEN", "Email already registered") from exc
        return self.find_by_identity(key)

    def set_password(self, identity: str, password: str) -> None:
        self._execute(
            "UPDATE accounts SET password_hash = %s WHERE identity = %s",
            (generate_password_hash(password), normalize_email(identity)),
        )

    def mark_verified(self, identity: str) -> None:
        self._execute("UPDATE accounts SET verified = TRUE WHERE identity = %s", (normalize_email(identity),))

    def update_bound_wallet(self, identity: str, address: str | None) -> None:
        try:
            self._execute(
                "UPDATE accounts SET wallet_address = %s WHERE identity = %s",
                (address.lower() if address else None, normalize_email(identity)),
            )
        except psycopg2.errors.UniqueViolation as exc:
            raise ConflictError("ALREADY_BOUND_ELSEWHERE", "Wallet is bound to another account") from exc

    def deactivate(self, identity: str) -> None:
        self._execute("UPDATE accounts SET active = FALSE WHERE identity = %s", (normalize_email(identity),))
