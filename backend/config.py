import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str | None = None
    db_pool_min: int = 1
    db_pool_max: int = 10
    session_secret: str | None = None
    session_ttl_seconds: int = 3600
    otp_length: int = 6
    otp_expiry_minutes: int = 10
    allow_self_registration: bool = False
    ledger_backend: str = "local"
    ledger_owner_address: str | None = None
    algod_address: str | None = None
    algod_token: str = ""
    algorand_app_id: int = 0
    service_mnemonic: str | None = None
    tx_timeout_rounds: int = 12
    wallet_challenge_ttl_seconds: int = 300
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_email: str | None = None
    smtp_password: str | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        settings = cls(
            database_url=os.getenv("DATABASE_URL"),
            db_pool_min=_env_int("DB_POOL_MIN", 1),
            db_pool_max=_env_int("DB_POOL_MAX", 10),
            session_secret=os.getenv("SESSION_SECRET"),
            session_ttl_seconds=_env_int("SESSION_TTL_SECONDS", 3600),
            otp_length=_env_int("OTP_LENGTH", 6),
            otp_expiry_minutes=_env_int("OTP_EXPIRY_MINUTES", 10),
            allow_self_registration=_env_bool("ALLOW_SELF_REGISTRATION", False),
            ledger_backend=os.getenv("LEDGER_BACKEND", "local").strip().lower(),
            ledger_owner_address=os.getenv("LEDGER_OWNER_ADDRESS"),
            algod_address=os.getenv("ALGORAND_ALGOD_ADDRESS"),
            algod_token=os.getenv("ALGORAND_ALGOD_TOKEN", ""),
            algorand_app_id=_env_int("ALGORAND_APP_ID", 0),
            service_mnemonic=os.getenv("ALGORAND_SERVICE_MNEMONIC"),
            tx_timeout_rounds=_env_int("ALGORAND_TX_TIMEOUT_ROUNDS", 12),
            wallet_challenge_ttl_seconds=_env_int("WALLET_CHALLENGE_TTL_SECONDS", 300),
            smtp_host=os.getenv("SMTP_HOST"),
            smtp_port=_env_int("SMTP_PORT", 587),
            smtp_email=os.getenv("SMTP_EMAIL"),
            smtp_password=os.getenv("SMTP_PASSWORD"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if not 4 <= self.otp_length <= 10:
            raise RuntimeError("OTP_LENGTH must be between 4 and 10")
        if self.otp_expiry_minutes <= 0:
            raise RuntimeError("OTP_EXPIRY_MINUTES must be positive")
        if self.session_ttl_seconds <= 0:
            raise RuntimeError("SESSION_TTL_SECONDS must be positive")
        if self.wallet_challenge_ttl_seconds <= 0:
            raise RuntimeError("WALLET_CHALLENGE_TTL_SECONDS must be positive")
        if self.ledger_backend not in ("local", "algorand"):
            raise RuntimeError("LEDGER_BACKEND must be 'local' or 'algorand'")
        if self.ledger_backend == "algorand" and self.algorand_app_id <= 0:
            raise RuntimeError("ALGORAND_APP_ID must be a positive integer")
