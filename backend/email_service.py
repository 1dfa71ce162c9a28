import smtplib
from dataclasses import dataclass
from email.message import EmailMessage

import structlog

logger = structlog.get_logger(__name__)

SUBJECTS = {
    "registration": "BoundVote – Verify your email",
    "login": "BoundVote – Your login code",
    "password_reset": "BoundVote – Password reset code",
}


@dataclass
class DeliveryResult:
    success: bool
    error: str | None = None


def build_otp_message(sender: str, to_email: str, code: str, purpose: str, expiry_minutes: int) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = SUBJECTS.get(purpose, "BoundVote – Your verification code")
    msg["From"] = sender
    msg["To"] = to_email

    msg.set_content(f"""
Hello,

Your BoundVote verification code is:

{code}

This code is valid for {expiry_minutes} minutes.
If you did not request this, please ignore this email.

– BoundVote Team
""")
    return msg


class SmtpDelivery:
    def __init__(self, host: str, port: int, sender: str, password: str, expiry_minutes: int = 10) -> None:
        self.host = host
        self.port = port
        self.sender = sender
        self.password = password
        self.expiry_minutes = expiry_minutes

    def send(self, identity: str, code: str, purpose: str) -> DeliveryResult:
        msg = build_otp_message(self.sender, identity, code, purpose, self.expiry_minutes)
        try:
            server = smtplib.SMTP(self.host, self.port, timeout=10)
            try:
                server.starttls()
                server.login(self.sender, self.password)
                server.send_message(msg)
            finally:
                server.quit()
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("otp_delivery_failed", purpose=purpose, error=str(exc))
            return DeliveryResult(success=False, error=str(exc))
        logger.info("otp_delivered", purpose=purpose)
        return DeliveryResult(success=True)


class OutboxDelivery:
    """Keeps messages in memory instead of sending them; used when SMTP is not configured."""

    def __init__(self) -> None:
        self.outbox: list[tuple[str, str, str]] = []

    def send(self, identity: str, code: str, purpose: str) -> DeliveryResult:
        self.outbox.append((identity, code, purpose))
        logger.info("otp_queued_in_outbox", purpose=purpose)
        return DeliveryResult(success=True)

    def last_code(self, identity: str, purpose: str) -> str | None:
        identity = identity.strip().lower()
        for to, code, kind in reversed(self.outbox):
            if to == identity and kind == purpose:
                return code
        return None
