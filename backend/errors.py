"""Error taxonomy shared by the gate, the verifier, the ledger and the HTTP layer.

Every rejected privileged action surfaces one of these kinds so a caller can tell
"fix your input" (validation) from "not allowed right now" (conflict/state) from
"try again shortly" (transient).
"""

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTH = "auth"
    CONFLICT = "conflict"
    STATE = "state"
    TRANSIENT = "transient"


class BoundVoteError(Exception):
    kind: ErrorKind = ErrorKind.STATE

    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(message or code)
        self.code = code
        self.message = message or code

    def to_dict(self) -> dict[str, str]:
        return {"error": self.message, "code": self.code, "kind": self.kind.value}


class ValidationError(BoundVoteError):
    kind = ErrorKind.VALIDATION


class AuthError(BoundVoteError):
    kind = ErrorKind.AUTH


class ConflictError(BoundVoteError):
    kind = ErrorKind.CONFLICT


class StateError(BoundVoteError):
    kind = ErrorKind.STATE


class TransientError(BoundVoteError):
    kind = ErrorKind.TRANSIENT


class WalletGateError(AuthError):
    """Raised when the presented wallet may not act for the session identity."""
