"""Voting ledger contract and the in-process engine.

The ledger is the only source of truth for candidates, voter registration and
votes. Every mutation names its authorizing principal (``signer``) and either
applies completely or raises ``LedgerRevert`` with a named reason and no effect.

Global phases: Setup (no candidates) -> Ready -> Open <-> Closed.
Per address: Unregistered -> Registered -> Voted (terminal).
"""

import hashlib
import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from errors import BoundVoteError, ErrorKind, TransientError, ValidationError
from wallets import is_valid_address, normalize_address

logger = structlog.get_logger(__name__)

MAX_NAME_BYTES = 64

REVERT_KINDS = {
    "NotOwner": ErrorKind.AUTH,
    "EmptyName": ErrorKind.VALIDATION,
    "NameTooLong": ErrorKind.VALIDATION,
    "AlreadyRegistered": ErrorKind.CONFLICT,
    "AlreadyVoted": ErrorKind.CONFLICT,
    "NotRegistered": ErrorKind.STATE,
    "VotingClosed": ErrorKind.STATE,
    "InvalidCandidate": ErrorKind.STATE,
    "NoCandidates": ErrorKind.STATE,
    "VotingAlreadyOpen": ErrorKind.STATE,
    "VotingAlreadyClosed": ErrorKind.STATE,
}

REVERT_MESSAGES = {
    "NotOwner": "Only the ledger owner may perform this action",
    "EmptyName": "Candidate name is required",
    "NameTooLong": f"Candidate name must be at most {MAX_NAME_BYTES} bytes",
    "AlreadyRegistered": "Address is already registered",
    "AlreadyVoted": "Address has already voted",
    "NotRegistered": "Address is not registered to vote",
    "VotingClosed": "Voting is not open",
    "InvalidCandidate": "Candidate does not exist",
    "NoCandidates": "Cannot open voting without candidates",
    "VotingAlreadyOpen": "Voting is already open",
    "VotingAlreadyClosed": "Voting is already closed",
}


class LedgerRevert(BoundVoteError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason, REVERT_MESSAGES.get(reason, reason))
        self.reason = reason
        self.kind = REVERT_KINDS.get(reason, ErrorKind.STATE)


class LedgerTransportError(TransientError):
    def __init__(self, message: str) -> None:
        super().__init__("LEDGER_UNAVAILABLE", message)


@dataclass(frozen=True)
class Operation:
    name: str
    selector: bytes
    owner_only: bool
    params: tuple[str, ...] = ()


LEDGER_OPERATIONS: dict[str, Operation] = {
    op.name: op
    for op in (
        Operation("add_candidate", b"add_candidate", True, ("name",)),
        Operation("open_voting", b"open_voting", True),
        Operation("close_voting", b"close_voting", True),
        Operation("register_voter", b"register_voter", True, ("address",)),
        Operation("register_self", b"register_self", False),
        Operation("cast_vote", b"cast_vote", False, ("candidate_id",)),
    )
}


class Phase(str, Enum):
    SETUP = "Setup"
    READY = "Ready"
    OPEN = "Open"
    CLOSED = "Closed"


@dataclass(frozen=True)
class Receipt:
    tx_id: str
    operation: str
    signer: str
    confirmed_round: int


@dataclass(frozen=True)
class CandidateInfo:
    name: str
    votes: int


@dataclass(frozen=True)
class VoterInfo:
    is_registered: bool = False
    has_voted: bool = False
    voted_candidate_id: int | None = None


def _normalize_args(operation: Operation, args: tuple) -> tuple:
    if len(args) != len(operation.params):
        raise ValidationError("INVALID_ARGUMENTS", f"{operation.name} expects {len(operation.params)} argument(s)")
    normalized: list[Any] = []
    for param, value in zip(operation.params, args):
        if param == "name":
            normalized.append(str(value or "").strip())
        elif param == "address":
            if not is_valid_address(value):
                raise ValidationError("INVALID_ADDRESS", "Invalid wallet address format")
            normalized.append(normalize_address(value))
        elif param == "candidate_id":
            normalized.append(value if isinstance(value, int) and not isinstance(value, bool) else -1)
    return tuple(normalized)


class VotingLedger(ABC):
    """Typed surface of the voting ledger; implementations differ only in transport."""

    @property
    @abstractmethod
    def owner(self) -> str: ...

    @abstractmethod
    def is_voting_open(self) -> bool: ...

    @abstractmethod
    def has_been_opened(self) -> bool: ...

    @abstractmethod
    def get_candidate_count(self) -> int: ...

    @abstractmethod
    def _read_candidate(self, candidate_id: int) -> CandidateInfo: ...

    @abstractmethod
    def get_voter(self, address: str) -> VoterInfo:
        """Unknown addresses read as the zero value."""

    @abstractmethod
    def _execute(self, operation: Operation, args: tuple, signer: str) -> Receipt: ...

    def submit(self, operation_name: str, args: tuple, signer: str) -> Receipt:
        operation = LEDGER_OPERATIONS.get(operation_name)
        if operation is None:
            raise ValidationError("UNKNOWN_OPERATION", f"Unknown ledger operation: {operation_name}")
        if not is_valid_address(signer):
            raise ValidationError("INVALID_ADDRESS", "Invalid wallet address format")
        return self._execute(operation, _normalize_args(operation, args), normalize_address(signer))

    def revert_reason(self, operation: Operation, args: tuple, signer: str) -> str | None:
        """Return the named reason the call would revert with against current state, or None."""
        if operation.owner_only and signer != self.owner:
            return "NotOwner"
        name = operation.name
        if name == "add_candidate":
            if not args[0]:
                return "EmptyName"
            if len(args[0].encode("utf-8")) > MAX_NAME_BYTES:
                return "NameTooLong"
        elif name == "open_voting":
            if self.is_voting_open():
                return "VotingAlreadyOpen"
            if self.get_candidate_count() == 0:
                return "NoCandidates"
        elif name == "close_voting":
            if not self.is_voting_open():
                return "VotingAlreadyClosed"
        elif name in ("register_voter", "register_self"):
            address = args[0] if name == "register_voter" else signer
            if self.get_voter(address).is_registered:
                return "AlreadyRegistered"
        elif name == "cast_vote":
            voter = self.get_voter(signer)
            if not voter.is_registered:
                return "NotRegistered"
            if not self.is_voting_open():
                return "VotingClosed"
            if voter.has_voted:
                return "AlreadyVoted"
            if not 0 <= args[0] < self.get_candidate_count():
                return "InvalidCandidate"
        return None

    def add_candidate(self, name: str, signer: str) -> Receipt:
        return self.submit("add_candidate", (name,), signer)

    def open_voting(self, signer: str) -> Receipt:
        return self.submit("open_voting", (), signer)

    def close_voting(self, signer: str) -> Receipt:
        return self.submit("close_voting", (), signer)

    def register_voter(self, address: str, signer: str) -> Receipt:
        return self.submit("register_voter", (address,), signer)

    def register_self(self, signer: str) -> Receipt:
        return self.submit("register_self", (), signer)

    def cast_vote(self, candidate_id: int, signer: str) -> Receipt:
        return self.submit("cast_vote", (candidate_id,), signer)

    def get_candidate(self, candidate_id: int) -> CandidateInfo:
        if not isinstance(candidate_id, int) or not 0 <= candidate_id < self.get_candidate_count():
            raise LedgerRevert("InvalidCandidate")
        return self._read_candidate(candidate_id)

    def get_results(self) -> list[tuple[str, int]]:
        results = []
        for candidate_id in range(self.get_candidate_count()):
            candidate = self._read_candidate(candidate_id)
            results.append((candidate.name, candidate.votes))
        return results

    def phase(self) -> Phase:
        if self.is_voting_open():
            return Phase.OPEN
        if self.get_candidate_count() == 0:
            return Phase.SETUP
        return Phase.CLOSED if self.has_been_opened() else Phase.READY


class LocalLedger(VotingLedger):
    """Single-writer in-process ledger; one re-entrant lock serializes every call."""

    def __init__(self, owner: str) -> None:
        if not is_valid_address(owner):
            raise ValueError("Ledger owner must be a valid wallet address")
        self._owner = normalize_address(owner)
        self._lock = threading.RLock()
        self._open = False
        self._opened_once = False
        self._candidates: list[list] = []
        self._voters: dict[str, VoterInfo] = {}
        self._sequence = 0

    @property
    def owner(self) -> str:
        return self._owner

    def is_voting_open(self) -> bool:
        with self._lock:
            return self._open

    def has_been_opened(self) -> bool:
        with self._lock:
            return self._opened_once

    def get_candidate_count(self) -> int:
        with self._lock:
            return len(self._candidates)

    def _read_candidate(self, candidate_id: int) -> CandidateInfo:
        with self._lock:
            name, votes = self._candidates[candidate_id]
            return CandidateInfo(name=name, votes=votes)

    def get_voter(self, address: str) -> VoterInfo:
        with self._lock:
            return self._voters.get(normalize_address(address), VoterInfo())

    def _execute(self, operation: Operation, args: tuple, signer: str) -> Receipt:
        with self._lock:
            reason = self.revert_reason(operation, args, signer)
            if reason:
                logger.info("ledger_revert", operation=operation.name, reason=reason)
                raise LedgerRevert(reason)
            self._apply(operation.name, args, signer)
            self._sequence += 1
            tx_id = hashlib.sha256(
                json.dumps(
                    {"seq": self._sequence, "op": operation.name, "args": list(args), "signer": signer},
                    sort_keys=True,
                    separators=(",", ":"),
                ).encode("utf-8")
            ).hexdigest()
            logger.info("ledger_applied", operation=operation.name, round=self._sequence)
            return Receipt(tx_id=tx_id, operation=operation.name, signer=signer, confirmed_round=self._sequence)

    def _apply(self, name: str, args: tuple, signer: str) -> None:
        if name == "add_candidate":
            self._candidates.append([args[0], 0])
        elif name == "open_voting":
            self._open = True
            self._opened_once = True
        elif name == "close_voting":
            self._open = False
        elif name == "register_voter":
            self._voters[args[0]] = VoterInfo(is_registered=True)
        elif name == "register_self":
            self._voters[signer] = VoterInfo(is_registered=True)
        elif name == "cast_vote":
            # flag and count change together under the ledger lock
            self._candidates[args[0]][1] += 1
            self._voters[signer] = VoterInfo(is_registered=True, has_voted=True, voted_candidate_id=args[0])
