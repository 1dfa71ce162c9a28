import base64
from typing import Any

import structlog
from algosdk import account, mnemonic, transaction
from algosdk.error import AlgodHTTPError
from algosdk.v2client import algod

from ledger import CandidateInfo, LedgerRevert, LedgerTransportError, Operation, Receipt, VoterInfo, VotingLedger
from smart_contract import candidate_box_name, voter_box_name
from wallets import address_bytes

logger = structlog.get_logger(__name__)


class AlgorandLedger(VotingLedger):
    """Voting ledger backed by the PyTeal application.

    The service account relays every call and is the only sender the program
    accepts; the acting wallet address travels as the second app argument.
    """

    def __init__(self, algod_client: algod.AlgodClient, app_id: int, private_key: str, timeout_rounds: int = 12) -> None:
        if app_id <= 0:
            raise RuntimeError("ALGORAND_APP_ID must be set to a deployed application id")
        self.algod = algod_client
        self.app_id = app_id
        self.private_key = private_key
        self.sender = account.address_from_private_key(private_key)
        self.timeout_rounds = timeout_rounds
        self._owner: str | None = None

    @classmethod
    def from_settings(cls, settings) -> "AlgorandLedger":
        if not settings.algod_address:
            raise RuntimeError("ALGORAND_ALGOD_ADDRESS is required")
        if not settings.service_mnemonic:
            raise RuntimeError("ALGORAND_SERVICE_MNEMONIC is required")
        headers = {"X-API-Key": settings.algod_token} if settings.algod_token else {}
        client = algod.AlgodClient(settings.algod_token, settings.algod_address, headers=headers)
        return cls(
            client,
            settings.algorand_app_id,
            mnemonic.to_private_key(settings.service_mnemonic),
            timeout_rounds=settings.tx_timeout_rounds,
        )

    @staticmethod
    def _u64(value: int) -> bytes:
        return int(value).to_bytes(8, "big")

    def wait_for_confirmation(self, tx_id: str, timeout_rounds: int | None = None) -> dict[str, Any]:
        timeout = timeout_rounds if timeout_rounds is not None else self.timeout_rounds
        start_round = self.algod.status()["last-round"] + 1
        current_round = start_round
        while current_round < start_round + timeout:
            pending_txn = self.algod.pending_transaction_info(tx_id)
            confirmed_round = pending_txn.get("confirmed-round", 0)
            if confirmed_round > 0:
                return pending_txn
            pool_error = pending_txn.get("pool-error")
            if pool_error:
                raise RuntimeError(f"Transaction rejected: {pool_error}")
            self.algod.status_after_block(current_round)
            current_round += 1
        raise TimeoutError(f"Transaction not confirmed after {timeout} rounds")

    def _decode_global_state(self, app_state: list[dict[str, Any]]) -> dict[bytes, int | bytes]:
        decoded: dict[bytes, int | bytes] = {}
        for entry in app_state:
            key = base64.b64decode(entry["key"])
            value = entry["value"]
            if value["type"] == 2:
                decoded[key] = int(value.get("uint", 0))
            elif value["type"] == 1:
                decoded[key] = base64.b64decode(value.get("bytes", ""))
        return decoded

    def _global_state(self) -> dict[bytes, int | bytes]:
        try:
            app_info = self.algod.application_info(self.app_id)
        except AlgodHTTPError as exc:
            raise LedgerTransportError(f"Could not read application state: {exc}") from exc
        return self._decode_global_state(app_info["params"].get("global-state", []))

    def _read_box(self, name: bytes) -> bytes | None:
        try:
            box = self.algod.application_box_by_name(self.app_id, name)
        except AlgodHTTPError as exc:
            if getattr(exc, "code", None) == 404:
                return None
            raise LedgerTransportError(f"Could not read box: {exc}") from exc
        return base64.b64decode(box["value"])

    @property
    def owner(self) -> str:
        if self._owner is None:
            raw = self._global_state().get(b"owner", b"")
            self._owner = "0x" + raw.hex() if isinstance(raw, bytes) else ""
        return self._owner

    def is_voting_open(self) -> bool:
        return self._global_state().get(b"open", 0) == 1

    def has_been_opened(self) -> bool:
        return self._global_state().get(b"opened_once", 0) == 1

    def get_candidate_count(self) -> int:
        value = self._global_state().get(b"cand_count", 0)
        return int(value) if isinstance(value, int) else 0

    def _read_candidate(self, candidate_id: int) -> CandidateInfo:
        raw = self._read_box(candidate_box_name(candidate_id))
        if raw is None:
            raise LedgerRevert("InvalidCandidate")
        return CandidateInfo(name=raw[8:].decode("utf-8"), votes=int.from_bytes(raw[:8], "big"))

    def get_voter(self, address: str) -> VoterInfo:
        raw = self._read_box(voter_box_name(address_bytes(address)))
        if raw is None:
            return VoterInfo()
        if raw[0] == 2:
            return VoterInfo(is_registered=True, has_voted=True, voted_candidate_id=int.from_bytes(raw[1:9], "big"))
        return VoterInfo(is_registered=True)

    def _call_layout(self, operation: Operation, args: tuple, signer: str) -> tuple[list[bytes], list[tuple[int, bytes]]]:
        signer_raw = address_bytes(signer)
        app_args = [operation.selector, signer_raw]
        boxes: list[tuple[int, bytes]] = []
        if operation.name == "add_candidate":
            app_args.append(args[0].encode("utf-8"))
            boxes.append((self.app_id, candidate_box_name(self.get_candidate_count())))
        elif operation.name == "register_voter":
            app_args.append(address_bytes(args[0]))
            boxes.append((self.app_id, voter_box_name(address_bytes(args[0]))))
        elif operation.name == "register_self":
            boxes.append((self.app_id, voter_box_name(signer_raw)))
        elif operation.name == "cast_vote":
            app_args.append(self._u64(args[0]))
            boxes.append((self.app_id, voter_box_name(signer_raw)))
            boxes.append((self.app_id, candidate_box_name(args[0])))
        return app_args, boxes

    def _execute(self, operation: Operation, args: tuple, signer: str) -> Receipt:
        reason = self.revert_reason(operation, args, signer)
        if reason:
            logger.info("ledger_revert", operation=operation.name, reason=reason, stage="preflight")
            raise LedgerRevert(reason)

        app_args, boxes = self._call_layout(operation, args, signer)
        try:
            sp = self.algod.suggested_params()
            txn = transaction.ApplicationNoOpTxn(
                sender=self.sender,
                sp=sp,
                index=self.app_id,
                app_args=app_args,
                boxes=boxes,
            )
            signed = txn.sign(self.private_key)
            tx_id = self.algod.send_transaction(signed)
            pending = self.wait_for_confirmation(tx_id)
        except TimeoutError as exc:
            raise LedgerTransportError(str(exc)) from exc
        except (AlgodHTTPError, RuntimeError) as exc:
            # state is unchanged after a rejected call, so re-deriving the reason is exact
            reason = self.revert_reason(operation, args, signer)
            logger.warning("ledger_call_rejected", operation=operation.name, reason=reason, error=str(exc))
            if reason:
                raise LedgerRevert(reason) from exc
            raise LedgerTransportError(f"Ledger call failed: {exc}") from exc

        confirmed_round = int(pending.get("confirmed-round", 0))
        logger.info("ledger_applied", operation=operation.name, tx_id=tx_id, round=confirmed_round)
        return Receipt(tx_id=tx_id, operation=operation.name, signer=signer, confirmed_round=confirmed_round)
