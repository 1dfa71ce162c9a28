from pyteal import *

from ledger import LEDGER_OPERATIONS, MAX_NAME_BYTES

OWNER_KEY = Bytes("owner")
RELAYER_KEY = Bytes("relayer")
OPEN_KEY = Bytes("open")
OPENED_ONCE_KEY = Bytes("opened_once")
COUNT_KEY = Bytes("cand_count")

STATUS_REGISTERED = Bytes("base16", "01")
STATUS_VOTED = Bytes("base16", "02")

# app args for every call: [selector, signer (20 bytes), *operation params]
SIGNER_ARG = 1
FIRST_PARAM_ARG = 2


def candidate_box_name(candidate_id: int) -> bytes:
    return b"cand_" + int(candidate_id).to_bytes(8, "big")


def voter_box_name(address: bytes) -> bytes:
    return b"voter_" + address


def _candidate_key(candidate_id: Expr) -> Expr:
    return Concat(Bytes("cand_"), Itob(candidate_id))


def _voter_key(address: Expr) -> Expr:
    return Concat(Bytes("voter_"), address)


def _expect_args(count: int) -> Expr:
    return Assert(Txn.application_args.length() == Int(count))


def _only_owner() -> Expr:
    return Assert(Txn.application_args[SIGNER_ARG] == App.globalGet(OWNER_KEY), comment="NotOwner")


def _register(address: Expr) -> Expr:
    existing = BoxLen(_voter_key(address))
    return Seq(
        existing,
        Assert(Not(existing.hasValue()), comment="AlreadyRegistered"),
        BoxPut(_voter_key(address), Concat(STATUS_REGISTERED, Itob(Int(0)))),
        Approve(),
    )


def _add_candidate() -> Expr:
    name = Txn.application_args[FIRST_PARAM_ARG]
    return Seq(
        _expect_args(3),
        _only_owner(),
        Assert(Len(name) > Int(0), comment="EmptyName"),
        Assert(Len(name) <= Int(MAX_NAME_BYTES), comment="NameTooLong"),
        BoxPut(_candidate_key(App.globalGet(COUNT_KEY)), Concat(Itob(Int(0)), name)),
        App.globalPut(COUNT_KEY, App.globalGet(COUNT_KEY) + Int(1)),
        Approve(),
    )


def _open_voting() -> Expr:
    return Seq(
        _expect_args(2),
        _only_owner(),
        Assert(App.globalGet(OPEN_KEY) == Int(0), comment="VotingAlreadyOpen"),
        Assert(App.globalGet(COUNT_KEY) > Int(0), comment="NoCandidates"),
        App.globalPut(OPEN_KEY, Int(1)),
        App.globalPut(OPENED_ONCE_KEY, Int(1)),
        Approve(),
    )


def _close_voting() -> Expr:
    return Seq(
        _expect_args(2),
        _only_owner(),
        Assert(App.globalGet(OPEN_KEY) == Int(1), comment="VotingAlreadyClosed"),
        App.globalPut(OPEN_KEY, Int(0)),
        Approve(),
    )


def _register_voter() -> Expr:
    return Seq(
        _expect_args(3),
        _only_owner(),
        Assert(Len(Txn.application_args[FIRST_PARAM_ARG]) == Int(20)),
        _register(Txn.application_args[FIRST_PARAM_ARG]),
    )


def _register_self() -> Expr:
    return Seq(
        _expect_args(2),
        _register(Txn.application_args[SIGNER_ARG]),
    )


def _cast_vote() -> Expr:
    signer = Txn.application_args[SIGNER_ARG]
    voter = BoxGet(_voter_key(signer))
    candidate_id = ScratchVar(TealType.uint64)
    return Seq(
        _expect_args(3),
        Assert(Len(Txn.application_args[FIRST_PARAM_ARG]) == Int(8)),
        voter,
        Assert(voter.hasValue(), comment="NotRegistered"),
        Assert(App.globalGet(OPEN_KEY) == Int(1), comment="VotingClosed"),
        Assert(GetByte(voter.value(), Int(0)) == Int(1), comment="AlreadyVoted"),
        candidate_id.store(Btoi(Txn.application_args[FIRST_PARAM_ARG])),
        Assert(candidate_id.load() < App.globalGet(COUNT_KEY), comment="InvalidCandidate"),
        BoxPut(_voter_key(signer), Concat(STATUS_VOTED, Itob(candidate_id.load()))),
        BoxReplace(
            _candidate_key(candidate_id.load()),
            Int(0),
            Itob(Btoi(BoxExtract(_candidate_key(candidate_id.load()), Int(0), Int(8))) + Int(1)),
        ),
        Approve(),
    )


BRANCHES = {
    "add_candidate": _add_candidate,
    "open_voting": _open_voting,
    "close_voting": _close_voting,
    "register_voter": _register_voter,
    "register_self": _register_self,
    "cast_vote": _cast_vote,
}


def build_approval_program() -> Expr:
    if set(BRANCHES) != set(LEDGER_OPERATIONS):
        raise RuntimeError("Contract branches are out of sync with LEDGER_OPERATIONS")

    on_create = Seq(
        _expect_args(1),
        Assert(Len(Txn.application_args[0]) == Int(20)),
        App.globalPut(OWNER_KEY, Txn.application_args[0]),
        App.globalPut(RELAYER_KEY, Txn.sender()),
        App.globalPut(OPEN_KEY, Int(0)),
        App.globalPut(OPENED_ONCE_KEY, Int(0)),
        App.globalPut(COUNT_KEY, Int(0)),
        Approve(),
    )

    selector = Txn.application_args[0]
    on_call = Seq(
        Assert(Txn.sender() == App.globalGet(RELAYER_KEY), comment="NotRelayer"),
        Assert(Txn.application_args.length() >= Int(2)),
        Assert(Len(Txn.application_args[SIGNER_ARG]) == Int(20)),
        Cond(
            *[
                [selector == Bytes(op.selector.decode("ascii")), BRANCHES[name]()]
                for name, op in LEDGER_OPERATIONS.items()
            ]
        ),
    )

    return Cond(
        [Txn.application_id() == Int(0), on_create],
        [Txn.on_completion() == OnComplete.NoOp, on_call],
        [Txn.on_completion() == OnComplete.OptIn, Reject()],
        [Txn.on_completion() == OnComplete.CloseOut, Reject()],
        [Txn.on_completion() == OnComplete.UpdateApplication, Reject()],
        [Txn.on_completion() == OnComplete.DeleteApplication, Reject()],
    )


def build_clear_program() -> Expr:
    return Approve()


def compile_contract() -> tuple[str, str]:
    approval = compileTeal(
        build_approval_program(),
        mode=Mode.Application,
        version=8,
    )
    clear = compileTeal(
        build_clear_program(),
        mode=Mode.Application,
        version=8,
    )
    return approval, clear


def contract_interface() -> dict:
    """Operation table shipped next to the deployed app id for clients."""
    return {
        "args_layout": ["selector", "signer"],
        "operations": [
            {"name": op.name, "selector": op.selector.decode("ascii"), "owner_only": op.owner_only, "params": list(op.params)}
            for op in LEDGER_OPERATIONS.values()
        ],
    }


if __name__ == "__main__":
    approval_teal, clear_teal = compile_contract()
    print(approval_teal)
    print(clear_teal)
