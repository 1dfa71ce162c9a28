from ledger import LEDGER_OPERATIONS
from smart_contract import (
    BRANCHES,
    candidate_box_name,
    compile_contract,
    contract_interface,
    voter_box_name,
)


def test_contract_compiles_for_box_capable_avm():
    approval, clear = compile_contract()

    assert approval.startswith("#pragma version 8")
    assert clear.startswith("#pragma version 8")
    for op in LEDGER_OPERATIONS.values():
        assert f'"{op.selector.decode("ascii")}"' in approval


def test_branches_cover_every_operation():
    assert set(BRANCHES) == set(LEDGER_OPERATIONS)


def test_interface_lists_operations():
    interface = contract_interface()
    by_name = {op["name"]: op for op in interface["operations"]}

    assert interface["args_layout"] == ["selector", "signer"]
    assert by_name["add_candidate"]["owner_only"] is True
    assert by_name["add_candidate"]["params"] == ["name"]
    assert by_name["cast_vote"]["owner_only"] is False


def test_box_names():
    assert candidate_box_name(2) == b"cand_" + b"\x00" * 7 + b"\x02"
    assert voter_box_name(b"\xbb" * 20) == b"voter_" + b"\xbb" * 20
