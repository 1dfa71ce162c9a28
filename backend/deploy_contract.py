import base64
import json
import os

from algosdk import account, logic, mnemonic, transaction
from algosdk.v2client import algod
from dotenv import load_dotenv

from algorand_client import AlgorandLedger
from smart_contract import compile_contract, contract_interface
from wallets import address_bytes, is_valid_address

# covers the minimum balance of the app account plus room for candidate/voter boxes
DEFAULT_APP_FUNDING_MICROALGOS = 1_000_000


def create_application(client: algod.AlgodClient, private_key: str, owner_address: str) -> int:
    sender = account.address_from_private_key(private_key)
    approval_teal, clear_teal = compile_contract()

    approval_program = base64.b64decode(client.compile(approval_teal)["result"])
    clear_program = base64.b64decode(client.compile(clear_teal)["result"])

    txn = transaction.ApplicationCreateTxn(
        sender=sender,
        sp=client.suggested_params(),
        on_complete=transaction.OnComplete.NoOpOC,
        approval_program=approval_program,
        clear_program=clear_program,
        global_schema=transaction.StateSchema(num_uints=3, num_byte_slices=2),
        local_schema=transaction.StateSchema(0, 0),
        app_args=[address_bytes(owner_address)],
    )
    txid = client.send_transaction(txn.sign(private_key))
    print("txid:", txid)
    confirmed = transaction.wait_for_confirmation(client, txid, 12)
    print("confirmed_round:", confirmed["confirmed-round"])
    return int(confirmed["application-index"])


def fund_application(client: algod.AlgodClient, private_key: str, app_id: int, amount: int) -> None:
    sender = account.address_from_private_key(private_key)
    txn = transaction.PaymentTxn(
        sender=sender,
        sp=client.suggested_params(),
        receiver=logic.get_application_address(app_id),
        amt=amount,
    )
    txid = client.send_transaction(txn.sign(private_key))
    transaction.wait_for_confirmation(client, txid, 12)


def main() -> None:
    load_dotenv()
    algod_address = os.getenv("ALGORAND_ALGOD_ADDRESS")
    algod_token = os.getenv("ALGORAND_ALGOD_TOKEN", "")
    service_mnemonic = os.getenv("ALGORAND_SERVICE_MNEMONIC")
    owner_address = os.getenv("LEDGER_OWNER_ADDRESS", "")
    seed_candidates = [c.strip() for c in os.getenv("SEED_CANDIDATES", "").split(",") if c.strip()]
    funding = int(os.getenv("APP_FUNDING_MICROALGOS", str(DEFAULT_APP_FUNDING_MICROALGOS)))
    interface_path = os.getenv("CONTRACT_INTERFACE_PATH", "voting_ledger.json")

    if not algod_address or not service_mnemonic:
        raise RuntimeError("ALGORAND_ALGOD_ADDRESS and ALGORAND_SERVICE_MNEMONIC are required")
    if not is_valid_address(owner_address):
        raise RuntimeError("LEDGER_OWNER_ADDRESS must be a 0x-prefixed 20-byte hex address")

    headers = {"X-API-Key": algod_token} if algod_token else {}
    client = algod.AlgodClient(algod_token, algod_address, headers=headers)
    private_key = mnemonic.to_private_key(service_mnemonic)

    app_id = create_application(client, private_key, owner_address)
    print("app_id:", app_id)
    fund_application(client, private_key, app_id, funding)

    if seed_candidates:
        ledger = AlgorandLedger(client, app_id, private_key)
        for name in seed_candidates:
            receipt = ledger.add_candidate(name, owner_address)
            print("candidate added:", name, receipt.tx_id)

    with open(interface_path, "w", encoding="utf-8") as fh:
        json.dump({"app_id": app_id, **contract_interface()}, fh, indent=2)
    print("wrote contract interface to", interface_path)


if __name__ == "__main__":
    main()
