import argparse
import json

from dotenv import load_dotenv

from app import build_orchestrator
from config import Settings
from logging_setup import setup_logging
from smart_contract import compile_contract


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="boundvote", description="BoundVote maintenance commands")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("sweep-otp", help="Delete expired one-time passcodes")
    sub.add_parser("results", help="Print the current ledger results")
    sub.add_parser("compile-contract", help="Print the TEAL approval and clear programs")
    args = parser.parse_args(argv)

    if args.command == "compile-contract":
        approval, clear = compile_contract()
        print(approval)
        print(clear)
        return 0

    load_dotenv()
    settings = Settings.from_env()
    setup_logging(settings.log_level)
    orchestrator = build_orchestrator(settings)

    if args.command == "sweep-otp":
        print(json.dumps({"deleted": orchestrator.gate.sweep_expired()}))
    elif args.command == "results":
        print(json.dumps(orchestrator.results(), indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
