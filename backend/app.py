from dataclasses import asdict
from typing import Any

import structlog
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS

from accounts import MemoryAccountStore, PostgresAccountStore
from audit import AuditTrail, MemoryAuditSink, PostgresAuditSink
from config import Settings
from db import ensure_schema, init_pool
from email_service import OutboxDelivery, SmtpDelivery
from errors import AuthError, BoundVoteError, ErrorKind, ValidationError
from ledger import LocalLedger
from logging_setup import setup_logging
from orchestrator import AuthorizationOrchestrator, Session
from otp import MemoryPasscodeStore, PasscodeGate, PostgresPasscodeStore
from wallets import WalletBindingVerifier

logger = structlog.get_logger(__name__)

FORBIDDEN_CODES = {
    "WALLET_MISMATCH",
    "WALLET_NOT_BOUND",
    "ACCOUNT_UNAVAILABLE",
    "ACCOUNT_NOT_VERIFIED",
    "NOT_OWNER",
    "NotOwner",
    "INVALID_SIGNATURE",
}

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTH: 401,
    ErrorKind.CONFLICT: 409,
    ErrorKind.STATE: 409,
    ErrorKind.TRANSIENT: 503,
}


def build_orchestrator(settings: Settings) -> AuthorizationOrchestrator:
    if settings.database_url:
        init_pool(settings.database_url, settings.db_pool_min, settings.db_pool_max)
        ensure_schema()
        accounts, passcodes, sink = PostgresAccountStore(), PostgresPasscodeStore(), PostgresAuditSink()
    else:
        logger.warning("database_not_configured", fallback="memory")
        accounts, passcodes, sink = MemoryAccountStore(), MemoryPasscodeStore(), MemoryAuditSink()

    if settings.smtp_host and settings.smtp_email:
        delivery = SmtpDelivery(
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_email,
            settings.smtp_password or "",
            expiry_minutes=settings.otp_expiry_minutes,
        )
    else:
        logger.warning("smtp_not_configured", fallback="outbox")
        delivery = OutboxDelivery()

    if settings.ledger_backend == "algorand":
        from algorand_client import AlgorandLedger

        ledger = AlgorandLedger.from_settings(settings)
    else:
        if not settings.ledger_owner_address:
            raise RuntimeError("LEDGER_OWNER_ADDRESS is required for the local ledger")
        ledger = LocalLedger(settings.ledger_owner_address)

    gate = PasscodeGate(
        passcodes,
        delivery,
        length=settings.otp_length,
        expiry_minutes=settings.otp_expiry_minutes,
    )
    return AuthorizationOrchestrator(
        accounts=accounts,
        gate=gate,
        verifier=WalletBindingVerifier(
            accounts,
            passcodes,
            challenge_ttl_seconds=settings.wallet_challenge_ttl_seconds,
        ),
        ledger=ledger,
        audit=AuditTrail(sink),
        session_secret=settings.session_secret or "",
        session_ttl_seconds=settings.session_ttl_seconds,
        allow_self_registration=settings.allow_self_registration,
    )


def create_app(orchestrator: AuthorizationOrchestrator | None = None) -> Flask:
    if orchestrator is None:
        load_dotenv()
        settings = Settings.from_env()
        setup_logging(settings.log_level)
        orchestrator = build_orchestrator(settings)

    app = Flask(__name__)
    CORS(app)
    app.extensions["orchestrator"] = orchestrator
    core = orchestrator

    @app.errorhandler(BoundVoteError)
    def handle_error(exc: BoundVoteError):
        status = 403 if exc.code in FORBIDDEN_CODES else STATUS_BY_KIND.get(exc.kind, 400)
        return jsonify(exc.to_dict()), status

    def _body() -> dict[str, Any]:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    def _session() -> Session:
        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            raise AuthError("MISSING_SESSION", "Missing bearer session token")
        return core.authenticate(auth_header.split(" ", 1)[1].strip())

    def _wallet(data: dict[str, Any]) -> str:
        return str(data.get("wallet_address") or request.args.get("wallet_address") or "")

    def _receipt(receipt) -> Any:
        return jsonify({"status": "SUCCESS", **asdict(receipt)})

    @app.route("/register/start", methods=["POST"])
    def register_start():
        data = _body()
        return jsonify(core.start_registration(str(data.get("email", "")), str(data.get("password", ""))))

    @app.route("/register/verify", methods=["POST"])
    def register_verify():
        data = _body()
        return jsonify(core.complete_registration(str(data.get("email", "")), str(data.get("otp", ""))))

    @app.route("/login", methods=["POST"])
    def login():
        data = _body()
        return jsonify(core.start_login(str(data.get("email", "")), str(data.get("password", ""))))

    @app.route("/login/verify", methods=["POST"])
    def login_verify():
        data = _body()
        return jsonify(core.complete_login(str(data.get("email", "")), str(data.get("otp", ""))))

    @app.route("/otp/resend", methods=["POST"])
    def otp_resend():
        data = _body()
        return jsonify(core.resend_code(str(data.get("email", "")), str(data.get("purpose", ""))))

    @app.route("/password/forgot", methods=["POST"])
    def password_forgot():
        return jsonify(core.request_password_reset(str(_body().get("email", ""))))

    @app.route("/password/reset", methods=["POST"])
    def password_reset():
        data = _body()
        return jsonify(
            core.complete_password_reset(
                str(data.get("email", "")),
                str(data.get("otp", "")),
                str(data.get("new_password", "")),
            )
        )

    @app.route("/logout", methods=["POST"])
    def logout():
        return jsonify(core.logout(_session()))

    @app.route("/wallet/status", methods=["GET"])
    def wallet_status():
        return jsonify(core.wallet_status(_session()))

    @app.route("/wallet/challenge", methods=["GET"])
    def wallet_challenge():
        return jsonify(core.wallet_challenge(_session()))

    @app.route("/wallet/bind", methods=["POST"])
    def wallet_bind():
        session = _session()
        data = _body()
        return jsonify(core.bind_wallet(session, _wallet(data), str(data.get("signature", ""))))

    @app.route("/wallet/verify-signature", methods=["POST"])
    def wallet_verify_signature():
        session = _session()
        data = _body()
        return jsonify(
            core.verify_wallet_signature(
                session,
                _wallet(data),
                str(data.get("signature", "")),
                str(data.get("message", "")),
            )
        )

    @app.route("/wallet/unbind", methods=["DELETE"])
    def wallet_unbind():
        return jsonify(core.unbind_wallet(_session()))

    @app.route("/wallet/verify", methods=["POST"])
    def wallet_verify():
        return jsonify(core.verify_wallet(_session(), _wallet(_body())))

    @app.route("/vote/register", methods=["POST"])
    def vote_register():
        return _receipt(core.register_to_vote(_session(), _wallet(_body())))

    @app.route("/vote", methods=["POST"])
    def vote():
        session = _session()
        data = _body()
        candidate_id = data.get("candidate_id")
        if not isinstance(candidate_id, int) or isinstance(candidate_id, bool):
            raise ValidationError("INVALID_CANDIDATE_ID", "candidate_id must be an integer")
        return _receipt(core.cast_vote(session, _wallet(data), candidate_id))

    @app.route("/voter/<address>", methods=["GET"])
    def voter(address: str):
        return jsonify(asdict(core.voter_info(address)))

    @app.route("/candidates", methods=["GET"])
    def candidates():
        return jsonify(core.results()["results"])

    @app.route("/candidates/<int:candidate_id>", methods=["GET"])
    def candidate(candidate_id: int):
        info = core.ledger.get_candidate(candidate_id)
        return jsonify({"id": candidate_id, "name": info.name, "votes": info.votes})

    @app.route("/results", methods=["GET"])
    def results():
        return jsonify(core.results())

    @app.route("/admin/add-candidate", methods=["POST"])
    def add_candidate():
        data = _body()
        return _receipt(core.add_candidate(_session(), _wallet(data), str(data.get("name", ""))))

    @app.route("/admin/open-voting", methods=["POST"])
    def open_voting():
        return _receipt(core.open_voting(_session(), _wallet(_body())))

    @app.route("/admin/close-voting", methods=["POST"])
    def close_voting():
        return _receipt(core.close_voting(_session(), _wallet(_body())))

    @app.route("/admin/audit-events", methods=["GET"])
    def admin_audit_events():
        limit_raw = request.args.get("limit", "100")
        try:
            limit = max(1, min(500, int(limit_raw)))
        except ValueError:
            limit = 100
        return jsonify(core.audit_events(_session(), _wallet({}), limit))

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "ledger_phase": core.ledger.phase().value})

    return app


if __name__ == "__main__":
    create_app().run(debug=True)
