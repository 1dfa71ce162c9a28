import pytest

from app import create_app

from conftest import OTHER, OWNER, PASSWORD, VOTER, sign_message


@pytest.fixture
def client(env):
    app = create_app(env.orchestrator)
    app.config["TESTING"] = True
    return app.test_client()


def _login(client, env, email):
    client.post("/register/start", json={"email": email, "password": PASSWORD})
    client.post("/register/verify", json={"email": email, "otp": env.outbox.last_code(email, "registration")})
    client.post("/login", json={"email": email, "password": PASSWORD})
    response = client.post("/login/verify", json={"email": email, "otp": env.outbox.last_code(email, "login")})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.get_json()['session_token']}"}


def _bind(client, headers, address, signer=None):
    message = client.get("/wallet/challenge", headers=headers).get_json()["message"]
    signature = sign_message(signer or address, message)
    return client.post("/wallet/bind", json={"wallet_address": address, "signature": signature}, headers=headers)


@pytest.fixture
def admin(client, env):
    headers = _login(client, env, "admin@x.com")
    assert _bind(client, headers, OWNER).status_code == 200
    for name in ("Alice", "Bob"):
        client.post("/admin/add-candidate", json={"wallet_address": OWNER, "name": name}, headers=headers)
    assert client.post("/admin/open-voting", json={"wallet_address": OWNER}, headers=headers).status_code == 200
    return headers


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok", "ledger_phase": "Setup"}


def test_missing_bearer_is_unauthorized(client):
    response = client.get("/wallet/status")
    assert response.status_code == 401
    assert response.get_json()["code"] == "MISSING_SESSION"


def test_wrong_otp_is_generic(client, env):
    client.post("/register/start", json={"email": "u@x.com", "password": PASSWORD})
    response = client.post("/register/verify", json={"email": "u@x.com", "otp": "abc"})

    assert response.status_code == 401
    assert response.get_json()["error"] == "Invalid or expired code"


def test_bind_rejects_malformed_address(client, env):
    headers = _login(client, env, "u@x.com")
    response = client.post("/wallet/bind", json={"wallet_address": "0x12"}, headers=headers)

    assert response.status_code == 400
    assert response.get_json()["code"] == "INVALID_ADDRESS"


def test_vote_flow_over_http(client, env, admin):
    headers = _login(client, env, "voter@x.com")
    assert _bind(client, headers, VOTER).status_code == 200

    registered = client.post("/vote/register", json={"wallet_address": VOTER}, headers=headers)
    assert registered.status_code == 200
    assert registered.get_json()["operation"] == "register_voter"

    voted = client.post("/vote", json={"wallet_address": VOTER, "candidate_id": 1}, headers=headers)
    assert voted.status_code == 200
    assert voted.get_json()["status"] == "SUCCESS"

    again = client.post("/vote", json={"wallet_address": VOTER, "candidate_id": 0}, headers=headers)
    assert again.status_code == 409
    assert again.get_json()["code"] == "AlreadyVoted"

    results = client.get("/results").get_json()
    assert results["phase"] == "Open"
    assert results["results"][1] == {"id": 1, "name": "Bob", "votes": 1}
    assert client.get(f"/voter/{VOTER}").get_json() == {
        "is_registered": True,
        "has_voted": True,
        "voted_candidate_id": 1,
    }


def test_mismatched_wallet_is_forbidden(client, env, admin):
    headers = _login(client, env, "voter@x.com")
    assert _bind(client, headers, VOTER).status_code == 200

    response = client.post("/vote/register", json={"wallet_address": OTHER}, headers=headers)

    assert response.status_code == 403
    assert response.get_json()["code"] == "WALLET_MISMATCH"
    assert env.ledger.get_voter(OTHER).is_registered is False


def test_non_integer_candidate_id(client, env, admin):
    headers = _login(client, env, "voter@x.com")
    response = client.post("/vote", json={"wallet_address": VOTER, "candidate_id": "one"}, headers=headers)
    assert response.status_code == 400


def test_candidate_id_must_be_a_plain_integer(client, env, admin):
    headers = _login(client, env, "voter@x.com")
    assert _bind(client, headers, VOTER).status_code == 200

    for candidate_id in (True, 1.9, None):
        response = client.post("/vote", json={"wallet_address": VOTER, "candidate_id": candidate_id}, headers=headers)
        assert response.status_code == 400
        assert response.get_json()["code"] == "INVALID_CANDIDATE_ID"
    assert env.ledger.get_candidate(1).votes == 0


def test_non_object_json_body_is_a_validation_error(client):
    response = client.post("/register/start", json=[1, 2])
    assert response.status_code == 400

    response = client.post("/login", json="admin@x.com")
    assert response.status_code == 400


def test_non_owner_admin_action_is_forbidden(client, env, admin):
    headers = _login(client, env, "user@x.com")
    assert _bind(client, headers, VOTER).status_code == 200

    response = client.post("/admin/close-voting", json={"wallet_address": VOTER}, headers=headers)

    assert response.status_code == 403
    assert response.get_json()["code"] == "NotOwner"


def test_unknown_candidate_is_a_state_error(client, admin):
    response = client.get("/candidates/9")
    assert response.status_code == 409
    assert response.get_json()["code"] == "InvalidCandidate"
    assert [c["name"] for c in client.get("/candidates").get_json()] == ["Alice", "Bob"]


def test_audit_events_for_owner(client, admin):
    response = client.get(f"/admin/audit-events?wallet_address={OWNER}&limit=3", headers=admin)
    assert response.status_code == 200
    assert len(response.get_json()) == 3


def test_bind_without_wallet_signature_is_forbidden(client, env):
    headers = _login(client, env, "u@x.com")

    unsigned = client.post("/wallet/bind", json={"wallet_address": VOTER}, headers=headers)
    assert unsigned.status_code == 403
    assert unsigned.get_json()["code"] == "INVALID_SIGNATURE"

    wrong_key = _bind(client, headers, VOTER, signer=OTHER)
    assert wrong_key.status_code == 403
    assert client.get("/wallet/status", headers=headers).get_json() == {"has_wallet": False, "wallet_address": None}


def test_verify_signature_endpoint(client, env):
    headers = _login(client, env, "u@x.com")
    message = client.get("/wallet/challenge", headers=headers).get_json()["message"]
    body = {"wallet_address": VOTER, "signature": sign_message(VOTER, message), "message": message}

    response = client.post("/wallet/verify-signature", json=body, headers=headers)
    assert response.get_json() == {"is_valid_signature": True}

    body["wallet_address"] = OTHER
    response = client.post("/wallet/verify-signature", json=body, headers=headers)
    assert response.get_json() == {"is_valid_signature": False}


def test_registered_wallet_cannot_be_unbound_over_http(client, env, admin):
    headers = _login(client, env, "voter@x.com")
    assert _bind(client, headers, VOTER).status_code == 200
    client.post("/vote/register", json={"wallet_address": VOTER}, headers=headers)

    response = client.delete("/wallet/unbind", headers=headers)

    assert response.status_code == 409
    assert response.get_json()["code"] == "WALLET_REGISTERED"
