import json
import time
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

import gateway_server
from gateway_server import RATE_LIMITS, create_app, evict_idle_clients, resolve_proxy_target
from x402_agent.config import Settings
from x402_agent.errors import ModelServiceError
from x402_agent.services import AgentServices

from fakes import PAYER, PAYMENT_TARGET, SERVICE_TOKEN, tx_hash

PRICE_WEI = 1_250_000_000_000_000
CEDULA_CALL = {"tool": "cedula-validation", "args": {"id": "123"}}


class FakeIdentityRegistry:
    def get_agent_identity(self, token_id):
        return {
            "name": "Verifik Agent",
            "description": "",
            "agentCardURI": "https://verifik.app/agent-card.json",
            "capabilities": [],
            "agentAddress": PAYMENT_TARGET,
            "createdAt": 1700000000,
            "active": True,
        }


class FakeReputationRegistry:
    def get_reputation(self, token_id):
        return {"totalFeedbacks": 3, "verifiedFeedbacks": 2, "averageRating": 4.5}

    def get_feedbacks(self, token_id):
        return [{"id": "1", "rating": 5}]


class FakePaymentContract:
    contract = object()

    def payments_by(self, payer):
        return [{"payer": payer, "serviceId": "cedula-validation", "amountWei": str(PRICE_WEI)}]


@pytest.fixture
def services(catalog, gate, dispatcher, orchestrator, recorder):
    settings = Settings(verifier_service_token=SERVICE_TOKEN, replay_db_path=":memory:")
    return AgentServices(
        settings=settings,
        catalog=catalog,
        gate=gate,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        recorder=recorder,
    )


@pytest.fixture
def client(services):
    RATE_LIMITS.clear()
    return TestClient(create_app(services))


def test_root_and_discovery(client):
    assert client.get("/").json()["status"] == "operational"
    assert len(client.get("/api/tools").json()["endpoints"]) == 3

    info = client.get("/v1/x402/info").json()
    assert info["x402_enabled"] is True
    assert info["pay_to"] == PAYMENT_TARGET
    assert info["chain_id"] == 43113
    assert "cedula-validation" in info["tools"]


def test_chat_pay_and_resubmit(client, model, chain, upstream):
    model.responses.append(json.dumps(CEDULA_CALL))
    first = client.post("/api/agent/chat", json={"message": "validate cedula 123", "history": []})
    assert first.status_code == 200
    quote = first.json()
    assert quote["response_type"] == "payment_required"
    assert quote["tool_call"] == CEDULA_CALL
    assert quote["payment_required"]["amount"] == "0.00125"

    chain.add(tx_hash(1), PRICE_WEI)
    second = client.post(
        "/api/agent/chat",
        json={
            "message": "Payment complete. Please proceed.",
            "tool_call": quote["tool_call"],
            "paymentTx": tx_hash(1),
            "paymentWallet": PAYER,
            "paymentAmount": 0.00125,
        },
    )
    body = second.json()
    assert body["response_type"] == "api_execution"
    assert body["data"] == {"data": {"valid": True}}
    assert body["proof"].startswith("0x")
    assert upstream.requests[0].headers["x-payment-amount"] == "0.00125"
    assert len(model.prompts) == 1


@pytest.mark.parametrize(
    "headers, extra",
    [
        ({"Authorization": "Bearer user-jwt"}, {}),
        ({}, {"userToken": "user-jwt", "mode": "credits"}),
    ],
)
def test_user_credentials_use_credits(client, model, upstream, headers, extra):
    model.responses.append(json.dumps(CEDULA_CALL))
    resp = client.post("/api/agent/chat", json={"message": "validate cedula 123", **extra}, headers=headers)
    assert resp.json()["response_type"] == "api_execution"
    assert upstream.requests[0].headers["Authorization"] == "Bearer user-jwt"


def test_service_token_bearer_still_pays(client, model):
    model.responses.append(json.dumps(CEDULA_CALL))
    resp = client.post(
        "/api/agent/chat",
        json={"message": "validate cedula 123"},
        headers={"Authorization": f"Bearer {SERVICE_TOKEN}"},
    )
    assert resp.json()["response_type"] == "payment_required"


def test_user_token_outside_credits_mode_is_ignored(client, model):
    model.responses.append(json.dumps(CEDULA_CALL))
    resp = client.post("/api/agent/chat", json={"message": "validate cedula 123", "userToken": "user-jwt"})
    assert resp.json()["response_type"] == "payment_required"


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"message": "   "},
        {"message": 42},
        {"message": "hi", "history": "nope"},
        {"message": "hi", "paymentTx": 12},
        {"message": "hi", "images": "AAAA"},
        {"message": "hi", "images": [{"mimeType": "image/png"}]},
    ],
)
def test_chat_rejects_bad_requests(client, payload):
    assert client.post("/api/agent/chat", json=payload).status_code == 400


def test_chat_rejects_invalid_json(client):
    resp = client.post("/api/agent/chat", content=b"not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid JSON"


def test_model_outage_is_bad_gateway(client, model):
    model.responses.append(ModelServiceError("quota exceeded"))
    resp = client.post("/api/agent/chat", json={"message": "hi"})
    assert resp.status_code == 502
    assert resp.json()["error"] == "Model service unavailable"


def test_unexpected_errors_are_generic(services, monkeypatch):
    def boom(request, identity):
        raise RuntimeError("secret internals")

    monkeypatch.setattr(services.orchestrator, "handle", boom)
    RATE_LIMITS.clear()
    client = TestClient(create_app(services), raise_server_exceptions=False)
    resp = client.post("/api/agent/chat", json={"message": "hi"})
    assert resp.status_code == 500
    assert resp.json() == {"error": "Internal error"}


def test_chat_is_rate_limited(client):
    for _ in range(30):
        client.post("/api/agent/chat", content=b"x", headers={"Content-Type": "application/json"})
    resp = client.post("/api/agent/chat", json={"message": "hi"})
    assert resp.status_code == 429


def test_agent_endpoints_404_without_identity(client):
    assert client.get("/api/agent/info").status_code == 404
    assert client.get("/api/agent/agent-card.json").status_code == 404
    assert client.get(f"/api/agent/payments/{PAYER}").status_code == 404


def test_agent_endpoints_with_registries(services):
    services.settings = replace(services.settings, agent_token_id=7, identity_registry=PAYMENT_TARGET)
    services.identity_registry = FakeIdentityRegistry()
    services.reputation_registry = FakeReputationRegistry()
    services.payment_contract = FakePaymentContract()
    RATE_LIMITS.clear()
    client = TestClient(create_app(services))

    info = client.get("/api/agent/info").json()
    assert info["identity"]["name"] == "Verifik Agent"
    assert info["reputation"]["averageRating"] == 4.5
    assert len(info["feedbacks"]) == 1

    card = client.get("/api/agent/agent-card.json").json()
    assert card["tokenId"] == 7
    assert card["chainId"] == 43113
    assert card["description"].startswith("AI-powered")
    assert "cedula-validation" in card["capabilities"]

    payments = client.get(f"/api/agent/payments/{PAYER.lower()}").json()
    assert payments["payer"] == PAYER
    assert payments["count"] == 1

    assert client.get("/api/agent/payments/not-an-address").status_code == 400


def test_proxy_requires_payment(client, upstream):
    resp = client.get("/api/proxy?id=123", headers={"X-Target-Url": "https://verifik.app/v2/co/cedula"})
    assert resp.status_code == 402
    assert 'price="0.00125 AVAX"' in resp.headers["WWW-Authenticate"]
    assert resp.json()["serviceId"] == "cedula-validation"
    assert upstream.requests == []


def test_proxy_forwards_paid_request_and_attaches_proof(client, chain, upstream):
    chain.add(tx_hash(2), PRICE_WEI)
    headers = {"X-Target-Url": "/v2/co/cedula", "Authorization": f"L402 {tx_hash(2)}"}

    resp = client.get("/api/proxy?id=123", headers=headers)

    assert resp.status_code == 200
    assert resp.headers["X-Validation-Proof"].startswith("0x")
    assert resp.json()["_proof"] == resp.headers["X-Validation-Proof"]
    assert upstream.requests[0].url.params["id"] == "123"
    assert upstream.requests[0].headers["Authorization"] == f"Bearer {SERVICE_TOKEN}"

    replay = client.get("/api/proxy?id=123", headers=headers)
    assert replay.status_code == 402
    assert replay.json()["reason"] == "Payment transaction already used."


def test_proxy_unmatched_path_uses_default_price(client):
    resp = client.post("/api/proxy", json={}, headers={"X-Target-Url": "https://verifik.app/v2/unknown"})
    assert resp.status_code == 402
    assert resp.json()["priceUsd"] == 0.05


@pytest.mark.parametrize("headers", [{}, {"X-Target-Url": "https://evil.example/v2/co/cedula"}])
def test_proxy_rejects_missing_or_foreign_targets(client, headers):
    assert client.get("/api/proxy", headers=headers).status_code == 400


def test_resolve_proxy_target():
    base = "https://verifik.app"
    assert resolve_proxy_target("/v2/co/cedula", base) == "https://verifik.app/v2/co/cedula"
    assert resolve_proxy_target("https://verifik.app/v2/ocr/scan", base) == "https://verifik.app/v2/ocr/scan"
    assert resolve_proxy_target("file:///etc/passwd", base) is None
    assert resolve_proxy_target("https://verifik.app.evil.io/x", base) is None


def test_chat_forwards_images_to_the_model(client, model):
    model.responses.append("A Colombian cedula.")
    image = {"mimeType": "image/png", "data": "AAAA"}
    resp = client.post("/api/agent/chat", json={"message": "what is this document?", "images": [image]})
    assert resp.status_code == 200
    assert resp.json()["response_type"] == "documentation"
    assert model.images == [[image]]


def test_proxy_path_match_ignores_trailing_slash_and_case(client):
    resp = client.post("/api/proxy", json={}, headers={"X-Target-Url": "/V2/OCR/scan/"})
    assert resp.status_code == 402
    assert resp.json()["priceUsd"] == 0.2
    assert resp.json()["serviceId"] == "document-ocr"


def test_idle_clients_are_evicted():
    RATE_LIMITS.clear()
    now = time.time()
    RATE_LIMITS["10.0.0.1"] = [now - 120]
    RATE_LIMITS["10.0.0.2"] = []
    RATE_LIMITS["10.0.0.3"] = [now - 5]
    assert evict_idle_clients(now) == 2
    assert list(RATE_LIMITS) == ["10.0.0.3"]


def test_rate_limiter_sweeps_idle_clients(client, monkeypatch):
    monkeypatch.setattr(gateway_server, "RL_LAST_SWEEP", 0.0)
    RATE_LIMITS["10.0.0.1"] = [time.time() - 120]
    client.get("/api/agent/info")
    assert "10.0.0.1" not in RATE_LIMITS
    assert len(RATE_LIMITS) == 1
