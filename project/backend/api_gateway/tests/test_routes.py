"""
Tests for the HTTP API over an in-memory context.
"""

import json

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from shared.config import Settings
from shared.errors import InsufficientCreditsError, ProviderError
from api_gateway.context import AppContext
from api_gateway.main import API_PREFIX, create_app
from modules.credit_ledger import CreditLedger
from modules.generation.providers import GatewayOrder
from modules.payments import PaymentService, PaymentWebhookHandler
from modules.payments.signature import compute_signature
from modules.pipeline import PipelineOrchestrator, create_default_registry
from modules.stage_handlers import create_stage_registry

JWT_SECRET = "test-jwt-secret"
WEBHOOK_SECRET = "whsec_test"


class FakeGateway:
    client_key = "rzp_test_key"

    async def create_order(self, amount, currency, receipt, notes=None):
        return GatewayOrder(external_order_id=f"order_{receipt}", amount=amount, currency=currency)


def _auth(user_id="u1"):
    token = jwt.encode({"sub": user_id, "email": f"{user_id}@example.com"}, JWT_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def context(store, queue):
    settings = Settings(_env_file=None, environment="test", jwt_secret=JWT_SECRET)
    ledger = CreditLedger(store, default_free_credits=50)
    templates = create_default_registry()
    return AppContext(
        settings=settings,
        store=store,
        queue=queue,
        ledger=ledger,
        templates=templates,
        orchestrator=PipelineOrchestrator(store, queue, templates, create_stage_registry(store)),
        payments=PaymentService(store, FakeGateway()),
        webhooks=PaymentWebhookHandler(store, ledger, WEBHOOK_SECRET),
    )


@pytest.fixture
def app(context):
    return create_app(context)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "store": True, "redis": True}


def test_authentication_required(client):
    """Test that missing, forged and subject-less tokens are rejected."""
    assert client.get(f"{API_PREFIX}/credits/balance").status_code == 401
    forged = jwt.encode({"sub": "u1"}, "other-secret", algorithm="HS256")
    assert client.get(f"{API_PREFIX}/credits/balance", headers={"Authorization": f"Bearer {forged}"}).status_code == 401
    no_sub = jwt.encode({"email": "x@example.com"}, JWT_SECRET, algorithm="HS256")
    assert client.get(f"{API_PREFIX}/credits/balance", headers={"Authorization": f"Bearer {no_sub}"}).status_code == 401


def test_balance_and_threshold(client):
    response = client.get(f"{API_PREFIX}/credits/balance", headers=_auth())
    assert response.status_code == 200
    assert response.json()["available"] == 50

    response = client.put(f"{API_PREFIX}/credits/low-balance-threshold", json={"threshold": 10}, headers=_auth())
    assert response.json() == {"threshold": 10}
    assert client.put(f"{API_PREFIX}/credits/low-balance-threshold", json={"threshold": -5}, headers=_auth()).status_code == 422

    transactions = client.get(f"{API_PREFIX}/credits/transactions", headers=_auth()).json()["transactions"]
    assert [t["type"] for t in transactions] == ["bonus"]


def test_estimate_reports_sufficiency(client):
    response = client.post(f"{API_PREFIX}/credits/estimate", json={"config": {"scene_count": 1}}, headers=_auth())
    body = response.json()
    assert body["total_credits"] == 5 + 5 + 10 + 50 + 3 + 2
    assert body["available"] == 50
    assert body["sufficient"] is False


def test_start_inspect_and_cancel_run(client, queue):
    """Test the run lifecycle over HTTP, including ownership checks."""
    response = client.post(
        f"{API_PREFIX}/pipeline/runs",
        json={"title": "Lighthouse", "idea": "A keeper finds a message"},
        headers=_auth(),
    )
    assert response.status_code == 201
    run_id = response.json()["run_id"]
    assert [job["job_name"] for job in queue.enqueued] == ["write-story"]

    status = client.get(f"{API_PREFIX}/pipeline/runs/{run_id}", headers=_auth()).json()
    assert status["run"]["status"] == "running"

    assert client.get(f"{API_PREFIX}/pipeline/runs/{run_id}", headers=_auth("intruder")).status_code == 404

    cancelled = client.post(f"{API_PREFIX}/pipeline/runs/{run_id}/cancel", headers=_auth()).json()
    assert cancelled == {"run_id": run_id, "cancelled": True}

    retry = client.post(f"{API_PREFIX}/pipeline/runs/{run_id}/stages/story-writing/retry", headers=_auth())
    assert retry.status_code == 400


def test_start_run_validation(client):
    response = client.post(f"{API_PREFIX}/pipeline/runs", json={"title": "No idea"}, headers=_auth())
    assert response.status_code == 400
    assert "idea" in response.json()["error"]

    response = client.post(f"{API_PREFIX}/pipeline/runs", json={"project_id": "missing"}, headers=_auth())
    assert response.status_code == 404


def test_order_and_webhook_credit_once(client):
    """Test that a purchased pack is credited once however often the webhook arrives."""
    order = client.post(
        f"{API_PREFIX}/payments/orders",
        json={"credits": 100, "idempotency_key": "checkout-0001"},
        headers=_auth(),
    )
    assert order.status_code == 201
    external_order_id = order.json()["external_order_id"]

    body = json.dumps({
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"id": "pay_1", "order_id": external_order_id, "amount": 9900}}},
    })
    headers = {"X-Razorpay-Signature": compute_signature(WEBHOOK_SECRET, body), "Content-Type": "application/json"}
    first = client.post(f"{API_PREFIX}/webhooks/razorpay", content=body, headers=headers).json()
    second = client.post(f"{API_PREFIX}/webhooks/razorpay", content=body, headers=headers).json()

    assert first["status"] == "credited"
    assert second["status"] == "already_processed"
    assert client.get(f"{API_PREFIX}/credits/balance", headers=_auth()).json()["available"] == 150

    rejected = client.post(
        f"{API_PREFIX}/webhooks/razorpay",
        content=body,
        headers={"X-Razorpay-Signature": "forged", "Content-Type": "application/json"},
    )
    assert rejected.status_code == 400


def test_domain_errors_map_to_status_codes(app):
    @app.get("/test/insufficient")
    async def insufficient():
        raise InsufficientCreditsError("u1", 10, 3)

    @app.get("/test/provider")
    async def provider():
        raise ProviderError("replicate timed out")

    with TestClient(app) as client:
        response = client.get("/test/insufficient")
        assert response.status_code == 402
        assert response.json() == {
            "error": "Insufficient credits: required 10, available 3",
            "code": "INSUFFICIENT_CREDITS",
            "required": 10,
            "available": 3,
        }
        assert client.get("/test/provider").status_code == 503
