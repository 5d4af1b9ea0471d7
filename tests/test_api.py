"""
Tests for the HTTP layer: authentication, status codes and error bodies.
"""
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

import config
from main import app
from models import WebhookLog


@pytest.fixture
def client(job_queue, merchant):
    return TestClient(app)


@pytest.fixture
def auth():
    return {"X-Api-Key": config.TEST_API_KEY, "X-Api-Secret": config.TEST_API_SECRET}


def create_order(client, auth, amount=50000):
    response = client.post("/api/v1/orders", json={"amount": amount}, headers=auth)
    assert response.status_code == 201
    return response.json()


class TestAuthentication:

    def test_missing_credentials(self, client) -> None:
        response = client.post("/api/v1/orders", json={"amount": 50000})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTHENTICATION_ERROR"

    def test_wrong_secret(self, client) -> None:
        headers = {"X-Api-Key": config.TEST_API_KEY, "X-Api-Secret": "nope"}
        assert client.get("/api/v1/payments", headers=headers).status_code == 401


class TestOrdersApi:

    def test_create_and_fetch_order(self, client, auth) -> None:
        order = create_order(client, auth)

        fetched = client.get("/api/v1/orders/%s" % order["id"], headers=auth)

        assert fetched.status_code == 200
        assert fetched.json()["amount"] == 50000
        assert fetched.json()["status"] == "created"

    def test_amount_below_minimum(self, client, auth) -> None:
        response = client.post("/api/v1/orders", json={"amount": 99}, headers=auth)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "BAD_REQUEST_ERROR"

    def test_unknown_order(self, client, auth) -> None:
        response = client.get("/api/v1/orders/order_missing", headers=auth)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND_ERROR"


class TestPaymentsApi:

    def test_create_payment_is_pending(self, client, auth, job_queue) -> None:
        order = create_order(client, auth)

        response = client.post("/api/v1/payments", json={"order_id": order["id"], "method": "upi",
                                                         "vpa": "user@okbank"}, headers=auth)

        assert response.status_code == 201
        assert response.json()["status"] == "pending"
        assert job_queue.counts(config.PAYMENT_QUEUE)["waiting"] == 1

    def test_invalid_vpa(self, client, auth, job_queue) -> None:
        order = create_order(client, auth)

        response = client.post("/api/v1/payments", json={"order_id": order["id"], "method": "upi",
                                                         "vpa": "not-a-vpa"}, headers=auth)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_VPA"
        assert job_queue.counts(config.PAYMENT_QUEUE)["waiting"] == 0

    def test_idempotency_key_replays_response(self, client, auth, job_queue) -> None:
        order = create_order(client, auth)
        body = {"order_id": order["id"], "method": "upi", "vpa": "user@okbank"}
        headers = dict(auth, **{"Idempotency-Key": "checkout-42"})

        first = client.post("/api/v1/payments", json=body, headers=headers)
        second = client.post("/api/v1/payments", json=body, headers=headers)

        assert first.status_code == second.status_code == 201
        assert second.content == first.content
        assert len(client.get("/api/v1/payments", headers=auth).json()) == 1
        assert job_queue.counts(config.PAYMENT_QUEUE)["waiting"] == 1

    def test_payment_settles_through_worker(self, client, auth, job_queue) -> None:
        order = create_order(client, auth)
        payment = client.post("/api/v1/payments", json={"order_id": order["id"], "method": "upi",
                                                        "vpa": "user@okbank"}, headers=auth).json()

        job_queue.drain(config.PAYMENT_QUEUE)

        fetched = client.get("/api/v1/payments/%s" % payment["id"], headers=auth).json()
        assert fetched["status"] == "success"

    def test_refund_on_pending_payment_rejected(self, client, auth) -> None:
        order = create_order(client, auth)
        payment = client.post("/api/v1/payments", json={"order_id": order["id"], "method": "upi",
                                                        "vpa": "user@okbank"}, headers=auth).json()

        response = client.post("/api/v1/payments/%s/refunds" % payment["id"], json={"amount": 100}, headers=auth)

        assert response.status_code == 400


class TestWebhooksApi:

    def test_list_and_retry(self, client, auth, job_queue, http_response) -> None:
        client.post("/api/v1/merchant/webhook/test", headers=auth)
        with patch("webhooks.requests.post", return_value=http_response(500, "down")):
            job_queue.drain(config.WEBHOOK_QUEUE)

        listing = client.get("/api/v1/webhooks", params={"status": "failed"}, headers=auth).json()

        assert listing["total"] == 1
        (entry,) = listing["data"]
        assert entry["event"] == "webhook.test"
        assert entry["attempts"] == 1
        assert entry["response_body"] == "down"
        assert entry["payload"]["event"] == "webhook.test"

        response = client.post("/api/v1/webhooks/%s/retry" % entry["id"], headers=auth)

        assert response.status_code == 200
        assert response.json()["status"] == "pending"

    def test_retry_unknown_log(self, client, auth) -> None:
        response = client.post("/api/v1/webhooks/not-a-uuid/retry", headers=auth)
        assert response.status_code == 404

    def test_webhook_config_roundtrip(self, client, auth, db) -> None:
        response = client.put("/api/v1/merchant/webhook", json={"webhook_url": "http://example.test/hook"},
                              headers=auth)

        assert response.status_code == 200
        assert response.json()["webhook_url"] == "http://example.test/hook"
        assert client.get("/api/v1/merchant/webhook", headers=auth).json()["webhook_url"] == "http://example.test/hook"

        rotated = client.post("/api/v1/merchant/webhook/regenerate-secret", headers=auth).json()
        assert rotated["webhook_secret"] != response.json()["webhook_secret"]
        assert db.query(WebhookLog).count() == 0


class TestOpsApi:

    def test_job_status(self, client, auth) -> None:
        create_order(client, auth)

        status = client.get("/api/v1/test/jobs/status").json()

        assert set(status) >= {"pending", "processing", "completed", "failed", "worker_status"}

    def test_test_merchant(self, client) -> None:
        body = client.get("/api/v1/test/merchant").json()

        assert body["api_key"] == config.TEST_API_KEY
        assert body["seeded"] is True
