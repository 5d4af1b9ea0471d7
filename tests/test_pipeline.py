"""
End-to-end runs through the in-memory queue: request, settlement, webhook.
"""
import json
from unittest.mock import patch

import requests

import config
import services
from models import Payment, Refund, WebhookLog
from test_webhooks import run_webhook_queue
from webhooks import SIGNATURE_HEADER, generate_webhook_signature


def run_webhook_queue_all(job_queue, clock):
    while True:
        job_queue.drain(config.WEBHOOK_QUEUE)
        next_at = job_queue.next_eligible_at(config.WEBHOOK_QUEUE)
        if next_at is None:
            return
        clock.advance(next_at - clock.now)


def test_failed_payment_webhook_to_unreachable_merchant(db, job_queue, clock, merchant, make_order,
                                                       monkeypatch, fast_retries) -> None:
    monkeypatch.setattr(config, "TEST_PAYMENT_SUCCESS", False)
    order = make_order(amount=50000)
    body = services.create_payment(db, merchant, order.id, "upi", vpa="user@okbank")

    job_queue.drain(config.PAYMENT_QUEUE)
    (job,) = job_queue.waiting_jobs(config.WEBHOOK_QUEUE)
    assert job.payload["event"] == "payment.failed"

    with patch("webhooks.requests.post", side_effect=requests.ConnectionError("unreachable")) as post:
        delays, attempts = run_webhook_queue(db, job_queue, clock)

    assert post.call_count == 5
    assert attempts == [1, 2, 3, 4, 5]
    assert delays == [5, 10, 15, 20]
    db.expire_all()
    assert db.get(Payment, body["id"]).status == "failed"
    log = db.query(WebhookLog).one()
    assert (log.event, log.status, log.attempts) == ("payment.failed", "failed", 5)


def test_full_refund_flow(db, job_queue, clock, merchant, make_order, http_response) -> None:
    order = make_order(amount=50000)
    body = services.create_payment(db, merchant, order.id, "upi", vpa="user@okbank")
    job_queue.drain(config.PAYMENT_QUEUE)

    refund = services.create_refund(db, merchant, body["id"], 50000)
    job_queue.drain(config.REFUND_QUEUE)

    with patch("webhooks.requests.post", return_value=http_response(200, "ok")) as post:
        run_webhook_queue_all(job_queue, clock)

    db.expire_all()
    assert db.get(Refund, refund.id).status == "processed"
    assert db.get(Payment, body["id"]).status == "refunded"
    events = sorted(json.loads(call.kwargs["data"])["event"] for call in post.call_args_list)
    assert events == ["payment.success", "refund.processed"]


def test_receiver_can_verify_signature(db, job_queue, merchant, make_order, http_response) -> None:
    order = make_order(amount=50000)
    services.create_payment(db, merchant, order.id, "card", card={
        "number": "5555555555554444", "expiry_month": "01", "expiry_year": "99",
        "cvv": "123", "holder_name": "Test User",
    })
    job_queue.drain(config.PAYMENT_QUEUE)

    with patch("webhooks.requests.post", return_value=http_response(200, "ok")) as post:
        job_queue.drain(config.WEBHOOK_QUEUE)

    raw = post.call_args.kwargs["data"]
    received = post.call_args.kwargs["headers"][SIGNATURE_HEADER]
    assert generate_webhook_signature(raw, merchant.webhook_secret) == received
    assert json.loads(raw)["data"]["payment"]["card_network"] == "mastercard"
