import time
from datetime import datetime
from typing import Dict, Optional

from models import Order, Payment, Refund, WebhookLog, as_utc

PAYMENT_SUCCESS = "payment.success"
PAYMENT_FAILED = "payment.failed"
REFUND_PROCESSED = "refund.processed"
REFUND_FAILED = "refund.failed"
WEBHOOK_TEST = "webhook.test"


def iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return as_utc(dt).replace(microsecond=0, tzinfo=None).isoformat() + "Z"


def order_to_dict(order: Order) -> Dict:
    return {
        "id": order.id,
        "merchant_id": str(order.merchant_id),
        "amount": order.amount,
        "currency": order.currency,
        "receipt": order.receipt,
        "notes": order.notes or {},
        "status": order.status,
        "created_at": iso(order.created_at),
    }


def payment_to_dict(payment: Payment) -> Dict:
    payload = {
        "id": payment.id,
        "order_id": payment.order_id,
        "merchant_id": str(payment.merchant_id),
        "amount": payment.amount,
        "currency": payment.currency,
        "method": payment.method,
        "status": payment.status,
        "captured": bool(payment.captured),
        "created_at": iso(payment.created_at),
        "updated_at": iso(payment.updated_at),
    }
    if payment.method == "upi":
        payload["vpa"] = payment.vpa
    else:
        payload["card_network"] = payment.card_network
        payload["card_last4"] = payment.card_last4
    if payment.error_code:
        payload["error_code"] = payment.error_code
        payload["error_description"] = payment.error_description
    return payload


def refund_to_dict(refund: Refund) -> Dict:
    return {
        "id": refund.id,
        "payment_id": refund.payment_id,
        "merchant_id": str(refund.merchant_id),
        "amount": refund.amount,
        "reason": refund.reason,
        "status": refund.status,
        "created_at": iso(refund.created_at),
        "processed_at": iso(refund.processed_at),
    }


def webhook_log_to_dict(log: WebhookLog) -> Dict:
    return {
        "id": str(log.id),
        "event": log.event,
        "status": log.status,
        "attempts": log.attempts,
        "created_at": iso(log.created_at),
        "last_attempt_at": iso(log.last_attempt_at),
        "next_retry_at": iso(log.next_retry_at),
        "response_code": log.response_code,
        "response_body": log.response_body,
        "payload": log.payload,
    }


def build_event_payload(event: str, payment: Optional[Payment] = None, refund: Optional[Refund] = None,
                        data: Optional[Dict] = None) -> Dict:
    payload = {"event": event, "timestamp": int(time.time()), "data": dict(data or {})}
    if payment is not None:
        payload["data"]["payment"] = payment_to_dict(payment)
    if refund is not None:
        payload["data"]["refund"] = refund_to_dict(refund)
    return payload
