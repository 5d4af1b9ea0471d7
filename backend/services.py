"""
Request-side operations behind the HTTP API.

Everything here validates and persists rows before any job is enqueued, so
workers can rely on the rows they are handed.
"""
import secrets
import uuid
from typing import Dict, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import config
from database import SessionLocal
from errors import (
    AuthenticationError,
    BadRequestError,
    ExpiredCardError,
    InvalidCardError,
    InvalidVpaError,
    NotFoundError,
)
from events import WEBHOOK_TEST, build_event_payload, iso
from idempotency import IdempotencyStore
from models import Merchant, Order, Payment, Refund, WebhookLog, utc_now
from queue_jobs import enqueue_payment_job, enqueue_refund_job, enqueue_webhook_job
from refund_worker import refunded_total
from validation import (
    MIN_ORDER_AMOUNT,
    detect_card_network,
    luhn_check,
    normalize_card_number,
    validate_expiry,
    validate_vpa,
)
from webhooks import retry_webhook

logger = structlog.get_logger(__name__)

TEST_MERCHANT_ID = uuid.UUID("550e8400-e29b-41d4-a716-446655440000")

ALNUM = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
CARD_FIELDS = ("number", "expiry_month", "expiry_year", "cvv", "holder_name")


def get_merchant_from_headers(db: Session, api_key: Optional[str], api_secret: Optional[str]) -> Merchant:
    if not api_key or not api_secret:
        raise AuthenticationError("Invalid API credentials")
    merchant = db.query(Merchant).filter(Merchant.api_key == api_key).first()
    if not merchant or not secrets.compare_digest(merchant.api_secret, api_secret):
        raise AuthenticationError("Invalid API credentials")
    return merchant


def seed_test_merchant(db: Optional[Session] = None) -> Merchant:
    own_session = db is None
    db = db or SessionLocal()
    try:
        merchant = db.query(Merchant).filter(Merchant.email == config.TEST_MERCHANT_EMAIL).first()
        if merchant:
            if not merchant.webhook_secret:
                merchant.webhook_secret = config.TEST_WEBHOOK_SECRET
                db.commit()
            return merchant
        merchant = Merchant(
            id=TEST_MERCHANT_ID,
            name="Test Merchant",
            email=config.TEST_MERCHANT_EMAIL,
            api_key=config.TEST_API_KEY,
            api_secret=config.TEST_API_SECRET,
            webhook_secret=config.TEST_WEBHOOK_SECRET,
        )
        db.add(merchant)
        db.commit()
        db.refresh(merchant)
        logger.info("test_merchant_seeded", merchant_id=str(merchant.id))
        return merchant
    finally:
        if own_session:
            db.close()


def gen_unique_id(db: Session, model, prefix: str) -> str:
    for _ in range(30):
        generated = prefix + "_" + "".join(secrets.choice(ALNUM) for _ in range(16))
        if not db.query(model).filter(model.id == generated).first():
            return generated
    raise RuntimeError("Could not generate unique ID")


def _owned(entity, merchant: Merchant, description: str):
    if not entity or entity.merchant_id != merchant.id:
        raise NotFoundError(description)
    return entity


# orders

def create_order(db: Session, merchant: Merchant, amount, currency: str = "INR",
                 receipt: Optional[str] = None, notes: Optional[Dict] = None) -> Order:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount < MIN_ORDER_AMOUNT:
        raise BadRequestError("amount must be at least %d" % MIN_ORDER_AMOUNT)

    order = Order(
        id=gen_unique_id(db, Order, "order"),
        merchant_id=merchant.id,
        amount=amount,
        currency=currency or "INR",
        receipt=receipt,
        notes=notes,
        status="created",
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    logger.info("order_created", order_id=order.id, merchant_id=str(merchant.id), amount=amount)
    return order


def get_order(db: Session, merchant: Merchant, order_id: str) -> Order:
    return _owned(db.query(Order).filter(Order.id == order_id).first(), merchant, "Order not found")


# payments

def payment_response(payment: Payment) -> Dict:
    body = {
        "id": payment.id,
        "order_id": payment.order_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "method": payment.method,
        "status": payment.status,
        "created_at": iso(payment.created_at),
    }
    if payment.method == "upi":
        body["vpa"] = payment.vpa
    else:
        body["card_network"] = payment.card_network or "unknown"
        body["card_last4"] = payment.card_last4
    return body


def build_payment(db: Session, merchant: Merchant, order_id: str, method: str,
                  vpa: Optional[str] = None, card: Optional[Dict] = None) -> Payment:
    """Validate a payment request and return an unsaved ``pending`` Payment."""
    order = get_order(db, merchant, order_id)

    method = (method or "").lower()
    if method not in ("upi", "card"):
        raise BadRequestError("Invalid payment method")

    card_network = None
    card_last4 = None
    if method == "upi":
        if not validate_vpa(vpa):
            raise InvalidVpaError("VPA format invalid")
    else:
        vpa = None
        if not card or not all(card.get(name) for name in CARD_FIELDS):
            raise BadRequestError("Missing card details")
        if not luhn_check(card["number"]):
            raise InvalidCardError("Card validation failed")
        if not validate_expiry(card["expiry_month"], card["expiry_year"]):
            raise ExpiredCardError("Card expiry date invalid")
        card_network = detect_card_network(card["number"])
        card_last4 = normalize_card_number(card["number"])[-4:]

    now = utc_now()
    return Payment(
        id=gen_unique_id(db, Payment, "pay"),
        order_id=order.id,
        merchant_id=merchant.id,
        amount=order.amount,
        currency=order.currency,
        method=method,
        status="pending",
        captured=False,
        vpa=vpa,
        card_network=card_network,
        card_last4=card_last4,
        created_at=now,
        updated_at=now,
    )


def create_payment(db: Session, merchant: Merchant, order_id: str, method: str, vpa: Optional[str] = None,
                   card: Optional[Dict] = None, idempotency_key: Optional[str] = None) -> Dict:
    """
    Create a pending payment and enqueue its settlement.

    With an idempotency key, a live stored response is replayed unchanged and
    nothing else happens. The payment row and the key row are committed in one
    transaction, so a crash can never leave a payment without its key.
    """
    store = IdempotencyStore(db) if idempotency_key else None
    if store is not None:
        result = store.check(idempotency_key, merchant.id)
        if result.is_replay:
            return result.response

    payment = build_payment(db, merchant, order_id, method, vpa=vpa, card=card)
    response_body = payment_response(payment)
    db.add(payment)
    if store is not None:
        store.record(idempotency_key, merchant.id, response_body)

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        if store is None:
            raise
        # a concurrent request with the same key committed first
        result = store.check(idempotency_key, merchant.id)
        if result.is_replay:
            return result.response
        raise

    logger.info("payment_created", payment_id=payment.id, order_id=order_id, method=payment.method)
    enqueue_payment_job(payment.id)
    return response_body


def get_payment(db: Session, merchant: Merchant, payment_id: str) -> Payment:
    return _owned(db.query(Payment).filter(Payment.id == payment_id).first(), merchant, "Payment not found")


def list_payments(db: Session, merchant: Merchant, limit: int = 200):
    return (
        db.query(Payment)
        .filter(Payment.merchant_id == merchant.id)
        .order_by(Payment.created_at.desc())
        .limit(limit)
        .all()
    )


def capture_payment(db: Session, merchant: Merchant, payment_id: str, amount: int) -> Payment:
    payment = get_payment(db, merchant, payment_id)
    if payment.status != "success" or payment.captured or amount != payment.amount:
        raise BadRequestError("Payment not in capturable state")

    payment.captured = True
    payment.updated_at = utc_now()
    db.commit()
    db.refresh(payment)
    logger.info("payment_captured", payment_id=payment.id)
    return payment


# refunds

def create_refund(db: Session, merchant: Merchant, payment_id: str, amount, reason: Optional[str] = None) -> Refund:
    payment = get_payment(db, merchant, payment_id)
    if payment.status != "success":
        raise BadRequestError("Payment is not refundable")
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise BadRequestError("amount must be a positive integer")

    if amount > payment.amount - refunded_total(db, payment.id):
        raise BadRequestError("Refund amount exceeds available amount")

    refund = Refund(
        id=gen_unique_id(db, Refund, "rfnd"),
        payment_id=payment.id,
        merchant_id=merchant.id,
        amount=amount,
        reason=reason,
        status="pending",
        created_at=utc_now(),
    )
    db.add(refund)
    db.commit()
    db.refresh(refund)
    logger.info("refund_created", refund_id=refund.id, payment_id=payment.id, amount=amount)

    enqueue_refund_job(refund.id)
    return refund


def get_refund(db: Session, merchant: Merchant, refund_id: str) -> Refund:
    return _owned(db.query(Refund).filter(Refund.id == refund_id).first(), merchant, "Refund not found")


# webhooks

def list_webhook_logs(db: Session, merchant: Merchant, limit: int = 10, offset: int = 0,
                      status: Optional[str] = None):
    q = db.query(WebhookLog).filter(WebhookLog.merchant_id == merchant.id)
    if status:
        q = q.filter(WebhookLog.status == status)
    total = q.count()
    rows = q.order_by(WebhookLog.created_at.desc()).offset(offset).limit(limit).all()
    return rows, total


def get_webhook_log(db: Session, merchant: Merchant, log_id: str) -> WebhookLog:
    try:
        log_uuid = uuid.UUID(str(log_id))
    except ValueError:
        raise NotFoundError("Webhook log not found")
    return _owned(db.query(WebhookLog).filter(WebhookLog.id == log_uuid).first(), merchant, "Webhook log not found")


def retry_webhook_log(db: Session, merchant: Merchant, log_id: str) -> WebhookLog:
    return retry_webhook(db, get_webhook_log(db, merchant, log_id))


def new_webhook_secret() -> str:
    return "whsec_" + secrets.token_hex(16)


def update_webhook_config(db: Session, merchant: Merchant, webhook_url: Optional[str]) -> Merchant:
    merchant.webhook_url = webhook_url or None
    if not merchant.webhook_secret:
        merchant.webhook_secret = new_webhook_secret()
    db.commit()
    db.refresh(merchant)
    logger.info("webhook_config_updated", merchant_id=str(merchant.id), configured=bool(merchant.webhook_url))
    return merchant


def regenerate_webhook_secret(db: Session, merchant: Merchant) -> Merchant:
    merchant.webhook_secret = new_webhook_secret()
    db.commit()
    db.refresh(merchant)
    logger.info("webhook_secret_regenerated", merchant_id=str(merchant.id))
    return merchant


def send_test_webhook(merchant: Merchant) -> Dict:
    if not merchant.webhook_url:
        raise BadRequestError("No webhook URL configured")
    payload = build_event_payload(
        WEBHOOK_TEST,
        data={
            "message": "This is a test webhook from your payment gateway.",
            "sample_id": "test_" + secrets.token_hex(4),
        },
    )
    enqueue_webhook_job(merchant.id, WEBHOOK_TEST, payload)
    return payload
