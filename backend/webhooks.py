"""
Webhook delivery.

A delivery job POSTs a signed event to the merchant's endpoint and records
the attempt on a ``WebhookLog`` row. Failed attempts are re-enqueued by the
worker itself with the delay from the retry schedule, carrying the log id
forward, until WEBHOOK_MAX_ATTEMPTS attempts have been made.
"""
import hashlib
import hmac
import json
import uuid
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

import requests
import structlog
from sqlalchemy.orm import Session

import config
from database import SessionLocal
from errors import WebhookLogNotFoundError
from models import Merchant, WebhookLog, as_utc, utc_now
from queue_jobs import enqueue_webhook_job

logger = structlog.get_logger(__name__)

PROD_RETRY_SECONDS = [0, 60, 300, 1800, 7200]
TEST_RETRY_SECONDS = [0, 5, 10, 15, 20]

SIGNATURE_HEADER = "X-Webhook-Signature"


def to_uuid(value) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def serialize_payload(payload: Dict) -> str:
    return json.dumps(payload, separators=(",", ":"))


def generate_webhook_signature(payload_json: str, webhook_secret: str) -> str:
    return hmac.new(webhook_secret.encode("utf-8"), payload_json.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(body, webhook_secret: str, signature: str) -> bool:
    """Receiver-side check of an ``X-Webhook-Signature`` header against the raw request body."""
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    expected = generate_webhook_signature(body, webhook_secret)
    return hmac.compare_digest(expected, signature or "")


def retry_schedule() -> List[int]:
    return TEST_RETRY_SECONDS if config.WEBHOOK_RETRY_INTERVALS_TEST else PROD_RETRY_SECONDS


def get_retry_seconds_for_attempt(attempt_number: int) -> int:
    """Delay before ``attempt_number`` (1-indexed)."""
    schedule = retry_schedule()
    if attempt_number < 1:
        return 0
    if attempt_number > len(schedule):
        return schedule[-1]
    return schedule[attempt_number - 1]


def _post(url: str, body: str, signature: str) -> Tuple[Optional[int], str, bool]:
    limit = config.WEBHOOK_RESPONSE_BODY_LIMIT
    try:
        response = requests.post(
            url,
            data=body,
            headers={
                "Content-Type": "application/json",
                SIGNATURE_HEADER: signature,
            },
            timeout=config.WEBHOOK_TIMEOUT,
        )
    except requests.RequestException as ex:
        return None, str(ex)[:limit], False
    return response.status_code, (response.text or "")[:limit], 200 <= response.status_code <= 299


def _load_log(db: Session, log_id, merchant_id: uuid.UUID, event: str, payload: Dict) -> WebhookLog:
    if log_id:
        log = db.query(WebhookLog).filter(WebhookLog.id == to_uuid(log_id)).first()
        if log is None:
            raise WebhookLogNotFoundError("Webhook log %s not found" % log_id)
        return log

    log = WebhookLog(
        merchant_id=merchant_id,
        event=event,
        payload=payload,
        status="pending",
        attempts=0,
    )
    db.add(log)
    db.commit()
    db.refresh(log)
    return log


def deliver_webhook_job(merchant_id: str, event: str, payload: Dict, log_id: Optional[str] = None, attempt: int = 1):
    db = SessionLocal()
    try:
        merchant_uuid = to_uuid(merchant_id)
        merchant = db.query(Merchant).filter(Merchant.id == merchant_uuid).first()
        if not merchant or not merchant.webhook_url:
            logger.debug("webhook_skipped_no_endpoint", merchant_id=str(merchant_uuid), event_name=event)
            return

        log = _load_log(db, log_id, merchant_uuid, event, payload)
        log_ctx = logger.bind(log_id=str(log.id), merchant_id=str(merchant_uuid), event_name=event, attempt=attempt)

        if log.status == "success":
            log_ctx.info("webhook_already_delivered")
            return
        if log.status == "failed" and attempt == log.attempts and log.attempts < config.WEBHOOK_MAX_ATTEMPTS:
            # this attempt ran but its follow-up may never have been queued
            retry_at = as_utc(log.next_retry_at or log.last_attempt_at or utc_now())
            remaining = max((retry_at - utc_now()).total_seconds(), 0)
            enqueue_webhook_job(merchant_uuid, event, payload, log_id=log.id, attempt=attempt + 1, delay=remaining)
            log_ctx.warning("webhook_retry_requeued", next_attempt=attempt + 1, retry_in=remaining)
            return
        if attempt <= log.attempts or log.attempts >= config.WEBHOOK_MAX_ATTEMPTS:
            log_ctx.info("webhook_attempt_already_recorded", recorded_attempts=log.attempts)
            return

        body = serialize_payload(payload)
        signature = generate_webhook_signature(body, merchant.webhook_secret or "")
        response_code, response_body, ok = _post(merchant.webhook_url, body, signature)

        log.attempts = (log.attempts or 0) + 1
        log.last_attempt_at = utc_now()
        log.response_code = response_code
        log.response_body = response_body
        log.status = "success" if ok else "failed"

        if ok:
            log.next_retry_at = None
            db.commit()
            log_ctx.info("webhook_delivered", response_code=response_code)
            return

        if log.attempts >= config.WEBHOOK_MAX_ATTEMPTS:
            log.next_retry_at = None
            db.commit()
            log_ctx.warning("webhook_delivery_exhausted", attempts=log.attempts, response_code=response_code)
            return

        next_attempt = log.attempts + 1
        delay_seconds = get_retry_seconds_for_attempt(next_attempt)
        log.next_retry_at = log.last_attempt_at + timedelta(seconds=delay_seconds)
        db.commit()

        enqueue_webhook_job(merchant_uuid, event, payload, log_id=log.id, attempt=next_attempt, delay=delay_seconds)
        log_ctx.warning(
            "webhook_delivery_failed",
            response_code=response_code,
            next_attempt=next_attempt,
            retry_in=delay_seconds,
        )
    finally:
        db.close()


def retry_webhook(db: Session, log: WebhookLog) -> WebhookLog:
    """Start a fresh delivery cycle for ``log`` outside the automatic schedule."""
    log.status = "pending"
    log.attempts = 0
    log.next_retry_at = utc_now()
    db.commit()
    db.refresh(log)

    enqueue_webhook_job(log.merchant_id, log.event, log.payload, log_id=log.id, attempt=1)
    logger.info("webhook_manual_retry", log_id=str(log.id), merchant_id=str(log.merchant_id), event_name=log.event)
    return log
