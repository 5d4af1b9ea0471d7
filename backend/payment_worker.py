"""
Payment settlement worker.

A payment moves ``pending -> success | failed`` exactly once. The job may be
delivered more than once, so settlement is a conditional update on
``status = 'pending'`` and only the delivery that wins it enqueues the
webhook.
"""
import time
from datetime import timedelta
from typing import List, Optional

import structlog
from sqlalchemy.orm import Session

import config
from database import SessionLocal
from errors import PaymentNotFoundError
from events import PAYMENT_FAILED, PAYMENT_SUCCESS, build_event_payload
from models import Payment, utc_now
from queue_jobs import enqueue_payment_job, enqueue_webhook_job
from settlement import SettlementOracle, SimulatedSettlementOracle

logger = structlog.get_logger(__name__)

PENDING = "pending"
SUCCESS = "success"
FAILED = "failed"
REFUNDED = "refunded"

TERMINAL_STATUSES = (SUCCESS, FAILED, REFUNDED)

FAILURE_CODE = "PAYMENT_FAILED"
FAILURE_DESCRIPTION = "Payment processing failed"


def settle_payment(db: Session, payment_id: str, success: bool) -> Optional[Payment]:
    """Move a pending payment to its terminal status; None if it was already settled."""
    values = {
        Payment.status: SUCCESS if success else FAILED,
        Payment.error_code: None if success else FAILURE_CODE,
        Payment.error_description: None if success else FAILURE_DESCRIPTION,
        Payment.updated_at: utc_now(),
    }
    updated = (
        db.query(Payment)
        .filter(Payment.id == payment_id, Payment.status == PENDING)
        .update(values, synchronize_session=False)
    )
    db.commit()
    if not updated:
        return None
    return db.query(Payment).filter(Payment.id == payment_id).one()


def process_payment_job(payment_id: str, oracle: Optional[SettlementOracle] = None):
    db = SessionLocal()
    try:
        payment = db.query(Payment).filter(Payment.id == payment_id).first()
        if not payment:
            logger.error("payment_missing", payment_id=payment_id)
            raise PaymentNotFoundError("Payment %s not found" % payment_id)

        if payment.status != PENDING:
            logger.info("payment_already_settled", payment_id=payment_id, status=payment.status)
            return

        outcome = (oracle or SimulatedSettlementOracle()).settle(payment)
        # release the connection while the gateway "works"
        db.rollback()
        time.sleep(outcome.delay_seconds)

        settled = settle_payment(db, payment_id, outcome.success)
        if settled is None:
            logger.info("payment_settled_elsewhere", payment_id=payment_id)
            return

        event = PAYMENT_SUCCESS if outcome.success else PAYMENT_FAILED
        logger.info("payment_settled", payment_id=payment_id, status=settled.status, method=settled.method)

        payload = build_event_payload(event, payment=settled)
        enqueue_webhook_job(settled.merchant_id, event, payload)
    finally:
        db.close()


def reconcile_pending_payments(older_than_seconds: Optional[int] = None) -> List[str]:
    """
    Re-enqueue settlement for payments stuck in ``pending``.

    Covers a crash between committing a payment and enqueueing its job.
    Settlement is idempotent, so re-enqueueing a payment whose job is still
    in flight only costs a no-op run.
    """
    if older_than_seconds is None:
        older_than_seconds = config.PENDING_PAYMENT_REQUEUE_AFTER
    cutoff = utc_now() - timedelta(seconds=older_than_seconds)

    db = SessionLocal()
    try:
        stale_ids = [
            row[0]
            for row in db.query(Payment.id)
            .filter(Payment.status == PENDING, Payment.created_at <= cutoff)
            .order_by(Payment.created_at)
            .all()
        ]
    finally:
        db.close()

    for payment_id in stale_ids:
        enqueue_payment_job(payment_id)
    if stale_ids:
        logger.warning("pending_payments_requeued", count=len(stale_ids))
    return stale_ids
