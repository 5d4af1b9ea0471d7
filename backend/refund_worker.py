"""
Refund worker.

A refund moves ``pending -> processed | failed``. Before committing to
``processed`` the worker locks the parent payment row and re-checks that
this refund plus every other pending or processed refund still fits inside
the payment amount; values read before the processing delay are not trusted.
"""
import time

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session, aliased

from database import SessionLocal
from errors import PaymentNotFoundError, RefundNotFoundError
from events import REFUND_FAILED, REFUND_PROCESSED, build_event_payload
from models import Payment, Refund, utc_now
from queue_jobs import enqueue_webhook_job
from settlement import refund_processing_delay

logger = structlog.get_logger(__name__)

PENDING = "pending"
PROCESSED = "processed"
FAILED = "failed"

ACTIVE_STATUSES = (PENDING, PROCESSED)


def refunded_total(db: Session, payment_id: str, statuses=ACTIVE_STATUSES, exclude_id: str = None) -> int:
    query = db.query(func.coalesce(func.sum(Refund.amount), 0)).filter(
        Refund.payment_id == payment_id, Refund.status.in_(statuses)
    )
    if exclude_id is not None:
        query = query.filter(Refund.id != exclude_id)
    return int(query.scalar() or 0)


def _fail_refund(db: Session, refund: Refund, reason: str) -> None:
    updated = (
        db.query(Refund)
        .filter(Refund.id == refund.id, Refund.status == PENDING)
        .update({Refund.status: FAILED}, synchronize_session=False)
    )
    db.commit()
    if not updated:
        return
    db.refresh(refund)
    logger.warning("refund_failed", refund_id=refund.id, payment_id=refund.payment_id, reason=reason)

    payload = build_event_payload(REFUND_FAILED, refund=refund, data={"reason": reason})
    enqueue_webhook_job(refund.merchant_id, REFUND_FAILED, payload)


def _lock_payment(db: Session, payment_id: str) -> Payment:
    payment = db.query(Payment).filter(Payment.id == payment_id).with_for_update().first()
    if not payment:
        logger.error("refund_payment_missing", payment_id=payment_id)
        raise PaymentNotFoundError("Payment %s not found" % payment_id)
    return payment


def process_refund_job(refund_id: str):
    db = SessionLocal()
    try:
        refund = db.query(Refund).filter(Refund.id == refund_id).first()
        if not refund:
            logger.error("refund_missing", refund_id=refund_id)
            raise RefundNotFoundError("Refund %s not found" % refund_id)

        if refund.status != PENDING:
            logger.info("refund_already_finalised", refund_id=refund_id, status=refund.status)
            return

        payment = _lock_payment(db, refund.payment_id)
        if payment.status != "success":
            _fail_refund(db, refund, "Payment is not refundable")
            return
        db.rollback()

        time.sleep(refund_processing_delay())

        # re-validate under the payment row lock immediately before committing
        payment = _lock_payment(db, refund.payment_id)
        refund = db.query(Refund).filter(Refund.id == refund_id).one()
        if refund.status != PENDING:
            db.rollback()
            logger.info("refund_finalised_elsewhere", refund_id=refund_id, status=refund.status)
            return
        if payment.status != "success":
            _fail_refund(db, refund, "Payment is not refundable")
            return

        others = refunded_total(db, payment.id, exclude_id=refund.id)
        if refund.amount + others > payment.amount:
            _fail_refund(db, refund, "Refund amount exceeds available amount")
            return

        # the total is re-checked inside the UPDATE itself
        other = aliased(Refund)
        others_total = (
            select(func.coalesce(func.sum(other.amount), 0))
            .where(other.payment_id == payment.id, other.status.in_(ACTIVE_STATUSES), other.id != refund.id)
            .scalar_subquery()
        )
        updated = (
            db.query(Refund)
            .filter(Refund.id == refund.id, Refund.status == PENDING, Refund.amount + others_total <= payment.amount)
            .update({Refund.status: PROCESSED, Refund.processed_at: utc_now()}, synchronize_session=False)
        )
        if not updated:
            db.rollback()
            refund = db.query(Refund).filter(Refund.id == refund_id).one()
            if refund.status != PENDING:
                logger.info("refund_finalised_elsewhere", refund_id=refund_id, status=refund.status)
                return
            _fail_refund(db, refund, "Refund amount exceeds available amount")
            return

        processed = refunded_total(db, payment.id, statuses=(PROCESSED,))
        if processed == payment.amount:
            payment.status = "refunded"
            payment.updated_at = utc_now()
        db.commit()
        db.refresh(refund)

        logger.info(
            "refund_processed",
            refund_id=refund.id,
            payment_id=payment.id,
            amount=refund.amount,
            fully_refunded=processed == payment.amount,
        )

        payload = build_event_payload(REFUND_PROCESSED, refund=refund)
        enqueue_webhook_job(refund.merchant_id, REFUND_PROCESSED, payload)
    finally:
        db.close()
