import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

Base = declarative_base()

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    # sqlite hands back naive datetimes for timezone-aware columns
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class Merchant(Base):
    __tablename__ = 'merchants'
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    api_key = Column(String(64), nullable=False, unique=True)
    api_secret = Column(String(64), nullable=False)
    webhook_url = Column(Text, nullable=True)
    webhook_secret = Column(String(64), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)


class Order(Base):
    __tablename__ = 'orders'
    __table_args__ = (CheckConstraint('amount >= 100', name='ck_orders_min_amount'),)
    id = Column(String(64), primary_key=True)
    merchant_id = Column(Uuid(as_uuid=True), ForeignKey('merchants.id'), nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default='INR')
    receipt = Column(String(255), nullable=True)
    notes = Column(JSONType, nullable=True)
    status = Column(String(20), nullable=False, default='created')
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

Index('ix_orders_merchant_id', Order.merchant_id)


class Payment(Base):
    __tablename__ = 'payments'
    id = Column(String(64), primary_key=True)
    order_id = Column(String(64), ForeignKey('orders.id'), nullable=False)
    merchant_id = Column(Uuid(as_uuid=True), ForeignKey('merchants.id'), nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default='INR')
    method = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default='pending')
    vpa = Column(String(255), nullable=True)
    card_network = Column(String(20), nullable=True)
    card_last4 = Column(String(4), nullable=True)
    error_code = Column(String(50), nullable=True)
    error_description = Column(Text, nullable=True)
    captured = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

Index('ix_payments_order_id', Payment.order_id)
Index('ix_payments_status', Payment.status)


class Refund(Base):
    __tablename__ = 'refunds'
    __table_args__ = (CheckConstraint('amount > 0', name='ck_refunds_positive_amount'),)
    id = Column(String(64), primary_key=True)
    payment_id = Column(String(64), ForeignKey('payments.id'), nullable=False)
    merchant_id = Column(Uuid(as_uuid=True), ForeignKey('merchants.id'), nullable=False)
    amount = Column(Integer, nullable=False)
    reason = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default='pending')
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)

Index('ix_refunds_payment_id', Refund.payment_id)


class WebhookLog(Base):
    __tablename__ = 'webhook_logs'
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(Uuid(as_uuid=True), ForeignKey('merchants.id'), nullable=False)
    event = Column(String(50), nullable=False)
    payload = Column(JSONType, nullable=False)
    status = Column(String(20), nullable=False, default='pending')
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    response_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

Index('ix_webhook_logs_merchant_id', WebhookLog.merchant_id)
Index('ix_webhook_logs_status', WebhookLog.status)


class IdempotencyKey(Base):
    __tablename__ = 'idempotency_keys'
    key = Column(String(255), primary_key=True)
    merchant_id = Column(Uuid(as_uuid=True), ForeignKey('merchants.id'), primary_key=True)
    # serialized response body, replayed verbatim
    response = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
