from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import Session

import services
from database import SessionLocal, engine
from errors import GatewayError
from events import iso, order_to_dict, payment_to_dict, refund_to_dict, webhook_log_to_dict
from logging_config import configure_logging
from models import Base
from queue_jobs import get_job_queue_status, get_queue, queue_names

logger = structlog.get_logger(__name__)


class CreateOrderReq(BaseModel):
    amount: int
    currency: Optional[str] = "INR"
    receipt: Optional[str] = None
    notes: Optional[dict] = None


class CreatePaymentCardInfo(BaseModel):
    number: str
    expiry_month: str
    expiry_year: str
    cvv: str
    holder_name: str


class CreatePaymentReq(BaseModel):
    order_id: str
    method: str
    vpa: Optional[str] = None
    card: Optional[CreatePaymentCardInfo] = None


class CapturePaymentReq(BaseModel):
    amount: int


class CreateRefundReq(BaseModel):
    amount: int
    reason: Optional[str] = None


class UpdateWebhookConfigReq(BaseModel):
    webhook_url: Optional[str] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    Base.metadata.create_all(bind=engine)
    services.seed_test_merchant()
    yield


app = FastAPI(lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:3001", "http://localhost:8000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_merchant(
    db: Session = Depends(get_db),
    x_api_key: Optional[str] = Header(None),
    x_api_secret: Optional[str] = Header(None),
):
    return services.get_merchant_from_headers(db, x_api_key, x_api_secret)


@app.get("/health")
def health(db: Session = Depends(get_db)):
    db_status = "disconnected"
    redis_status = "disconnected"

    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception:
        logger.warning("health_database_unreachable", exc_info=True)

    try:
        get_queue().counts(queue_names()[0])
        redis_status = "connected"
    except Exception:
        logger.warning("health_queue_unreachable", exc_info=True)

    return {
        "status": "healthy",
        "database": db_status,
        "redis": redis_status,
        "timestamp": iso(datetime.now(timezone.utc)),
    }


@app.post("/api/v1/orders")
def create_order(req: CreateOrderReq, db: Session = Depends(get_db), merchant=Depends(get_merchant)):
    order = services.create_order(db, merchant, req.amount, req.currency, req.receipt, req.notes)
    return JSONResponse(status_code=201, content=order_to_dict(order))


@app.get("/api/v1/orders/{order_id}")
def get_order(order_id: str, db: Session = Depends(get_db), merchant=Depends(get_merchant)):
    order = services.get_order(db, merchant, order_id)
    body = order_to_dict(order)
    body["updated_at"] = iso(order.updated_at)
    return body


@app.post("/api/v1/payments")
def create_payment(
    req: CreatePaymentReq,
    db: Session = Depends(get_db),
    merchant=Depends(get_merchant),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    response_body = services.create_payment(
        db,
        merchant,
        req.order_id,
        req.method,
        vpa=req.vpa,
        card=req.card.model_dump() if req.card else None,
        idempotency_key=idempotency_key,
    )
    return JSONResponse(status_code=201, content=response_body)


@app.get("/api/v1/payments")
def list_payments(db: Session = Depends(get_db), merchant=Depends(get_merchant)):
    return [payment_to_dict(row) for row in services.list_payments(db, merchant)]


@app.get("/api/v1/payments/{payment_id}")
def get_payment(payment_id: str, db: Session = Depends(get_db), merchant=Depends(get_merchant)):
    return payment_to_dict(services.get_payment(db, merchant, payment_id))


@app.post("/api/v1/payments/{payment_id}/capture")
def capture_payment(
    payment_id: str,
    req: CapturePaymentReq,
    db: Session = Depends(get_db),
    merchant=Depends(get_merchant),
):
    return payment_to_dict(services.capture_payment(db, merchant, payment_id, req.amount))


@app.post("/api/v1/payments/{payment_id}/refunds")
def create_refund(
    payment_id: str,
    req: CreateRefundReq,
    db: Session = Depends(get_db),
    merchant=Depends(get_merchant),
):
    refund = services.create_refund(db, merchant, payment_id, req.amount, req.reason)
    return JSONResponse(status_code=201, content=refund_to_dict(refund))


@app.get("/api/v1/refunds/{refund_id}")
def get_refund(refund_id: str, db: Session = Depends(get_db), merchant=Depends(get_merchant)):
    return refund_to_dict(services.get_refund(db, merchant, refund_id))


@app.get("/api/v1/webhooks")
def list_webhook_logs(
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    status: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    merchant=Depends(get_merchant),
):
    rows, total = services.list_webhook_logs(db, merchant, limit=limit, offset=offset, status=status)
    return {
        "data": [webhook_log_to_dict(row) for row in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@app.post("/api/v1/webhooks/{webhook_id}/retry")
def retry_webhook(webhook_id: str, db: Session = Depends(get_db), merchant=Depends(get_merchant)):
    log = services.retry_webhook_log(db, merchant, webhook_id)
    return {"id": str(log.id), "status": log.status, "message": "Webhook retry scheduled"}


@app.get("/api/v1/merchant/webhook")
def get_webhook_config(merchant=Depends(get_merchant)):
    return {"webhook_url": merchant.webhook_url, "webhook_secret": merchant.webhook_secret}


@app.put("/api/v1/merchant/webhook")
def update_webhook_config(req: UpdateWebhookConfigReq, db: Session = Depends(get_db), merchant=Depends(get_merchant)):
    merchant = services.update_webhook_config(db, merchant, req.webhook_url)
    return {"webhook_url": merchant.webhook_url, "webhook_secret": merchant.webhook_secret}


@app.post("/api/v1/merchant/webhook/regenerate-secret")
def regenerate_webhook_secret(db: Session = Depends(get_db), merchant=Depends(get_merchant)):
    merchant = services.regenerate_webhook_secret(db, merchant)
    return {"webhook_secret": merchant.webhook_secret}


@app.post("/api/v1/merchant/webhook/test")
def send_test_webhook(merchant=Depends(get_merchant)):
    services.send_test_webhook(merchant)
    return {"status": "scheduled"}


@app.get("/api/v1/test/jobs/status")
def test_jobs_status():
    try:
        return get_job_queue_status()
    except Exception:
        logger.warning("queue_status_unavailable", exc_info=True)
        return {"pending": 0, "processing": 0, "completed": 0, "failed": 0, "worker_status": "stopped"}


@app.get("/api/v1/test/merchant")
def test_merchant(db: Session = Depends(get_db)):
    merchant = services.seed_test_merchant(db)
    return {
        "id": str(merchant.id),
        "email": merchant.email,
        "api_key": merchant.api_key,
        "api_secret": merchant.api_secret,
        "webhook_url": merchant.webhook_url,
        "webhook_secret": merchant.webhook_secret,
        "seeded": True,
    }
