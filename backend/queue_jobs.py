from typing import Dict, Optional

import structlog

import config
from job_queue import InMemoryJobQueue, JobQueue, RQJobQueue, import_handler

logger = structlog.get_logger(__name__)

PROCESS_PAYMENT = "process_payment"
PROCESS_REFUND = "process_refund"
DELIVER_WEBHOOK = "deliver_webhook"

JOB_PATHS = {
    PROCESS_PAYMENT: "payment_worker.process_payment_job",
    PROCESS_REFUND: "refund_worker.process_refund_job",
    DELIVER_WEBHOOK: "webhooks.deliver_webhook_job",
}

_queue: Optional[JobQueue] = None


def queue_names():
    return [config.PAYMENT_QUEUE, config.REFUND_QUEUE, config.WEBHOOK_QUEUE]


def job_handlers() -> Dict:
    return {job_type: import_handler(path) for job_type, path in JOB_PATHS.items()}


def build_in_memory_queue(**kwargs) -> InMemoryJobQueue:
    return InMemoryJobQueue(handlers=job_handlers(), **kwargs)


def get_queue() -> JobQueue:
    global _queue
    if _queue is None:
        _queue = RQJobQueue(JOB_PATHS, redis_url=config.REDIS_URL, default_timeout=config.JOB_TIMEOUT)
    return _queue


def set_queue(queue: Optional[JobQueue]) -> None:
    global _queue
    _queue = queue


def enqueue_payment_job(payment_id: str):
    job = get_queue().enqueue(config.PAYMENT_QUEUE, PROCESS_PAYMENT, {"payment_id": payment_id})
    logger.info("payment_job_enqueued", payment_id=payment_id, job_id=job.id)
    return job


def enqueue_refund_job(refund_id: str):
    job = get_queue().enqueue(config.REFUND_QUEUE, PROCESS_REFUND, {"refund_id": refund_id})
    logger.info("refund_job_enqueued", refund_id=refund_id, job_id=job.id)
    return job


def enqueue_webhook_job(merchant_id, event: str, payload: Dict, log_id=None, attempt: int = 1, delay: float = 0):
    job = get_queue().enqueue(
        config.WEBHOOK_QUEUE,
        DELIVER_WEBHOOK,
        {
            "merchant_id": str(merchant_id),
            "event": event,
            "payload": payload,
            "log_id": str(log_id) if log_id is not None else None,
            "attempt": attempt,
        },
        delay=delay,
    )
    logger.info("webhook_job_enqueued", merchant_id=str(merchant_id), event_name=event, attempt=attempt, delay=delay)
    return job


def get_job_queue_status() -> Dict:
    queue = get_queue()
    per_queue = {name: queue.counts(name) for name in queue_names()}
    payment_counts = per_queue[config.PAYMENT_QUEUE]
    if isinstance(queue, RQJobQueue):
        worker_status = "running" if queue.worker_count() > 0 else "stopped"
    else:
        worker_status = "running"

    return {
        "pending": payment_counts["waiting"] + payment_counts["delayed"],
        "processing": payment_counts["active"],
        "completed": payment_counts["completed"],
        "failed": payment_counts["failed"],
        "worker_status": worker_status,
        "queues": per_queue,
    }
