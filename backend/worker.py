import argparse

import structlog
from redis import Redis
from rq import Queue, Worker
from rq.worker_pool import WorkerPool

import config
from logging_config import configure_logging
from payment_worker import reconcile_pending_payments
from queue_jobs import queue_names

logger = structlog.get_logger(__name__)


def run_worker(concurrency: int = None, burst: bool = False):
    redis_conn = Redis.from_url(config.REDIS_URL)
    names = queue_names()
    concurrency = concurrency or config.WORKER_CONCURRENCY
    logger.info("worker_starting", queues=names, concurrency=concurrency)

    if concurrency > 1:
        pool = WorkerPool(names, connection=redis_conn, num_workers=concurrency)
        pool.start(burst=burst, logging_level=config.LOG_LEVEL)
        return

    queues = [Queue(name, connection=redis_conn) for name in names]
    worker = Worker(queues, connection=redis_conn)
    worker.work(burst=burst, with_scheduler=True, logging_level=config.LOG_LEVEL)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Payment gateway queue worker")
    parser.add_argument("--concurrency", type=int, default=None, help="number of worker processes")
    parser.add_argument("--burst", action="store_true", help="exit once the queues are empty")
    parser.add_argument("--reconcile", action="store_true", help="re-enqueue stale pending payments and exit")
    args = parser.parse_args(argv)

    configure_logging()
    if args.reconcile:
        reconcile_pending_payments()
        return
    run_worker(concurrency=args.concurrency, burst=args.burst)


if __name__ == "__main__":
    main()
