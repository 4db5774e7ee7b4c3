"""
Standalone worker entry point.
Run with: python -m estimateai.worker.runner

DISPATCH_MODE=rq   consume job ids from the Redis queue
DISPATCH_MODE=inline   poll the database with the asyncio worker pool
"""

import asyncio

import structlog
from redis import Redis
from rq import Worker

from estimateai.config import settings
from estimateai.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


def run_rq_worker() -> None:
    conn = Redis.from_url(settings.REDIS_URL)
    worker = Worker([settings.QUEUE_NAME], connection=conn)
    logger.info("rq_worker_starting", queue=settings.QUEUE_NAME)
    worker.work(with_scheduler=False)


async def run_pool_forever() -> None:
    from estimateai.dependencies import get_worker_pool
    from estimateai.models.database import close_db

    pool = get_worker_pool()
    pool.start()
    try:
        await asyncio.Event().wait()
    finally:
        await pool.stop()
        await close_db()


def main():
    setup_logging()
    if settings.DISPATCH_MODE == "rq":
        run_rq_worker()
    else:
        logger.info("pool_worker_starting", concurrency=settings.WORKER_CONCURRENCY)
        asyncio.run(run_pool_forever())


if __name__ == "__main__":
    main()
