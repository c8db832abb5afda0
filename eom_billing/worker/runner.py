"""
Worker entry point.
Run with: python -m eom_billing.worker.runner
"""

import structlog
from redis import Redis
from rq import Worker

from eom_billing.config import settings
from eom_billing.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


def main():
    """Start the RQ worker for billing-day jobs."""
    setup_logging()

    conn = Redis.from_url(settings.REDIS_URL)
    worker = Worker(
        queues=[settings.QUEUE_NAME],
        connection=conn,
        name=f"billing-worker-{settings.APP_VERSION}",
    )

    logger.info("worker_starting", queue=settings.QUEUE_NAME)
    worker.work(with_scheduler=False)


if __name__ == "__main__":
    main()
