"""
RQ job functions for the daily billing schedule.
The cron trigger enqueues one billing-day job per business date; the job
runs the cycle runner first and the retry coordinator second.
"""

from datetime import date

import structlog
from redis import Redis
from rq import Queue
from rq.job import JobStatus

from eom_billing.config import settings

logger = structlog.get_logger(__name__)

_IN_FLIGHT = {JobStatus.QUEUED, JobStatus.STARTED, JobStatus.DEFERRED, JobStatus.SCHEDULED}


def get_queue() -> Queue:
    """Get the billing job queue."""
    conn = Redis.from_url(settings.REDIS_URL)
    return Queue(settings.QUEUE_NAME, connection=conn)


def enqueue_billing_day(business_date: date) -> str:
    """
    Enqueue the billing run for an explicit business date.
    The job id is derived from the date; while that day's job is still
    pending or running, a second trigger returns it instead of queueing
    another run. Returns the job ID.
    """
    q = get_queue()
    job_id = f"billing-day-{business_date.isoformat()}"
    existing = q.fetch_job(job_id)
    if existing is not None and existing.get_status() in _IN_FLIGHT:
        logger.info("billing_day_already_enqueued", job_id=job_id, status=str(existing.get_status()))
        return existing.id

    job = q.enqueue(
        run_billing_day_job,
        business_date.isoformat(),
        job_id=job_id,
        job_timeout=settings.JOB_TIMEOUT_SECONDS,
        result_ttl=86400 * 7,
        failure_ttl=86400 * 30,
    )
    logger.info("billing_day_enqueued", business_date=business_date.isoformat(), job_id=job.id)
    return job.id


def run_billing_day_job(business_date: str) -> dict:
    """
    Main job function: finalize due statements, then run payment retries.
    This runs inside the RQ worker process.
    """
    import asyncio

    logger.info("job_started", business_date=business_date)

    try:
        result = asyncio.run(_run_billing_day(date.fromisoformat(business_date)))
        logger.info("job_completed", business_date=business_date, **result)
        return result
    except Exception as e:
        logger.error("job_failed", business_date=business_date, error=str(e))
        raise


async def _run_billing_day(business_date: date) -> dict:
    from eom_billing.billing.retry import RetryCoordinator
    from eom_billing.dependencies import get_cycle_runner, get_event_sink, get_invoicing_client
    from eom_billing.models.database import close_db

    try:
        runner = get_cycle_runner()
        coordinator = RetryCoordinator(runner.store, get_invoicing_client(), get_event_sink())

        cycle = await runner.run(business_date)
        retries = await coordinator.run_retry_day(business_date)
    finally:
        # asyncio.run closes the loop; pooled connections must not outlive it
        await close_db()

    return {
        "batch_id": cycle.batch_id,
        "claimed": cycle.claimed,
        "finalized": cycle.finalized,
        "invoice_failures": cycle.failed,
        "released": cycle.released,
        "retried": retries.retried,
        "exhausted": retries.exhausted,
    }
