"""
/api/v1/jobs endpoints.
Manual trigger for a billing day and job status lookup.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from redis import Redis

from eom_billing.config import settings
from eom_billing.dependencies import verify_api_key
from eom_billing.schemas.billing import BillingDayJob, BillingDayRequest
from eom_billing.worker.jobs import enqueue_billing_day

router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"], dependencies=[Depends(verify_api_key)])


@router.post("/billing-day", response_model=BillingDayJob, status_code=status.HTTP_202_ACCEPTED)
async def trigger_billing_day(body: BillingDayRequest):
    """Enqueue the billing run for an explicit business date."""
    try:
        job_id = enqueue_billing_day(body.business_date)
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Queue unavailable: {str(e)}")
    return BillingDayJob(job_id=job_id, business_date=body.business_date)


@router.get("/{job_id}")
async def get_job_status(job_id: str):
    """Get the status and result of a billing-day job."""
    try:
        from rq.job import Job

        conn = Redis.from_url(settings.REDIS_URL)
        job = Job.fetch(job_id, connection=conn)
    except Exception as e:
        raise HTTPException(status_code=404, detail=f"Job not found: {str(e)}")

    return {
        "job_id": job_id,
        "business_date": job.args[0] if job.args else None,
        "status": job.get_status(),
        "enqueued_at": job.enqueued_at,
        "started_at": job.started_at,
        "ended_at": job.ended_at,
        "error_message": str(job.exc_info) if job.exc_info else None,
        "result": job.result if job.is_finished else None,
    }
