"""
Health check endpoints.
/health always answers 200 and reports dependency state in the body;
/health/ready is the strict probe.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text

from eom_billing.config import settings
from eom_billing.dependencies import get_invoicing_client
from eom_billing.invoicing.base import InvoicingClient
from eom_billing.models.database import async_session_factory

router = APIRouter(tags=["health"])


async def _database_ok() -> tuple[bool, Optional[str]]:
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            return result.scalar() == 1, None
    except Exception as e:
        return False, str(e)[:200]


@router.get("/health")
async def health_check(invoicing: InvoicingClient = Depends(get_invoicing_client)):
    db_ok, db_error = await _database_ok()
    invoicing_ok = await invoicing.health_check()

    response = {
        "status": "healthy" if db_ok and invoicing_ok else "degraded",
        "version": settings.APP_VERSION,
        "database": "connected" if db_ok else "unreachable",
        "invoicing": invoicing.client_name if invoicing_ok else "unavailable",
        "business_timezone": settings.BUSINESS_TIMEZONE,
        "cycle_start_day": settings.CYCLE_START_DAY,
    }
    if db_error:
        response["database_error"] = db_error
    return response


@router.get("/health/ready")
async def readiness_check():
    db_ok, _ = await _database_ok()
    return JSONResponse(status_code=200 if db_ok else 503, content={"ready": db_ok})
