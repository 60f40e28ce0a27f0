"""
Webhook health endpoint for uptime monitors
"""
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.database import get_db
from app.domain.services.health_service import webhook_health_report

router = APIRouter()


@router.get(
    "/webhooks",
    summary="Webhook processing health",
    description=(
        "Per-provider event counts, failures and error rate over the recent "
        "window. Returns 503 when any provider is over the error-rate limit so "
        "a monitor can page on the status code alone."
    ),
    responses={
        200: {"description": "Webhooks healthy"},
        503: {"description": "Error rate over the limit"},
    },
)
async def webhook_health(db: AsyncSession = Depends(get_db)) -> JSONResponse:
    report = await webhook_health_report(db)
    return JSONResponse(
        status_code=200 if report["healthy"] else 503,
        content=report,
    )
