"""
Scheduled job endpoints

Called by an external scheduler (Vercel/Render cron, GitHub Actions, curl)
with ``Authorization: Bearer <CRON_SECRET>``. Both GET and POST are accepted
because schedulers differ in which one they send. The same jobs also run
from Celery beat; the endpoints exist for deployments without a worker.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.cron_auth import verify_cron_request
from app.core.logging import get_logger
from app.db.database import get_db, utcnow
from app.domain.services.expiration_service import (
    archive_sold_puppies,
    expire_pending_reservations,
)

logger = get_logger(__name__)

router = APIRouter()

_CRON_RESPONSES = {
    200: {"description": "Job ran"},
    401: {"description": "Missing or wrong bearer secret"},
    500: {"description": "CRON_SECRET not configured or the job failed"},
}


def _timestamp() -> str:
    return utcnow().isoformat(timespec="milliseconds") + "Z"


@router.api_route(
    "/expire-reservations",
    methods=["GET", "POST"],
    summary="Expire overdue pending reservations",
    description=(
        "Marks pending reservations past their hold as expired and returns "
        "their puppies to available when nothing else holds them."
    ),
    responses=_CRON_RESPONSES,
)
async def expire_reservations(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    rejection = verify_cron_request(request.headers.get("Authorization"))
    if rejection is not None:
        return rejection

    try:
        expired = await expire_pending_reservations(db)
    except Exception:
        logger.error("Cron expire-reservations failed", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Failed to expire reservations"})

    return JSONResponse(
        status_code=200,
        content={"expired": expired, "timestamp": _timestamp()},
    )


@router.api_route(
    "/archive-sold-puppies",
    methods=["GET", "POST"],
    summary="Archive long-sold puppies",
    description="Hides puppies sold more than ARCHIVE_SOLD_AFTER_DAYS ago from the catalog.",
    responses=_CRON_RESPONSES,
)
async def archive_sold(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    rejection = verify_cron_request(request.headers.get("Authorization"))
    if rejection is not None:
        return rejection

    try:
        archived = await archive_sold_puppies(db)
    except Exception:
        logger.error("Cron archive-sold-puppies failed", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Failed to archive sold puppies"})

    return JSONResponse(
        status_code=200,
        content={"archived": archived, "timestamp": _timestamp()},
    )
