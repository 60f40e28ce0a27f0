"""
Storefront puppy endpoints
"""
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundException
from app.db.database import get_db
from app.db.models.puppy import Puppy, PuppyStatus
from app.domain.services.reservation_service import ReservationService

router = APIRouter()


class ReservationStateResponse(BaseModel):
    puppy_id: str
    status: PuppyStatus
    can_reserve: bool
    reservation_blocked: bool
    deposit_amount: Decimal

    class Config:
        from_attributes = True


@router.get(
    "/{puppy_id}/reservation-state",
    response_model=ReservationStateResponse,
    summary="Reservation state of a puppy",
    description=(
        "Whether the storefront should offer the reserve button, and the "
        "deposit the checkout would charge."
    ),
    responses={
        200: {"description": "Current state"},
        404: {"description": "Puppy not found"},
    },
)
async def get_reservation_state(
    puppy_id: str,
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(Puppy).where(Puppy.id == puppy_id))
    puppy = result.scalar_one_or_none()
    if puppy is None:
        raise NotFoundException("Puppy", puppy_id)

    return await ReservationService(db).reservation_state(puppy)
