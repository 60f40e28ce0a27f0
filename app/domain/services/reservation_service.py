"""
Reservation Service - Atomic Puppy Claim

One puppy, one active reservation. The claim runs as a single transaction:

1. Reject a payment that already backs a reservation
2. Lock the puppy row (SELECT ... FOR UPDATE)
3. Verify the puppy is available and not archived
4. Verify no other pending/confirmed reservation holds it
5. Validate the deposit against the price
6. Insert the pending reservation and flip the puppy to reserved
7. Commit or rollback atomically

The partial unique index idx_one_active_reservation_per_puppy is the final
arbiter when two claims slip past the checks at the same time.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select, update, func, or_, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    AppException,
    ClaimErrorCode,
    ErrorCode,
    ReservationClaimError,
    ReservationNotFoundError,
    ValidationException,
)
from app.core.logging import get_logger, mask_email
from app.core.validation import email_validator, phone_validator, name_validator
from app.db.database import utcnow
from app.db.models.puppy import Puppy, PuppyStatus, generate_uuid
from app.db.models.reservation import (
    ACTIVE_RESERVATION_STATUSES,
    PaymentProvider,
    Reservation,
    ReservationChannel,
    ReservationStatus,
)
from app.domain.services.deposit_service import deposit_for_puppy

logger = get_logger(__name__)

MIN_ADMIN_REASON_LENGTH = 5

# (markers in the driver message, claim code, message)
# SQLite reports columns, PostgreSQL reports constraint names
_INTEGRITY_RULES = (
    (
        ("DEPOSIT_EXCEEDS_PRICE",),
        ClaimErrorCode.DEPOSIT_EXCEEDS_PRICE,
        "Deposit amount exceeds the puppy price",
    ),
    (
        ("valid_reservation_amount",),
        ClaimErrorCode.INVALID_DEPOSIT,
        "Deposit amount must be positive",
    ),
    (
        ("unique_external_payment_per_provider", "reservations.external_payment_id"),
        ClaimErrorCode.DUPLICATE_PAYMENT,
        "Payment already backs a reservation",
    ),
    (
        ("idx_one_active_reservation_per_puppy", "reservations.puppy_id"),
        ClaimErrorCode.RACE_CONDITION_LOST,
        "Another reservation claimed this puppy first",
    ),
)


class ClaimRequest(BaseModel):
    """Everything the claim needs, already validated"""

    puppy_id: str = Field(..., min_length=1)
    customer_email: str
    customer_name: str | None = None
    customer_phone: str | None = None
    channel: ReservationChannel = ReservationChannel.SITE
    amount: Decimal
    payment_provider: PaymentProvider
    external_payment_id: str = Field(..., min_length=1, max_length=255)
    expires_at: datetime | None = None
    notes: str | None = None
    webhook_event_id: int | None = None

    @field_validator("customer_email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return email_validator(v)

    @field_validator("customer_phone")
    @classmethod
    def validate_phone(cls, v: str | None) -> str | None:
        return phone_validator(v)

    @field_validator("customer_name")
    @classmethod
    def validate_name(cls, v: str | None) -> str | None:
        return name_validator(v)


@dataclass(frozen=True)
class ReservationState:
    """What the storefront shows for one puppy"""
    puppy_id: str
    status: PuppyStatus
    can_reserve: bool
    reservation_blocked: bool
    deposit_amount: Decimal


def _append_note(reservation: Reservation, line: str) -> None:
    reservation.notes = f"{reservation.notes}\n{line}" if reservation.notes else line


def _classify_integrity_error(exc: IntegrityError, puppy_id: str) -> ReservationClaimError:
    message = str(getattr(exc, "orig", None) or exc)
    for markers, code, text in _INTEGRITY_RULES:
        if any(marker in message for marker in markers):
            return ReservationClaimError(code, text, puppy_id=puppy_id)
    return ReservationClaimError(
        ClaimErrorCode.DATABASE_ERROR,
        "Database error while claiming the puppy",
        puppy_id=puppy_id,
        details={"db_error": message[:500]},
    )


class ReservationService:
    """Reservation lifecycle over one AsyncSession"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== Claim ====================

    async def claim(self, request: ClaimRequest) -> str:
        """
        Atomically create a pending reservation and reserve the puppy.

        Returns:
            The new reservation id.

        Raises:
            ReservationClaimError: with the ClaimErrorCode of the failed check.
        """
        try:
            reservation_id = await self._claim(request)
        except ReservationClaimError as exc:
            await self.db.rollback()
            log = logger.info if exc.is_expected else logger.warning
            log(
                "Reservation claim refused",
                extra_data={
                    "puppy_id": request.puppy_id,
                    "reason": exc.code.value,
                    "provider": request.payment_provider.value,
                    "external_payment_id": request.external_payment_id,
                },
            )
            raise
        except IntegrityError as exc:
            await self.db.rollback()
            error = _classify_integrity_error(exc, request.puppy_id)
            logger.warning(
                "Reservation claim rejected by database constraint",
                extra_data={"puppy_id": request.puppy_id, "reason": error.code.value},
            )
            raise error from exc
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error(
                "Database error during reservation claim",
                extra_data={"puppy_id": request.puppy_id, "error": str(exc)},
                exc_info=True,
            )
            raise ReservationClaimError(
                ClaimErrorCode.DATABASE_ERROR,
                "Database error while claiming the puppy",
                puppy_id=request.puppy_id,
            ) from exc

        logger.info(
            "Reservation claimed",
            extra_data={
                "reservation_id": reservation_id,
                "puppy_id": request.puppy_id,
                "customer_email": mask_email(request.customer_email),
                "amount": str(request.amount),
                "provider": request.payment_provider.value,
            },
        )
        return reservation_id

    async def _claim(self, request: ClaimRequest) -> str:
        # 1. Same payment already used
        existing = await self.db.execute(
            select(Reservation.id).where(
                Reservation.payment_provider == request.payment_provider,
                Reservation.external_payment_id == request.external_payment_id,
            )
        )
        existing_id = existing.scalar_one_or_none()
        if existing_id:
            raise ReservationClaimError(
                ClaimErrorCode.DUPLICATE_PAYMENT,
                "Payment already backs a reservation",
                puppy_id=request.puppy_id,
                details={"existing_reservation_id": existing_id},
            )

        # 2. Lock puppy
        puppy_result = await self.db.execute(
            select(Puppy).where(Puppy.id == request.puppy_id).with_for_update()
        )
        puppy = puppy_result.scalar_one_or_none()
        if not puppy:
            raise ReservationClaimError(
                ClaimErrorCode.PUPPY_NOT_FOUND,
                "Puppy not found",
                puppy_id=request.puppy_id,
            )

        # 3. Availability
        if puppy.is_archived or puppy.status != PuppyStatus.AVAILABLE:
            if puppy.status == PuppyStatus.RESERVED:
                raise ReservationClaimError(
                    ClaimErrorCode.ALREADY_RESERVED,
                    "Puppy is already reserved",
                    puppy_id=puppy.id,
                )
            raise ReservationClaimError(
                ClaimErrorCode.PUPPY_NOT_AVAILABLE,
                "Puppy is not available for reservation",
                puppy_id=puppy.id,
                details={
                    "status": PuppyStatus(puppy.status).value,
                    "is_archived": bool(puppy.is_archived),
                },
            )

        # 4. Active reservation on the puppy
        active = await self.db.execute(
            select(Reservation.id).where(
                Reservation.puppy_id == puppy.id,
                Reservation.status.in_(ACTIVE_RESERVATION_STATUSES),
            ).limit(1)
        )
        if active.scalar_one_or_none():
            raise ReservationClaimError(
                ClaimErrorCode.ALREADY_RESERVED,
                "Puppy already has an active reservation",
                puppy_id=puppy.id,
            )

        # 5. Deposit
        amount = request.amount
        if amount <= 0:
            raise ReservationClaimError(
                ClaimErrorCode.INVALID_DEPOSIT,
                "Deposit amount must be positive",
                puppy_id=puppy.id,
                details={"amount": str(amount)},
            )
        if puppy.price_usd is not None and amount > puppy.price_usd:
            raise ReservationClaimError(
                ClaimErrorCode.DEPOSIT_EXCEEDS_PRICE,
                "Deposit amount exceeds the puppy price",
                puppy_id=puppy.id,
                details={"amount": str(amount), "price_usd": str(puppy.price_usd)},
            )

        # 6. Insert + reserve
        now = utcnow()
        reservation = Reservation(
            id=generate_uuid(),
            puppy_id=puppy.id,
            customer_name=request.customer_name,
            customer_email=request.customer_email,
            customer_phone=request.customer_phone,
            channel=request.channel,
            payment_provider=request.payment_provider,
            external_payment_id=request.external_payment_id,
            webhook_event_id=request.webhook_event_id,
            amount=amount,
            status=ReservationStatus.PENDING,
            expires_at=request.expires_at or now + timedelta(minutes=settings.RESERVATION_HOLD_MINUTES),
            notes=request.notes,
            created_at=now,
            updated_at=now,
        )
        self.db.add(reservation)
        puppy.status = PuppyStatus.RESERVED

        # 7. Commit
        await self.db.flush()
        await self.db.commit()
        return reservation.id

    # ==================== Lifecycle ====================

    async def confirm(self, reservation_id: str) -> bool:
        """
        pending -> confirmed.

        Returns True when the reservation is confirmed afterwards (including
        one that already was), False when it is expired or cancelled.
        """
        result = await self.db.execute(
            update(Reservation)
            .where(
                Reservation.id == reservation_id,
                Reservation.status == ReservationStatus.PENDING,
            )
            .values(status=ReservationStatus.CONFIRMED, expires_at=None, updated_at=utcnow())
        )
        await self.db.commit()

        if result.rowcount:
            logger.info("Reservation confirmed", extra_data={"reservation_id": reservation_id})
            return True

        reservation = await self.get(reservation_id)
        if not reservation:
            raise ReservationNotFoundError(reservation_id)
        if reservation.status == ReservationStatus.CONFIRMED:
            return True

        logger.warning(
            "Reservation could not be confirmed",
            extra_data={
                "reservation_id": reservation_id,
                "status": ReservationStatus(reservation.status).value,
            },
        )
        return False

    async def _lock_reservation(self, reservation_id: str) -> Reservation:
        result = await self.db.execute(
            select(Reservation).where(Reservation.id == reservation_id).with_for_update()
        )
        reservation = result.scalar_one_or_none()
        if not reservation:
            raise ReservationNotFoundError(reservation_id)
        return reservation

    async def _release_puppy(self, puppy_id: str, exclude_reservation_id: str) -> bool:
        """Reserved puppy back to available when nothing else holds it"""
        puppy_result = await self.db.execute(
            select(Puppy).where(Puppy.id == puppy_id).with_for_update()
        )
        puppy = puppy_result.scalar_one_or_none()
        if not puppy or puppy.status != PuppyStatus.RESERVED:
            return False

        other = await self.db.execute(
            select(Reservation.id).where(
                Reservation.puppy_id == puppy_id,
                Reservation.id != exclude_reservation_id,
                Reservation.status.in_(ACTIVE_RESERVATION_STATUSES),
            ).limit(1)
        )
        if other.scalar_one_or_none():
            return False

        puppy.status = PuppyStatus.AVAILABLE
        return True

    async def cancel(self, reservation_id: str, reason: str) -> Reservation:
        """
        pending/confirmed -> cancelled, releasing the puppy.

        Raises:
            ReservationNotFoundError
            AppException: reservation is not active
        """
        try:
            reservation = await self._lock_reservation(reservation_id)
            if reservation.status not in ACTIVE_RESERVATION_STATUSES:
                raise AppException(
                    message="Only pending or confirmed reservations can be cancelled",
                    error_code=ErrorCode.RESERVATION_INVALID_STATUS,
                    status_code=409,
                    details={
                        "reservation_id": reservation_id,
                        "status": ReservationStatus(reservation.status).value,
                    },
                )

            reservation.status = ReservationStatus.CANCELLED
            reservation.expires_at = None
            _append_note(reservation, f"Cancelled: {reason}")
            released = await self._release_puppy(reservation.puppy_id, reservation.id)

            await self.db.commit()
            await self.db.refresh(reservation)
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Reservation cancelled",
            extra_data={
                "reservation_id": reservation_id,
                "puppy_released": released,
                "reason": reason,
            },
        )
        return reservation

    async def refund_by_payment(
        self,
        provider: PaymentProvider,
        external_payment_id: str,
        note: str,
    ) -> Reservation | None:
        """
        Cancel the reservation backed by a refunded payment.

        Works from any status except cancelled (already handled). Returns None
        when no reservation uses the payment.
        """
        reservation = await self.get_by_payment(provider, external_payment_id)
        if not reservation:
            logger.warning(
                "Refund for unknown payment",
                extra_data={"provider": provider.value, "external_payment_id": external_payment_id},
            )
            return None
        if reservation.status == ReservationStatus.CANCELLED:
            return reservation

        try:
            reservation = await self._lock_reservation(reservation.id)
            reservation.status = ReservationStatus.CANCELLED
            reservation.expires_at = None
            _append_note(reservation, note)
            await self._release_puppy(reservation.puppy_id, reservation.id)

            await self.db.commit()
            await self.db.refresh(reservation)
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Reservation cancelled after refund",
            extra_data={
                "reservation_id": reservation.id,
                "provider": provider.value,
                "external_payment_id": external_payment_id,
            },
        )
        return reservation

    async def admin_update_status(
        self,
        reservation_id: str,
        status: ReservationStatus,
        reason: str,
    ) -> Reservation:
        """
        Manual repair by an operator. Every change leaves an audit line in
        notes; moving into an active status reserves the puppy, moving out of
        one releases it.
        """
        reason = (reason or "").strip()
        if len(reason) < MIN_ADMIN_REASON_LENGTH:
            raise ValidationException(
                f"Reason must be at least {MIN_ADMIN_REASON_LENGTH} characters",
                field="reason",
            )

        try:
            reservation = await self._lock_reservation(reservation_id)
            old_status = ReservationStatus(reservation.status)
            if old_status == status:
                # releases the row lock; commit keeps the loaded attributes
                await self.db.commit()
                return reservation

            now = utcnow()
            was_active = old_status in ACTIVE_RESERVATION_STATUSES
            becomes_active = status in ACTIVE_RESERVATION_STATUSES

            if becomes_active and not was_active:
                other = await self.db.execute(
                    select(Reservation.id).where(
                        Reservation.puppy_id == reservation.puppy_id,
                        Reservation.id != reservation.id,
                        Reservation.status.in_(ACTIVE_RESERVATION_STATUSES),
                    ).limit(1)
                )
                if other.scalar_one_or_none():
                    raise AppException(
                        message="Puppy already has another active reservation",
                        error_code=ErrorCode.RESERVATION_CONFLICT,
                        status_code=409,
                        details={"reservation_id": reservation_id, "puppy_id": reservation.puppy_id},
                    )
                puppy_result = await self.db.execute(
                    select(Puppy).where(Puppy.id == reservation.puppy_id).with_for_update()
                )
                puppy = puppy_result.scalar_one_or_none()
                if puppy and puppy.status == PuppyStatus.AVAILABLE:
                    puppy.status = PuppyStatus.RESERVED

            reservation.status = status
            if status == ReservationStatus.PENDING:
                reservation.expires_at = now + timedelta(minutes=settings.RESERVATION_HOLD_MINUTES)
            else:
                reservation.expires_at = None
            _append_note(
                reservation,
                f"[{now.isoformat(timespec='seconds')}Z] admin: {old_status.value} -> {status.value}: {reason}",
            )

            if was_active and not becomes_active:
                await self._release_puppy(reservation.puppy_id, reservation.id)

            await self.db.commit()
            await self.db.refresh(reservation)
        except Exception:
            await self.db.rollback()
            raise

        logger.warning(
            "Reservation status changed by admin",
            extra_data={
                "reservation_id": reservation_id,
                "from": old_status.value,
                "to": status.value,
                "reason": reason,
            },
        )
        return reservation

    # ==================== Queries ====================

    async def get(self, reservation_id: str) -> Reservation | None:
        result = await self.db.execute(
            select(Reservation).where(Reservation.id == reservation_id)
        )
        return result.scalar_one_or_none()

    async def get_by_payment(
        self,
        provider: PaymentProvider,
        external_payment_id: str,
    ) -> Reservation | None:
        result = await self.db.execute(
            select(Reservation).where(
                Reservation.payment_provider == provider,
                Reservation.external_payment_id == external_payment_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_reservations(
        self,
        status: ReservationStatus | None = None,
        provider: PaymentProvider | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Reservation], int]:
        """Page of reservations, newest first, plus the total matching count"""
        conditions = []
        if status:
            conditions.append(Reservation.status == status)
        if provider:
            conditions.append(Reservation.payment_provider == provider)

        count_result = await self.db.execute(
            select(func.count(Reservation.id)).where(*conditions)
        )
        total = count_result.scalar_one()

        result = await self.db.execute(
            select(Reservation)
            .where(*conditions)
            .order_by(Reservation.created_at.desc(), Reservation.id)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total

    async def payment_mismatches(self) -> list[Reservation]:
        """
        Pending reservations that carry a payment id but were never confirmed
        within the hold window. The provider took money; we did not finish.
        """
        cutoff = utcnow() - timedelta(minutes=settings.RESERVATION_HOLD_MINUTES)
        result = await self.db.execute(
            select(Reservation)
            .where(
                Reservation.status == ReservationStatus.PENDING,
                Reservation.external_payment_id.is_not(None),
                Reservation.created_at <= cutoff,
            )
            .order_by(Reservation.created_at.asc())
        )
        return list(result.scalars().all())

    async def has_active_reservation(self, puppy_id: str) -> bool:
        """Confirmed, or pending with no expiry or an expiry still ahead"""
        now = utcnow()
        result = await self.db.execute(
            select(Reservation.id).where(
                Reservation.puppy_id == puppy_id,
                or_(
                    Reservation.status == ReservationStatus.CONFIRMED,
                    and_(
                        Reservation.status == ReservationStatus.PENDING,
                        or_(Reservation.expires_at.is_(None), Reservation.expires_at > now),
                    ),
                ),
            ).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def reservation_state(self, puppy: Puppy) -> ReservationState:
        has_active = await self.has_active_reservation(puppy.id)
        status = PuppyStatus(puppy.status)
        return ReservationState(
            puppy_id=puppy.id,
            status=status,
            can_reserve=status == PuppyStatus.AVAILABLE and not puppy.is_archived and not has_active,
            reservation_blocked=has_active,
            deposit_amount=deposit_for_puppy(puppy.price_usd),
        )
