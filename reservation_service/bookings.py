import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .availability import is_available
from .clock import nights, utcnow, validate_range
from .errors import ErrorKind, Failure, failure
from .events import booking_event_data
from .locks import acquire_lock, is_locked, release_holder_locks
from .models import OCCUPYING_STATUSES, REUSABLE_STATUSES, Booking, BookingNight
from .rabbitmq import publisher as default_publisher
from .tenants import get_tenant_settings

logger = structlog.get_logger(__name__)


@dataclass
class BookingResult:
    booking: Booking | None = None
    failure: Failure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.booking is not None


class CancelError(str, Enum):
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    ALREADY_CANCELLED = "already_cancelled"
    COMPLETED = "completed"
    WINDOW_EXPIRED = "window_expired"


CANCEL_MESSAGES = {
    CancelError.NOT_FOUND: "Booking not found",
    CancelError.FORBIDDEN: "You are not allowed to cancel this booking",
    CancelError.ALREADY_CANCELLED: "Booking is already cancelled",
    CancelError.COMPLETED: "A completed booking cannot be cancelled",
    CancelError.WINDOW_EXPIRED: "The cancellation period has expired. Please contact the property.",
}


@dataclass
class CancelResult:
    booking: Booking | None = None
    error: CancelError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def free_nights(db: AsyncSession, booking_id: str) -> None:
    await db.execute(delete(BookingNight).where(BookingNight.booking_id == booking_id))


async def insert_booking(
    db: AsyncSession,
    *,
    tenant_id: str,
    room_id: str,
    user_id: str | None,
    check_in: date,
    check_out: date,
    guest_count: int,
    total_price: Decimal,
    status: str,
    notes: str | None = None,
    is_draft: bool = False,
    now: datetime | None = None,
) -> BookingResult:
    """
    Insert a booking together with its night claims in one transaction.
    Losing a race on the claims comes back as DATES_UNAVAILABLE.
    """
    booking = Booking(
        id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        room_id=room_id,
        user_id=user_id,
        check_in=check_in,
        check_out=check_out,
        guest_count=guest_count,
        total_price=total_price,
        notes=notes,
        status=status,
        is_draft=is_draft,
        created_at=now or utcnow(),
    )
    try:
        db.add(booking)
        await db.flush()
        if status in OCCUPYING_STATUSES:
            db.add_all(
                BookingNight(booking_id=booking.id, room_id=room_id, night=n) for n in nights(check_in, check_out)
            )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("booking_storage_conflict", room_id=room_id, check_in=check_in.isoformat())
        return BookingResult(failure=failure(ErrorKind.STORAGE_CONFLICT))

    logger.info("booking_created", booking_id=booking.id, room_id=room_id, status=status, is_draft=is_draft)
    return BookingResult(booking=booking)


async def find_reusable_booking(
    db: AsyncSession, room_id: str, user_id: str, check_in: date, check_out: date
) -> Booking | None:
    # a draft belongs to the submission that created it and is never shared
    res = await db.execute(
        select(Booking)
        .where(
            Booking.room_id == room_id,
            Booking.user_id == user_id,
            Booking.check_in == check_in,
            Booking.check_out == check_out,
            Booking.status.in_(REUSABLE_STATUSES),
            Booking.is_draft.is_(False),
        )
        .order_by(Booking.created_at.desc())
        .limit(1)
    )
    return res.scalar_one_or_none()


async def delete_draft(db: AsyncSession, booking_id: str) -> bool:
    """
    Remove a draft created to carry evidence. Real bookings are never touched.
    """
    await db.rollback()
    res = await db.execute(
        select(Booking.id).where(
            Booking.id == booking_id,
            Booking.is_draft.is_(True),
            Booking.status.in_(REUSABLE_STATUSES),
        )
    )
    if res.scalar_one_or_none() is None:
        return False
    await free_nights(db, booking_id)
    await db.execute(delete(Booking).where(Booking.id == booking_id, Booking.is_draft.is_(True)))
    await db.commit()
    logger.info("draft_deleted", booking_id=booking_id)
    return True


async def create_booking(
    db: AsyncSession,
    *,
    tenant_id: str,
    room_id: str,
    user_id: str | None,
    check_in: date,
    check_out: date,
    guest_count: int,
    total_price: Decimal,
    online_payment: bool,
    notes: str | None = None,
    lock_ttl_minutes: int | None = None,
    now: datetime | None = None,
) -> BookingResult:
    """
    Checkout-start booking. Held as awaiting_payment when the tenant takes
    online payment, otherwise pending until the host confirms.

    The guest takes (or refreshes) the reservation lock first, so dates another
    guest is paying for cannot be booked out from under them.
    """
    validate_range(check_in, check_out)
    now = now or utcnow()
    availability = await is_available(db, room_id, check_in, check_out)
    if not availability.available:
        return BookingResult(failure=failure(ErrorKind.DATES_UNAVAILABLE))

    if user_id:
        lock = await acquire_lock(db, room_id, user_id, check_in, check_out, lock_ttl_minutes, now=now)
        blocked, held_until = not lock.granted, lock.held_until
    else:
        status = await is_locked(db, room_id, check_in, check_out, now=now)
        blocked, held_until = status.locked, status.held_until
    if blocked:
        retry_after = max(0, int((held_until - now).total_seconds())) if held_until else None
        logger.info("booking_blocked_by_lock", room_id=room_id, user_id=user_id)
        return BookingResult(failure=failure(ErrorKind.LOCK_CONFLICT, retry_after=retry_after))

    return await insert_booking(
        db,
        tenant_id=tenant_id,
        room_id=room_id,
        user_id=user_id,
        check_in=check_in,
        check_out=check_out,
        guest_count=guest_count,
        total_price=total_price,
        notes=notes,
        status="awaiting_payment" if online_payment else "pending",
        now=now,
    )


async def cancel_booking(
    db: AsyncSession,
    booking_id: str,
    actor_id: str,
    reason: str,
    by_host: bool = False,
    window_hours: int | None = None,
    now: datetime | None = None,
    publisher=None,
) -> CancelResult:
    now = now or utcnow()
    publisher = publisher or default_publisher

    res = await db.execute(select(Booking).where(Booking.id == booking_id))
    booking = res.scalar_one_or_none()
    if not booking:
        return CancelResult(error=CancelError.NOT_FOUND)
    if not by_host and booking.user_id != actor_id:
        return CancelResult(error=CancelError.FORBIDDEN)
    if booking.status == "cancelled":
        return CancelResult(booking=booking, error=CancelError.ALREADY_CANCELLED)
    if booking.status == "completed":
        return CancelResult(booking=booking, error=CancelError.COMPLETED)
    if window_hours is None:
        window_hours = (await get_tenant_settings(db, booking.tenant_id)).cancellation_window_hours
    if not by_host and now - booking.created_at > timedelta(hours=window_hours):
        return CancelResult(booking=booking, error=CancelError.WINDOW_EXPIRED)

    booking.status = "cancelled"
    booking.cancelled_at = now
    booking.cancel_reason = reason
    await free_nights(db, booking.id)
    if booking.user_id:
        await release_holder_locks(
            db, booking.room_id, booking.user_id, booking.check_in, booking.check_out, commit=False
        )
    await db.commit()

    logger.info("booking_cancelled", booking_id=booking.id, by_host=by_host)
    await publisher.publish_event("booking.cancelled", {**booking_event_data(booking), "reason": reason})
    return CancelResult(booking=booking)


async def complete_past_bookings(db: AsyncSession, today: date | None = None) -> int:
    today = today or utcnow().date()
    res = await db.execute(
        select(Booking).where(Booking.status == "confirmed", Booking.check_out <= today)
    )
    completed = 0
    for booking in res.scalars().all():
        booking.status = "completed"
        await free_nights(db, booking.id)
        completed += 1
    await db.commit()
    if completed:
        logger.info("bookings_completed", count=completed)
    return completed
