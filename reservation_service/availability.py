from dataclasses import dataclass, field
from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .clock import validate_range
from .models import OCCUPYING_STATUSES, Booking, RoomBlackout


@dataclass
class ConflictingBooking:
    booking_id: str
    check_in: date
    check_out: date
    status: str


@dataclass
class AvailabilityResult:
    available: bool
    blocked_dates: list[date] = field(default_factory=list)
    conflicts: list[ConflictingBooking] = field(default_factory=list)


async def blocked_dates(db: AsyncSession, room_id: str, check_in: date, check_out: date) -> list[date]:
    res = await db.execute(
        select(RoomBlackout.date)
        .where(
            RoomBlackout.room_id == room_id,
            RoomBlackout.is_blocked.is_(True),
            RoomBlackout.date >= check_in,
            RoomBlackout.date < check_out,
        )
        .order_by(RoomBlackout.date)
    )
    return list(res.scalars().all())


async def conflicting_bookings(
    db: AsyncSession,
    room_id: str,
    check_in: date,
    check_out: date,
    exclude_booking_id: str | None = None,
) -> list[ConflictingBooking]:
    q = select(Booking).where(
        Booking.room_id == room_id,
        Booking.status.in_(OCCUPYING_STATUSES),
        Booking.check_in < check_out,
        Booking.check_out > check_in,
    )
    if exclude_booking_id:
        q = q.where(Booking.id != exclude_booking_id)
    res = await db.execute(q.order_by(Booking.check_in))
    return [
        ConflictingBooking(booking_id=b.id, check_in=b.check_in, check_out=b.check_out, status=b.status)
        for b in res.scalars().all()
    ]


async def is_available(
    db: AsyncSession,
    room_id: str,
    check_in: date,
    check_out: date,
    exclude_booking_id: str | None = None,
) -> AvailabilityResult:
    """
    Blackouts plus committed-booking overlap. Locks are not consulted.

    Advisory: the booking_nights unique key is what actually stops a
    double booking.
    """
    validate_range(check_in, check_out)
    blocked = await blocked_dates(db, room_id, check_in, check_out)
    conflicts = await conflicting_bookings(db, room_id, check_in, check_out, exclude_booking_id)
    return AvailabilityResult(
        available=not blocked and not conflicts,
        blocked_dates=blocked,
        conflicts=conflicts,
    )


async def booked_ranges(db: AsyncSession, room_id: str, from_date: date) -> list[tuple[date, date]]:
    res = await db.execute(
        select(Booking.check_in, Booking.check_out)
        .where(
            Booking.room_id == room_id,
            Booking.status.in_(OCCUPYING_STATUSES),
            Booking.check_out >= from_date,
        )
        .order_by(Booking.check_in)
    )
    return [(ci, co) for ci, co in res.all()]
