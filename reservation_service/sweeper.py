import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .bookings import complete_past_bookings
from .clock import utcnow
from .config import COMPLETION_INTERVAL_SECONDS, DRAFT_STALE_MINUTES, SWEEP_INTERVAL_SECONDS
from .db import SessionLocal
from .locks import delete_locks
from .models import REUSABLE_STATUSES, Booking, BookingNight, ReservationLock
from .upload_tokens import delete_expired

logger = structlog.get_logger(__name__)


@dataclass
class SweepReport:
    locks: int = 0
    tokens: int = 0
    drafts: int = 0


async def sweep(db: AsyncSession, now: datetime | None = None) -> SweepReport:
    """
    Housekeeping only. Expired locks are already ignored by every read, so
    a missed sweep never changes a lock decision.
    """
    now = now or utcnow()
    report = SweepReport()

    expired = ReservationLock.expires_at < now
    res = await db.execute(select(ReservationLock.id).where(expired))
    report.locks = await delete_locks(db, list(res.scalars().all()), expired)

    report.tokens = await delete_expired(db, now)

    # drafts left behind by a crashed submission
    cutoff = now - timedelta(minutes=DRAFT_STALE_MINUTES)
    res = await db.execute(
        select(Booking.id).where(
            Booking.is_draft.is_(True),
            Booking.status.in_(REUSABLE_STATUSES),
            Booking.created_at < cutoff,
        )
    )
    draft_ids = list(res.scalars().all())
    if draft_ids:
        await db.execute(delete(BookingNight).where(BookingNight.booking_id.in_(draft_ids)))
        await db.execute(delete(Booking).where(Booking.id.in_(draft_ids), Booking.is_draft.is_(True)))
        report.drafts = len(draft_ids)

    await db.commit()
    if report.locks or report.tokens or report.drafts:
        logger.info("sweep_done", locks=report.locks, tokens=report.tokens, drafts=report.drafts)
    return report


async def _wait(stop_event: asyncio.Event, timeout: float) -> None:
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        pass


async def sweep_loop(stop_event: asyncio.Event, session_factory=SessionLocal):
    while not stop_event.is_set():
        try:
            async with session_factory() as db:
                await sweep(db)
        except SQLAlchemyError as e:
            logger.warning("sweep_failed", error=str(e))
        await _wait(stop_event, SWEEP_INTERVAL_SECONDS)


async def completion_loop(stop_event: asyncio.Event, session_factory=SessionLocal):
    while not stop_event.is_set():
        try:
            async with session_factory() as db:
                await complete_past_bookings(db)
        except SQLAlchemyError as e:
            logger.warning("completion_failed", error=str(e))
        await _wait(stop_event, COMPLETION_INTERVAL_SECONDS)
