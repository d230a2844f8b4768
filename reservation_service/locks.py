import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta

import structlog
from sqlalchemy import and_, delete, exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .clock import expires_after, nights, utcnow, validate_range
from .config import DEFAULT_LOCK_TTL_MINUTES, MAX_LOCK_TTL_MINUTES, MIN_LOCK_TTL_MINUTES
from .errors import ErrorKind, Failure, failure
from .models import LockNight, ReservationLock

logger = structlog.get_logger(__name__)


@dataclass
class LockResult:
    granted: bool
    lock_id: str | None = None
    expires_at: datetime | None = None
    held_until: datetime | None = None
    failure: Failure | None = None

    @property
    def reason(self) -> str | None:
        return self.failure.message if self.failure else None


@dataclass
class LockStatus:
    locked: bool
    held_until: datetime | None = None


def _overlapping(room_id: str, check_in: date, check_out: date):
    return and_(
        ReservationLock.room_id == room_id,
        ReservationLock.check_in < check_out,
        ReservationLock.check_out > check_in,
    )


def clamp_ttl(ttl_minutes: int | None) -> int:
    if ttl_minutes is None:
        return DEFAULT_LOCK_TTL_MINUTES
    return max(MIN_LOCK_TTL_MINUTES, min(MAX_LOCK_TTL_MINUTES, int(ttl_minutes)))


async def _active_conflict(
    db: AsyncSession, room_id: str, holder_id: str, check_in: date, check_out: date, now: datetime
) -> ReservationLock | None:
    res = await db.execute(
        select(ReservationLock)
        .where(
            _overlapping(room_id, check_in, check_out),
            ReservationLock.holder_id != holder_id,
            ReservationLock.expires_at >= now,
        )
        .order_by(ReservationLock.expires_at.desc())
        .limit(1)
    )
    return res.scalar_one_or_none()


async def _own_covering_lock(
    db: AsyncSession, room_id: str, holder_id: str, check_in: date, check_out: date, now: datetime
) -> ReservationLock | None:
    res = await db.execute(
        select(ReservationLock)
        .where(
            ReservationLock.room_id == room_id,
            ReservationLock.holder_id == holder_id,
            ReservationLock.check_in <= check_in,
            ReservationLock.check_out >= check_out,
            ReservationLock.expires_at >= now,
        )
        .limit(1)
    )
    return res.scalar_one_or_none()


async def delete_locks(db: AsyncSession, lock_ids: list[str], *criteria) -> int:
    """
    Delete locks and their night rows. Does not commit.

    Extra criteria are evaluated by the DELETE itself, so a lock that was
    refreshed after its id was selected no longer matches and keeps its nights.
    """
    if not lock_ids:
        return 0
    res = await db.execute(
        delete(ReservationLock)
        .where(ReservationLock.id.in_(lock_ids), *criteria)
        .execution_options(synchronize_session="fetch")
    )
    # only nights whose lock row is gone
    await db.execute(
        delete(LockNight)
        .where(
            LockNight.lock_id.in_(lock_ids),
            ~exists().where(ReservationLock.id == LockNight.lock_id),
        )
        .execution_options(synchronize_session=False)
    )
    return res.rowcount or 0


async def acquire_lock(
    db: AsyncSession,
    room_id: str,
    holder_id: str,
    check_in: date,
    check_out: date,
    ttl_minutes: int | None = None,
    now: datetime | None = None,
) -> LockResult:
    """
    Single-attempt lock on [check_in, check_out) for holder_id.

    A conflicting lock is a normal outcome and comes back as a denied
    LockResult; only storage failures raise.
    """
    validate_range(check_in, check_out)
    now = now or utcnow()
    expires_at = expires_after(timedelta(minutes=clamp_ttl(ttl_minutes)), now)

    conflict = await _active_conflict(db, room_id, holder_id, check_in, check_out, now)
    if conflict:
        return LockResult(
            granted=False,
            held_until=conflict.expires_at,
            failure=failure(ErrorKind.LOCK_CONFLICT),
        )

    own = await _own_covering_lock(db, room_id, holder_id, check_in, check_out, now)
    if own:
        res = await db.execute(
            update(ReservationLock)
            .where(ReservationLock.id == own.id, ReservationLock.expires_at >= now)
            .values(expires_at=expires_at)
        )
        if res.rowcount:
            await db.commit()
            logger.info("lock_refreshed", room_id=room_id, holder_id=holder_id, lock_id=own.id)
            return LockResult(granted=True, lock_id=own.id, expires_at=expires_at)
        # reaped between read and write; fall through and take a fresh lock

    # expired locks of anyone, plus the holder's own overlapping ones (changed dates)
    replaceable = (ReservationLock.expires_at < now) | (ReservationLock.holder_id == holder_id)
    res = await db.execute(
        select(ReservationLock.id).where(_overlapping(room_id, check_in, check_out), replaceable)
    )
    await delete_locks(db, list(res.scalars().all()), replaceable)

    lock_id = str(uuid.uuid4())
    db.add(
        ReservationLock(
            id=lock_id,
            room_id=room_id,
            holder_id=holder_id,
            check_in=check_in,
            check_out=check_out,
            expires_at=expires_at,
            created_at=now,
        )
    )
    await db.flush()
    db.add_all(LockNight(lock_id=lock_id, room_id=room_id, night=n) for n in nights(check_in, check_out))

    try:
        await db.commit()
    except IntegrityError:
        # a concurrent acquire won the night rows
        await db.rollback()
        own = await _own_covering_lock(db, room_id, holder_id, check_in, check_out, now)
        if own:
            return LockResult(granted=True, lock_id=own.id, expires_at=own.expires_at)
        winner = await _active_conflict(db, room_id, holder_id, check_in, check_out, now)
        logger.info("lock_race_lost", room_id=room_id, holder_id=holder_id)
        return LockResult(
            granted=False,
            held_until=winner.expires_at if winner else None,
            failure=failure(ErrorKind.LOCK_CONFLICT),
        )

    logger.info(
        "lock_acquired",
        room_id=room_id,
        holder_id=holder_id,
        lock_id=lock_id,
        check_in=check_in.isoformat(),
        check_out=check_out.isoformat(),
    )
    return LockResult(granted=True, lock_id=lock_id, expires_at=expires_at)


async def release_lock(
    db: AsyncSession,
    room_id: str,
    holder_id: str,
    check_in: date,
    check_out: date,
    commit: bool = True,
) -> bool:
    """
    Remove the holder's lock on exactly this range. Safe to call repeatedly.
    """
    res = await db.execute(
        select(ReservationLock.id).where(
            ReservationLock.room_id == room_id,
            ReservationLock.holder_id == holder_id,
            ReservationLock.check_in == check_in,
            ReservationLock.check_out == check_out,
        )
    )
    deleted = await delete_locks(db, list(res.scalars().all()))
    if commit:
        await db.commit()
    return deleted > 0


async def release_holder_locks(
    db: AsyncSession,
    room_id: str,
    holder_id: str,
    check_in: date,
    check_out: date,
    commit: bool = True,
) -> int:
    """
    Remove every lock of this holder overlapping the range, including a wider
    lock that was refreshed in place.
    """
    res = await db.execute(
        select(ReservationLock.id).where(
            _overlapping(room_id, check_in, check_out),
            ReservationLock.holder_id == holder_id,
        )
    )
    deleted = await delete_locks(db, list(res.scalars().all()))
    if commit:
        await db.commit()
    return deleted


async def is_locked(
    db: AsyncSession,
    room_id: str,
    check_in: date,
    check_out: date,
    excluding_holder: str | None = None,
    now: datetime | None = None,
) -> LockStatus:
    """
    Read-only view for the UI. Never act on this without calling acquire_lock.
    """
    validate_range(check_in, check_out)
    now = now or utcnow()
    q = select(ReservationLock.expires_at).where(
        _overlapping(room_id, check_in, check_out),
        ReservationLock.expires_at >= now,
    )
    if excluding_holder:
        q = q.where(ReservationLock.holder_id != excluding_holder)
    res = await db.execute(q.order_by(ReservationLock.expires_at.desc()).limit(1))
    held_until = res.scalar_one_or_none()
    return LockStatus(locked=held_until is not None, held_until=held_until)
