"""
Evidence submission: the only path by which a booking becomes confirmed.

Order inside one submission is fixed: content-hash duplicate check,
availability, lock validation, draft creation, external verification,
final commit. The verifier round trip happens with no transaction open.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .availability import is_available
from .bookings import delete_draft, find_reusable_booking, insert_booking
from .clock import utcnow, validate_range
from .errors import ErrorKind, Failure, failure
from .events import booking_event_data
from .evidence import check_duplicate_hash, check_duplicate_reference, fingerprint
from .locks import LockResult, acquire_lock, release_holder_locks
from .models import REUSABLE_STATUSES, Booking, PaymentEvidenceRecord
from .rabbitmq import publisher as default_publisher
from .tenants import TenantSettings, get_tenant_settings
from .upload_tokens import get_uploaded_token
from .verifier import VerificationOutcome, slip_verifier

logger = structlog.get_logger(__name__)


@dataclass
class EvidenceSubmission:
    tenant_id: str
    room_id: str
    guest_id: str
    check_in: date
    check_out: date
    evidence_bytes: bytes
    expected_amount: Decimal
    guest_count: int = 1
    notes: str | None = None
    evidence_url: str | None = None


@dataclass
class ConfirmationResult:
    confirmed: bool
    booking_id: str | None = None
    payment_reference: str | None = None
    verified_at: datetime | None = None
    failure: Failure | None = None


def _failed(kind: ErrorKind, detail: str | None = None, retry_after: int | None = None) -> ConfirmationResult:
    return ConfirmationResult(confirmed=False, failure=failure(kind, detail, retry_after))


def _seconds_until(moment: datetime | None, now: datetime) -> int | None:
    if moment is None:
        return None
    return max(0, int((moment - now).total_seconds()))


def _as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def within_tolerance(expected: Decimal, actual: Decimal | None, tolerance: Decimal) -> bool:
    if actual is None:
        return False
    return abs(actual - expected) <= tolerance


async def start_checkout(
    db: AsyncSession,
    room_id: str,
    guest_id: str,
    check_in: date,
    check_out: date,
    ttl_minutes: int | None = None,
    now: datetime | None = None,
) -> LockResult:
    """
    Lock taken when a guest opens the payment page. Dates already booked are
    reported as DATES_UNAVAILABLE rather than a lock conflict; the guest's own
    pending booking for the same stay does not count against them.
    """
    validate_range(check_in, check_out)
    existing = await find_reusable_booking(db, room_id, guest_id, check_in, check_out)
    availability = await is_available(
        db, room_id, check_in, check_out, exclude_booking_id=existing.id if existing else None
    )
    if not availability.available:
        return LockResult(granted=False, failure=failure(ErrorKind.DATES_UNAVAILABLE))
    return await acquire_lock(db, room_id, guest_id, check_in, check_out, ttl_minutes, now=now)


async def submit_evidence(
    db: AsyncSession,
    submission: EvidenceSubmission,
    verifier=None,
    publisher=None,
    now: datetime | None = None,
) -> ConfirmationResult:
    verifier = verifier or slip_verifier
    publisher = publisher or default_publisher
    now = now or utcnow()
    s = submission

    validate_range(s.check_in, s.check_out)
    if s.expected_amount <= 0:
        raise ValueError("expected_amount must be positive")

    content_hash = fingerprint(s.evidence_bytes)
    dup = await check_duplicate_hash(db, content_hash)
    if dup.duplicate:
        logger.info("evidence_duplicate_hash", room_id=s.room_id, original_booking_id=dup.original_booking_id)
        return _failed(ErrorKind.DUPLICATE_EVIDENCE, detail="content_hash")

    settings = await get_tenant_settings(db, s.tenant_id)

    existing = await find_reusable_booking(db, s.room_id, s.guest_id, s.check_in, s.check_out)
    existing_id = existing.id if existing else None
    if existing and existing.total_price != s.expected_amount:
        logger.info("evidence_amount_differs_from_booking", booking_id=existing_id)
        return _failed(
            ErrorKind.AMOUNT_MISMATCH,
            detail=f"booking total {existing.total_price}, submitted {s.expected_amount}",
        )

    availability = await is_available(db, s.room_id, s.check_in, s.check_out, exclude_booking_id=existing_id)
    if not availability.available:
        return _failed(ErrorKind.DATES_UNAVAILABLE)

    lock = await acquire_lock(
        db, s.room_id, s.guest_id, s.check_in, s.check_out, settings.payment_timeout_minutes, now=now
    )
    if not lock.granted:
        return _failed(ErrorKind.LOCK_CONFLICT, retry_after=_seconds_until(lock.held_until, now))

    draft_id = None
    if existing_id:
        booking_id = existing_id
    else:
        created = await insert_booking(
            db,
            tenant_id=s.tenant_id,
            room_id=s.room_id,
            user_id=s.guest_id,
            check_in=s.check_in,
            check_out=s.check_out,
            guest_count=s.guest_count,
            total_price=s.expected_amount,
            notes=s.notes,
            status="awaiting_payment" if settings.online_payment_enabled else "pending",
            is_draft=True,
            now=now,
        )
        if not created.ok:
            return ConfirmationResult(confirmed=False, failure=created.failure)
        draft_id = booking_id = created.booking.id

    try:
        result = await _verify_and_commit(db, s, content_hash, booking_id, settings, verifier, now)
    except BaseException:
        if draft_id:
            await _discard_quietly(db, draft_id)
        raise

    if not result.confirmed:
        if draft_id:
            await delete_draft(db, draft_id)
        logger.info(
            "evidence_rejected",
            booking_id=booking_id,
            reason=result.failure.kind.value if result.failure else None,
        )
        return result

    res = await db.execute(select(Booking).where(Booking.id == booking_id))
    booking = res.scalar_one()
    await publisher.publish_event("booking.confirmed", booking_event_data(booking))
    return result


async def _discard_quietly(db: AsyncSession, draft_id: str) -> None:
    # the original exception is what the caller needs to see
    try:
        await delete_draft(db, draft_id)
    except Exception:
        logger.exception("draft_cleanup_failed", booking_id=draft_id)


async def _verify_and_commit(
    db: AsyncSession,
    s: EvidenceSubmission,
    content_hash: str,
    booking_id: str,
    settings: TenantSettings,
    verifier,
    now: datetime,
) -> ConfirmationResult:
    # no transaction stays open across the verifier round trip
    await db.commit()

    if settings.verifier_enabled:
        outcome: VerificationOutcome = await verifier.verify(s.evidence_bytes, s.expected_amount)
        if not outcome.success:
            return _failed(ErrorKind.VERIFICATION_FAILED, detail=outcome.error_code)

        if not within_tolerance(s.expected_amount, outcome.verified_amount, settings.amount_tolerance):
            return _failed(
                ErrorKind.AMOUNT_MISMATCH,
                detail=f"expected {s.expected_amount}, received {outcome.verified_amount}",
            )

        if outcome.payment_timestamp is not None:
            age = now - _as_utc(outcome.payment_timestamp)
            if age > timedelta(hours=settings.max_evidence_age_hours):
                return _failed(ErrorKind.EVIDENCE_TOO_OLD)

        dup = await check_duplicate_reference(db, outcome.transaction_reference)
        if dup.duplicate:
            return _failed(ErrorKind.DUPLICATE_EVIDENCE, detail="external_reference")

        amount = outcome.verified_amount
        reference = outcome.transaction_reference
        payload = outcome.payload
    else:
        amount = s.expected_amount
        reference = None
        payload = None

    return await _commit_confirmation(db, s, content_hash, booking_id, amount, reference, payload, now)


async def _commit_confirmation(
    db: AsyncSession,
    s: EvidenceSubmission,
    content_hash: str,
    booking_id: str,
    amount: Decimal,
    reference: str | None,
    payload: dict | None,
    now: datetime,
) -> ConfirmationResult:
    """
    Booking confirmed, evidence recorded and lock released, all in one
    transaction. A unique-key violation on the evidence ledger means a
    concurrent submission of the same slip won.
    """
    res = await db.execute(
        select(Booking).where(Booking.id == booking_id, Booking.status.in_(REUSABLE_STATUSES))
    )
    booking = res.scalar_one_or_none()
    if not booking:
        # cancelled by the host or reaped while the verifier was working
        return _failed(ErrorKind.DATES_UNAVAILABLE, detail="booking_no_longer_pending")

    try:
        booking.status = "confirmed"
        booking.is_draft = False
        booking.payment_verified_at = now
        booking.payment_reference = reference
        booking.verification_payload = payload
        booking.payment_evidence_url = s.evidence_url

        db.add(
            PaymentEvidenceRecord(
                content_hash=content_hash,
                external_reference=reference,
                booking_id=booking_id,
                tenant_id=s.tenant_id,
                amount=amount,
                evidence_url=s.evidence_url,
                verified_at=now,
                verifier_payload=payload,
            )
        )
        # autoflush may surface the ledger violation here rather than at commit
        await release_holder_locks(db, s.room_id, s.guest_id, s.check_in, s.check_out, commit=False)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("evidence_duplicate_on_commit", booking_id=booking_id)
        return _failed(ErrorKind.DUPLICATE_EVIDENCE, detail="concurrent_submission")

    logger.info("booking_confirmed", booking_id=booking_id, payment_reference=reference)
    return ConfirmationResult(
        confirmed=True,
        booking_id=booking_id,
        payment_reference=reference,
        verified_at=now,
    )


async def submit_from_token(
    db: AsyncSession,
    token: str,
    guest_id: str,
    verifier=None,
    publisher=None,
    now: datetime | None = None,
) -> ConfirmationResult | None:
    """
    Confirm using a slip uploaded from a phone. Returns None when the token is
    unknown, expired, not yet uploaded or belongs to someone else.
    """
    now = now or utcnow()
    upload = await get_uploaded_token(db, token, now=now)
    if not upload or upload.user_id != guest_id:
        return None

    submission = EvidenceSubmission(
        tenant_id=upload.tenant_id,
        room_id=upload.room_id,
        guest_id=guest_id,
        check_in=upload.check_in,
        check_out=upload.check_out,
        evidence_bytes=upload.slip_image,
        expected_amount=Decimal(upload.total_price),
        guest_count=upload.guest_count,
        notes=upload.notes,
        evidence_url=upload.slip_url,
    )
    return await submit_evidence(db, submission, verifier=verifier, publisher=publisher, now=now)
