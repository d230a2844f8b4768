from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from reservation_service.bookings import create_booking, insert_booking
from reservation_service.confirmation import (
    EvidenceSubmission,
    start_checkout,
    submit_evidence,
    within_tolerance,
)
from reservation_service.errors import ErrorKind
from reservation_service.evidence import fingerprint
from reservation_service.locks import acquire_lock, is_locked
from reservation_service.models import Booking, BookingNight, PaymentEvidenceRecord, ReservationLock, Tenant
from reservation_service.verifier import VerificationOutcome

from .conftest import JUNE_1, JUNE_2, JUNE_3, JUNE_4, NOW, FakeVerifier, verified


def _submission(guest="guest-a", room="room-1", check_in=JUNE_1, check_out=JUNE_3, evidence=b"h1", amount="1000"):
    return EvidenceSubmission(
        tenant_id="tenant-1",
        room_id=room,
        guest_id=guest,
        check_in=check_in,
        check_out=check_out,
        evidence_bytes=evidence,
        expected_amount=Decimal(amount),
        guest_count=2,
    )


async def _count(db, model, *where):
    q = select(func.count()).select_from(model)
    if where:
        q = q.where(*where)
    return (await db.execute(q)).scalar_one()


async def test_end_to_end_scenario(db, tenant, publisher):
    a = await start_checkout(db, "room-1", "guest-a", JUNE_1, JUNE_3, 15, now=NOW)
    assert a.granted
    assert a.expires_at == NOW + timedelta(minutes=15)

    b = await start_checkout(db, "room-1", "guest-b", JUNE_2, JUNE_4, 15, now=NOW)
    assert b.failure.kind == ErrorKind.LOCK_CONFLICT

    verifier = FakeVerifier(verified("1000", "TX-1"))
    result = await submit_evidence(db, _submission(), verifier=verifier, publisher=publisher, now=NOW)
    assert result.confirmed
    assert result.payment_reference == "TX-1"
    assert not (await is_locked(db, "room-1", JUNE_1, JUNE_3, now=NOW)).locked

    b = await start_checkout(db, "room-1", "guest-b", JUNE_2, JUNE_4, 15, now=NOW)
    assert not b.granted
    assert b.failure.kind == ErrorKind.DATES_UNAVAILABLE

    c_verifier = FakeVerifier(verified("500", "TX-9"))
    c = await submit_evidence(
        db,
        _submission(guest="guest-c", room="room-2", amount="500"),
        verifier=c_verifier,
        publisher=publisher,
        now=NOW,
    )
    assert not c.confirmed
    assert c.failure.kind == ErrorKind.DUPLICATE_EVIDENCE
    assert c_verifier.calls == []


async def test_success_commits_booking_evidence_and_lock_release_together(db, tenant, publisher):
    await acquire_lock(db, "room-1", "guest-a", JUNE_1, JUNE_3, now=NOW)
    result = await submit_evidence(
        db, _submission(), verifier=FakeVerifier(verified()), publisher=publisher, now=NOW
    )

    booking = (await db.execute(select(Booking).where(Booking.id == result.booking_id))).scalar_one()
    assert booking.status == "confirmed"
    assert booking.is_draft is False
    assert booking.payment_reference == "TX-1"
    assert booking.payment_verified_at == NOW

    record = (await db.execute(select(PaymentEvidenceRecord))).scalar_one()
    assert record.booking_id == booking.id
    assert record.content_hash == fingerprint(b"h1")
    assert record.amount == Decimal("1000")

    assert await _count(db, ReservationLock) == 0
    assert await _count(db, BookingNight) == 2
    assert [e[0] for e in publisher.events] == ["booking.confirmed"]
    assert publisher.events[0][1]["booking_id"] == booking.id


@pytest.mark.parametrize(
    "outcome,kind",
    [
        (VerificationOutcome.failed("timeout"), ErrorKind.VERIFICATION_FAILED),
        (verified("900"), ErrorKind.AMOUNT_MISMATCH),
        (verified("1000", when=NOW - timedelta(hours=25)), ErrorKind.EVIDENCE_TOO_OLD),
    ],
)
async def test_rejected_evidence_removes_draft(db, tenant, publisher, outcome, kind):
    result = await submit_evidence(db, _submission(), verifier=FakeVerifier(outcome), publisher=publisher, now=NOW)

    assert not result.confirmed
    assert result.failure.kind == kind
    assert await _count(db, Booking) == 0
    assert await _count(db, BookingNight) == 0
    assert await _count(db, PaymentEvidenceRecord) == 0
    assert publisher.events == []

    other = await insert_booking(
        db,
        tenant_id="tenant-1",
        room_id="room-1",
        user_id="guest-b",
        check_in=JUNE_1,
        check_out=JUNE_3,
        guest_count=1,
        total_price=Decimal("1000"),
        status="pending",
        now=NOW,
    )
    assert other.ok


async def test_verification_failure_is_retryable(db, tenant, publisher):
    result = await submit_evidence(
        db,
        _submission(),
        verifier=FakeVerifier(VerificationOutcome.failed("circuit_open")),
        publisher=publisher,
        now=NOW,
    )
    assert result.failure.retryable
    assert result.failure.detail == "circuit_open"


def test_amount_tolerance():
    assert within_tolerance(Decimal("1000"), Decimal("999.50"), Decimal("1.00"))
    assert within_tolerance(Decimal("1000"), Decimal("1001.00"), Decimal("1.00"))
    assert not within_tolerance(Decimal("1000"), Decimal("1001.01"), Decimal("1.00"))
    assert not within_tolerance(Decimal("1000"), None, Decimal("1.00"))


async def test_reused_external_reference_is_duplicate(db, tenant, publisher):
    first = await submit_evidence(
        db, _submission(), verifier=FakeVerifier(verified(ref="TX-1")), publisher=publisher, now=NOW
    )
    assert first.confirmed

    second = await submit_evidence(
        db,
        _submission(guest="guest-b", room="room-2", evidence=b"re-photographed"),
        verifier=FakeVerifier(verified(ref="TX-1")),
        publisher=publisher,
        now=NOW,
    )
    assert second.failure.kind == ErrorKind.DUPLICATE_EVIDENCE
    assert await _count(db, Booking, Booking.room_id == "room-2") == 0


async def test_unexpected_error_cleans_up_and_reraises(db, tenant, publisher):
    with pytest.raises(RuntimeError):
        await submit_evidence(
            db, _submission(), verifier=FakeVerifier(error=RuntimeError("boom")), publisher=publisher, now=NOW
        )
    assert await _count(db, Booking) == 0


async def test_existing_pending_booking_is_reused_and_survives_failure(db, tenant, publisher):
    pending = await create_booking(
        db,
        tenant_id="tenant-1",
        room_id="room-1",
        user_id="guest-a",
        check_in=JUNE_1,
        check_out=JUNE_3,
        guest_count=2,
        total_price=Decimal("1000"),
        online_payment=False,
        now=NOW,
    )
    booking_id = pending.booking.id

    failed = await submit_evidence(
        db, _submission(), verifier=FakeVerifier(verified("10")), publisher=publisher, now=NOW
    )
    assert failed.failure.kind == ErrorKind.AMOUNT_MISMATCH
    survivor = (await db.execute(select(Booking).where(Booking.id == booking_id))).scalar_one()
    assert survivor.status == "pending"

    ok = await submit_evidence(db, _submission(), verifier=FakeVerifier(verified()), publisher=publisher, now=NOW)
    assert ok.confirmed
    assert ok.booking_id == booking_id
    assert await _count(db, Booking) == 1


async def test_other_holders_lock_blocks_submission(db, tenant, publisher):
    await acquire_lock(db, "room-1", "guest-b", JUNE_2, JUNE_4, 15, now=NOW)
    verifier = FakeVerifier(verified())

    result = await submit_evidence(db, _submission(), verifier=verifier, publisher=publisher, now=NOW)
    assert result.failure.kind == ErrorKind.LOCK_CONFLICT
    assert result.failure.retry_after == 15 * 60
    assert verifier.calls == []
    assert await _count(db, Booking) == 0


async def test_disabled_verifier_records_expected_amount(db, publisher):
    db.add(Tenant(id="tenant-1", name="Cash only", settings={"payment": {"verifier_enabled": False}}))
    await db.commit()
    verifier = FakeVerifier(verified())

    result = await submit_evidence(db, _submission(), verifier=verifier, publisher=publisher, now=NOW)
    assert result.confirmed
    assert result.payment_reference is None
    assert verifier.calls == []
    record = (await db.execute(select(PaymentEvidenceRecord))).scalar_one()
    assert record.amount == Decimal("1000")


class _SideEffectVerifier:
    def __init__(self, action):
        self.action = action

    async def verify(self, image_bytes, expected_amount):
        await self.action()
        return verified(ref="TX-77")


async def test_same_slip_committed_concurrently_loses_on_ledger(db, session_factory, tenant, publisher):
    async def other_guest_confirms_first():
        async with session_factory() as other:
            booking = (
                await insert_booking(
                    other,
                    tenant_id="tenant-1",
                    room_id="room-9",
                    user_id="guest-z",
                    check_in=JUNE_1,
                    check_out=JUNE_3,
                    guest_count=1,
                    total_price=Decimal("1000"),
                    status="confirmed",
                    now=NOW,
                )
            ).booking
            other.add(
                PaymentEvidenceRecord(
                    content_hash=fingerprint(b"h1"),
                    external_reference="TX-OTHER",
                    booking_id=booking.id,
                    tenant_id="tenant-1",
                    amount=Decimal("1000"),
                    verified_at=NOW,
                )
            )
            await other.commit()

    result = await submit_evidence(
        db, _submission(), verifier=_SideEffectVerifier(other_guest_confirms_first), publisher=publisher, now=NOW
    )
    assert result.failure.kind == ErrorKind.DUPLICATE_EVIDENCE
    assert await _count(db, Booking, Booking.room_id == "room-1") == 0
    assert await _count(db, PaymentEvidenceRecord) == 1
    assert publisher.events == []


async def test_booking_cancelled_during_verification(db, session_factory, tenant, publisher):
    pending = await create_booking(
        db,
        tenant_id="tenant-1",
        room_id="room-1",
        user_id="guest-a",
        check_in=JUNE_1,
        check_out=JUNE_3,
        guest_count=2,
        total_price=Decimal("1000"),
        online_payment=True,
        now=NOW,
    )

    async def host_cancels():
        async with session_factory() as other:
            row = (await other.execute(select(Booking).where(Booking.id == pending.booking.id))).scalar_one()
            row.status = "cancelled"
            await other.commit()

    result = await submit_evidence(
        db, _submission(), verifier=_SideEffectVerifier(host_cancels), publisher=publisher, now=NOW
    )
    assert result.failure.kind == ErrorKind.DATES_UNAVAILABLE
    assert await _count(db, PaymentEvidenceRecord) == 0


async def test_invalid_input_raises(db, tenant):
    with pytest.raises(ValueError):
        await submit_evidence(db, _submission(check_in=JUNE_3, check_out=JUNE_1), verifier=FakeVerifier())
    with pytest.raises(ValueError):
        await submit_evidence(db, _submission(amount="0"), verifier=FakeVerifier())
    with pytest.raises(ValueError):
        await submit_evidence(db, _submission(evidence=b""), verifier=FakeVerifier())


class _GatedVerifier:
    def __init__(self, outcome, during):
        self.outcome = outcome
        self.during = during

    async def verify(self, image_bytes, expected_amount):
        await self.during()
        return self.outcome


async def test_same_guest_submissions_never_share_a_draft(db, session_factory, tenant, publisher):
    second = {"verifier": FakeVerifier(verified(ref="TX-GOOD"))}

    async def same_guest_submits_good_slip():
        async with session_factory() as other:
            second["result"] = await submit_evidence(
                other, _submission(evidence=b"good"), verifier=second["verifier"], publisher=publisher, now=NOW
            )

    first = await submit_evidence(
        db,
        _submission(evidence=b"bad"),
        verifier=_GatedVerifier(VerificationOutcome.failed("invalid_image"), same_guest_submits_good_slip),
        publisher=publisher,
        now=NOW,
    )
    assert first.failure.kind == ErrorKind.VERIFICATION_FAILED

    # the in-flight draft held the nights, so the good slip was turned away before verification
    assert second["result"].failure.kind == ErrorKind.DATES_UNAVAILABLE
    assert second["verifier"].calls == []
    assert await _count(db, Booking) == 0
    assert await _count(db, PaymentEvidenceRecord) == 0

    retry = await submit_evidence(
        db, _submission(evidence=b"good"), verifier=FakeVerifier(verified(ref="TX-GOOD")), publisher=publisher, now=NOW
    )
    assert retry.confirmed
    assert await _count(db, PaymentEvidenceRecord) == 1


async def test_submitted_amount_must_match_existing_booking_total(db, tenant, publisher):
    pending = await create_booking(
        db,
        tenant_id="tenant-1",
        room_id="room-1",
        user_id="guest-a",
        check_in=JUNE_1,
        check_out=JUNE_3,
        guest_count=2,
        total_price=Decimal("5000"),
        online_payment=True,
        now=NOW,
    )
    verifier = FakeVerifier(verified("1"))

    result = await submit_evidence(db, _submission(amount="1"), verifier=verifier, publisher=publisher, now=NOW)
    assert result.failure.kind == ErrorKind.AMOUNT_MISMATCH
    assert verifier.calls == []
    row = (await db.execute(select(Booking).where(Booking.id == pending.booking.id))).scalar_one()
    assert row.status == "awaiting_payment"
    assert await _count(db, PaymentEvidenceRecord) == 0
