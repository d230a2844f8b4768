from datetime import timedelta
from decimal import Decimal

import pytest

from reservation_service.confirmation import submit_from_token
from reservation_service.config import UPLOAD_MAX_BYTES
from reservation_service.evidence import fingerprint
from reservation_service.upload_tokens import (
    UploadRejected,
    check_status,
    create_token,
    fulfill,
    get_slip,
    get_uploaded_token,
)

from .conftest import JUNE_1, JUNE_3, NOW, FakeVerifier, verified


async def _token(db, user="guest-a", now=NOW):
    return await create_token(
        db,
        user_id=user,
        tenant_id="tenant-1",
        room_id="room-1",
        check_in=JUNE_1,
        check_out=JUNE_3,
        guest_count=2,
        total_price=Decimal("1000"),
        notes="late arrival",
        now=now,
    )


async def test_new_token_is_pending_for_fifteen_minutes(db):
    row = await _token(db)
    assert len(row.token) == 32
    assert row.expires_at == NOW + timedelta(minutes=15)

    status = await check_status(db, row.token, now=NOW)
    assert status.found
    assert not status.expired
    assert not status.is_uploaded

    assert (await check_status(db, row.token, now=NOW + timedelta(minutes=16))).expired
    assert not (await check_status(db, "nope", now=NOW)).found


async def test_new_token_replaces_previous_for_same_stay(db):
    old = await _token(db)
    new = await _token(db)
    assert old.token != new.token
    assert not (await check_status(db, old.token, now=NOW)).found
    assert (await check_status(db, new.token, now=NOW)).found


async def test_fulfill_is_single_use(db):
    row = await _token(db)

    status = await fulfill(db, row.token, b"png-bytes", "image/png", now=NOW)
    assert status.is_uploaded
    assert status.slip_url == f"/uploads/tokens/{row.token}/slip"
    assert status.content_hash == fingerprint(b"png-bytes")

    assert await fulfill(db, row.token, b"other", "image/png", now=NOW) is None
    assert await get_slip(db, row.token) == (b"png-bytes", "image/png")


async def test_fulfill_rejects_expired_token(db):
    row = await _token(db)
    assert await fulfill(db, row.token, b"png", "image/png", now=NOW + timedelta(minutes=20)) is None


@pytest.mark.parametrize(
    "data,content_type",
    [
        (b"%PDF", "application/pdf"),
        (b"png", None),
        (b"", "image/png"),
        (b"x" * (UPLOAD_MAX_BYTES + 1), "image/jpeg"),
    ],
)
async def test_fulfill_validates_upload(db, data, content_type):
    row = await _token(db)
    with pytest.raises(UploadRejected):
        await fulfill(db, row.token, data, content_type, now=NOW)


async def test_uploaded_token_lookup(db):
    row = await _token(db)
    assert await get_uploaded_token(db, row.token, now=NOW) is None
    await fulfill(db, row.token, b"png", "image/png", now=NOW)
    assert (await get_uploaded_token(db, row.token, now=NOW)).user_id == "guest-a"


async def test_submit_from_token_confirms_with_token_price(db, tenant, publisher):
    row = await _token(db)
    await fulfill(db, row.token, b"phone-photo", "image/jpeg", now=NOW)
    verifier = FakeVerifier(verified("1000"))

    result = await submit_from_token(db, row.token, "guest-a", verifier=verifier, publisher=publisher, now=NOW)
    assert result.confirmed
    assert verifier.calls == [(b"phone-photo", Decimal("1000"))]


async def test_submit_from_token_requires_owner_and_upload(db, tenant, publisher):
    row = await _token(db)
    verifier = FakeVerifier(verified())
    assert await submit_from_token(db, row.token, "guest-a", verifier=verifier, now=NOW) is None

    await fulfill(db, row.token, b"phone-photo", "image/jpeg", now=NOW)
    assert await submit_from_token(db, row.token, "guest-b", verifier=verifier, now=NOW) is None
    assert verifier.calls == []
