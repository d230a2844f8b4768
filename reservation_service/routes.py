from datetime import date
from decimal import Decimal
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Response, UploadFile
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .availability import is_available
from .bookings import CANCEL_MESSAGES, CancelError, cancel_booking, create_booking
from .clock import utcnow
from .config import (
    CANCEL_RATE_LIMIT,
    EVIDENCE_RATE_LIMIT,
    LOCK_RATE_LIMIT,
    UPLOAD_MAX_BYTES,
    UPLOAD_TOKEN_RATE_LIMIT,
)
from .confirmation import (
    ConfirmationResult,
    EvidenceSubmission,
    start_checkout,
    submit_evidence,
    submit_from_token,
)
from .db import get_db
from .errors import HTTP_STATUS, ErrorKind, Failure, failure
from .locks import is_locked, release_lock
from .ratelimit import hit
from .schemas import (
    AvailabilityResponse,
    BookingOut,
    CancelRequest,
    ConfirmationResponse,
    ConflictOut,
    CreateBooking,
    CreateUploadToken,
    FromTokenRequest,
    LockRequest,
    LockResponse,
    LockStatusResponse,
    ReleaseRequest,
    UploadTokenOut,
    UploadTokenStatus,
)
from .security import get_current_user, is_host
from .tenants import get_tenant_settings
from .upload_tokens import UploadRejected, check_status, create_token, fulfill, get_slip, slip_path

logger = structlog.get_logger(__name__)

router = APIRouter()

CANCEL_STATUS = {
    CancelError.NOT_FOUND: 404,
    CancelError.FORBIDDEN: 403,
    CancelError.ALREADY_CANCELLED: 409,
    CancelError.COMPLETED: 409,
    CancelError.WINDOW_EXPIRED: 409,
}


def _raise_failure(f: Failure):
    headers = None
    if f.retry_after is not None:
        headers = {"Retry-After": str(f.retry_after)}
    raise HTTPException(status_code=HTTP_STATUS[f.kind], detail=f.as_dict(), headers=headers)


async def _rate_limit(scope: str, identity: str, limit: int):
    decision = await hit(scope, identity, limit)
    if not decision.allowed:
        _raise_failure(failure(ErrorKind.RATE_LIMITED, retry_after=decision.retry_after))


def _confirmation_out(result: ConfirmationResult) -> ConfirmationResponse:
    if not result.confirmed:
        _raise_failure(result.failure)
    return ConfirmationResponse(
        confirmed=True,
        booking_id=result.booking_id,
        payment_reference=result.payment_reference,
        verified_at=result.verified_at,
    )


# ---------------- Locks ----------------

@router.post("/locks", response_model=LockResponse)
async def post_lock(data: LockRequest, user=Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    holder = user["sub"]
    await _rate_limit("lock", holder, LOCK_RATE_LIMIT)

    try:
        result = await start_checkout(db, data.room_id, holder, data.check_in, data.check_out, data.ttl_minutes)
    except SQLAlchemyError as e:
        # no lock decision without the store
        logger.error("lock_store_unavailable", room_id=data.room_id, error=str(e))
        raise HTTPException(status_code=503, detail="Reservation service temporarily unavailable")

    if not result.granted:
        if result.held_until:
            retry_after = max(0, int((result.held_until - utcnow()).total_seconds()))
            _raise_failure(failure(result.failure.kind, retry_after=retry_after))
        _raise_failure(result.failure)

    return LockResponse(granted=True, lock_id=result.lock_id, expires_at=result.expires_at)


@router.delete("/locks")
async def delete_lock(data: ReleaseRequest, user=Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    released = await release_lock(db, data.room_id, user["sub"], data.check_in, data.check_out)
    return {"released": released}


@router.get("/locks/status", response_model=LockStatusResponse)
async def lock_status(
    room_id: str,
    check_in: date,
    check_out: date,
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if check_out <= check_in:
        raise HTTPException(status_code=400, detail="check_out must be after check_in")
    status = await is_locked(db, room_id, check_in, check_out, excluding_holder=user["sub"])
    return LockStatusResponse(locked=status.locked, held_until=status.held_until)


# ---------------- Availability ----------------

@router.get("/rooms/{room_id}/availability", response_model=AvailabilityResponse)
async def room_availability(
    room_id: str,
    check_in: date = Query(...),
    check_out: date = Query(...),
    db: AsyncSession = Depends(get_db),
):
    if check_out <= check_in:
        raise HTTPException(status_code=400, detail="check_out must be after check_in")

    result = await is_available(db, room_id, check_in, check_out)
    lock = await is_locked(db, room_id, check_in, check_out)
    return AvailabilityResponse(
        room_id=room_id,
        check_in=check_in,
        check_out=check_out,
        available=result.available,
        blocked_dates=result.blocked_dates,
        conflicts=[ConflictOut(**c.__dict__) for c in result.conflicts],
        locked=lock.locked,
        lock_held_until=lock.held_until,
    )


# ---------------- Payments ----------------

@router.post("/payments/evidence", response_model=ConfirmationResponse)
async def post_evidence(
    tenant_id: str = Form(...),
    room_id: str = Form(...),
    check_in: date = Form(...),
    check_out: date = Form(...),
    expected_amount: Decimal = Form(..., gt=0),
    guest_count: int = Form(1, ge=1),
    notes: Optional[str] = Form(None),
    slip: UploadFile = File(...),
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    guest = user["sub"]
    await _rate_limit("evidence", guest, EVIDENCE_RATE_LIMIT)

    data = await slip.read(UPLOAD_MAX_BYTES + 1)
    if not data:
        raise HTTPException(status_code=400, detail="Empty payment slip")
    if len(data) > UPLOAD_MAX_BYTES:
        raise HTTPException(status_code=413, detail="Payment slip exceeds the 10 MB limit")

    submission = EvidenceSubmission(
        tenant_id=tenant_id,
        room_id=room_id,
        guest_id=guest,
        check_in=check_in,
        check_out=check_out,
        evidence_bytes=data,
        expected_amount=expected_amount,
        guest_count=guest_count,
        notes=notes,
    )
    try:
        result = await submit_evidence(db, submission)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _confirmation_out(result)


@router.post("/payments/evidence/from-token", response_model=ConfirmationResponse)
async def post_evidence_from_token(
    data: FromTokenRequest, user=Depends(get_current_user), db: AsyncSession = Depends(get_db)
):
    guest = user["sub"]
    await _rate_limit("evidence", guest, EVIDENCE_RATE_LIMIT)

    result = await submit_from_token(db, data.token, guest)
    if result is None:
        raise HTTPException(status_code=404, detail="No uploaded slip for this token")
    return _confirmation_out(result)


# ---------------- Bookings ----------------

@router.post("/bookings", response_model=BookingOut, status_code=201)
async def post_booking(data: CreateBooking, user=Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    settings = await get_tenant_settings(db, data.tenant_id)
    result = await create_booking(
        db,
        tenant_id=data.tenant_id,
        room_id=data.room_id,
        user_id=user["sub"],
        check_in=data.check_in,
        check_out=data.check_out,
        guest_count=data.guest_count,
        total_price=data.total_price,
        notes=data.notes,
        online_payment=settings.online_payment_enabled,
        lock_ttl_minutes=settings.payment_timeout_minutes,
    )
    if not result.ok:
        _raise_failure(result.failure)
    return result.booking


@router.post("/bookings/{booking_id}/cancel", response_model=BookingOut)
async def post_cancel(
    booking_id: str,
    data: CancelRequest,
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    actor = user["sub"]
    await _rate_limit("cancel", actor, CANCEL_RATE_LIMIT)

    result = await cancel_booking(db, booking_id, actor, data.reason, by_host=is_host(user))
    if not result.ok:
        raise HTTPException(
            status_code=CANCEL_STATUS[result.error],
            detail={"error": result.error.value, "message": CANCEL_MESSAGES[result.error]},
        )
    return result.booking


# ---------------- Upload tokens ----------------

@router.post("/uploads/tokens", response_model=UploadTokenOut, status_code=201)
async def post_upload_token(
    data: CreateUploadToken, user=Depends(get_current_user), db: AsyncSession = Depends(get_db)
):
    await _rate_limit("upload_token", user["sub"], UPLOAD_TOKEN_RATE_LIMIT)
    row = await create_token(
        db,
        user_id=user["sub"],
        tenant_id=data.tenant_id,
        room_id=data.room_id,
        check_in=data.check_in,
        check_out=data.check_out,
        guest_count=data.guest_count,
        total_price=data.total_price,
        notes=data.notes,
    )
    return UploadTokenOut(token=row.token, upload_url=slip_path(row.token), expires_at=row.expires_at)


@router.get("/uploads/tokens/{token}", response_model=UploadTokenStatus)
async def get_upload_token(token: str, db: AsyncSession = Depends(get_db)):
    status = await check_status(db, token)
    if not status.found:
        raise HTTPException(status_code=404, detail="Upload token not found")
    return UploadTokenStatus(
        token=token,
        expired=status.expired,
        is_uploaded=status.is_uploaded,
        slip_url=status.slip_url,
        expires_at=status.expires_at,
    )


@router.post("/uploads/tokens/{token}/slip", response_model=UploadTokenStatus)
async def post_upload_slip(token: str, slip: UploadFile = File(...), db: AsyncSession = Depends(get_db)):
    current = await check_status(db, token)
    if not current.found:
        raise HTTPException(status_code=404, detail="Upload token not found")

    data = await slip.read(UPLOAD_MAX_BYTES + 1)
    try:
        status = await fulfill(db, token, data, slip.content_type)
    except UploadRejected as e:
        raise HTTPException(status_code=400, detail=str(e))
    if status is None:
        raise HTTPException(status_code=410, detail="Upload token expired or already used")

    return UploadTokenStatus(
        token=token,
        expired=False,
        is_uploaded=True,
        slip_url=status.slip_url,
        expires_at=current.expires_at,
    )


@router.get("/uploads/tokens/{token}/slip")
async def get_upload_slip(token: str, db: AsyncSession = Depends(get_db)):
    slip = await get_slip(db, token)
    if not slip:
        raise HTTPException(status_code=404, detail="No slip uploaded for this token")
    content, content_type = slip
    return Response(content=content, media_type=content_type)
