"""
Short-lived tokens that let a guest photograph the payment slip on a phone
while checking out on another device.
"""

import secrets
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .clock import expires_after, utcnow, validate_range
from .config import UPLOAD_MAX_BYTES, UPLOAD_TOKEN_TTL_MINUTES
from .evidence import fingerprint
from .models import UploadToken

logger = structlog.get_logger(__name__)


class UploadRejected(ValueError):
    pass


@dataclass
class TokenStatus:
    found: bool
    expired: bool = False
    is_uploaded: bool = False
    slip_url: str | None = None
    content_hash: str | None = None
    expires_at: datetime | None = None


def slip_path(token: str) -> str:
    return f"/uploads/tokens/{token}/slip"


async def create_token(
    db: AsyncSession,
    *,
    user_id: str,
    tenant_id: str,
    room_id: str,
    check_in: date,
    check_out: date,
    guest_count: int,
    total_price: Decimal,
    notes: str | None = None,
    now: datetime | None = None,
) -> UploadToken:
    """
    Issue a fresh token. Earlier tokens of the same guest for the same stay
    are dropped so only the latest QR code works.
    """
    validate_range(check_in, check_out)
    now = now or utcnow()

    await db.execute(
        delete(UploadToken).where(
            UploadToken.user_id == user_id,
            UploadToken.room_id == room_id,
            UploadToken.check_in == check_in,
            UploadToken.check_out == check_out,
        )
    )
    row = UploadToken(
        token=secrets.token_urlsafe(24),
        user_id=user_id,
        tenant_id=tenant_id,
        room_id=room_id,
        check_in=check_in,
        check_out=check_out,
        guest_count=guest_count,
        total_price=total_price,
        notes=notes,
        is_uploaded=False,
        expires_at=expires_after(timedelta(minutes=UPLOAD_TOKEN_TTL_MINUTES), now),
        created_at=now,
    )
    db.add(row)
    await db.commit()
    logger.info("upload_token_created", user_id=user_id, room_id=room_id)
    return row


async def _get(db: AsyncSession, token: str) -> UploadToken | None:
    res = await db.execute(select(UploadToken).where(UploadToken.token == token))
    return res.scalar_one_or_none()


async def check_status(db: AsyncSession, token: str, now: datetime | None = None) -> TokenStatus:
    now = now or utcnow()
    row = await _get(db, token)
    if not row:
        return TokenStatus(found=False)
    return TokenStatus(
        found=True,
        expired=row.expires_at < now,
        is_uploaded=row.is_uploaded,
        slip_url=row.slip_url,
        content_hash=row.content_hash,
        expires_at=row.expires_at,
    )


async def fulfill(
    db: AsyncSession,
    token: str,
    data: bytes,
    content_type: str | None,
    now: datetime | None = None,
) -> TokenStatus | None:
    """
    Attach the slip image to a token. Each token accepts exactly one upload.
    Returns None when the token is unknown, expired or already used.
    """
    if not content_type or not content_type.startswith("image/"):
        raise UploadRejected("Only image files are allowed")
    if not data:
        raise UploadRejected("Empty file")
    if len(data) > UPLOAD_MAX_BYTES:
        raise UploadRejected("File exceeds the 10 MB limit")

    now = now or utcnow()
    content_hash = fingerprint(data)
    res = await db.execute(
        update(UploadToken)
        .where(
            UploadToken.token == token,
            UploadToken.is_uploaded.is_(False),
            UploadToken.expires_at >= now,
        )
        .values(
            is_uploaded=True,
            slip_url=slip_path(token),
            content_hash=content_hash,
            slip_image=data,
            slip_content_type=content_type,
        )
    )
    if not res.rowcount:
        await db.rollback()
        return None
    await db.commit()

    logger.info("upload_token_fulfilled", content_hash=content_hash, size=len(data))
    return TokenStatus(found=True, is_uploaded=True, slip_url=slip_path(token), content_hash=content_hash)


async def get_slip(db: AsyncSession, token: str) -> tuple[bytes, str] | None:
    res = await db.execute(
        select(UploadToken.slip_image, UploadToken.slip_content_type).where(
            UploadToken.token == token, UploadToken.is_uploaded.is_(True)
        )
    )
    row = res.first()
    if not row or row[0] is None:
        return None
    return row[0], row[1] or "application/octet-stream"


async def get_uploaded_token(db: AsyncSession, token: str, now: datetime | None = None) -> UploadToken | None:
    now = now or utcnow()
    row = await _get(db, token)
    if not row or not row.is_uploaded or row.expires_at < now:
        return None
    return row


async def delete_expired(db: AsyncSession, now: datetime) -> int:
    res = await db.execute(delete(UploadToken).where(UploadToken.expires_at < now))
    return res.rowcount or 0
