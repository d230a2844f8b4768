import hashlib
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import PaymentEvidenceRecord


@dataclass
class DuplicateCheck:
    duplicate: bool
    original_booking_id: str | None = None
    verified_at: datetime | None = None


def fingerprint(evidence_bytes: bytes) -> str:
    """
    SHA-256 of the raw slip bytes. Independent of file name or storage URL,
    so a re-uploaded copy of the same image hashes the same.
    """
    if not evidence_bytes:
        raise ValueError("evidence is empty")
    return hashlib.sha256(evidence_bytes).hexdigest()


async def _lookup(db: AsyncSession, clause) -> DuplicateCheck:
    res = await db.execute(
        select(PaymentEvidenceRecord.booking_id, PaymentEvidenceRecord.verified_at).where(clause).limit(1)
    )
    row = res.first()
    if not row:
        return DuplicateCheck(duplicate=False)
    return DuplicateCheck(duplicate=True, original_booking_id=row[0], verified_at=row[1])


async def check_duplicate_hash(db: AsyncSession, content_hash: str) -> DuplicateCheck:
    return await _lookup(db, PaymentEvidenceRecord.content_hash == content_hash)


async def check_duplicate_reference(db: AsyncSession, external_reference: str | None) -> DuplicateCheck:
    # only known once the verifier has answered
    if not external_reference:
        return DuplicateCheck(duplicate=False)
    return await _lookup(db, PaymentEvidenceRecord.external_reference == external_reference)
