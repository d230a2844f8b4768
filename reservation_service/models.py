import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    ForeignKey,
    Integer,
    JSON,
    LargeBinary,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)

from .clock import utcnow
from .db import Base, UTCDateTime

BOOKING_STATUSES = ("pending", "awaiting_payment", "confirmed", "cancelled", "completed")

# statuses that hold the room's calendar
OCCUPYING_STATUSES = ("pending", "awaiting_payment", "confirmed")

# statuses a guest's own booking can be re-used from when evidence arrives
REUSABLE_STATUSES = ("pending", "awaiting_payment")


def _uuid() -> str:
    return str(uuid.uuid4())


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    settings = Column(JSON, nullable=False, default=dict)


class RoomBlackout(Base):
    __tablename__ = "room_blackouts"
    __table_args__ = (UniqueConstraint("room_id", "date", name="uq_room_blackouts_room_date"),)

    id = Column(Integer, primary_key=True)
    room_id = Column(String(36), nullable=False, index=True)
    date = Column(Date, nullable=False)
    is_blocked = Column(Boolean, nullable=False, default=True)


class ReservationLock(Base):
    __tablename__ = "reservation_locks"

    id = Column(String(36), primary_key=True, default=_uuid)
    room_id = Column(String(36), nullable=False, index=True)
    holder_id = Column(String(64), nullable=False, index=True)
    check_in = Column(Date, nullable=False)
    check_out = Column(Date, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False, index=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class LockNight(Base):
    """
    One row per night held by a lock. (room_id, night) is unique, so two
    overlapping locks can never both be written.
    """

    __tablename__ = "lock_nights"
    __table_args__ = (UniqueConstraint("room_id", "night", name="uq_lock_nights_room_night"),)

    id = Column(Integer, primary_key=True)
    lock_id = Column(String(36), ForeignKey("reservation_locks.id", ondelete="CASCADE"), nullable=False, index=True)
    room_id = Column(String(36), nullable=False)
    night = Column(Date, nullable=False)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    room_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(64), nullable=True, index=True)

    check_in = Column(Date, nullable=False)
    check_out = Column(Date, nullable=False)
    guest_count = Column(Integer, nullable=False, default=1)
    total_price = Column(Numeric(10, 2), nullable=False)
    notes = Column(Text, nullable=True)

    status = Column(String(20), nullable=False, index=True)
    is_draft = Column(Boolean, nullable=False, default=False)

    payment_evidence_url = Column(Text, nullable=True)
    payment_verified_at = Column(UTCDateTime, nullable=True)
    payment_reference = Column(String, nullable=True)
    verification_payload = Column(JSON, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    cancelled_at = Column(UTCDateTime, nullable=True)
    cancel_reason = Column(Text, nullable=True)


class BookingNight(Base):
    """
    Night claims of an occupying booking; the unique key is the storage-level
    overlap constraint.
    """

    __tablename__ = "booking_nights"
    __table_args__ = (UniqueConstraint("room_id", "night", name="uq_booking_nights_room_night"),)

    id = Column(Integer, primary_key=True)
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    room_id = Column(String(36), nullable=False)
    night = Column(Date, nullable=False)


class PaymentEvidenceRecord(Base):
    """Append-only ledger of accepted payment slips."""

    __tablename__ = "payment_evidence"

    id = Column(String(36), primary_key=True, default=_uuid)
    content_hash = Column(String(64), nullable=False, unique=True)
    external_reference = Column(String, nullable=True, unique=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    tenant_id = Column(String(36), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    evidence_url = Column(Text, nullable=True)
    verified_at = Column(UTCDateTime, nullable=False, default=utcnow)
    verifier_payload = Column(JSON, nullable=True)


class UploadToken(Base):
    __tablename__ = "upload_tokens"

    id = Column(String(36), primary_key=True, default=_uuid)
    token = Column(String(64), nullable=False, unique=True)
    user_id = Column(String(64), nullable=False, index=True)
    tenant_id = Column(String(36), nullable=False)
    room_id = Column(String(36), nullable=False)
    check_in = Column(Date, nullable=False)
    check_out = Column(Date, nullable=False)
    guest_count = Column(Integer, nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)
    notes = Column(Text, nullable=True)

    is_uploaded = Column(Boolean, nullable=False, default=False)
    slip_url = Column(Text, nullable=True)
    content_hash = Column(String(64), nullable=True)
    slip_image = Column(LargeBinary, nullable=True)
    slip_content_type = Column(String, nullable=True)

    expires_at = Column(UTCDateTime, nullable=False, index=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
