from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class DateRange(BaseModel):
    check_in: date
    check_out: date

    @model_validator(mode="after")
    def _ordered(self):
        if self.check_out <= self.check_in:
            raise ValueError("check_out must be after check_in")
        return self


class LockRequest(DateRange):
    room_id: str
    ttl_minutes: Optional[int] = Field(default=None, ge=1)


class ReleaseRequest(DateRange):
    room_id: str


class LockResponse(BaseModel):
    granted: bool
    lock_id: Optional[str] = None
    expires_at: Optional[datetime] = None


class LockStatusResponse(BaseModel):
    locked: bool
    held_until: Optional[datetime] = None


class ConflictOut(BaseModel):
    booking_id: str
    check_in: date
    check_out: date
    status: str


class AvailabilityResponse(BaseModel):
    room_id: str
    check_in: date
    check_out: date
    available: bool
    blocked_dates: List[date] = []
    conflicts: List[ConflictOut] = []
    locked: bool = False
    lock_held_until: Optional[datetime] = None


class CreateBooking(DateRange):
    tenant_id: str
    room_id: str
    guest_count: int = Field(default=1, ge=1)
    total_price: Decimal = Field(gt=0)
    notes: Optional[str] = None


class BookingOut(BaseModel):
    id: str
    tenant_id: str
    room_id: str
    user_id: Optional[str] = None
    check_in: date
    check_out: date
    guest_count: int
    total_price: Decimal
    status: str
    notes: Optional[str] = None
    payment_reference: Optional[str] = None
    payment_verified_at: Optional[datetime] = None
    created_at: datetime
    cancelled_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class CancelRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class ConfirmationResponse(BaseModel):
    confirmed: bool
    booking_id: str
    payment_reference: Optional[str] = None
    verified_at: datetime


class FromTokenRequest(BaseModel):
    token: str


class CreateUploadToken(DateRange):
    tenant_id: str
    room_id: str
    guest_count: int = Field(default=1, ge=1)
    total_price: Decimal = Field(gt=0)
    notes: Optional[str] = None


class UploadTokenOut(BaseModel):
    token: str
    upload_url: str
    expires_at: datetime


class UploadTokenStatus(BaseModel):
    token: str
    expired: bool
    is_uploaded: bool
    slip_url: Optional[str] = None
    expires_at: Optional[datetime] = None
