import json
import uuid
from datetime import datetime, timezone


def build_event(event_type: str, data: dict) -> dict:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }


def to_json(event: dict) -> str:
    # dates, datetimes and Decimals go out as strings
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False, default=str)


def booking_event_data(booking) -> dict:
    return {
        "booking_id": booking.id,
        "tenant_id": booking.tenant_id,
        "room_id": booking.room_id,
        "user_id": booking.user_id,
        "check_in": booking.check_in.isoformat(),
        "check_out": booking.check_out.isoformat(),
        "guest_count": booking.guest_count,
        "total_price": str(booking.total_price),
        "status": booking.status,
        "notes": booking.notes,
        "payment_reference": booking.payment_reference,
    }
