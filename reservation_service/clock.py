from datetime import date, datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def expires_after(ttl: timedelta, now: datetime | None = None) -> datetime:
    return (now or utcnow()) + ttl


def is_expired(expires_at: datetime, now: datetime | None = None) -> bool:
    return (now or utcnow()) > expires_at


def validate_range(check_in: date, check_out: date) -> None:
    if check_out <= check_in:
        raise ValueError("check_out must be after check_in")


def nights(check_in: date, check_out: date) -> list[date]:
    """
    Nights covered by the half-open range [check_in, check_out).
    """
    validate_range(check_in, check_out)
    return [check_in + timedelta(days=i) for i in range((check_out - check_in).days)]


def overlaps(a_start: date, a_end: date, b_start: date, b_end: date) -> bool:
    return a_start < b_end and a_end > b_start
