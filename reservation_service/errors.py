from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    LOCK_CONFLICT = "lock_conflict"
    DATES_UNAVAILABLE = "dates_unavailable"
    DUPLICATE_EVIDENCE = "duplicate_evidence"
    AMOUNT_MISMATCH = "amount_mismatch"
    VERIFICATION_FAILED = "verification_failed"
    EVIDENCE_TOO_OLD = "evidence_too_old"
    RATE_LIMITED = "rate_limited"
    # never returned to callers: mapped to DATES_UNAVAILABLE where it is caught
    STORAGE_CONFLICT = "storage_conflict"


MESSAGES = {
    ErrorKind.LOCK_CONFLICT: "Another guest is completing payment for these dates. Please try again in a few minutes.",
    ErrorKind.DATES_UNAVAILABLE: "These dates were just booked or are blocked. Please choose different dates.",
    ErrorKind.DUPLICATE_EVIDENCE: "This payment slip has already been used for a booking. Please make a new payment and upload the new slip.",
    ErrorKind.AMOUNT_MISMATCH: "The transferred amount does not match the booking total. Please upload the correct slip or contact the property.",
    ErrorKind.VERIFICATION_FAILED: "We could not verify this payment slip right now. Please try again.",
    ErrorKind.EVIDENCE_TOO_OLD: "This payment slip is too old. Please make a new payment and upload the new slip.",
    ErrorKind.RATE_LIMITED: "Too many attempts. Please wait before trying again.",
    ErrorKind.STORAGE_CONFLICT: "These dates were just booked or are blocked. Please choose different dates.",
}

RETRYABLE = {
    ErrorKind.LOCK_CONFLICT,
    ErrorKind.VERIFICATION_FAILED,
    ErrorKind.RATE_LIMITED,
}

HTTP_STATUS = {
    ErrorKind.LOCK_CONFLICT: 409,
    ErrorKind.DATES_UNAVAILABLE: 409,
    ErrorKind.DUPLICATE_EVIDENCE: 409,
    ErrorKind.AMOUNT_MISMATCH: 422,
    ErrorKind.EVIDENCE_TOO_OLD: 422,
    ErrorKind.VERIFICATION_FAILED: 502,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.STORAGE_CONFLICT: 409,
}


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    detail: str | None = None
    retry_after: int | None = None

    @property
    def message(self) -> str:
        return MESSAGES[self.kind]

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE

    def as_dict(self) -> dict:
        body = {
            "error": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.detail:
            body["detail"] = self.detail
        if self.retry_after is not None:
            body["retry_after"] = self.retry_after
        return body


def failure(kind: ErrorKind, detail: str | None = None, retry_after: int | None = None) -> Failure:
    if kind == ErrorKind.STORAGE_CONFLICT:
        kind = ErrorKind.DATES_UNAVAILABLE
    return Failure(kind=kind, detail=detail, retry_after=retry_after)
