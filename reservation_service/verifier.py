import asyncio
import base64
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation

import httpx
import structlog
from dateutil import parser

from .breaker import CircuitBreaker, CircuitBreakerOpen
from .config import VERIFIER_API_KEY, VERIFIER_TIMEOUT_SECONDS, VERIFIER_URL

logger = structlog.get_logger(__name__)


@dataclass
class VerificationOutcome:
    success: bool
    transaction_reference: str | None = None
    verified_amount: Decimal | None = None
    payment_timestamp: datetime | None = None
    sender: dict | None = None
    receiver: dict | None = None
    payload: dict = field(default_factory=dict)
    error_code: str | None = None

    @classmethod
    def failed(cls, error_code: str, payload: dict | None = None) -> "VerificationOutcome":
        return cls(success=False, error_code=error_code, payload=payload or {})


def _amount(raw) -> Decimal | None:
    # {"amount": {"amount": 1000, "local": {...}}} or a bare number
    if isinstance(raw, dict):
        raw = raw.get("amount")
    if raw is None:
        return None
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        return None


def _timestamp(raw) -> datetime | None:
    if not raw:
        return None
    try:
        return parser.isoparse(raw)
    except (ValueError, TypeError):
        return None


def parse_response(body: dict) -> VerificationOutcome:
    data = body.get("data") or {}
    if not data:
        error = body.get("error")
        code = error.get("code") if isinstance(error, dict) else error
        return VerificationOutcome.failed(code or body.get("message") or "no_data", body)

    return VerificationOutcome(
        success=True,
        transaction_reference=data.get("transRef") or None,
        verified_amount=_amount(data.get("amount")),
        payment_timestamp=_timestamp(data.get("date")),
        sender=data.get("sender"),
        receiver=data.get("receiver"),
        payload=data,
    )


class SlipVerifier:
    """
    Client for the external slip-reading service: image in, parsed transfer out.

    Never raises for verifier trouble; timeouts, open breaker and upstream
    errors all come back as an unsuccessful outcome.
    """

    def __init__(
        self,
        url: str = VERIFIER_URL,
        api_key: str | None = VERIFIER_API_KEY,
        timeout_seconds: float = VERIFIER_TIMEOUT_SECONDS,
        breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.breaker = breaker or CircuitBreaker("slip-verifier", failure_threshold=5, reset_timeout_seconds=30)
        self._transport = transport

    async def verify(self, image_bytes: bytes, expected_amount: Decimal) -> VerificationOutcome:
        try:
            await self.breaker.allow_request()
        except CircuitBreakerOpen:
            logger.warning("verifier_circuit_open")
            return VerificationOutcome.failed("circuit_open")

        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "image": base64.b64encode(image_bytes).decode("ascii"),
            "expectedAmount": str(expected_amount),
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                resp = await asyncio.wait_for(
                    client.post(self.url, json=payload, headers=headers),
                    timeout=self.timeout_seconds,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            await self.breaker.record_failure()
            logger.warning("verifier_timeout", timeout_seconds=self.timeout_seconds)
            return VerificationOutcome.failed("timeout")
        except httpx.HTTPError as e:
            await self.breaker.record_failure()
            logger.warning("verifier_unreachable", error=str(e))
            return VerificationOutcome.failed("unreachable")

        if resp.status_code >= 500:
            await self.breaker.record_failure()
            logger.warning("verifier_upstream_error", status=resp.status_code)
            return VerificationOutcome.failed(f"upstream_{resp.status_code}")

        await self.breaker.record_success()

        try:
            body = resp.json()
        except ValueError:
            return VerificationOutcome.failed("invalid_response")
        if not isinstance(body, dict):
            return VerificationOutcome.failed("invalid_response")

        if resp.status_code >= 400:
            # the service is fine; it rejected this slip
            return VerificationOutcome.failed(body.get("message") or f"rejected_{resp.status_code}", body)

        return parse_response(body)


slip_verifier = SlipVerifier()
