import json
from dataclasses import asdict, dataclass, fields
from decimal import Decimal

import structlog
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import (
    DEFAULT_AMOUNT_TOLERANCE,
    DEFAULT_CANCELLATION_WINDOW_HOURS,
    DEFAULT_LOCK_TTL_MINUTES,
    DEFAULT_MAX_EVIDENCE_AGE_HOURS,
    TENANT_CACHE_TTL_SECONDS,
)
from .models import Tenant
from .redis_client import redis_client

logger = structlog.get_logger(__name__)


@dataclass
class TenantSettings:
    payment_timeout_minutes: int = DEFAULT_LOCK_TTL_MINUTES
    online_payment_enabled: bool = True
    verifier_enabled: bool = True
    amount_tolerance: Decimal = DEFAULT_AMOUNT_TOLERANCE
    max_evidence_age_hours: int = DEFAULT_MAX_EVIDENCE_AGE_HOURS
    cancellation_window_hours: int = DEFAULT_CANCELLATION_WINDOW_HOURS

    @classmethod
    def from_dict(cls, raw: dict | None) -> "TenantSettings":
        raw = raw or {}
        # the platform stores payment options under a nested "payment" key
        merged = {**raw, **(raw.get("payment") or {})}
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in merged.items() if k in known and v is not None}
        if "amount_tolerance" in values:
            values["amount_tolerance"] = Decimal(str(values["amount_tolerance"]))
        return cls(**values)

    def to_json(self) -> str:
        data = asdict(self)
        data["amount_tolerance"] = str(self.amount_tolerance)
        return json.dumps(data, separators=(",", ":"))


def _cache_key(tenant_id: str) -> str:
    return f"tenant_settings:{tenant_id}"


async def get_tenant_settings(db: AsyncSession, tenant_id: str) -> TenantSettings:
    """
    Tenant payment settings, cached in Redis for a short TTL.
    The cache is best effort; a Redis outage falls through to the database.
    """
    key = _cache_key(tenant_id)
    try:
        cached = await redis_client.get(key)
    except RedisError as e:
        logger.warning("tenant_cache_unavailable", error=str(e))
        cached = None
    if cached:
        return TenantSettings.from_dict(json.loads(cached))

    res = await db.execute(select(Tenant.settings).where(Tenant.id == tenant_id))
    raw = res.scalar_one_or_none()
    if raw is None:
        logger.info("tenant_settings_default", tenant_id=tenant_id)
    settings = TenantSettings.from_dict(raw)

    try:
        await redis_client.set(key, settings.to_json(), ex=TENANT_CACHE_TTL_SECONDS)
    except RedisError:
        pass
    return settings


async def invalidate_tenant_settings(tenant_id: str) -> None:
    await redis_client.delete(_cache_key(tenant_id))
