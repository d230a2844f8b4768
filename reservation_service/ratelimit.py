import time
from dataclasses import dataclass

import structlog
from redis.exceptions import RedisError

from .redis_client import redis_client

logger = structlog.get_logger(__name__)


@dataclass
class RateDecision:
    allowed: bool
    count: int = 0
    retry_after: int = 0


async def hit(scope: str, identity: str, max_per_minute: int, now: float | None = None) -> RateDecision:
    """
    Fixed one-minute window per (scope, identity). Redis being down lets the
    request through; the lock and ledger still guard correctness.
    """
    now = time.time() if now is None else now
    epoch_minute = int(now // 60)
    key = f"rl:{scope}:{identity}:{epoch_minute}"

    try:
        count = await redis_client.incr(key)
        if count == 1:
            await redis_client.expire(key, 70)
    except RedisError as e:
        logger.warning("rate_limit_unavailable", scope=scope, error=str(e))
        return RateDecision(allowed=True)

    if count > max_per_minute:
        retry_after = max(1, int((epoch_minute + 1) * 60 - now))
        logger.info("rate_limited", scope=scope, identity=identity, count=count)
        return RateDecision(allowed=False, count=count, retry_after=retry_after)
    return RateDecision(allowed=True, count=count)
