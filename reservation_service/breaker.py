import time

import structlog

from .redis_client import redis_client

logger = structlog.get_logger(__name__)


class CircuitBreakerOpen(Exception):
    pass


class CircuitBreaker:
    """
    Redis-backed circuit breaker, shared by every request handler process.

    States:
      - CLOSED: allow calls, count failures
      - OPEN: reject calls for reset_timeout seconds
      - HALF_OPEN: after timeout, allow one trial call
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout_seconds: int = 30,
        failure_window_seconds: int = 60,
        redis=None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self.failure_window_seconds = failure_window_seconds
        self.redis = redis or redis_client

    def _key(self, part: str) -> str:
        return f"cb:{self.name}:{part}"

    async def _get_state(self) -> str:
        state = await self.redis.get(self._key("state"))
        return state or "CLOSED"

    async def allow_request(self) -> None:
        state = await self._get_state()

        if state == "OPEN":
            opened_at = await self.redis.get(self._key("opened_at"))
            if not opened_at:
                await self.close()
                return

            if (time.time() - float(opened_at)) >= self.reset_timeout_seconds:
                await self.redis.set(self._key("state"), "HALF_OPEN")
                logger.info("breaker_half_open", breaker=self.name)
                return

            raise CircuitBreakerOpen(f"Circuit breaker OPEN for {self.name}")

        # CLOSED and HALF_OPEN both let the call through

    async def record_success(self) -> None:
        if await self._get_state() != "CLOSED":
            logger.info("breaker_closed", breaker=self.name)
        await self.close()

    async def record_failure(self) -> None:
        if await self._get_state() == "HALF_OPEN":
            await self.open()
            return

        failures = await self.redis.incr(self._key("failures"))
        if failures == 1:
            await self.redis.expire(self._key("failures"), self.failure_window_seconds)

        if failures >= self.failure_threshold:
            await self.open()

    async def open(self) -> None:
        pipe = self.redis.pipeline()
        pipe.set(self._key("state"), "OPEN", ex=self.reset_timeout_seconds + 30)
        pipe.set(self._key("opened_at"), str(time.time()), ex=self.reset_timeout_seconds + 30)
        await pipe.execute()
        logger.warning("breaker_opened", breaker=self.name)

    async def close(self) -> None:
        pipe = self.redis.pipeline()
        pipe.set(self._key("state"), "CLOSED", ex=3600)
        pipe.delete(self._key("failures"))
        pipe.delete(self._key("opened_at"))
        await pipe.execute()

    async def status(self) -> dict:
        failures = await self.redis.get(self._key("failures"))
        return {
            "name": self.name,
            "state": await self._get_state(),
            "failures": int(failures or 0),
        }
