import asyncio

import structlog
from fastapi import FastAPI
from redis.exceptions import RedisError

from .logging_setup import configure_logging
from .middleware import RequestLoggingMiddleware
from .rabbitmq import publisher
from .routes import router
from .sweeper import completion_loop, sweep_loop
from .verifier import slip_verifier

configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(title="Reservation Service")
app.add_middleware(RequestLoggingMiddleware)
app.include_router(router)

_stop_event = asyncio.Event()
_tasks: list[asyncio.Task] = []


@app.get("/health")
async def health():
    try:
        verifier = await slip_verifier.breaker.status()
    except RedisError:
        verifier = {"name": slip_verifier.breaker.name, "state": "unknown"}
    return {
        "status": "ok",
        "service": "reservation-service",
        "events_enabled": publisher.enabled,
        "verifier": verifier,
    }


@app.on_event("startup")
async def startup():
    try:
        await publisher.connect()
    except Exception as e:
        logger.warning("rabbitmq_unavailable_at_startup", error=str(e))

    _stop_event.clear()
    _tasks.append(asyncio.create_task(sweep_loop(_stop_event)))
    _tasks.append(asyncio.create_task(completion_loop(_stop_event)))


@app.on_event("shutdown")
async def shutdown():
    _stop_event.set()
    for task in _tasks:
        try:
            await task
        except Exception:
            logger.exception("background_task_failed")
    _tasks.clear()
    await publisher.close()
