import aio_pika
import structlog

from .config import EVENTS_EXCHANGE, RABBIT_URL
from .events import build_event, to_json

logger = structlog.get_logger(__name__)


class RabbitPublisher:
    """
    Booking notifications (booking.confirmed, booking.cancelled) for the
    notifier. Publishing never raises: a lost notification must not undo a booking.
    """

    def __init__(self, url: str | None = RABBIT_URL, exchange_name: str = EVENTS_EXCHANGE):
        self.url = url
        self.exchange_name = exchange_name
        self.enabled = bool(url)
        self._connection: aio_pika.RobustConnection | None = None
        self._exchange: aio_pika.abc.AbstractExchange | None = None

    @property
    def connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    def _reset(self):
        self._connection = None
        self._exchange = None

    async def connect(self):
        if not self.enabled or self.connected:
            return
        try:
            self._connection = await aio_pika.connect_robust(self.url)
            channel = await self._connection.channel()
            self._exchange = await channel.declare_exchange(
                self.exchange_name, aio_pika.ExchangeType.TOPIC, durable=True
            )
            logger.info("events_exchange_ready", exchange=self.exchange_name)
        except Exception as e:
            logger.warning("events_connect_failed", exchange=self.exchange_name, error=str(e))
            self._reset()
            raise

    async def _ensure_exchange(self) -> aio_pika.abc.AbstractExchange | None:
        try:
            await self.connect()
        except Exception:
            return None
        return self._exchange

    async def publish_event(self, event_type: str, data: dict) -> bool:
        if not self.enabled:
            return False

        exchange = await self._ensure_exchange()
        if exchange is None:
            return False

        event = build_event(event_type, data)
        message = aio_pika.Message(
            body=to_json(event).encode("utf-8"),
            content_type="application/json",
            message_id=event["event_id"],
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        try:
            await exchange.publish(message, routing_key=event_type)
        except Exception as e:
            logger.warning("event_publish_failed", event_type=event_type, error=str(e))
            return False
        return True

    async def close(self):
        try:
            if self.connected:
                await self._connection.close()
        finally:
            self._reset()


publisher = RabbitPublisher()
