from datetime import date, datetime, timezone
from decimal import Decimal

import fakeredis
import pytest

from reservation_service import models  # noqa: F401  registers tables
from reservation_service import ratelimit, tenants
from reservation_service.db import Base, get_engine, get_session
from reservation_service.models import Tenant
from reservation_service.verifier import VerificationOutcome

NOW = datetime(2025, 5, 20, 10, 0, tzinfo=timezone.utc)
JUNE_1 = date(2025, 6, 1)
JUNE_2 = date(2025, 6, 2)
JUNE_3 = date(2025, 6, 3)
JUNE_4 = date(2025, 6, 4)


class FakeVerifier:
    def __init__(self, outcome: VerificationOutcome | None = None, error: Exception | None = None):
        self.outcome = outcome
        self.error = error
        self.calls = []

    async def verify(self, image_bytes, expected_amount):
        self.calls.append((image_bytes, expected_amount))
        if self.error:
            raise self.error
        return self.outcome


class FakePublisher:
    enabled = True

    def __init__(self):
        self.events = []

    async def publish_event(self, event_type, data):
        self.events.append((event_type, data))


def verified(amount="1000", ref="TX-1", when: datetime = NOW) -> VerificationOutcome:
    return VerificationOutcome(
        success=True,
        transaction_reference=ref,
        verified_amount=Decimal(amount),
        payment_timestamp=when,
        payload={"transRef": ref, "amount": {"amount": amount}},
    )


@pytest.fixture
async def engine(tmp_path):
    eng = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'reservations.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis():
    return fakeredis.FakeAsyncRedis(decode_responses=True)


@pytest.fixture(autouse=True)
def _redis(monkeypatch, fake_redis):
    monkeypatch.setattr(tenants, "redis_client", fake_redis)
    monkeypatch.setattr(ratelimit, "redis_client", fake_redis)


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
async def tenant(db):
    row = Tenant(id="tenant-1", name="Baan Suan", settings={"payment_timeout_minutes": 15})
    db.add(row)
    await db.commit()
    return row
