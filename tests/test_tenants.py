import json
from decimal import Decimal

from redis.exceptions import ConnectionError as RedisConnectionError

from reservation_service import tenants
from reservation_service.models import Tenant
from reservation_service.tenants import TenantSettings, get_tenant_settings, invalidate_tenant_settings


def test_from_dict_merges_nested_payment_options():
    settings = TenantSettings.from_dict(
        {"payment_timeout_minutes": 30, "payment": {"verifier_enabled": False, "amount_tolerance": "0.50"}, "theme": "x"}
    )
    assert settings.payment_timeout_minutes == 30
    assert settings.verifier_enabled is False
    assert settings.amount_tolerance == Decimal("0.50")
    assert settings.online_payment_enabled is True


def test_defaults():
    settings = TenantSettings.from_dict(None)
    assert settings.payment_timeout_minutes == 15
    assert settings.amount_tolerance == Decimal("1.00")
    assert settings.max_evidence_age_hours == 24
    assert settings.cancellation_window_hours == 24


async def test_settings_are_cached(db, fake_redis):
    db.add(Tenant(id="t-1", name="Baan Suan", settings={"payment_timeout_minutes": 20}))
    await db.commit()

    assert (await get_tenant_settings(db, "t-1")).payment_timeout_minutes == 20
    cached = json.loads(await fake_redis.get("tenant_settings:t-1"))
    assert cached["payment_timeout_minutes"] == 20

    # a cached value wins until invalidated
    await fake_redis.set("tenant_settings:t-1", TenantSettings(payment_timeout_minutes=45).to_json())
    assert (await get_tenant_settings(db, "t-1")).payment_timeout_minutes == 45

    await invalidate_tenant_settings("t-1")
    assert (await get_tenant_settings(db, "t-1")).payment_timeout_minutes == 20


async def test_unknown_tenant_gets_defaults(db):
    assert await get_tenant_settings(db, "missing") == TenantSettings()


async def test_redis_outage_falls_back_to_database(db, monkeypatch):
    class Down:
        async def get(self, key):
            raise RedisConnectionError("down")

        async def set(self, *args, **kwargs):
            raise RedisConnectionError("down")

    monkeypatch.setattr(tenants, "redis_client", Down())
    db.add(Tenant(id="t-1", name="Baan Suan", settings={"payment": {"online_payment_enabled": False}}))
    await db.commit()

    assert (await get_tenant_settings(db, "t-1")).online_payment_enabled is False
