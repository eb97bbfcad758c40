import pytest

from qr2buy.errors import DuplicateKey
from qr2buy.model.db import STATUS_AVAILABLE, STATUS_SOLD

pytestmark = pytest.mark.anyio


async def test_create_product_generates_short_id(store):
    p = await store.create_product(name="  Poster ", price=19.99)
    assert len(p.short_id) == 6
    assert p.short_id == p.short_id.lower()
    assert p.name == "Poster"
    assert p.currency == "EUR"
    assert p.status == STATUS_AVAILABLE

    again = await store.product_by_short_id(p.short_id.upper())
    assert again is not None and again.id == p.id


async def test_duplicate_short_id_rejected(store):
    await store.create_product(name="A", price=1, short_id="abc123")
    with pytest.raises(DuplicateKey):
        await store.create_product(name="B", price=1, short_id="ABC123")


async def test_duplicate_device_rejected(store):
    await store.create_device(device_id="ESP32-1")
    with pytest.raises(DuplicateKey):
        await store.create_device(device_id="ESP32-1")


async def test_get_or_create_device_provisions_once(store):
    d1, created1 = await store.get_or_create_device("ESP32-NEW")
    d2, created2 = await store.get_or_create_device("ESP32-NEW")
    assert created1 is True
    assert created2 is False
    assert d1.id == d2.id
    assert d1.status == STATUS_AVAILABLE
    assert d1.product_id is None


async def test_set_status_writes_once(store):
    p = await store.create_product(name="A", price=1)
    assert await store.set_product_status(p, STATUS_SOLD) is True
    assert p.status == STATUS_SOLD
    assert await store.set_product_status(p, STATUS_SOLD) is False


async def test_touch_last_seen_keeps_updated_at(store):
    d = await store.create_device(device_id="ESP32-T")
    before = d.updated_at
    await store.touch_last_seen(d)
    assert d.last_seen_at is not None
    assert d.updated_at == before


async def test_link_releases_previous_partners(store):
    d1 = await store.create_device(device_id="D1")
    d2 = await store.create_device(device_id="D2")
    p1 = await store.create_product(name="P1", price=1)
    p2 = await store.create_product(name="P2", price=1)

    await store.link(d1, p1)
    d1, p1 = await store.device_by_id(d1.id), await store.product_by_id(p1.id)
    assert d1.product_id == p1.id and p1.device_id == d1.id

    # re-point d1 at p2: p1 must no longer claim d1
    await store.link(d1, p2)
    p1 = await store.product_by_id(p1.id)
    assert p1.device_id is None

    # give p2 to d2: d1 loses it
    await store.link(d2, p2)
    d1 = await store.device_by_id(d1.id)
    p2 = await store.product_by_id(p2.id)
    assert d1.product_id is None
    assert p2.device_id == d2.id


async def test_unlink_clears_both_sides(store):
    d = await store.create_device(device_id="D1")
    p = await store.create_product(name="P1", price=1)
    await store.link(d, p)
    await store.unlink(d, None)
    p = await store.product_by_id(p.id)
    d = await store.device_by_id(d.id)
    assert p.device_id is None
    assert d.product_id is None


async def test_upsert_order_keyed_by_session(store):
    p = await store.create_product(name="P", price=5)
    o1 = await store.upsert_order(
        session_id="cs_1", product_id=p.id, device_id=None, amount=500,
        currency="eur", status="PAID", payment_status="paid",
    )
    o2 = await store.upsert_order(
        session_id="cs_1", product_id=p.id, device_id=None, amount=500,
        currency="eur", status="PAID", payment_status="paid",
        customer_email="buyer@example.com",
    )
    assert o1.id == o2.id
    assert o2.currency == "EUR"
    assert o2.customer_email == "buyer@example.com"
    orders = await store.list_orders()
    assert len(orders) == 1


async def test_display_state_defaults_and_versions(store):
    s = await store.get_display_state("Jetzt kaufen")
    assert s.text == "Jetzt kaufen"
    assert s.version == 0

    s = await store.set_display_state("Hello", "https://example.com/x")
    assert s.text == "Hello"
    assert s.version > 0
