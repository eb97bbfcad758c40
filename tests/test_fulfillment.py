import asyncio

import pytest

from qr2buy.errors import NotFound
from qr2buy.fulfillment import order_amount, record_order, resolve_sale
from qr2buy.model.db import STATUS_SOLD

pytestmark = pytest.mark.anyio


def _session(sid, product_id, **kw):
    s = {
        "id": sid,
        "status": "complete",
        "payment_status": "paid",
        "amount_total": 1999,
        "currency": "eur",
        "metadata": {"productId": product_id},
    }
    s.update(kw)
    return s


async def test_resolve_sale_marks_product_and_linked_device(store):
    d = await store.create_device(device_id="ESP32-A")
    p = await store.create_product(name="Poster", price=19.99)
    await store.link(d, p)

    sale = await resolve_sale(store, p.id)
    assert sale.product.status == STATUS_SOLD
    assert sale.device is not None and sale.device.status == STATUS_SOLD
    assert sale.changed

    again = await resolve_sale(store, p.id)
    assert again.product_changed is False
    assert again.device_changed is False


async def test_resolve_sale_prefers_device_hint(store):
    linked = await store.create_device(device_id="LINKED")
    other = await store.create_device(device_id="HINTED")
    p = await store.create_product(name="Poster", price=1)
    await store.link(linked, p)

    sale = await resolve_sale(store, p.id, device_hint="HINTED")
    assert sale.device.id == other.id
    linked = await store.device_by_id(linked.id)
    assert linked.status != STATUS_SOLD


async def test_resolve_sale_unknown_product(store):
    with pytest.raises(NotFound):
        await resolve_sale(store, "nope")


async def test_resolve_sale_without_device(store):
    p = await store.create_product(name="Loose", price=1)
    sale = await resolve_sale(store, p.id)
    assert sale.device is None
    assert sale.product.status == STATUS_SOLD


def test_order_amount_falls_back_to_price():
    class P:
        price = 12.5
    assert order_amount({"amount_total": 999}, P) == 999
    assert order_amount({}, P) == 1250


async def test_record_order_is_idempotent(store):
    p = await store.create_product(name="Poster", price=19.99)
    sale = await resolve_sale(store, p.id)
    o1 = await record_order(store, _session("cs_1", p.id), sale)
    o2 = await record_order(store, _session("cs_1", p.id), sale)
    assert o1.id == o2.id
    assert o2.amount == 1999
    assert o2.status == "PAID"
    assert o2.currency == "EUR"


async def test_push_and_pull_race_converge(store, make_store):
    d = await store.create_device(device_id="ESP32-R")
    p = await store.create_product(name="Poster", price=19.99)
    await store.link(d, p)
    session = _session("cs_race", p.id, metadata={
        "productId": p.id, "deviceId": "ESP32-R",
    })

    async def confirm():
        s = await make_store()
        sale = await resolve_sale(s, p.id, "ESP32-R")
        return sale, await record_order(s, session, sale)

    (sale_a, order_a), (sale_b, order_b) = await asyncio.gather(
        confirm(), confirm()
    )
    assert order_a.id == order_b.id
    assert sale_a.product.status == sale_b.product.status == STATUS_SOLD
    assert len(await store.list_orders()) == 1
