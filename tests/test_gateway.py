import asyncio
import json

import orjson
import pytest

from qr2buy.broadcast import Broadcaster
from qr2buy.devices import DisplayTexts
from qr2buy.errors import (
    BadRequest, Conflict, Internal, ProviderError, Unauthorized, Unavailable,
)
from qr2buy.gateway import handle_webhook, is_paid, verify_session
from qr2buy.model.db import STATUS_SOLD
from qr2buy.payments import MockPay, PaymentAdapter, mock_signature

pytestmark = pytest.mark.anyio

SECRET = "whsec_gateway"
BASE = "https://shop.example"


class FakeProvider(PaymentAdapter):
    name = "fake"

    def __init__(self, sessions):
        self.sessions = sessions

    async def create_session(self, product, **kw):
        raise NotImplementedError

    async def retrieve_session(self, session_id):
        return self.sessions[session_id]

    def verify_webhook(self, payload, headers):
        return json.loads(payload)


def _event(session, kind="checkout.session.completed"):
    return json.dumps({"type": kind, "data": {"object": session}}).encode()


def _drain(obs):
    frames = []
    while not obs.queue.empty():
        frames.append(obs.queue.get_nowait())
    return frames


def _update_payloads(frames):
    out = []
    for f in frames:
        lines = dict(line.split(": ", 1) for line in f.strip().split("\n")
                     if not line.startswith(":"))
        if lines.get("event") == "update":
            out.append(orjson.loads(lines["data"]))
    return out


@pytest.mark.parametrize("session,paid", [
    ({"payment_status": "paid"}, True),
    ({"status": "complete", "payment_status": "unpaid"}, True),
    ({"payment_intent": {"status": "succeeded"}}, True),
    ({"status": "open", "payment_status": "unpaid",
      "payment_intent": {"status": "processing"}}, False),
    ({"payment_intent": "pi_123"}, False),
])
def test_is_paid_any_signal(session, paid):
    assert is_paid(session) is paid


async def test_webhook_marks_sold_and_broadcasts(store, db_parts):
    _, SessionAsync, gated = db_parts
    adapter = MockPay(sessions=SessionAsync, gated=gated,
                      webhook_secret=SECRET)
    d = await store.create_device(device_id="ESP32-W")
    p = await store.create_product(name="Poster", price=19.99)
    await store.link(d, p)

    b = Broadcaster()
    obs = b.open_stream()
    payload = _event({
        "id": "cs_w1", "status": "complete", "payment_status": "paid",
        "amount_total": 1999, "currency": "eur",
        "metadata": {"productId": p.id, "deviceId": ""},
    })
    res = await handle_webhook(
        store, adapter, payload,
        {"x-mockpay-signature": mock_signature(payload, SECRET)},
        production=True, broadcaster=b, base_url=BASE,
    )
    assert res["received"] is True
    assert "orderId" in res

    p = await store.product_by_id(p.id)
    d = await store.device_by_id(d.id)
    assert p.status == d.status == STATUS_SOLD

    updates = _update_payloads(_drain(obs))
    assert updates[-1]["status"] == STATUS_SOLD
    assert updates[-1]["text"] == DisplayTexts().sold
    assert updates[-1]["qr"] is None
    b.close_stream(obs)


async def test_webhook_bad_signature(store, db_parts):
    _, SessionAsync, gated = db_parts
    adapter = MockPay(sessions=SessionAsync, gated=gated,
                      webhook_secret=SECRET)
    with pytest.raises(Unauthorized):
        await handle_webhook(
            store, adapter, _event({"id": "cs_x"}),
            {"x-mockpay-signature": "bogus"},
            production=False, broadcaster=None, base_url=BASE,
        )


async def test_webhook_secret_missing_in_production(store):
    adapter = FakeProvider({})
    with pytest.raises(Internal):
        await handle_webhook(store, adapter, b"{}", {}, production=True,
                             broadcaster=None, base_url=BASE)


async def test_webhook_without_secret_allowed_outside_production(store):
    p = await store.create_product(name="Poster", price=1)
    res = await handle_webhook(
        store, FakeProvider({}),
        _event({"id": "cs_dev", "metadata": {"productId": p.id}}), {},
        production=False, broadcaster=None, base_url=BASE,
    )
    assert res["received"] is True
    assert (await store.product_by_id(p.id)).status == STATUS_SOLD


async def test_webhook_ignores_other_events(store):
    res = await handle_webhook(
        store, FakeProvider({}),
        _event({"id": "cs_1"}, kind="checkout.session.expired"), {},
        production=False, broadcaster=None, base_url=BASE,
    )
    assert res == {"received": True, "ignored": True}


async def test_webhook_missing_product_is_acknowledged(store):
    for session in ({"id": "cs_1", "metadata": {}},
                    {"id": "cs_2", "metadata": {"productId": "gone"}}):
        res = await handle_webhook(
            store, FakeProvider({}), _event(session), {},
            production=False, broadcaster=None, base_url=BASE,
        )
        assert res["ignored"] is True
    assert await store.list_orders() == []


async def test_webhook_invalid_json(store, db_parts):
    _, SessionAsync, gated = db_parts
    adapter = MockPay(sessions=SessionAsync, gated=gated)
    with pytest.raises(BadRequest):
        await handle_webhook(store, adapter, b"{not json", {},
                             production=False, broadcaster=None,
                             base_url=BASE)


async def test_verify_unpaid_session_conflicts(store):
    p = await store.create_product(name="Poster", price=1)
    provider = FakeProvider({"cs_open": {
        "id": "cs_open", "status": "open", "payment_status": "unpaid",
        "metadata": {"productId": p.id},
    }})
    with pytest.raises(Conflict) as ei:
        await verify_session(store, provider, "cs_open", broadcaster=None,
                             base_url=BASE)
    assert ei.value.extra["status"] == "unpaid"
    assert (await store.product_by_id(p.id)).status != STATUS_SOLD


async def test_verify_paid_session_without_metadata(store):
    provider = FakeProvider({"cs_x": {
        "id": "cs_x", "payment_status": "paid", "metadata": {},
    }})
    with pytest.raises(BadRequest):
        await verify_session(store, provider, "cs_x", broadcaster=None,
                             base_url=BASE)
    assert await store.list_orders() == []


async def test_verify_requires_adapter_and_id(store):
    with pytest.raises(BadRequest):
        await verify_session(store, FakeProvider({}), "", broadcaster=None,
                             base_url=BASE)
    with pytest.raises(Unavailable):
        await verify_session(store, None, "cs_1", broadcaster=None,
                             base_url=BASE)


async def test_verify_then_webhook_single_order(store):
    p = await store.create_product(name="Poster", price=19.99)
    session = {
        "id": "cs_both", "payment_status": "paid", "amount_total": 1999,
        "currency": "eur", "metadata": {"productId": p.id},
    }
    provider = FakeProvider({"cs_both": session})
    first = await verify_session(store, provider, "cs_both",
                                 broadcaster=None, base_url=BASE)
    await handle_webhook(store, provider, _event(session), {},
                         production=False, broadcaster=None, base_url=BASE)
    orders = await store.list_orders()
    assert [o.id for o in orders] == [first.order.id]


async def test_concurrent_verifies_record_one_order(store, make_store):
    d = await store.create_device(device_id="ESP32-V")
    p = await store.create_product(name="Poster", price=19.99)
    await store.link(d, p)
    provider = FakeProvider({"cs_race": {
        "id": "cs_race", "payment_status": "paid", "amount_total": 1999,
        "currency": "eur",
        "metadata": {"productId": p.id, "deviceId": "ESP32-V"},
    }})

    async def verify():
        return await verify_session(await make_store(), provider, "cs_race",
                                    broadcaster=None, base_url=BASE)

    results = await asyncio.gather(*(verify() for _ in range(4)),
                                   return_exceptions=True)
    assert not [r for r in results if isinstance(r, BaseException)]
    assert len({r.order.id for r in results}) == 1
    assert len(await store.list_orders()) == 1
    assert (await store.product_by_id(p.id)).status == STATUS_SOLD


class FailingProvider(FakeProvider):
    async def retrieve_session(self, session_id):
        raise ProviderError("stripe unreachable", status=502)


async def test_verify_provider_failure_is_internal(store):
    p = await store.create_product(name="Poster", price=1)
    with pytest.raises(Internal) as ei:
        await verify_session(store, FailingProvider({}), "cs_1",
                             broadcaster=None, base_url=BASE)
    assert ei.value.message == "verify failed"
    assert await store.list_orders() == []
    assert (await store.product_by_id(p.id)).status != STATUS_SOLD
