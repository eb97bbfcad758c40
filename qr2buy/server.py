from __future__ import annotations
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import Body, Depends, FastAPI, Header, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse, RedirectResponse
from fastapi.responses import StreamingResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from . import settings
from .broadcast import Broadcaster
from .devices import DisplayTexts, display_for, get_config
from .errors import (
    BadRequest, Conflict, NotFound, ServiceError, Unauthorized, Unavailable,
)
from .gateway import handle_webhook, verify_session
from .helpers import (
    ct_equal, is_http_url, is_valid_email, normalize_device_id,
    normalize_short_id, now_ts, to_iso,
)
from .infra import timings
from .infra.sql import Database
from .infra.timings import timeit
from .model.db import STATUS_AVAILABLE, STATUSES, Base, Device, Product
from .model.store import EntityStore
from .model.views import (
    device_dict, display_state_dict, order_dict, product_dict,
    product_status_dict, public_product_dict,
)
from .payments import MockPay, PaymentAdapter, StripePay

log = logging.getLogger(__name__)


# ----------------------------
# startup / shutdown
# ----------------------------
def _configure_logging() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _say_hello() -> None:
    print('\n' * 2)
    print('=' * 50)
    print('qr2buy is starting up...')
    print(f'   - Environment:      {settings.APP_ENV}')
    print(f'   - Payment Provider: {settings.PAYMENT_PROVIDER}')
    print(f'   - Database:         {settings.DATABASE_URL.split("://")[0]}')
    print('=' * 50)
    print('\n' * 2)


async def _db_init(app: FastAPI) -> None:
    app.state.db = Database(settings.DATABASE_URL)
    await app.state.db.create_all(Base.metadata)


def _payment_adapter(app: FastAPI) -> Optional[PaymentAdapter]:
    if settings.PAYMENT_PROVIDER == "stripe":
        if not settings.STRIPE_SECRET_KEY:
            log.error("PAYMENT_PROVIDER=stripe but STRIPE_SECRET_KEY unset")
            return None
        return StripePay(
            api_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        )
    return MockPay(
        sessions=app.state.db.sessions,
        gated=app.state.db.gated,
        webhook_secret=settings.MOCK_SECRET,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    _configure_logging()
    _say_hello()
    await _db_init(app)
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(max_connections=64,
                            max_keepalive_connections=64),
    )
    app.state.payments = _payment_adapter(app)
    app.state.broadcaster = Broadcaster(
        keepalive_seconds=settings.SSE_KEEPALIVE_SECONDS,
        retry_ms=settings.SSE_RETRY_MS,
        ping_seconds=settings.WS_PING_SECONDS,
    )
    app.state.broadcaster.start()
    try:
        yield
    finally:
        await app.state.broadcaster.stop()
        if app.state.payments is not None:
            await app.state.payments.aclose()
        await app.state.http.aclose()
        await app.state.db.dispose()


app = FastAPI(
    title="qr2buy",
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials="*" not in settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def _access_log(request: Request, call_next):
    t0 = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - t0) * 1000
    if response.status_code >= 500:
        level = logging.ERROR
    elif response.status_code >= 400:
        level = logging.WARNING
    else:
        level = logging.INFO
    log.log(level, "%s %s -> %d (%.1f ms)", request.method,
            request.url.path, response.status_code, ms)
    return response


@app.exception_handler(ServiceError)
async def _service_error(request: Request, exc: ServiceError):
    return ORJSONResponse(exc.to_dict(), status_code=exc.status_code,
                          headers=exc.headers)


@app.exception_handler(Exception)
async def _unhandled(request: Request, exc: Exception):
    log.exception("unhandled error on %s %s", request.method,
                  request.url.path)
    return ORJSONResponse({"ok": False, "error": "Internal Server Error"},
                          status_code=500)


# ----------------------------
# Dependencies & helpers
# ----------------------------
async def get_db(request: Request) -> AsyncSession:
    async with request.app.state.db.sessions() as session:
        yield session


async def get_store(request: Request,
                    db: AsyncSession = Depends(get_db)) -> EntityStore:
    return EntityStore(db=db, gated=request.app.state.db.gated)


def get_broadcaster(request: Request) -> Broadcaster:
    return request.app.state.broadcaster


def get_payments(request: Request) -> Optional[PaymentAdapter]:
    return request.app.state.payments


def base_url(request: Request) -> str:
    return settings.PUBLIC_BASE_URL or str(request.base_url).rstrip("/")


def display_texts() -> DisplayTexts:
    return DisplayTexts(sold=settings.SOLD_TEXT,
                        prompt=settings.DEFAULT_PROMPT)


_basic = HTTPBasic(auto_error=False)
_warned_dev_admin = False


def _admin_credentials() -> tuple[str, str] | None:
    global _warned_dev_admin
    user, password = settings.ADMIN_USERNAME, settings.ADMIN_PASSWORD
    if user and password:
        return user, password
    if settings.IS_PRODUCTION:
        return None
    if not _warned_dev_admin:
        log.warning("ADMIN_USERNAME/ADMIN_PASSWORD not set - "
                    "using dev fallback admin/admin")
        _warned_dev_admin = True
    return "admin", "admin"


def require_admin(
    credentials: Optional[HTTPBasicCredentials] = Depends(_basic),
) -> str:
    challenge = {"WWW-Authenticate": 'Basic realm="Admin", charset="UTF-8"'}
    expected = _admin_credentials()
    if expected is None:
        raise Unauthorized("admin credentials not configured",
                           headers=challenge)
    if credentials is None:
        raise Unauthorized("auth required", headers=challenge)
    ok_user = ct_equal(credentials.username, expected[0])
    ok_pass = ct_equal(credentials.password, expected[1])
    if not (ok_user and ok_pass):
        raise Unauthorized("unauthorized", headers=challenge)
    return credentials.username


async def publish_state(
    request: Request, store: EntityStore, *,
    product: Optional[Product] = None, device: Optional[Device] = None,
) -> None:
    cfg = await display_for(store, product=product, device=device,
                            base_url=base_url(request),
                            texts=display_texts())
    if cfg is not None:
        get_broadcaster(request).publish_state(
            cfg.update_payload(), cfg.version_payload()
        )


def _to_number(value, default: float = 0.0) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return default
    return v if v == v and v not in (float("inf"), float("-inf")) else default


def _valid_status(value) -> Optional[str]:
    return value if value in STATUSES else None


# ----------------------------
# Health
# ----------------------------
@app.get("/api/health")
async def health(request: Request):
    db = {"connected": False, "lastError": None}
    try:
        await request.app.state.db.ping()
        db["connected"] = True
    except Exception as e:
        db["lastError"] = str(e)
    return {
        "ok": True,
        "service": settings.SERVICE_NAME,
        "time": to_iso(now_ts()),
        "env": settings.APP_ENV,
        "db": db,
    }


# ----------------------------
# Firmware: GET /api/config?deviceId=ESP32-XXXX
# ----------------------------
@app.get("/api/config")
async def device_config(
    request: Request,
    deviceId: Optional[str] = None,
    x_device_secret: Optional[str] = Header(None),
    store: EntityStore = Depends(get_store),
):
    if deviceId is None:
        # pre-device dashboard: single shared display state
        state = await store.get_display_state(settings.DEFAULT_PROMPT)
        return {"ok": True, **display_state_dict(state)}

    async with timeit("config.get"):
        cfg = await get_config(
            store, deviceId,
            secret=x_device_secret,
            base_url=base_url(request),
            texts=display_texts(),
        )
    return cfg.to_dict()


@app.post("/api/updateDisplay")
async def update_display(
    request: Request,
    payload: Optional[dict] = Body(None),
    store: EntityStore = Depends(get_store),
):
    payload = payload or {}
    text = str(payload.get("text") or "").strip()
    url = str(payload.get("url") or "").strip()
    if not text or len(text) > 80:
        raise BadRequest("text required (1-80 chars)")
    if not is_http_url(url) or len(url) > 2048:
        raise BadRequest("valid url (http/https) required")

    state = await store.set_display_state(text, url)
    body = display_state_dict(state)
    get_broadcaster(request).publish_state(
        body, {"version": body["version"], "updatedAt": body["updatedAt"]}
    )
    return {"ok": True, **body}


# ----------------------------
# Live updates: SSE + WebSocket
# ----------------------------
@app.get("/api/events")
async def events(request: Request):
    broadcaster = get_broadcaster(request)

    async def frames():
        obs = broadcaster.open_stream()
        try:
            async for frame in broadcaster.iter_stream(obs):
                yield frame
        finally:
            broadcaster.close_stream(obs)

    return StreamingResponse(
        frames(),
        media_type="text/event-stream",
        headers={
            "cache-control": "no-cache, no-transform",
            "x-accel-buffering": "no",
        },
    )


@app.websocket("/ws")
async def ws_endpoint(websocket: WebSocket):
    broadcaster: Broadcaster = websocket.app.state.broadcaster
    await websocket.accept()
    await broadcaster.open_socket(websocket)
    try:
        while True:
            # inbound frames carry nothing; wait for the disconnect
            msg = await websocket.receive()
            if msg["type"] == "websocket.disconnect":
                break
    finally:
        broadcaster.close_socket(websocket)


# ----------------------------
# Public (buyer flow /p/<shortId>)
# ----------------------------
@app.get("/api/public/products/by-short/{short_id}")
async def public_product_by_short(short_id: str,
                                  store: EntityStore = Depends(get_store)):
    if not normalize_short_id(short_id):
        raise BadRequest("shortId required")
    p = await store.product_by_short_id(short_id)
    if p is None:
        raise NotFound("not found")
    return {"ok": True, "product": public_product_dict(p)}


@app.get("/api/public/products/{product_id}")
async def public_product(product_id: str,
                         store: EntityStore = Depends(get_store)):
    p = await store.product_by_id(product_id)
    if p is None:
        raise NotFound("not found")
    return {"ok": True, "product": public_product_dict(p)}


@app.get("/api/public/status/by-short/{short_id}")
async def public_status(short_id: str,
                        store: EntityStore = Depends(get_store)):
    p = await store.product_by_short_id(short_id)
    if p is None:
        raise NotFound("not found")
    return product_status_dict(p)


# ----------------------------
# Checkout
# ----------------------------
async def _start_checkout(request: Request, product: Optional[Product],
                          payload: dict):
    if product is None:
        raise NotFound("product not found")
    if product.status != STATUS_AVAILABLE:
        raise Conflict("product not available")
    adapter = get_payments(request)
    if adapter is None:
        raise Unavailable("payment provider not configured")

    quantity = int(_to_number(payload.get("quantity"), 1)) or 1
    device_id = normalize_device_id(payload.get("deviceId")) or None
    base = base_url(request)
    async with timeit("provider.create_session"):
        session = await adapter.create_session(
            product,
            device_id=device_id,
            quantity=max(1, quantity),
            success_url=f"{base}/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base}/cancel",
        )
    return ORJSONResponse(
        {"ok": True, "sessionId": session["session_id"],
         "url": session["url"]},
        status_code=201,
    )


@app.get("/api/checkout/verify")
async def checkout_verify(
    request: Request,
    session_id: Optional[str] = None,
    store: EntityStore = Depends(get_store),
):
    result = await verify_session(
        store, get_payments(request), session_id,
        broadcaster=get_broadcaster(request),
        base_url=base_url(request),
        texts=display_texts(),
    )
    return {
        "ok": True,
        "mode": "verify",
        "order": order_dict(result.order),
        "product": product_dict(result.sale.product),
        "device": device_dict(result.sale.device),
    }


@app.post("/api/checkout/by-short/{short_id}", status_code=201)
async def checkout_by_short(
    request: Request, short_id: str,
    payload: Optional[dict] = Body(None),
    store: EntityStore = Depends(get_store),
):
    product = await store.product_by_short_id(short_id)
    return await _start_checkout(request, product, payload or {})


@app.post("/api/checkout/{product_id}", status_code=201)
async def checkout(
    request: Request, product_id: str,
    payload: Optional[dict] = Body(None),
    store: EntityStore = Depends(get_store),
):
    product = await store.product_by_id(product_id)
    return await _start_checkout(request, product, payload or {})


# ----------------------------
# Webhook (Stripe or MockPay)
# ----------------------------
@app.post("/api/stripe/webhook")
async def payments_webhook(
    request: Request,
    store: EntityStore = Depends(get_store),
):
    # signature covers the exact bytes received
    payload = await request.body()
    headers = dict(request.headers)
    async with timeit("webhook.handle"):
        return await handle_webhook(
            store, get_payments(request), payload, headers,
            production=settings.IS_PRODUCTION,
            broadcaster=get_broadcaster(request),
            base_url=base_url(request),
            texts=display_texts(),
        )


# ----------------------------
# MockPay (development provider)
# ----------------------------
def _mockpay(request: Request) -> MockPay:
    adapter = get_payments(request)
    if not isinstance(adapter, MockPay):
        raise NotFound("mock provider disabled")
    return adapter


@app.get("/mockpay/{session_id}")
async def mockpay_session(request: Request, session_id: str):
    return {"ok": True,
            "session": await _mockpay(request).retrieve_session(session_id)}


@app.post("/mockpay/{session_id}/emit")
async def mockpay_emit(
    request: Request, session_id: str,
    payload: Optional[dict] = Body(None),
):
    adapter = _mockpay(request)
    payload = payload or {}
    kind = payload.get("t")  # succeeded|failed|canceled
    if kind not in adapter.OUTCOMES:
        raise BadRequest("invalid kind")

    email = payload.get("email")
    if email is not None and not is_valid_email(str(email)):
        raise BadRequest("invalid email")
    session = await adapter.settle(session_id, kind, customer_email=email)
    body, headers = adapter.build_event(session, adapter.EVENTS[kind])

    if settings.MOCK_WEBHOOK_URL:
        client_http: httpx.AsyncClient = request.app.state.http
        try:
            await client_http.post(settings.MOCK_WEBHOOK_URL, content=body,
                                   headers=headers)
        except httpx.HTTPError as e:
            # the buyer's verify call still completes the sale
            log.warning("mock webhook delivery failed: %r", e)

    base = base_url(request)
    if kind == "succeeded":
        return RedirectResponse(
            url=f"{base}/success?session_id={session_id}", status_code=303
        )
    return RedirectResponse(
        url=f"{base}/cancel?session_id={session_id}&status={kind}",
        status_code=303,
    )


# ----------------------------
# Admin
# ----------------------------
@app.post("/api/admin/products", status_code=201)
async def admin_create_product(
    payload: Optional[dict] = Body(None),
    store: EntityStore = Depends(get_store),
    _: str = Depends(require_admin),
):
    payload = payload or {}
    name = payload.get("name")
    if not name or not isinstance(name, str) or not name.strip():
        raise BadRequest("name required")
    product = await store.create_product(
        name=name,
        price=max(0.0, _to_number(payload.get("price"), 0.0)),
        currency=payload.get("currency") or "EUR",
        short_id=payload.get("shortId"),
        image_url=payload.get("imageUrl"),
        meta=payload.get("meta") if isinstance(payload.get("meta"), dict)
        else None,
    )
    return {"ok": True, "product": product_dict(product)}


@app.get("/api/admin/products")
async def admin_list_products(
    store: EntityStore = Depends(get_store),
    _: str = Depends(require_admin),
):
    items = await store.list_products(settings.ADMIN_LIST_LIMIT)
    return {"ok": True, "products": [product_dict(p) for p in items]}


@app.get("/api/admin/products/by-short/{short_id}")
async def admin_product_by_short(
    short_id: str,
    store: EntityStore = Depends(get_store),
    _: str = Depends(require_admin),
):
    p = await store.product_by_short_id(short_id)
    if p is None:
        raise NotFound("not found")
    return {"ok": True, "product": product_dict(p)}


@app.get("/api/admin/products/{product_id}")
async def admin_get_product(
    product_id: str,
    store: EntityStore = Depends(get_store),
    _: str = Depends(require_admin),
):
    p = await store.product_by_id(product_id)
    if p is None:
        raise NotFound("not found")
    return {"ok": True, "product": product_dict(p)}


@app.patch("/api/admin/products/{product_id}")
async def admin_patch_product(
    request: Request, product_id: str,
    payload: Optional[dict] = Body(None),
    store: EntityStore = Depends(get_store),
    _: str = Depends(require_admin),
):
    payload = payload or {}
    p = await store.product_by_id(product_id)
    if p is None:
        raise NotFound("not found")

    fields = {}
    if payload.get("name") is not None:
        fields["name"] = str(payload["name"]).strip()
    if payload.get("price") is not None:
        fields["price"] = max(0.0, _to_number(payload["price"], p.price))
    if payload.get("currency") is not None:
        fields["currency"] = payload["currency"]
    if _valid_status(payload.get("status")):
        fields["status"] = payload["status"]
    if payload.get("imageUrl") is not None:
        fields["image_url"] = str(payload["imageUrl"])

    p = await store.update_product(p, fields)
    if fields:
        await publish_state(request, store, product=p)
    return {"ok": True, "product": product_dict(p)}


@app.post("/api/admin/devices", status_code=201)
async def admin_create_device(
    payload: Optional[dict] = Body(None),
    store: EntityStore = Depends(get_store),
    _: str = Depends(require_admin),
):
    payload = payload or {}
    device_id = normalize_device_id(payload.get("deviceId"))
    if not device_id:
        raise BadRequest("deviceId required")
    d = await store.create_device(
        device_id=device_id,
        name=payload.get("name") or None,
        secret=str(payload["deviceSecret"])
        if payload.get("deviceSecret") else None,
    )
    return {"ok": True, "device": device_dict(d)}


@app.get("/api/admin/devices")
async def admin_list_devices(
    store: EntityStore = Depends(get_store),
    _: str = Depends(require_admin),
):
    items = await store.list_devices(settings.ADMIN_LIST_LIMIT)
    return {"ok": True, "devices": [device_dict(d) for d in items]}


@app.patch("/api/admin/devices/{device_pk}")
async def admin_patch_device(
    request: Request, device_pk: str,
    payload: Optional[dict] = Body(None),
    store: EntityStore = Depends(get_store),
    _: str = Depends(require_admin),
):
    payload = payload or {}
    d = await store.device_by_id(device_pk)
    if d is None:
        raise NotFound("not found")

    fields = {}
    if payload.get("name") is not None:
        fields["name"] = str(payload["name"]).strip()
    if _valid_status(payload.get("status")):
        fields["status"] = payload["status"]
    if payload.get("deviceSecret") is not None:
        # empty string clears the secret
        fields["secret"] = str(payload["deviceSecret"]) or None

    d = await store.update_device(d, fields)
    if "status" in fields or "name" in fields:
        await publish_state(request, store, device=d)
    return {"ok": True, "device": device_dict(d)}


async def _product_ref(store: EntityStore, payload: dict
                       ) -> Optional[Product]:
    if payload.get("productId"):
        return await store.product_by_id(payload["productId"])
    if payload.get("productShortId"):
        return await store.product_by_short_id(payload["productShortId"])
    return None


@app.post("/api/admin/link")
async def admin_link(
    request: Request,
    payload: Optional[dict] = Body(None),
    store: EntityStore = Depends(get_store),
    _: str = Depends(require_admin),
):
    payload = payload or {}
    if not payload.get("deviceId") or not (
        payload.get("productId") or payload.get("productShortId")
    ):
        raise BadRequest("deviceId and productId|productShortId required")

    device = await store.device_by_external_id(payload["deviceId"])
    if device is None:
        raise NotFound("device not found")
    product = await _product_ref(store, payload)
    if product is None:
        raise NotFound("product not found")

    device, product = await store.link(device, product)
    await publish_state(request, store, product=product, device=device)
    return {"ok": True, "device": device_dict(device),
            "product": product_dict(product)}


@app.post("/api/admin/unlink")
async def admin_unlink(
    request: Request,
    payload: Optional[dict] = Body(None),
    store: EntityStore = Depends(get_store),
    _: str = Depends(require_admin),
):
    payload = payload or {}
    if not (payload.get("deviceId") or payload.get("productId")
            or payload.get("productShortId")):
        raise BadRequest("deviceId or productId|productShortId required")

    product = await _product_ref(store, payload)
    device = None
    if payload.get("deviceId"):
        device = await store.device_by_external_id(payload["deviceId"])
    if device is None and product is not None and product.device_id:
        device = await store.device_by_id(product.device_id)
    if product is None and device is not None and device.product_id:
        product = await store.product_by_id(device.product_id)

    await store.unlink(device, product)
    if device is not None:
        # the display now shows its own state
        await publish_state(request, store, device=device)
    return {"ok": True, "device": device_dict(device),
            "product": product_dict(product)}


@app.post("/api/admin/override/status")
async def admin_override_status(
    request: Request,
    payload: Optional[dict] = Body(None),
    store: EntityStore = Depends(get_store),
    _: str = Depends(require_admin),
):
    payload = payload or {}
    status = _valid_status(payload.get("status"))
    if status is None:
        raise BadRequest("valid status required")

    device = None
    if payload.get("deviceId"):
        device = await store.device_by_external_id(payload["deviceId"])
        if device is not None:
            await store.set_device_status(device, status)
    product = await _product_ref(store, payload)
    if product is not None:
        await store.set_product_status(product, status)

    if device is not None or product is not None:
        await publish_state(request, store, product=product, device=device)
    return {"ok": True, "device": device_dict(device),
            "product": product_dict(product)}


@app.get("/api/admin/orders")
async def admin_orders(
    limit: int = 200,
    productId: Optional[str] = None,
    store: EntityStore = Depends(get_store),
    _: str = Depends(require_admin),
):
    items = await store.list_orders(max(1, min(limit, 500)),
                                    product_id=productId)
    return {"ok": True, "orders": [order_dict(o) for o in items],
            "limit": limit}


@app.get("/api/admin/timings")
async def admin_timings(_: str = Depends(require_admin)):
    return {"ok": True, "timings": timings.snapshot()}


@app.get("/api/admin/live")
async def admin_live(request: Request, _: str = Depends(require_admin)):
    b = get_broadcaster(request)
    return {"ok": True, "streams": b.stream_count, "sockets": b.socket_count}


@app.exception_handler(404)
async def _not_found(request: Request, exc):
    return ORJSONResponse({"ok": False, "error": "Not Found"},
                          status_code=404)


def main() -> None:
    # socket liveness is a protocol-level ping/pong; a client that stops
    # answering within the window is dropped by the server
    uvicorn.run(
        "qr2buy.server:app",
        host=settings.HOST,
        port=settings.PORT,
        ws_ping_interval=settings.WS_PING_SECONDS,
        ws_ping_timeout=max(
            1.0, settings.WS_LIVENESS_SECONDS - settings.WS_PING_SECONDS
        ),
    )


if __name__ == "__main__":
    main()
