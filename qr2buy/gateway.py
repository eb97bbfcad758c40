"""
Payment confirmation: webhook push and client verify pull.

Both paths run the same `fulfil()` (resolve_sale + order upsert +
broadcast). The verify path exists because webhooks can be late or lost;
the two are expected to race for the same session and converge on one
order row and one SOLD transition.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .broadcast import Broadcaster
from .devices import DisplayTexts, display_for
from .errors import (
    BadRequest, Conflict, Internal, NotFound, ProviderError, ServiceError,
    Unavailable,
)
from .fulfillment import SaleResult, record_order, resolve_sale
from .infra.timings import timeit
from .model.db import Order
from .model.store import EntityStore
from .payments import COMPLETED_EVENTS, PaymentAdapter

log = logging.getLogger(__name__)


@dataclass
class Fulfilment:
    sale: SaleResult
    order: Order


def is_paid(session: Dict[str, Any]) -> bool:
    # providers surface completion differently depending on payment
    # method timing; any one signal is enough
    pi = session.get("payment_intent")
    pi_status = pi.get("status") if isinstance(pi, dict) else None
    return (
        session.get("payment_status") == "paid"
        or session.get("status") == "complete"
        or pi_status == "succeeded"
    )


def sale_refs(session: Dict[str, Any]) -> tuple[Optional[str], Optional[str]]:
    meta = session.get("metadata") or {}
    return (meta.get("productId") or None), (meta.get("deviceId") or None)


async def publish_sale(
    store: EntityStore, broadcaster: Optional[Broadcaster],
    sale: SaleResult, *, base_url: str, texts: DisplayTexts,
) -> None:
    if broadcaster is None:
        return
    cfg = await display_for(store, product=sale.product, device=sale.device,
                            base_url=base_url, texts=texts)
    if cfg is not None:
        broadcaster.publish_state(cfg.update_payload(), cfg.version_payload())


async def fulfil(
    store: EntityStore, session: Dict[str, Any], *,
    broadcaster: Optional[Broadcaster], base_url: str,
    texts: DisplayTexts = DisplayTexts(),
) -> Fulfilment:
    product_id, device_hint = sale_refs(session)
    if not product_id:
        raise BadRequest("missing productId in session metadata")

    async with timeit("fulfil.resolve_sale"):
        sale = await resolve_sale(store, product_id, device_hint)
    order = await record_order(store, session, sale)
    await publish_sale(store, broadcaster, sale,
                       base_url=base_url, texts=texts)
    return Fulfilment(sale, order)


# ----------------------------
# Push path
# ----------------------------
async def handle_webhook(
    store: EntityStore, adapter: Optional[PaymentAdapter],
    payload: bytes, headers: Dict[str, str], *,
    production: bool, broadcaster: Optional[Broadcaster], base_url: str,
    texts: DisplayTexts = DisplayTexts(),
) -> Dict[str, Any]:
    if adapter is None:
        raise Unavailable("payment provider not configured")
    if not adapter.webhook_secret and production:
        # a payment-integrity check must never degrade to trust-all
        log.error("webhook secret missing in production")
        raise Internal("webhook secret missing")

    # Unauthorized propagates: the event is dropped
    try:
        event = adapter.verify_webhook(payload, headers)
    except ValueError as e:
        raise BadRequest(str(e))

    kind = adapter.event_type(event)
    if kind not in COMPLETED_EVENTS:
        log.debug("ignoring webhook event %s", kind or "<untyped>")
        return {"received": True, "ignored": True}

    session = adapter.event_session(event)
    if not session.get("id"):
        raise BadRequest("event without session id")

    product_id, _ = sale_refs(session)
    if not product_id:
        # not from our checkout; redelivery will not fix it
        log.warning("webhook session %s missing productId", session["id"])
        return {"received": True, "ignored": True}

    try:
        result = await fulfil(store, session, broadcaster=broadcaster,
                              base_url=base_url, texts=texts)
    except NotFound:
        log.warning("webhook session %s: product %s not found",
                    session["id"], product_id)
        return {"received": True, "ignored": True}

    log.info("webhook fulfilled session=%s product=%s",
             session["id"], result.sale.product.id)
    return {"received": True, "orderId": result.order.id}


# ----------------------------
# Pull path
# ----------------------------
async def verify_session(
    store: EntityStore, adapter: Optional[PaymentAdapter],
    session_id: Optional[str], *,
    broadcaster: Optional[Broadcaster], base_url: str,
    texts: DisplayTexts = DisplayTexts(),
) -> Fulfilment:
    if not session_id:
        raise BadRequest("session_id required")
    if adapter is None:
        raise Unavailable("payment provider not configured")

    try:
        async with timeit("provider.retrieve_session"):
            session = await adapter.retrieve_session(session_id)
    except ServiceError:
        raise
    except ProviderError as e:
        log.error("verify %s: provider error: %s", session_id, e)
        raise Internal("verify failed")

    if not is_paid(session):
        pi = session.get("payment_intent")
        status = (
            session.get("payment_status")
            or session.get("status")
            or (pi.get("status") if isinstance(pi, dict) else None)
        )
        raise Conflict("payment not completed", status=status)

    # BadRequest for sessions created outside our checkout, before any write
    return await fulfil(store, session, broadcaster=broadcaster,
                        base_url=base_url, texts=texts)
