"""
Fulfillment: mark the sold product and its display SOLD, record the order.

Both confirmation paths (webhook push and client verify) end up here. Every
step is idempotent:
  - status writes are conditional (`WHERE status != 'SOLD'`), so a second
    call for the same product writes nothing
  - the order is upserted by payment session id, so a second call for the
    same session updates the one existing row
which is why the two paths may race without any locking.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import NotFound
from .helpers import normalize_currency, to_minor_units
from .infra.timings import timeit
from .model.db import STATUS_SOLD, Device, Order, Product
from .model.store import EntityStore

log = logging.getLogger(__name__)

ORDER_STATUS_PAID = "PAID"


@dataclass
class SaleResult:
    product: Product
    device: Optional[Device]
    product_changed: bool = False
    device_changed: bool = False

    @property
    def changed(self) -> bool:
        return self.product_changed or self.device_changed


async def resolve_sale(
    store: EntityStore, product_id: str, device_hint: Optional[str] = None,
) -> SaleResult:
    product = await store.product_by_id(product_id)
    if product is None:
        raise NotFound("product not found", productId=product_id)

    product_changed = False
    if product.status != STATUS_SOLD:
        product_changed = await store.set_product_status(product, STATUS_SOLD)

    # the display named in the payment metadata wins over the stored link
    device = None
    if device_hint:
        device = await store.device_by_external_id(device_hint)
    if device is None and product.device_id:
        device = await store.device_by_id(product.device_id)

    device_changed = False
    if device is not None and device.status != STATUS_SOLD:
        device_changed = await store.set_device_status(device, STATUS_SOLD)

    if product_changed or device_changed:
        log.info(
            "marked SOLD product=%s device=%s",
            product.id, device.device_id if device else None,
        )
    return SaleResult(product, device, product_changed, device_changed)


# ----------------------------
# Order receipt
# ----------------------------
def _payment_intent_id(session: Dict[str, Any]) -> Optional[str]:
    pi = session.get("payment_intent")
    if isinstance(pi, dict):
        return pi.get("id")
    return pi or None


def payment_status_label(session: Dict[str, Any]) -> str:
    pi = session.get("payment_intent")
    pi_status = pi.get("status") if isinstance(pi, dict) else None
    return (
        session.get("payment_status")
        or session.get("status")
        or (f"pi:{pi_status}" if pi_status else "unknown")
    )


def order_amount(session: Dict[str, Any], product: Product) -> int:
    # always cents: providers report amount_total in minor units already
    total = session.get("amount_total")
    try:
        return int(total)
    except (TypeError, ValueError):
        return to_minor_units(product.price)


def raw_snapshot(session: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": session.get("id"),
        "mode": session.get("mode"),
        "status": session.get("status"),
        "payment_status": session.get("payment_status"),
        "amount_total": session.get("amount_total"),
        "currency": session.get("currency"),
        "metadata": session.get("metadata") or {},
    }


async def record_order(
    store: EntityStore, session: Dict[str, Any], sale: SaleResult,
) -> Order:
    customer = session.get("customer_details") or {}
    async with timeit("store.upsert_order"):
        return await store.upsert_order(
            session_id=session["id"],
            product_id=sale.product.id,
            device_id=sale.device.id if sale.device else None,
            amount=order_amount(session, sale.product),
            currency=normalize_currency(
                session.get("currency") or sale.product.currency
            ),
            status=ORDER_STATUS_PAID,
            payment_status=payment_status_label(session),
            payment_intent_id=_payment_intent_id(session),
            customer_email=customer.get("email") or None,
            raw=raw_snapshot(session),
        )
