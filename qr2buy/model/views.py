from typing import Any, Dict, Optional

from ..helpers import to_iso
from .db import STATUS_SOLD, Device, DisplayState, Order, Product


def product_dict(p: Optional[Product]) -> Optional[Dict[str, Any]]:
    if p is None:
        return None
    return {
        "id": p.id,
        "shortId": p.short_id,
        "name": p.name,
        "price": p.price,
        "currency": p.currency,
        "status": p.status,
        "deviceId": p.device_id,
        "stripe": {
            "productId": p.stripe_product_id,
            "priceId": p.stripe_price_id,
        },
        "imageUrl": p.image_url,
        "meta": p.meta or {},
        "createdAt": to_iso(p.created_at),
        "updatedAt": to_iso(p.updated_at),
    }


def public_product_dict(p: Optional[Product]) -> Optional[Dict[str, Any]]:
    # buyer-facing subset: no links, no provider refs
    if p is None:
        return None
    return {
        "id": p.id,
        "shortId": p.short_id,
        "name": p.name,
        "price": p.price,
        "currency": p.currency,
        "status": p.status,
        "imageUrl": p.image_url,
        "updatedAt": to_iso(p.updated_at),
    }


def product_status_dict(p: Product) -> Dict[str, Any]:
    return {
        "ok": True,
        "shortId": p.short_id,
        "status": p.status,
        "sold": p.status == STATUS_SOLD,
        "updatedAt": to_iso(p.updated_at),
    }


def device_dict(d: Optional[Device]) -> Optional[Dict[str, Any]]:
    if d is None:
        return None
    return {
        "id": d.id,
        "deviceId": d.device_id,
        "name": d.name,
        "status": d.status,
        "productId": d.product_id,
        "lastSeenAt": to_iso(d.last_seen_at),
        "hasSecret": bool(d.secret),
        "meta": d.meta or {},
        "createdAt": to_iso(d.created_at),
        "updatedAt": to_iso(d.updated_at),
    }


def order_dict(o: Optional[Order]) -> Optional[Dict[str, Any]]:
    if o is None:
        return None
    return {
        "id": o.id,
        "sessionId": o.session_id,
        "paymentIntentId": o.payment_intent_id,
        "productId": o.product_id,
        "deviceId": o.device_id,
        "status": o.status,
        "paymentStatus": o.payment_status,
        "amount": o.amount,
        "currency": o.currency,
        "customerEmail": o.customer_email or "",
        "createdAt": to_iso(o.created_at),
        "updatedAt": to_iso(o.updated_at),
    }


def display_state_dict(s: DisplayState) -> Dict[str, Any]:
    return {
        "text": s.text,
        "qr": s.qr or None,
        "version": s.version or 0,
        "updatedAt": to_iso(s.updated_at),
    }
