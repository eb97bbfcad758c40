from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import BadRequest, Unauthorized
from .helpers import ct_equal, normalize_device_id, now_ms, to_iso
from .infra.timings import timeit
from .model.db import STATUS_AVAILABLE, STATUS_SOLD, Device, Product
from .model.store import EntityStore

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DisplayTexts:
    sold: str = "VERKAUFT!"
    prompt: str = "Jetzt kaufen"


@dataclass
class DisplayConfig:
    device_id: Optional[str]
    status: str
    text: str
    qr_target: Optional[str]
    version: int
    updated_at: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "deviceId": self.device_id,
            "status": self.status,
            "text": self.text,
            "qr": self.qr_target,
            "version": self.version,
            "updatedAt": self.updated_at,
        }

    def update_payload(self) -> Dict[str, Any]:
        # broadcast form: no device identity
        return {
            "status": self.status,
            "text": self.text,
            "qr": self.qr_target,
            "version": self.version,
            "updatedAt": self.updated_at,
        }

    def version_payload(self) -> Dict[str, Any]:
        return {"version": self.version, "updatedAt": self.updated_at}


def product_url(base_url: str, product: Product) -> str:
    return f"{base_url.rstrip('/')}/p/{product.short_id}"


def render_display(
    product: Optional[Product], device: Optional[Device], *,
    base_url: str, texts: DisplayTexts = DisplayTexts(),
) -> DisplayConfig:
    """What a display should show for this device/product pair.

    The product decides: a device is only a terminal for whatever is
    linked to it.
    """
    status = (
        (product.status if product is not None else None)
        or (device.status if device is not None else None)
        or STATUS_AVAILABLE
    )
    if status == STATUS_SOLD:
        text = texts.sold
    elif product is not None:
        text = product.name
    else:
        text = texts.prompt

    qr = None
    if product is not None and status != STATUS_SOLD:
        qr = product_url(base_url, product)

    stamps = [
        obj.updated_at for obj in (product, device)
        if obj is not None and obj.updated_at
    ]
    if stamps:
        latest = max(stamps)
        version = int(latest * 1000)
        updated_at = to_iso(latest)
    else:
        version = now_ms()
        updated_at = to_iso(version / 1000)

    return DisplayConfig(
        device_id=device.device_id if device is not None else None,
        status=status,
        text=text,
        qr_target=qr,
        version=version,
        updated_at=updated_at,
    )


def check_device_secret(device: Device, provided: Optional[str]) -> None:
    if not device.secret:
        return
    if not provided or not ct_equal(provided, device.secret):
        raise Unauthorized("invalid device secret")


async def get_config(
    store: EntityStore, device_id: Optional[str], *,
    secret: Optional[str] = None, base_url: str,
    texts: DisplayTexts = DisplayTexts(),
) -> DisplayConfig:
    device_id = normalize_device_id(device_id)
    if not device_id:
        raise BadRequest("deviceId required")

    async with timeit("store.get_or_create_device"):
        device, created = await store.get_or_create_device(device_id)
    if created:
        log.info("auto-provisioned device %s", device_id)

    check_device_secret(device, secret)

    await store.touch_last_seen(device)

    product = None
    if device.product_id:
        product = await store.product_by_id(device.product_id)

    return render_display(product, device, base_url=base_url, texts=texts)


async def display_for(
    store: EntityStore, *, product: Optional[Product] = None,
    device: Optional[Device] = None, base_url: str,
    texts: DisplayTexts = DisplayTexts(),
) -> Optional[DisplayConfig]:
    """Display state after a mutation, completing the pair from its links.

    Read-only: unlike get_config it neither provisions nor touches
    last-seen.
    """
    if device is None and product is not None and product.device_id:
        device = await store.device_by_id(product.device_id)
    if product is None and device is not None and device.product_id:
        product = await store.product_by_id(device.product_id)
    if product is None and device is None:
        return None
    return render_display(product, device, base_url=base_url, texts=texts)
