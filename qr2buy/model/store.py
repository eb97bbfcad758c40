from __future__ import annotations
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import DuplicateKey
from ..helpers import (
    normalize_currency, normalize_device_id, normalize_short_id, now_ms,
    now_ts, random_short_id,
)
from ..infra.sql import Gated
from .db import (
    STATUS_AVAILABLE, Device, DisplayState, Order, Product,
)

DISPLAY_STATE_ID = "current"


def new_id() -> str:
    return uuid.uuid4().hex


class EntityStore:
    """Products, devices and orders.

    Every public method runs in its own short transaction behind the DB
    gate. Mutations that can race (status transitions, order upserts,
    auto-provisioning) are single conditional statements so concurrent
    callers never need an in-process lock.
    """

    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    @asynccontextmanager
    async def _tx(self):
        async with self.gated():
            async with self.db.begin():
                yield

    def _insert(self, model):
        if self.db.get_bind().dialect.name == "postgresql":
            return pg_insert(model)
        return sqlite_insert(model)

    @staticmethod
    def _update(model):
        return update(model).execution_options(synchronize_session=False)

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------
    async def product_by_id(self, product_id: Optional[str]
                            ) -> Optional[Product]:
        if not product_id:
            return None
        async with self._tx():
            return await self.db.get(Product, str(product_id),
                                     populate_existing=True)

    async def product_by_short_id(self, short_id: Optional[str]
                                  ) -> Optional[Product]:
        short_id = normalize_short_id(short_id)
        if not short_id:
            return None
        async with self._tx():
            return await self.db.scalar(
                select(Product).where(Product.short_id == short_id)
                .execution_options(populate_existing=True)
            )

    async def short_id_taken(self, short_id: str) -> bool:
        return await self.product_by_short_id(short_id) is not None

    async def unique_short_id(self, length: int = 6,
                              attempts: int = 20) -> str:
        for _ in range(attempts):
            candidate = random_short_id(length)
            if not await self.short_id_taken(candidate):
                return candidate
        raise RuntimeError("could not generate unique short id")

    async def create_product(
        self, *, name: str, price: float, currency: str = "EUR",
        short_id: Optional[str] = None, status: str = STATUS_AVAILABLE,
        image_url: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Product:
        short_id = normalize_short_id(short_id) or await self.unique_short_id()
        ts = now_ts()
        product = Product(
            id=new_id(),
            short_id=short_id,
            name=name.strip(),
            price=max(0.0, float(price)),
            currency=normalize_currency(currency),
            status=status,
            image_url=image_url,
            meta=meta or {},
            created_at=ts,
            updated_at=ts,
        )
        try:
            async with self._tx():
                self.db.add(product)
        except IntegrityError:
            raise DuplicateKey("shortId exists", shortId=short_id)
        return product

    async def update_product(self, product: Product,
                             fields: Dict[str, Any]) -> Product:
        if not fields:
            return product
        values = dict(fields)
        if "short_id" in values:
            values["short_id"] = normalize_short_id(values["short_id"])
        if "currency" in values:
            values["currency"] = normalize_currency(values["currency"])
        values["updated_at"] = now_ts()
        try:
            async with self._tx():
                await self.db.execute(
                    self._update(Product)
                    .where(Product.id == product.id)
                    .values(**values)
                )
                await self.db.refresh(product)
        except IntegrityError:
            raise DuplicateKey("shortId exists",
                               shortId=values.get("short_id"))
        return product

    async def list_products(self, limit: int = 500) -> List[Product]:
        async with self._tx():
            rows = await self.db.scalars(
                select(Product).order_by(Product.created_at.desc())
                .limit(limit)
            )
            return list(rows)

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------
    async def device_by_id(self, device_pk: Optional[str]
                           ) -> Optional[Device]:
        if not device_pk:
            return None
        async with self._tx():
            return await self.db.get(Device, str(device_pk),
                                     populate_existing=True)

    async def device_by_external_id(self, device_id: Optional[str]
                                    ) -> Optional[Device]:
        device_id = normalize_device_id(device_id)
        if not device_id:
            return None
        async with self._tx():
            return await self.db.scalar(
                select(Device).where(Device.device_id == device_id)
                .execution_options(populate_existing=True)
            )

    async def create_device(
        self, *, device_id: str, name: Optional[str] = None,
        secret: Optional[str] = None, status: str = STATUS_AVAILABLE,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Device:
        device_id = normalize_device_id(device_id)
        ts = now_ts()
        device = Device(
            id=new_id(),
            device_id=device_id,
            name=name.strip() if name else None,
            status=status,
            secret=secret or None,
            meta=meta or {},
            created_at=ts,
            updated_at=ts,
        )
        try:
            async with self._tx():
                self.db.add(device)
        except IntegrityError:
            raise DuplicateKey("deviceId exists", deviceId=device_id)
        return device

    async def get_or_create_device(self, device_id: str
                                   ) -> Tuple[Device, bool]:
        """Find a device by hardware id, registering it when unseen.

        Two first polls from the same display may arrive together; the
        insert ignores the duplicate and both callers read the same row.
        """
        device_id = normalize_device_id(device_id)
        ts = now_ts()
        async with self._tx():
            res = await self.db.execute(
                self._insert(Device).values(
                    id=new_id(),
                    device_id=device_id,
                    status=STATUS_AVAILABLE,
                    meta={},
                    created_at=ts,
                    updated_at=ts,
                ).on_conflict_do_nothing(index_elements=["device_id"])
            )
            created = res.rowcount == 1
            device = await self.db.scalar(
                select(Device).where(Device.device_id == device_id)
                .execution_options(populate_existing=True)
            )
        return device, created

    async def update_device(self, device: Device,
                            fields: Dict[str, Any]) -> Device:
        if not fields:
            return device
        values = dict(fields)
        values["updated_at"] = now_ts()
        async with self._tx():
            await self.db.execute(
                self._update(Device)
                .where(Device.id == device.id)
                .values(**values)
            )
            await self.db.refresh(device)
        return device

    async def touch_last_seen(self, device: Device) -> Device:
        # liveness only; leaves updated_at (and so the config version) alone
        ts = now_ts()
        async with self._tx():
            await self.db.execute(
                self._update(Device)
                .where(Device.id == device.id)
                .values(last_seen_at=ts)
            )
            await self.db.refresh(device)
        return device

    async def list_devices(self, limit: int = 500) -> List[Device]:
        async with self._tx():
            rows = await self.db.scalars(
                select(Device).order_by(Device.updated_at.desc())
                .limit(limit)
            )
            return list(rows)

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------
    async def _set_status(self, model, obj, status: str) -> bool:
        async with self._tx():
            res = await self.db.execute(
                self._update(model)
                .where(model.id == obj.id, model.status != status)
                .values(status=status, updated_at=now_ts())
            )
            await self.db.refresh(obj)
        return res.rowcount > 0

    async def set_product_status(self, product: Product, status: str
                                 ) -> bool:
        """Write `status` unless already set. Returns True if it wrote."""
        return await self._set_status(Product, product, status)

    async def set_device_status(self, device: Device, status: str) -> bool:
        return await self._set_status(Device, device, status)

    # ------------------------------------------------------------------
    # Link / unlink (both back-references in one transaction)
    # ------------------------------------------------------------------
    async def link(self, device: Device, product: Product
                   ) -> Tuple[Device, Product]:
        ts = now_ts()
        async with self._tx():
            # release previous partners on either side
            await self.db.execute(
                self._update(Product)
                .where(Product.device_id == device.id,
                       Product.id != product.id)
                .values(device_id=None, updated_at=ts)
            )
            await self.db.execute(
                self._update(Device)
                .where(Device.product_id == product.id,
                       Device.id != device.id)
                .values(product_id=None, updated_at=ts)
            )
            await self.db.execute(
                self._update(Device)
                .where(Device.id == device.id)
                .values(product_id=product.id, updated_at=ts)
            )
            await self.db.execute(
                self._update(Product)
                .where(Product.id == product.id)
                .values(device_id=device.id, updated_at=ts)
            )
            await self.db.refresh(device)
            await self.db.refresh(product)
        return device, product

    async def unlink(self, device: Optional[Device],
                     product: Optional[Product]) -> None:
        ts = now_ts()
        async with self._tx():
            if device is not None:
                await self.db.execute(
                    self._update(Device)
                    .where(Device.id == device.id)
                    .values(product_id=None, updated_at=ts)
                )
                await self.db.execute(
                    self._update(Product)
                    .where(Product.device_id == device.id)
                    .values(device_id=None, updated_at=ts)
                )
            if product is not None:
                await self.db.execute(
                    self._update(Product)
                    .where(Product.id == product.id)
                    .values(device_id=None, updated_at=ts)
                )
                await self.db.execute(
                    self._update(Device)
                    .where(Device.product_id == product.id)
                    .values(product_id=None, updated_at=ts)
                )
            if device is not None:
                await self.db.refresh(device)
            if product is not None:
                await self.db.refresh(product)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    async def upsert_order(
        self, *, session_id: str, product_id: str,
        device_id: Optional[str], amount: int, currency: str,
        status: str, payment_status: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        customer_email: Optional[str] = None,
        raw: Optional[Dict[str, Any]] = None,
    ) -> Order:
        """Insert the order for `session_id` or overwrite it in place.

        Keyed strictly by session id: repeated webhook deliveries and
        client verifies for one session always land on the same row.
        """
        ts = now_ts()
        fields = {
            "product_id": product_id,
            "device_id": device_id,
            "payment_intent_id": payment_intent_id,
            "status": status,
            "payment_status": payment_status,
            "amount": int(amount),
            "currency": normalize_currency(currency),
            "customer_email": customer_email,
            "raw": raw or {},
            "updated_at": ts,
        }
        stmt = self._insert(Order).values(
            id=new_id(), session_id=session_id, created_at=ts, **fields
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["session_id"], set_=fields
        )
        async with self._tx():
            await self.db.execute(stmt)
            return await self.db.scalar(
                select(Order).where(Order.session_id == session_id)
                .execution_options(populate_existing=True)
            )

    async def list_orders(self, limit: int = 200,
                          product_id: Optional[str] = None) -> List[Order]:
        q = select(Order)
        if product_id:
            q = q.where(Order.product_id == product_id)
        async with self._tx():
            rows = await self.db.scalars(
                q.order_by(Order.created_at.desc()).limit(limit)
            )
            return list(rows)

    # ------------------------------------------------------------------
    # Legacy single display
    # ------------------------------------------------------------------
    async def get_display_state(self, default_text: str) -> DisplayState:
        async with self._tx():
            await self.db.execute(
                self._insert(DisplayState).values(
                    id=DISPLAY_STATE_ID, text=default_text, qr=None,
                    version=0, updated_at=now_ts(),
                ).on_conflict_do_nothing(index_elements=["id"])
            )
            return await self.db.get(DisplayState, DISPLAY_STATE_ID,
                                     populate_existing=True)

    async def set_display_state(self, text: str, qr: str) -> DisplayState:
        ts = now_ts()
        fields = {"text": text, "qr": qr, "version": now_ms(),
                  "updated_at": ts}
        async with self._tx():
            await self.db.execute(
                self._insert(DisplayState).values(
                    id=DISPLAY_STATE_ID, **fields
                ).on_conflict_do_update(index_elements=["id"], set_=fields)
            )
            return await self.db.get(DisplayState, DISPLAY_STATE_ID,
                                     populate_existing=True)
