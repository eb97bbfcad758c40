import asyncio
import os

from qr2buy import settings
from qr2buy.infra.sql import Database
from qr2buy.model.db import Base
from qr2buy.model.store import EntityStore

# Config
DemoProduct_name = os.getenv("SEED_PRODUCT_NAME", "Demo Poster")
DemoProduct_price = 19.99
DemoProduct_currency = "EUR"
DemoDevice_id = os.getenv("SEED_DEVICE_ID", "ESP32-DEMO-001")


async def create_demo(store: EntityStore):
    device = await store.device_by_external_id(DemoDevice_id)
    if device is None:
        device = await store.create_device(device_id=DemoDevice_id,
                                           name="Demo Display")
        print(f'✅ device {device.device_id} created')
    else:
        print(f'   device {device.device_id} exists')

    product = None
    if device.product_id:
        product = await store.product_by_id(device.product_id)
    if product is None:
        product = await store.create_product(
            name=DemoProduct_name,
            price=DemoProduct_price,
            currency=DemoProduct_currency,
        )
        print(f'✅ product {product.short_id} created')

    device, product = await store.link(device, product)
    print(f'✅ linked {device.device_id} -> /p/{product.short_id}')
    return device, product


async def main():
    database = Database(settings.DATABASE_URL)
    try:
        await database.create_all(Base.metadata)
        async with database.sessions() as db:
            await create_demo(EntityStore(db=db, gated=database.gated))
    finally:
        await database.dispose()


if __name__ == '__main__':
    asyncio.run(main())
