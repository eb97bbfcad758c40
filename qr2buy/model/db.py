from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    Float,
    Index,
    Integer,
    String,
)

Base = declarative_base()

STATUS_AVAILABLE = "AVAILABLE"
STATUS_SOLD = "SOLD"
STATUSES = (STATUS_AVAILABLE, STATUS_SOLD)


# ----------------------------
# ORM models
# ----------------------------
class Product(Base):
    __tablename__ = "products"
    id = Column(String, primary_key=True)
    # lowercase public reference, used in /p/<short_id>
    short_id = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    price = Column(Float, nullable=False, default=0.0)  # major units
    currency = Column(String(3), nullable=False, default="EUR")

    # AVAILABLE | SOLD
    status = Column(String, nullable=False, default=STATUS_AVAILABLE,
                    index=True)
    # devices.id of the linked display (not the hardware id)
    device_id = Column(String, nullable=True, index=True)

    stripe_product_id = Column(String, nullable=True)
    stripe_price_id = Column(String, nullable=True)
    image_url = Column(String, nullable=True)
    meta = Column(JSON, nullable=False, default=dict)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("ix_products_status_device", "status", "device_id"),
    )


class Device(Base):
    __tablename__ = "devices"
    id = Column(String, primary_key=True)
    # hardware id reported by the display, e.g. "ESP32-DEMO-001"
    device_id = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=True)

    # AVAILABLE | SOLD
    status = Column(String, nullable=False, default=STATUS_AVAILABLE,
                    index=True)
    # products.id of the linked product
    product_id = Column(String, nullable=True, index=True)

    last_seen_at = Column(Float, nullable=True, index=True)
    secret = Column(String, nullable=True)
    meta = Column(JSON, nullable=False, default=dict)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    session_id = Column(String, nullable=False, unique=True)
    payment_intent_id = Column(String, nullable=True, index=True)
    product_id = Column(String, nullable=False, index=True)
    device_id = Column(String, nullable=True, index=True)

    # e.g. PAID; payment_status carries the provider's own label
    status = Column(String, nullable=False)
    payment_status = Column(String, nullable=True)
    amount = Column(Integer, nullable=False)  # cents
    currency = Column(String(3), nullable=False, default="EUR")
    customer_email = Column(String, nullable=True)
    raw = Column(JSON, nullable=False, default=dict)

    created_at = Column(Float, nullable=False, index=True)
    updated_at = Column(Float, nullable=False)


class DisplayState(Base):
    """Single-row state of the pre-device dashboard display."""
    __tablename__ = "display_state"
    id = Column(String, primary_key=True, default="current")
    text = Column(String, nullable=False)
    qr = Column(String, nullable=True)
    version = Column(BigInteger, nullable=False, default=0)  # ms
    updated_at = Column(Float, nullable=False)


# for the mock payment provider; unused with Stripe
class MockPaymentSession(Base):
    __tablename__ = "mock_payment_sessions"
    id = Column(String, primary_key=True)
    amount_total = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False)
    # open | complete | expired
    status = Column(String, nullable=False, default="open")
    # unpaid | paid
    payment_status = Column(String, nullable=False, default="unpaid")
    payment_intent_id = Column(String, nullable=True)
    # requires_payment_method | processing | succeeded | canceled
    payment_intent_status = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    meta = Column(JSON, nullable=False, default=dict)
    created_at = Column(Float, nullable=False)
