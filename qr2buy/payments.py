from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple, TypedDict
import asyncio
import base64
import hashlib
import hmac
import json
import time
import uuid

import stripe
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import NotFound, ProviderError, Unauthorized
from .helpers import now_ts, to_minor_units
from .infra.sql import Gated
from .model.db import MockPaymentSession, Product

EVENT_SESSION_COMPLETED = "checkout.session.completed"
EVENT_SESSION_ASYNC_SUCCEEDED = "checkout.session.async_payment_succeeded"
EVENT_SESSION_ASYNC_FAILED = "checkout.session.async_payment_failed"
EVENT_SESSION_EXPIRED = "checkout.session.expired"
COMPLETED_EVENTS = (EVENT_SESSION_COMPLETED, EVENT_SESSION_ASYNC_SUCCEEDED)

STRIPE_SIGNATURE_TOLERANCE = 300  # seconds
STRIPE_API_VERSION = "2024-06-20"


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateSessionResult(TypedDict):
    session_id: str
    url: str


class PaymentAdapter(ABC):
    name: str = "abstract"
    webhook_secret: Optional[str] = None

    @abstractmethod
    async def create_session(
        self, product: Product, *, device_id: Optional[str], quantity: int,
        success_url: str, cancel_url: str,
    ) -> CreateSessionResult: ...

    # session dict shaped like a Stripe Checkout Session, with the
    # payment_intent expanded
    @abstractmethod
    async def retrieve_session(self, session_id: str) -> Dict[str, Any]: ...

    # verify the signature over the raw bytes, then parse
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: Dict[str, str]
                       ) -> Dict[str, Any]: ...

    def event_type(self, event: Dict[str, Any]) -> str:
        return event.get("type", "")

    def event_session(self, event: Dict[str, Any]) -> Dict[str, Any]:
        return ((event.get("data") or {}).get("object")) or {}

    async def aclose(self) -> None:
        return None


def session_metadata(product: Product, device_id: Optional[str]
                     ) -> Dict[str, str]:
    return {
        "productId": str(product.id),
        "productShortId": product.short_id,
        "deviceId": str(device_id) if device_id else "",
        "system": "qr2buy",
    }


def parse_event(payload: bytes) -> Dict[str, Any]:
    try:
        event = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValueError("Invalid JSON body")
    if not isinstance(event, dict):
        raise ValueError("Invalid event")
    return event


# ----------------------------
# Stripe implementation (stripe SDK)
# ----------------------------
def _plain(obj: stripe.StripeObject) -> Dict[str, Any]:
    # StripeObject renders itself as JSON; nested objects become plain dicts
    return json.loads(str(obj))


class StripePay(PaymentAdapter):
    name = "stripe"

    def __init__(self, *, api_key: str,
                 webhook_secret: Optional[str] = None) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    async def _call(self, fn, *args, **params) -> Dict[str, Any]:
        # the SDK's resource calls block; keep them off the event loop
        try:
            obj = await asyncio.to_thread(
                fn, *args, api_key=self.api_key,
                stripe_version=STRIPE_API_VERSION, **params,
            )
        except stripe.StripeError as e:
            if e.http_status == 404:
                raise NotFound("payment session not found")
            raise ProviderError(f"stripe error: {e.user_message or e}",
                                status=e.http_status)
        return _plain(obj)

    async def create_session(
        self, product: Product, *, device_id: Optional[str], quantity: int,
        success_url: str, cancel_url: str,
    ) -> CreateSessionResult:
        session = await self._call(
            stripe.checkout.Session.create,
            mode="payment",
            success_url=success_url,
            cancel_url=cancel_url,
            line_items=[{
                "quantity": quantity,
                "price_data": {
                    "currency": product.currency.lower(),
                    "unit_amount": to_minor_units(product.price),
                    "product_data": {"name": product.name},
                },
            }],
            metadata=session_metadata(product, device_id),
        )
        return {"session_id": session["id"], "url": session["url"]}

    async def retrieve_session(self, session_id: str) -> Dict[str, Any]:
        return await self._call(
            stripe.checkout.Session.retrieve, session_id,
            expand=["payment_intent", "line_items"],
        )

    def verify_webhook(self, payload: bytes, headers: Dict[str, str]
                       ) -> Dict[str, Any]:
        if not self.webhook_secret:
            return parse_event(payload)
        sig = headers.get("stripe-signature")
        if not sig:
            raise Unauthorized("missing signature")
        try:
            event = stripe.Webhook.construct_event(
                payload, sig, self.webhook_secret,
                tolerance=STRIPE_SIGNATURE_TOLERANCE,
            )
        except stripe.SignatureVerificationError as e:
            raise Unauthorized(f"Invalid signature: {e.user_message or e}")
        return _plain(event)



# ----------------------------
# MockPay implementation
# ----------------------------
def mock_signature(payload: bytes, secret: str) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


def mock_session_dict(s: MockPaymentSession) -> Dict[str, Any]:
    return {
        "id": s.id,
        "object": "checkout.session",
        "mode": "payment",
        "amount_total": s.amount_total,
        "currency": s.currency,
        "status": s.status,
        "payment_status": s.payment_status,
        "payment_intent": {
            "id": s.payment_intent_id,
            "status": s.payment_intent_status,
        } if s.payment_intent_id else None,
        "customer_details": {"email": s.customer_email},
        "metadata": dict(s.meta or {}),
        "url": f"/mockpay/{s.id}",
    }


class MockPay(PaymentAdapter):
    """Provider stand-in for development and tests.

    Sessions live in the `mock_payment_sessions` table; `/mockpay/{id}/emit`
    flips one to succeeded/failed/canceled and delivers a signed
    `checkout.session.*` event to the webhook.
    """
    name = "mock"

    # outcome -> (session status, payment_status, payment intent status)
    OUTCOMES = {
        "succeeded": ("complete", "paid", "succeeded"),
        "failed": ("open", "unpaid", "requires_payment_method"),
        "canceled": ("expired", "unpaid", "canceled"),
    }
    EVENTS = {
        "succeeded": EVENT_SESSION_COMPLETED,
        "failed": EVENT_SESSION_ASYNC_FAILED,
        "canceled": EVENT_SESSION_EXPIRED,
    }

    def __init__(self, *, sessions: async_sessionmaker[AsyncSession],
                 gated: Gated, webhook_secret: Optional[str] = None) -> None:
        self.sessions = sessions
        self.gated = gated
        self.webhook_secret = webhook_secret

    async def create_session(
        self, product: Product, *, device_id: Optional[str], quantity: int,
        success_url: str, cancel_url: str,
    ) -> CreateSessionResult:
        sid = f"cs_mock_{uuid.uuid4().hex}"
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    db.add(MockPaymentSession(
                        id=sid,
                        amount_total=to_minor_units(product.price) * quantity,
                        currency=product.currency.lower(),
                        status="open",
                        payment_status="unpaid",
                        meta=session_metadata(product, device_id),
                        created_at=now_ts(),
                    ))
        return {"session_id": sid, "url": f"/mockpay/{sid}"}

    async def _get(self, db: AsyncSession, session_id: str
                   ) -> MockPaymentSession:
        s = await db.get(MockPaymentSession, session_id)
        if s is None:
            raise NotFound("payment session not found")
        return s

    async def retrieve_session(self, session_id: str) -> Dict[str, Any]:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    return mock_session_dict(await self._get(db, session_id))

    async def settle(self, session_id: str, outcome: str, *,
                     customer_email: Optional[str] = None) -> Dict[str, Any]:
        status, payment_status, pi_status = self.OUTCOMES[outcome]
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    s = await self._get(db, session_id)
                    s.status = status
                    s.payment_status = payment_status
                    s.payment_intent_id = (
                        s.payment_intent_id or f"pi_mock_{uuid.uuid4().hex}"
                    )
                    s.payment_intent_status = pi_status
                    if customer_email:
                        s.customer_email = customer_email
                return mock_session_dict(s)

    def build_event(self, session: Dict[str, Any], event_type: str
                    ) -> Tuple[bytes, Dict[str, str]]:
        event = {
            "id": f"evt_mock_{uuid.uuid4().hex}",
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": session},
        }
        payload = json.dumps(event).encode()
        headers = {"content-type": "application/json"}
        if self.webhook_secret:
            headers["x-mockpay-signature"] = mock_signature(
                payload, self.webhook_secret
            )
        return payload, headers

    def verify_webhook(self, payload: bytes, headers: Dict[str, str]
                       ) -> Dict[str, Any]:
        if self.webhook_secret:
            sig = headers.get("x-mockpay-signature")
            expected = mock_signature(payload, self.webhook_secret)
            if not sig or not hmac.compare_digest(expected, sig):
                raise Unauthorized("Invalid signature")
        return parse_event(payload)
