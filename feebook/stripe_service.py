"""Stripe Checkout as FeeBook's payment gateway.

The core only talks to the gateway through ``GatewayOrder`` and
``GatewayPayment`` snapshots, so any adapter exposing ``create_order``,
``fetch_order``, ``terminate_order`` and ``parse_webhook`` can stand in.
A FeeBook order is a Checkout Session; its payment records are the charges of
the session's PaymentIntent.

SDK objects are not mappings, so every API result is converted once with
``to_dict()`` and the mapping helpers below only ever see plain dicts.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Protocol

import stripe

from feebook import config
from feebook.errors import (
    ConflictError,
    GatewayUnavailableError,
    InconsistentStateError,
    ValidationError,
)
from feebook.models import OrderStatus, TransactionStatus, utcnow

logger = logging.getLogger(__name__)

stripe.api_key = config.STRIPE_SECRET_KEY
# Bounded latency: one attempt per request, callers poll again on failure
stripe.max_network_retries = 0
stripe.default_http_client = stripe.new_default_http_client(
    timeout=config.GATEWAY_TIMEOUT_SECONDS
)

GATEWAY_NAME = "STRIPE"

SESSION_STATES = {
    "open": OrderStatus.ACTIVE,
    "complete": OrderStatus.PAID,
    "expired": OrderStatus.EXPIRED,
}

CHARGE_STATES = {
    "succeeded": TransactionStatus.SUCCESS,
    "failed": TransactionStatus.FAILED,
    "pending": TransactionStatus.PENDING,
}

# Events that can change an order's state; everything else is acknowledged and ignored
RECONCILE_EVENTS = frozenset({
    "checkout.session.completed",
    "checkout.session.expired",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.processing",
    "payment_intent.canceled",
})

CENT = Decimal("0.01")


@dataclass
class GatewayPayment:
    external_payment_id: Optional[str]
    status: TransactionStatus
    amount: Decimal
    currency: str
    payment_time: Optional[datetime] = None
    payment_method: Optional[dict] = None
    bank_reference: Optional[str] = None
    message: Optional[str] = None
    receipt_url: Optional[str] = None
    gateway: str = GATEWAY_NAME

    def metadata(self):
        return {
            "payment_time": self.payment_time,
            "payment_currency": self.currency,
            "payment_method": self.payment_method,
            "bank_reference": self.bank_reference,
            "payment_message": self.message,
            "payment_gateway": self.gateway,
            "receipt_url": self.receipt_url,
        }


@dataclass
class GatewayOrder:
    external_order_id: str
    state: OrderStatus
    amount: Decimal
    currency: str
    order_reference: Optional[str] = None
    payment_session_id: Optional[str] = None
    checkout_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    tags: dict = field(default_factory=dict)
    payments: List[GatewayPayment] = field(default_factory=list)


@dataclass
class WebhookEvent:
    type: str
    order_reference: Optional[str]
    external_order_id: Optional[str]


class PaymentGateway(Protocol):
    def create_order(self, order_id, amount, currency, description, customer, tags) -> GatewayOrder: ...

    def fetch_order(self, external_order_id) -> GatewayOrder: ...

    def terminate_order(self, external_order_id) -> None: ...

    def parse_webhook(self, payload, signature) -> WebhookEvent: ...


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())


def from_minor_units(value) -> Decimal:
    return (Decimal(int(value or 0)) / 100).quantize(CENT)


def _from_timestamp(value):
    if not value:
        return None
    return datetime.fromtimestamp(int(value), timezone.utc).replace(tzinfo=None)


def _order_reference(obj):
    metadata = obj.get("metadata") or {}
    return obj.get("client_reference_id") or metadata.get("order_id")


class StripeGateway:
    name = GATEWAY_NAME

    def create_order(self, order_id, amount, currency, description, customer, tags):
        expires_at = utcnow() + timedelta(minutes=config.ORDER_EXPIRY_MINUTES)
        return_url = config.CHECKOUT_RETURN_URL.format(order_id=order_id)
        params = {
            "mode": "payment",
            "client_reference_id": order_id,
            "line_items": [{
                "quantity": 1,
                "price_data": {
                    "currency": currency,
                    "unit_amount": to_minor_units(amount),
                    "product_data": {"name": description},
                },
            }],
            "metadata": tags,
            "payment_intent_data": {"metadata": tags, "description": description},
            "success_url": return_url,
            "cancel_url": return_url,
            "expires_at": int(expires_at.replace(tzinfo=timezone.utc).timestamp()),
        }
        if customer.get("email"):
            params["customer_email"] = customer["email"]

        try:
            session = stripe.checkout.Session.create(
                idempotency_key=order_id, **params
            ).to_dict()
        except stripe.StripeError as e:
            logger.error("Checkout session creation failed for order %s: %s", order_id, e)
            raise GatewayUnavailableError(order_id=order_id) from e

        logger.info("Checkout session %s created for order %s", session["id"], order_id)
        return self._to_gateway_order(session, payments=[])

    def fetch_order(self, external_order_id):
        try:
            session = stripe.checkout.Session.retrieve(
                external_order_id, expand=["payment_intent"]
            ).to_dict()
            payments = self._payments(session)
        except stripe.InvalidRequestError as e:
            if e.code == "resource_missing":
                logger.error("Gateway has no checkout session %s", external_order_id)
                raise InconsistentStateError(
                    "Payment gateway does not know this order",
                    external_order_id=external_order_id,
                ) from e
            raise GatewayUnavailableError(external_order_id=external_order_id) from e
        except stripe.StripeError as e:
            logger.warning("Fetching checkout session %s failed: %s", external_order_id, e)
            raise GatewayUnavailableError(external_order_id=external_order_id) from e

        return self._to_gateway_order(session, payments)

    def terminate_order(self, external_order_id):
        try:
            stripe.checkout.Session.expire(external_order_id)
        except stripe.InvalidRequestError as e:
            raise ConflictError(
                "Order can no longer be terminated", external_order_id=external_order_id
            ) from e
        except stripe.StripeError as e:
            raise GatewayUnavailableError(external_order_id=external_order_id) from e
        logger.info("Requested expiry of checkout session %s", external_order_id)

    def parse_webhook(self, payload, signature):
        try:
            event = stripe.Webhook.construct_event(
                payload, signature, config.webhook_secret()
            )
        except ValueError as e:
            raise ValidationError("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            raise ValidationError("Invalid signature") from e

        event = event.to_dict()
        if event["type"] not in RECONCILE_EVENTS:
            return WebhookEvent(type=event["type"], order_reference=None, external_order_id=None)

        obj = event["data"]["object"]
        external_order_id = None
        if obj.get("object") == "checkout.session":
            external_order_id = obj.get("id")
        return WebhookEvent(
            type=event["type"],
            order_reference=_order_reference(obj),
            external_order_id=external_order_id,
        )

    def _to_gateway_order(self, session, payments):
        metadata = dict(session.get("metadata") or {})
        return GatewayOrder(
            external_order_id=session["id"],
            state=SESSION_STATES.get(session.get("status"), OrderStatus.ACTIVE),
            amount=from_minor_units(session.get("amount_total")),
            currency=(session.get("currency") or config.ORDER_CURRENCY).upper(),
            order_reference=_order_reference(session),
            payment_session_id=session["id"],
            checkout_url=session.get("url"),
            expires_at=_from_timestamp(session.get("expires_at")),
            tags=metadata,
            payments=payments,
        )

    def _payments(self, session):
        intent = session.get("payment_intent")
        currency = (session.get("currency") or config.ORDER_CURRENCY).upper()
        if isinstance(intent, str):
            intent = stripe.PaymentIntent.retrieve(intent).to_dict()

        charges = []
        if intent:
            charges = stripe.Charge.list(payment_intent=intent["id"], limit=100).to_dict()["data"]

        if not charges:
            if intent and intent.get("status") == "canceled":
                status = TransactionStatus.CANCELLED
            elif session.get("status") == "expired":
                status = TransactionStatus.USER_DROPPED
            else:
                status = TransactionStatus.NOT_ATTEMPTED
            return [GatewayPayment(
                external_payment_id=None,
                status=status,
                amount=from_minor_units(session.get("amount_total")),
                currency=currency,
            )]

        return [self._to_gateway_payment(charge) for charge in charges]

    def _to_gateway_payment(self, charge):
        status = CHARGE_STATES.get(charge.get("status"), TransactionStatus.PENDING)
        outcome = charge.get("outcome") or {}
        balance_txn = charge.get("balance_transaction")
        if isinstance(balance_txn, dict):
            balance_txn = balance_txn.get("id")
        return GatewayPayment(
            external_payment_id=charge["id"],
            status=status,
            amount=from_minor_units(charge.get("amount")),
            currency=(charge.get("currency") or config.ORDER_CURRENCY).upper(),
            payment_time=_from_timestamp(charge.get("created")),
            payment_method=dict(charge.get("payment_method_details") or {}) or None,
            bank_reference=balance_txn,
            message=charge.get("failure_message") or outcome.get("seller_message"),
            receipt_url=charge.get("receipt_url"),
        )


def get_gateway():
    return StripeGateway()
