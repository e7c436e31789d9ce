"""
Payments Module
===============
Stripe binding for the checkout.

- create a PaymentIntent (the payment-authorization handle) for a placed order
- read success/failure markers from a browser redirect return
- verify and map webhook events to order statuses

The handle request is idempotency-keyed by order id and amount, so asking
again for the same order never produces a second charge.
"""

import json
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional
from dataclasses import dataclass
from decimal import Decimal
from urllib.parse import urlparse, parse_qs

import stripe
from prometheus_client import Counter

from pricing import to_minor_units


logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

STRIPE_TIMEOUT = 20.0  # seconds
STRIPE_MAX_NETWORK_RETRIES = 2

SUCCESS_REDIRECT_STATUSES = frozenset({"succeeded", "processing"})
FAILURE_REDIRECT_STATUSES = frozenset({"failed", "requires_payment_method", "canceled"})

# Webhook event → orders.status
WEBHOOK_STATUS_MAP = {
    "payment_intent.succeeded": "paid",
    "payment_intent.payment_failed": "failed",
}


payment_handle_requests = Counter(
    'payment_handle_requests_total',
    'Payment handle requests by result',
    ['result']
)


class PaymentProcessorError(Exception):
    """Raised when the processor cannot issue a payment handle."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


@dataclass(frozen=True)
class PaymentHandle:
    """Opaque processor token for a pending charge, confirmed client-side."""
    payment_intent_id: str
    client_secret: str
    amount_minor: int
    currency: str
    order_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payment_intent_id": self.payment_intent_id,
            "client_secret": self.client_secret,
            "amount": self.amount_minor,
            "currency": self.currency,
            "order_id": self.order_id,
        }


# ============================================================================
# PROCESSOR
# ============================================================================

class PaymentProcessor(ABC):

    @abstractmethod
    async def create_payment_handle(
        self,
        amount: Decimal,
        currency: str,
        order_id: str,
        customer_email: str
    ) -> PaymentHandle:
        """
        Raises:
            PaymentProcessorError: The processor refused or was unreachable
        """
        ...


class StripePaymentProcessor(PaymentProcessor):
    """PaymentIntents through the synchronous stripe SDK, run in the executor."""

    def __init__(self, secret_key: str, timeout: float = STRIPE_TIMEOUT):
        stripe.api_key = secret_key
        stripe.max_network_retries = STRIPE_MAX_NETWORK_RETRIES
        self.timeout = timeout

    async def create_payment_handle(
        self,
        amount: Decimal,
        currency: str,
        order_id: str,
        customer_email: str
    ) -> PaymentHandle:
        amount_minor = to_minor_units(amount, currency)
        if amount_minor <= 0:
            payment_handle_requests.labels(result="rejected").inc()
            raise PaymentProcessorError("Order total must be greater than zero to take payment")

        loop = asyncio.get_running_loop()

        try:
            intent = await asyncio.wait_for(
                loop.run_in_executor(
                    None,
                    lambda: stripe.PaymentIntent.create(
                        amount=amount_minor,
                        currency=currency.lower(),
                        receipt_email=customer_email or None,
                        metadata={
                            "orderId": order_id,
                            "customerEmail": customer_email or "",
                        },
                        automatic_payment_methods={"enabled": True},
                        idempotency_key=f"order_{order_id}_{amount_minor}"
                    )
                ),
                timeout=self.timeout
            )

        except asyncio.TimeoutError:
            payment_handle_requests.labels(result="timeout").inc()
            logger.error(f"Payment intent timed out for order {order_id}")
            raise PaymentProcessorError("Payment service timed out. Please try again.")

        except stripe.StripeError as e:
            payment_handle_requests.labels(result="error").inc()
            message = e.user_message or str(e)
            logger.error(f"Stripe error for order {order_id}: {message}")
            raise PaymentProcessorError(message, code=e.code)

        payment_handle_requests.labels(result="success").inc()
        logger.info(
            f"Payment intent {intent.id} created for order {order_id}",
            extra={"order_id": order_id, "amount_minor": amount_minor}
        )

        return PaymentHandle(
            payment_intent_id=intent.id,
            client_secret=intent.client_secret,
            amount_minor=amount_minor,
            currency=currency.lower(),
            order_id=order_id
        )


# ============================================================================
# REDIRECT RETURN
# ============================================================================

@dataclass(frozen=True)
class RedirectReturn:
    """Markers the processor appends to the return URL."""
    order_id: Optional[str] = None
    payment_intent: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_status: Optional[str] = None

    @property
    def is_redirect(self) -> bool:
        return bool(self.order_id or self.payment_intent or self.client_secret)

    @property
    def is_failure(self) -> bool:
        return self.redirect_status in FAILURE_REDIRECT_STATUSES

    @property
    def is_success(self) -> bool:
        """Success markers present; a missing status with an order id counts."""
        if not self.is_redirect or self.is_failure:
            return False
        if self.redirect_status:
            return self.redirect_status in SUCCESS_REDIRECT_STATUSES
        return bool(self.order_id)


def parse_redirect_return(url: str) -> RedirectReturn:
    """Read order_id / payment_intent / client secret / status off a URL."""
    query = parse_qs(urlparse(url or "").query)

    def first(name: str) -> Optional[str]:
        values = query.get(name)
        return values[0] if values else None

    return RedirectReturn(
        order_id=first("order_id"),
        payment_intent=first("payment_intent"),
        client_secret=first("payment_intent_client_secret"),
        redirect_status=first("redirect_status")
    )


# ============================================================================
# WEBHOOKS
# ============================================================================

@dataclass(frozen=True)
class WebhookOutcome:
    event_type: str
    order_id: Optional[str]
    order_status: Optional[str]


def parse_webhook_event(
    payload: bytes,
    signature: Optional[str],
    webhook_secret: Optional[str]
) -> Dict[str, Any]:
    """
    Decode a webhook body, verifying the signature when a secret is set.

    Raises:
        ValueError: Malformed payload or missing signature
        stripe.SignatureVerificationError: Bad signature
    """
    if webhook_secret:
        if not signature:
            raise ValueError("No signature")
        stripe.Webhook.construct_event(payload, signature, webhook_secret)
    else:
        logger.warning("Webhook secret not configured, accepting unsigned event")

    return json.loads(payload)


def map_webhook_event(event: Dict[str, Any]) -> WebhookOutcome:
    """Map a payment_intent event to the order status it implies."""
    event_type = event.get("type", "")
    intent = (event.get("data") or {}).get("object") or {}
    metadata = intent.get("metadata") or {}

    return WebhookOutcome(
        event_type=event_type,
        order_id=metadata.get("orderId"),
        order_status=WEBHOOK_STATUS_MAP.get(event_type)
    )
