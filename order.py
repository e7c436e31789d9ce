"""
Order Module
============
Order placement: one atomic create call, then a separate payment-handle
request.

Flow:
    validate → normalize lines → create_order_with_items (atomic)
             → record discount usage → request payment handle

The two network calls are split on purpose: when the handle request fails
the order already exists in a pending state, and request_payment() can be
called again for that same order without creating another one.

Placed orders are frozen snapshots. Later price changes never reach them.
"""

import logging
from typing import Dict, List, Any, Optional, Tuple
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum

from prometheus_client import Counter, Histogram

from address import ShippingAddress, validate_shipping_address, validate_email
from cart import CartLine, ProductKind, ProductRef
from discounts import DiscountEvaluation, DiscountService
from menu import ResolvedProduct
from payments import PaymentHandle, PaymentProcessor, PaymentProcessorError
from pricing import OrderTotals, ZERO


logger = logging.getLogger(__name__)


# ============================================================================
# METRICS
# ============================================================================

order_placements = Counter(
    'order_placements_total',
    'Order placement attempts by result',
    ['result']
)
order_value = Histogram(
    'order_value',
    'Grand total of created orders',
    buckets=(100, 250, 500, 1000, 2500, 5000, 10000)
)
payment_handle_failures = Counter(
    'payment_handle_failures_total',
    'Payment handle requests that failed after order creation'
)


# ============================================================================
# TYPES
# ============================================================================

class PaymentStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class PlacementErrorKind(Enum):
    VALIDATION = "validation"  # Fix a field, nothing was created
    REJECTED = "rejected"      # Store refused the order, nothing was created
    PAYMENT = "payment"        # Order exists, payment handle missing; retry


class OrderValidationError(Exception):
    """Raised when cart lines cannot be turned into order lines."""
    pass


@dataclass(frozen=True)
class OrderLine:
    """Immutable price-at-purchase snapshot of one cart line."""
    product_ref: ProductRef
    name: str
    quantity: int
    price_at_purchase: Decimal
    variant_id: Optional[str] = None
    combination_id: Optional[str] = None
    variant_metadata: Optional[Tuple[Tuple[str, Any], ...]] = None

    @property
    def line_total(self) -> Decimal:
        return self.price_at_purchase * self.quantity

    def to_rpc_item(self) -> Dict[str, Any]:
        """Item shape expected by create_order_with_items."""
        is_menu_item = self.product_ref.kind == ProductKind.MENU_ITEM
        return {
            "product_id": None if is_menu_item else self.product_ref.id,
            "menu_item_id": self.product_ref.id if is_menu_item else None,
            "quantity": self.quantity,
            "price_at_purchase": float(self.price_at_purchase),
            "variant_id": self.variant_id,
            "combination_id": self.combination_id,
            "variant_metadata": dict(self.variant_metadata) if self.variant_metadata else None,
        }


@dataclass(frozen=True)
class PlacedOrder:
    """Snapshot of a created order."""
    order_id: str
    owner_ref: str
    customer_email: str
    lines: Tuple[OrderLine, ...]
    address: Tuple[Tuple[str, str], ...]
    totals: OrderTotals
    currency: str
    is_guest: bool = False
    discount_code_id: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    created_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def with_status(self, status: PaymentStatus) -> "PlacedOrder":
        return replace(self, payment_status=status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "owner_ref": self.owner_ref,
            "customer_email": self.customer_email,
            "is_guest": self.is_guest,
            "lines": [
                {
                    "product": str(line.product_ref),
                    "name": line.name,
                    "quantity": line.quantity,
                    "price_at_purchase": str(line.price_at_purchase),
                    "variant_id": line.variant_id,
                    "combination_id": line.combination_id,
                }
                for line in self.lines
            ],
            "address": dict(self.address),
            "totals": self.totals.to_dict(),
            "currency": self.currency,
            "payment_status": self.payment_status.value,
            "created_at": self.created_at,
        }


@dataclass
class PlacementRequest:
    """Everything the checkout has gathered at the moment of placing."""
    lines: List[CartLine]
    products: List[ResolvedProduct]
    address: ShippingAddress
    require_phone: bool
    customer_email: Optional[str]
    totals: OrderTotals
    currency: str
    user_id: Optional[str] = None
    guest_session_id: Optional[str] = None
    discount: Optional[DiscountEvaluation] = None

    @property
    def is_guest(self) -> bool:
        return self.user_id is None


@dataclass
class PlacementResult:
    """Typed outcome of place_order() / request_payment()."""
    success: bool
    order: Optional[PlacedOrder] = None
    handle: Optional[PaymentHandle] = None
    error: Optional[str] = None
    error_kind: Optional[PlacementErrorKind] = None
    missing_fields: List[str] = field(default_factory=list)
    recoverable: bool = False

    @classmethod
    def validation_failure(cls, message: str, missing: Optional[List[str]] = None) -> "PlacementResult":
        return cls(
            success=False,
            error=message,
            error_kind=PlacementErrorKind.VALIDATION,
            missing_fields=missing or []
        )


# ============================================================================
# LINE NORMALIZATION
# ============================================================================

def build_order_lines(lines: List[CartLine], products: List[ResolvedProduct]) -> List[OrderLine]:
    """
    Pair cart lines with their resolved products.

    Raises:
        OrderValidationError: Length mismatch or a non-positive price
    """
    if len(lines) != len(products):
        raise OrderValidationError("Cart changed while preparing the order. Please try again.")

    order_lines = []
    for line, product in zip(lines, products):
        price = product.current_price
        if price is None or price <= ZERO:
            raise OrderValidationError(f"Invalid price for product: {product.name}")

        metadata = None
        if line.variant_display:
            metadata = (("display", line.variant_display),)

        order_lines.append(OrderLine(
            product_ref=line.product_ref,
            name=product.name,
            quantity=line.quantity,
            price_at_purchase=price,
            variant_id=line.variant_ref,
            combination_id=line.combination_ref,
            variant_metadata=metadata
        ))

    return order_lines


# ============================================================================
# ORDER PLACEMENT
# ============================================================================

class OrderPlacement:
    """
    Places orders against the store and requests payment handles.

    Never raises past its boundary; every outcome is a PlacementResult.
    """

    def __init__(
        self,
        db,
        payments: PaymentProcessor,
        discounts: Optional[DiscountService] = None
    ):
        self.db = db
        self.payments = payments
        self.discounts = discounts

    def validate(self, request: PlacementRequest) -> Optional[PlacementResult]:
        """Return a VALIDATION failure, or None when placement may proceed."""
        address = validate_shipping_address(request.address, request.require_phone)
        if not address.valid:
            order_placements.labels(result="invalid_address").inc()
            return PlacementResult.validation_failure(address.message, address.missing)

        email = (request.customer_email or "").strip()
        if not email:
            order_placements.labels(result="invalid_email").inc()
            message = (
                "Please provide your email address."
                if request.is_guest
                else "Your account has no email address. Please add one to continue."
            )
            return PlacementResult.validation_failure(message, ["Email"])

        if not validate_email(email):
            order_placements.labels(result="invalid_email").inc()
            return PlacementResult.validation_failure(
                "Please provide a valid email address.",
                ["Email"]
            )

        if not request.lines:
            order_placements.labels(result="empty_cart").inc()
            return PlacementResult.validation_failure("Your cart is empty.")

        return None

    async def place_order(self, request: PlacementRequest) -> PlacementResult:
        """
        Create the order atomically, then request a payment handle.

        Returns:
            PlacementResult; on PAYMENT failure the order is set and
            recoverable is True
        """
        failure = self.validate(request)
        if failure:
            return failure

        try:
            order_lines = build_order_lines(request.lines, request.products)
        except OrderValidationError as e:
            order_placements.labels(result="invalid_lines").inc()
            return PlacementResult.validation_failure(str(e))

        snapshot = request.address.to_snapshot()
        discount = request.discount if request.discount and request.discount.valid else None
        discount_code = discount.code if discount else None

        params = {
            "_user_id": request.user_id,
            "_customer_email": request.customer_email.strip(),
            "_customer_name": snapshot["fullName"],
            "_shipping_address": snapshot,
            "_items": [line.to_rpc_item() for line in order_lines],
            "_subtotal": None,
            "_discount_code_id": discount_code.id if discount_code else None,
            "_discount_amount": float(request.totals.discount_amount),
            "_guest_session_id": request.guest_session_id if request.is_guest else None,
            "_is_guest": request.is_guest,
        }

        result = await self.db.create_order_with_items(params)

        if not result.get("success") or not result.get("order_id"):
            order_placements.labels(result="rejected").inc()
            message = result.get("error") or "Failed to create order"
            logger.warning(f"Order creation rejected: {message}")
            return PlacementResult(
                success=False,
                error=message,
                error_kind=PlacementErrorKind.REJECTED
            )

        order = PlacedOrder(
            order_id=str(result["order_id"]),
            owner_ref=request.user_id or request.guest_session_id or "",
            customer_email=request.customer_email.strip(),
            lines=tuple(order_lines),
            address=tuple(snapshot.items()),
            totals=request.totals,
            currency=request.currency,
            is_guest=request.is_guest,
            discount_code_id=discount_code.id if discount_code else None
        )

        order_placements.labels(result="created").inc()
        order_value.observe(float(order.totals.grand_total))
        logger.info(
            f"Order {order.order_id} created ({len(order_lines)} lines)",
            extra={"order_id": order.order_id, "is_guest": order.is_guest}
        )

        self.db.store_checkout_event("order_created", {
            "order_id": order.order_id,
            "grand_total": str(order.totals.grand_total),
            "is_guest": order.is_guest,
        })

        if discount_code and self.discounts:
            usage = await self.discounts.record_usage(
                discount_code,
                order.order_id,
                request.user_id,
                request.totals.discount_amount,
                request.totals.grand_total
            )
            if not usage.success:
                logger.warning(
                    f"Discount usage not recorded for order {order.order_id}: {usage.message}"
                )

        return await self.request_payment(order)

    async def request_payment(self, order: PlacedOrder) -> PlacementResult:
        """
        Request a payment handle for an existing order.

        Safe to call repeatedly for the same order.
        """
        try:
            handle = await self.payments.create_payment_handle(
                order.totals.grand_total,
                order.currency,
                order.order_id,
                order.customer_email
            )

        except PaymentProcessorError as e:
            payment_handle_failures.inc()
            logger.error(f"Payment handle failed for order {order.order_id}: {e.message}")
            return PlacementResult(
                success=False,
                order=order,
                error=e.message,
                error_kind=PlacementErrorKind.PAYMENT,
                recoverable=True
            )

        except Exception as e:
            payment_handle_failures.inc()
            logger.error(
                f"Unexpected payment handle error for order {order.order_id}: {str(e)}",
                exc_info=True
            )
            return PlacementResult(
                success=False,
                order=order,
                error="Could not start payment. Please try again.",
                error_kind=PlacementErrorKind.PAYMENT,
                recoverable=True
            )

        return PlacementResult(success=True, order=order, handle=handle)
