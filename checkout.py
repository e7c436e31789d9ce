"""
Checkout Session (Production)
=============================
Central orchestration for one shopper's checkout.

Responsibilities:
- Load the cart and keep resolved products and totals current
- Hold the address selection and the applied discount
- Place the order, start/retry payment, react to payment outcomes
- Own the realtime listeners for the lifetime of the view
- Answer "should we leave checkout?" from the payment state, never from a flag

Flow:
    Cart Store → Product Resolver → Totals → Address → Order Placement
              → Payment Confirmation → Cart Store (cleared)
"""

import structlog
from typing import Optional, Dict, Any, List, Set, Union
from datetime import datetime
from decimal import Decimal

from address import AddressManager, AddressValidation, ShippingAddress
from cart import CartLine, CartStore, ProductRef
from checkout_realtime import ChangeFeed, CheckoutRealtime, Notice, DEBOUNCE_SECONDS
from confirmation import ConfirmationOutcome, PaymentConfirmationHandler
from discounts import DiscountEvaluation, DiscountService, evaluate_discount
from menu import MenuRepository, ProductResolver, ResolvedProduct
from notifications import OrderConfirmationNotifier
from order import (
    OrderPlacement,
    PlacedOrder,
    PlacementErrorKind,
    PlacementRequest,
    PlacementResult,
)
from payment_state import PaymentState, PaymentStateMachine
from payments import PaymentHandle, PaymentProcessor
from pricing import OrderTotals, PricingPolicy, calculate_subtotal, calculate_totals, ZERO

# Structured logging
logger = structlog.get_logger(__name__)


class CheckoutSession:
    """
    One open checkout view.

    This class:
    - Composes the checkout components
    - Sequences order creation before the payment-handle request
    - Suspends realtime while payment is in flight

    This class does NOT:
    - Talk to Supabase or Stripe directly
    - Compute prices itself
    """

    def __init__(
        self,
        session_id: str,
        db,
        cart_store: CartStore,
        payments: PaymentProcessor,
        policy: Optional[PricingPolicy] = None,
        feed: Optional[ChangeFeed] = None,
        notifier: Optional[OrderConfirmationNotifier] = None,
        discounts: Optional[DiscountService] = None,
        user_id: Optional[str] = None,
        customer_email: Optional[str] = None,
        customer_phone: Optional[str] = None,
        success_path: str = "/order",
        debounce_seconds: float = DEBOUNCE_SECONDS,
        resolver: Optional[ProductResolver] = None
    ):
        self.session_id = session_id
        self.db = db
        self.cart_store = cart_store
        self.policy = policy or PricingPolicy()
        self.user_id = user_id
        self.customer_email = customer_email
        self.created_at = datetime.utcnow()

        # Core components
        self.resolver = resolver or ProductResolver(MenuRepository(db))
        self.state = PaymentStateMachine(session_id)
        self.addresses = AddressManager()
        self.discounts = discounts
        self.placement = OrderPlacement(db, payments, discounts)
        self.confirmation = PaymentConfirmationHandler(
            self.state,
            cart_store,
            notifier=notifier,
            db=db,
            success_path=success_path,
            customer_phone=customer_phone
        )
        self.realtime: Optional[CheckoutRealtime] = None
        if feed is not None:
            self.realtime = CheckoutRealtime(
                feed,
                self.state,
                refresh_products=self.refresh_products,
                refresh_addresses=self.refresh_addresses,
                debounce_seconds=debounce_seconds,
                price_lookup=self._shown_price
            )

        # View state
        self.lines: List[CartLine] = []
        self.resolved: List[ResolvedProduct] = []
        self.discount: Optional[DiscountEvaluation] = None
        self.pending_order: Optional[PlacedOrder] = None
        self.handle: Optional[PaymentHandle] = None
        self.last_error: Optional[str] = None
        self.notices: List[Notice] = []
        self.mounted = False

    @property
    def guest_session_id(self) -> Optional[str]:
        return self.cart_store.owner_ref if self.cart_store.is_guest else None

    @property
    def payment_state(self) -> PaymentState:
        return self.state.current_state

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def mount(self):
        """Load cart and addresses, then open realtime subscriptions."""
        await self.reload_cart()

        if self.user_id:
            await self.addresses.load_saved(self.db, self.user_id)

        if self.realtime:
            await self.realtime.mount(self._product_refs(), self.user_id)

        self.mounted = True
        logger.info(
            "checkout_mounted",
            session_id=self.session_id,
            is_guest=self.user_id is None,
            lines=len(self.lines)
        )

    async def unmount(self):
        """Close the view; all realtime listeners are torn down."""
        if self.realtime:
            await self.realtime.unmount()
        self.mounted = False
        logger.info("checkout_unmounted", session_id=self.session_id)

    # ========================================================================
    # CART & TOTALS
    # ========================================================================

    async def reload_cart(self):
        """Re-read the cart and re-resolve every line."""
        self.lines = await self.cart_store.load()
        self.resolved = await self.resolver.resolve(self.lines)
        self._reevaluate_discount()

        if self.realtime:
            await self.realtime.watch(self._product_refs())

        if self.pending_order is not None and not self._pending_order_matches_cart():
            await self._discard_pending_order()

    @property
    def subtotal(self) -> Decimal:
        return calculate_subtotal(self._priced_lines())

    @property
    def totals(self) -> OrderTotals:
        discount = self.discount.discount_amount if self.discount and self.discount.valid else ZERO
        return calculate_totals(self._priced_lines(), self.policy, discount)

    @property
    def discount_base(self) -> Decimal:
        """Subtotal plus delivery and tax; codes are checked against this."""
        return calculate_totals(self._priced_lines(), self.policy).total_before_discount

    def _priced_lines(self):
        return [
            (product.current_price, line.quantity)
            for line, product in zip(self.lines, self.resolved)
        ]

    def _product_refs(self) -> Set[ProductRef]:
        return {line.product_ref for line in self.lines}

    def _shown_price(self, ref: ProductRef) -> Optional[Decimal]:
        for line, product in zip(self.lines, self.resolved):
            if line.product_ref == ref:
                return product.current_price
        return None

    # ========================================================================
    # DISCOUNTS
    # ========================================================================

    async def apply_discount(self, code_text: str) -> DiscountEvaluation:
        if self.discounts is None:
            return DiscountEvaluation(
                valid=False,
                error="Discounts disabled",
                message="Discount codes are not available right now."
            )

        if not self.user_id:
            return DiscountEvaluation(
                valid=False,
                error="Login required",
                message="You must be logged in to use discount codes"
            )

        evaluation = await self.discounts.validate(code_text, self.user_id, self.discount_base)
        if evaluation.valid:
            self.discount = evaluation
            logger.info(
                "discount_applied",
                session_id=self.session_id,
                code=evaluation.code.code,
                amount=str(evaluation.discount_amount)
            )
        else:
            logger.info("discount_rejected", session_id=self.session_id, reason=evaluation.error)
        return evaluation

    def remove_discount(self):
        if self.discount:
            logger.info("discount_removed", session_id=self.session_id)
        self.discount = None

    def _reevaluate_discount(self):
        """Recompute an applied code against the current cart total."""
        if not self.discount or not self.discount.code:
            return

        evaluation = evaluate_discount(
            self.discount.code,
            self.discount_base,
            currency=self.policy.currency
        )
        if evaluation.valid:
            self.discount = evaluation
            return

        self.discount = None
        self.notices.append(Notice("discount_removed", evaluation.message or "Discount removed", "error"))

    # ========================================================================
    # ADDRESS
    # ========================================================================

    def select_saved_address(self, address_id: str) -> ShippingAddress:
        return self.addresses.select_saved(address_id)

    def use_manual_address(self, form: Optional[Union[ShippingAddress, Dict[str, Any]]] = None) -> ShippingAddress:
        if isinstance(form, dict):
            form = ShippingAddress(**{
                key: value or ""
                for key, value in form.items()
                if key in ShippingAddress.field_names()
            })
        return self.addresses.use_manual_entry(form)

    def validate_address(self) -> AddressValidation:
        return self.addresses.validate()

    # ========================================================================
    # ORDER & PAYMENT
    # ========================================================================

    async def place_order(self) -> PlacementResult:
        """
        Create the order and start payment.

        A pending order from an earlier payment-handle failure is retried
        instead of creating a second one, as long as the cart still matches
        it. A changed cart cancels the pending order and places a new one.
        """
        if self.state.current_state in (PaymentState.AWAITING_PAYMENT, PaymentState.SUCCEEDED):
            return PlacementResult.validation_failure("Payment is already in progress.")

        if self.pending_order is not None:
            await self.reload_cart()

        if self.pending_order is not None:
            logger.info(
                "pending_order_reused",
                session_id=self.session_id,
                order_id=self.pending_order.order_id
            )
            return await self._request_payment()

        request = PlacementRequest(
            lines=list(self.lines),
            products=list(self.resolved),
            address=self.addresses.form,
            require_phone=self.addresses.require_phone,
            customer_email=self.customer_email,
            totals=self.totals,
            currency=self.policy.currency,
            user_id=self.user_id,
            guest_session_id=self.guest_session_id,
            discount=self.discount
        )

        result = await self.placement.place_order(request)
        await self._handle_placement(result)
        return result

    async def retry_payment(self) -> PlacementResult:
        """Request a new payment handle for the pending order."""
        if self.pending_order is None:
            return PlacementResult.validation_failure("There is no order awaiting payment.")

        if self.state.current_state == PaymentState.SUCCEEDED:
            return PlacementResult.validation_failure("This order has already been paid.")

        if self.state.current_state == PaymentState.AWAITING_PAYMENT and self.handle:
            return PlacementResult(success=True, order=self.pending_order, handle=self.handle)

        await self.reload_cart()
        if self.pending_order is None:
            return PlacementResult.validation_failure("Your cart changed. Please place your order again.")

        return await self._request_payment()

    async def _request_payment(self) -> PlacementResult:
        result = await self.placement.request_payment(self.pending_order)
        await self._handle_placement(result)
        return result

    def _pending_order_matches_cart(self) -> bool:
        """True when the pending order was built from the cart as it is now."""
        if self.state.current_state in (PaymentState.AWAITING_PAYMENT, PaymentState.SUCCEEDED):
            return True

        ordered = sorted(
            (str(line.product_ref), line.quantity, line.variant_id or "", line.combination_id or "")
            for line in self.pending_order.lines
        )
        in_cart = sorted(
            (str(line.product_ref), line.quantity, line.variant_ref or "", line.combination_ref or "")
            for line in self.lines
        )
        return (
            ordered == in_cart and
            self.pending_order.totals.grand_total == self.totals.grand_total
        )

    async def _discard_pending_order(self):
        """Cancel a pending order the cart no longer matches."""
        order, self.pending_order = self.pending_order, None
        self.handle = None
        logger.info(
            "pending_order_discarded",
            session_id=self.session_id,
            order_id=order.order_id
        )
        await self.db.update_order_status(order.order_id, "cancelled")

    async def _handle_placement(self, result: PlacementResult):
        if result.success:
            self.last_error = None
            self.pending_order = result.order
            self.handle = result.handle

            # Tear down listeners before the payment form shows
            if self.realtime:
                await self.realtime.suspend()
            self.confirmation.begin_payment(result.order, result.handle)

            logger.info(
                "payment_started",
                session_id=self.session_id,
                order_id=result.order.order_id,
                grand_total=str(result.order.totals.grand_total)
            )
            return

        self.last_error = result.error

        if result.error_kind == PlacementErrorKind.PAYMENT:
            self.pending_order = result.order
            logger.warning(
                "payment_handle_failed",
                session_id=self.session_id,
                order_id=result.order.order_id if result.order else None,
                error=result.error
            )
        else:
            logger.info(
                "order_not_placed",
                session_id=self.session_id,
                kind=result.error_kind.value if result.error_kind else None,
                error=result.error
            )

    async def on_payment_success(self, order_id: Optional[str] = None) -> ConfirmationOutcome:
        outcome = await self.confirmation.handle_payment_success(order_id)
        await self._after_confirmation(outcome)
        return outcome

    async def on_payment_error(self, message: str) -> str:
        self.last_error = self.confirmation.handle_payment_error(message)
        logger.warning("payment_failed", session_id=self.session_id, error=message)

        if self.realtime:
            await self.realtime.resume()
        return self.last_error

    async def on_redirect_return(self, url: str) -> Optional[ConfirmationOutcome]:
        outcome = await self.confirmation.handle_redirect_return(url)
        if outcome is None:
            return None

        if outcome.completed:
            await self._after_confirmation(outcome)
        elif outcome.error:
            self.last_error = outcome.error
            if self.realtime:
                await self.realtime.resume()
        return outcome

    async def _after_confirmation(self, outcome: ConfirmationOutcome):
        if not outcome.completed or outcome.duplicate:
            return

        if self.realtime:
            await self.realtime.suspend()

        # Cart was cleared; the payment state keeps the view from redirecting
        self.lines = []
        self.resolved = []
        self.discount = None
        self.handle = None
        self.pending_order = self.confirmation.order
        logger.info("order_paid", session_id=self.session_id, order_id=outcome.order_id, source=outcome.source)

    async def acknowledge_confirmation(self) -> str:
        """Dismiss the confirmation; returns the path to navigate to."""
        path = self.confirmation.acknowledge()
        self.pending_order = None
        if self.realtime:
            await self.realtime.resume()
        return path

    def should_redirect_away(self) -> bool:
        """Empty cart means 'leave checkout' unless payment owns the view."""
        return not self.lines and not self.state.blocks_empty_cart_redirect()

    # ========================================================================
    # REALTIME REFRESH
    # ========================================================================

    async def refresh_products(self, refs: Optional[Set[ProductRef]] = None):
        """Drop cached product data for refs and re-resolve the cart."""
        self.resolver.invalidate(self.lines, refs)
        await self.reload_cart()
        logger.debug("products_refreshed", session_id=self.session_id, refs=len(refs or ()))

    async def refresh_addresses(self):
        if not self.user_id:
            return
        await self.addresses.load_saved(self.db, self.user_id)
        logger.debug("addresses_refreshed", session_id=self.session_id)

    def drain_notices(self) -> List[Notice]:
        notices, self.notices = self.notices, []
        if self.realtime:
            notices.extend(self.realtime.drain_notices())
        return notices

    # ========================================================================
    # VIEW
    # ========================================================================

    def snapshot(self) -> Dict[str, Any]:
        """Serializable view of the session."""
        totals = self.totals
        validation = self.addresses.validate()
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "guest_session_id": self.guest_session_id,
            "payment_state": self.state.current_state.value,
            "should_redirect_away": self.should_redirect_away(),
            "lines": [
                {
                    "id": line.id,
                    "product": str(line.product_ref),
                    "quantity": line.quantity,
                    "variant_id": line.variant_ref,
                    "combination_id": line.combination_ref,
                    "variant_display": line.variant_display,
                    "resolved": product.to_dict(),
                }
                for line, product in zip(self.lines, self.resolved)
            ],
            "totals": totals.to_dict(),
            "totals_display": totals.formatted(self.policy.currency),
            "currency": self.policy.currency,
            "discount": {
                "code": self.discount.code.code,
                "description": self.discount.code.describe(self.policy.currency),
                "amount": str(self.discount.discount_amount),
            } if self.discount and self.discount.valid else None,
            "address": {
                "mode": self.addresses.mode.value,
                "selected_id": self.addresses.selected_id,
                "form": self.addresses.form.to_dict(),
                "valid": validation.valid,
                "missing": validation.missing,
                "errors": validation.errors,
            },
            "order": self.pending_order.to_dict() if self.pending_order else None,
            "payment_handle": self.handle.to_dict() if self.handle else None,
            "last_error": self.last_error,
        }
