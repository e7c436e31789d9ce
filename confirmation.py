"""
Payment Confirmation Handler
============================
Reacts to the processor's client-side outcome or to a redirect return.

Both success paths converge on _complete():
    mark SUCCEEDED → clear cart → queue confirmation notification
Cart clearing and notification are best-effort; their failures are logged
and never undo the success transition. A repeated success signal for an
order that already completed is a no-op.
"""

import logging
from typing import Optional
from dataclasses import dataclass

from cart import CartStore
from notifications import OrderConfirmationNotifier
from order import PlacedOrder, PaymentStatus
from payment_state import PaymentState, PaymentStateMachine
from payments import PaymentHandle, parse_redirect_return
from pricing import parse_price, DEFAULT_CURRENCY


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfirmationOutcome:
    completed: bool
    order_id: Optional[str] = None
    duplicate: bool = False
    source: Optional[str] = None
    error: Optional[str] = None


class PaymentConfirmationHandler:
    """Drives PaymentStateMachine from payment outcomes."""

    def __init__(
        self,
        state: PaymentStateMachine,
        cart_store: CartStore,
        notifier: Optional[OrderConfirmationNotifier] = None,
        db=None,
        success_path: str = "/order",
        customer_phone: Optional[str] = None
    ):
        self.state = state
        self.cart_store = cart_store
        self.notifier = notifier
        self.db = db
        self.success_path = success_path
        self.customer_phone = customer_phone

        self.order: Optional[PlacedOrder] = None
        self.handle: Optional[PaymentHandle] = None
        self.completed_order_id: Optional[str] = None

    def begin_payment(self, order: PlacedOrder, handle: PaymentHandle):
        """Payment form shown for order (first attempt or retry)."""
        self.order = order
        self.handle = handle
        self.state.order_id = order.order_id
        self.state.last_error = None

        if self.state.current_state == PaymentState.AWAITING_PAYMENT:
            logger.debug(f"Payment handle refreshed for order {order.order_id}")
            return

        self.state.transition(PaymentState.AWAITING_PAYMENT, reason="payment_form_shown")

    async def handle_payment_success(self, order_id: Optional[str] = None) -> ConfirmationOutcome:
        """Processor SDK reported success."""
        return await self._complete(order_id or (self.order.order_id if self.order else None), "sdk")

    async def handle_redirect_return(self, url: str) -> Optional[ConfirmationOutcome]:
        """
        Inspect a return URL for processor markers.

        Returns:
            None when the URL carries no markers, else the outcome
        """
        markers = parse_redirect_return(url)
        if not markers.is_redirect:
            return None

        logger.info(
            "Detected payment redirect return",
            extra={
                "order_id": markers.order_id,
                "payment_intent": markers.payment_intent,
                "redirect_status": markers.redirect_status
            }
        )

        if markers.is_failure:
            message = f"Payment {markers.redirect_status.replace('_', ' ')}. Please try again."
            self.handle_payment_error(message)
            return ConfirmationOutcome(completed=False, order_id=markers.order_id, source="redirect", error=message)

        if not markers.is_success:
            return ConfirmationOutcome(completed=False, order_id=markers.order_id, source="redirect")

        order_id = markers.order_id or (self.order.order_id if self.order else None)
        return await self._complete(order_id, "redirect")

    def handle_payment_error(self, message: str) -> str:
        """Processor reported failure; order and cart stay for a retry."""
        self.state.last_error = message

        if self.state.current_state != PaymentState.AWAITING_PAYMENT:
            logger.warning(
                f"Payment error outside awaiting_payment ignored: {message}",
                extra={"state": self.state.current_state.value}
            )
            return message

        self.state.transition(PaymentState.FAILED, reason=message)
        return message

    def acknowledge(self) -> str:
        """
        Shopper dismissed the confirmation.

        Returns:
            Path to navigate to
        """
        if self.state.current_state == PaymentState.SUCCEEDED:
            self.state.transition(PaymentState.IDLE, reason="confirmation_acknowledged")
        return self.success_path

    # ========================================================================
    # COMPLETION
    # ========================================================================

    async def _complete(self, order_id: Optional[str], source: str) -> ConfirmationOutcome:
        current = self.state.current_state

        already_done = self.completed_order_id is not None and order_id in (None, self.completed_order_id)
        if already_done and current in (PaymentState.SUCCEEDED, PaymentState.IDLE):
            logger.debug(f"Duplicate success signal ignored ({source})")
            return ConfirmationOutcome(
                completed=True,
                order_id=self.completed_order_id,
                duplicate=True,
                source=source
            )

        if current == PaymentState.SUCCEEDED:
            logger.warning(
                f"Success for order {order_id} while {self.completed_order_id} is confirmed"
            )
            return ConfirmationOutcome(
                completed=False,
                order_id=order_id,
                source=source,
                error="Another order is already confirmed"
            )

        if not order_id:
            logger.error(f"Success signal without an order id ({source})")
            return ConfirmationOutcome(completed=False, source=source, error="Missing order id")

        # Fresh session (e.g. page reloaded during the redirect) or a retry
        if current in (PaymentState.IDLE, PaymentState.FAILED):
            self.state.transition(PaymentState.AWAITING_PAYMENT, reason=f"{source}_resume")

        self.state.order_id = order_id
        self.state.transition(PaymentState.SUCCEEDED, reason=f"{source}_success")
        self.completed_order_id = order_id

        if self.order and self.order.order_id == order_id:
            self.order = self.order.with_status(PaymentStatus.PAID)

        await self._clear_cart()
        await self._notify(order_id)

        return ConfirmationOutcome(completed=True, order_id=order_id, source=source)

    async def _clear_cart(self):
        try:
            await self.cart_store.clear()
        except Exception as e:
            logger.error(f"Error clearing cart after payment: {str(e)}")

    async def _notify(self, order_id: str):
        if not self.notifier:
            return

        try:
            email = self.order.customer_email if self.order and self.order.order_id == order_id else None
            total = self.order.totals.grand_total if email else None

            if email is None and self.db is not None:
                row = await self.db.fetch_order(order_id) or {}
                email = row.get("customer_email")
                total = parse_price(row.get("order_total"))

            if not email:
                logger.warning(f"No email for confirmation of order {order_id}")
                return

            phone = self.customer_phone
            if not phone and self.order and self.order.order_id == order_id:
                phone = dict(self.order.address).get("phoneNumber") or None

            self.notifier.notify_order_confirmed(
                order_id,
                email,
                total,
                phone=phone,
                currency=self.order.currency if self.order else DEFAULT_CURRENCY
            )
        except Exception as e:
            logger.error(f"Failed to queue confirmation for order {order_id}: {str(e)}")
