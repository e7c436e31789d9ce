from decimal import Decimal

import pytest

from cart import ProductKind, ProductRef
from checkout import CheckoutSession
from conftest import FakePayments
from discounts import DiscountService
from order import PlacementErrorKind
from payment_state import PaymentState


PIZZA = ProductRef(ProductKind.MENU_ITEM, "mi-1")


def guest_session(db, store, payments, feed=None, notifier=None, discounts=None):
    return CheckoutSession(
        "s-guest",
        db,
        store,
        payments,
        feed=feed,
        notifier=notifier,
        discounts=discounts,
        customer_email="guest@example.com",
        debounce_seconds=0.01
    )


@pytest.fixture
async def session(db, guest_store, payments, feed, notifier, address_form):
    await guest_store.add(PIZZA, 2)
    checkout = guest_session(db, guest_store, payments, feed, notifier, DiscountService(db))
    await checkout.mount()
    checkout.use_manual_address(address_form)
    yield checkout
    await checkout.unmount()


async def test_totals_for_loaded_cart(session):
    totals = session.totals

    assert totals.subtotal == Decimal("900")
    assert totals.delivery_fee == Decimal("0")
    assert totals.tax == Decimal("72.00")
    assert totals.grand_total == Decimal("972.00")
    assert session.snapshot()["totals_display"]["grand_total"] == "৳972.00"


async def test_guest_checkout_end_to_end(session, feed, guest_store, notifier):
    result = await session.place_order()

    assert result.success
    assert session.payment_state == PaymentState.AWAITING_PAYMENT
    assert feed.active() == []

    outcome = await session.on_payment_success()

    assert outcome.completed
    assert session.lines == []
    assert await guest_store.load() == []
    assert not session.should_redirect_away()
    assert notifier.queue.size() == 1

    assert await session.acknowledge_confirmation() == "/order"
    assert session.payment_state == PaymentState.IDLE
    assert session.should_redirect_away()


async def test_realtime_price_change_updates_totals(session, db, feed):
    db.add_product("menu_items", {"id": "mi-1", "name": "Margherita Pizza", "price": "480"})

    feed.emit("menu_items", {"id": "mi-1", "price": "480"}, {"id": "mi-1"})
    await session.realtime.wait_for_refresh()

    assert session.subtotal == Decimal("960")
    assert [n.kind for n in session.drain_notices()] == ["price_changed"]


async def test_rejected_order_leaves_cart_and_state(session, db, payments):
    db.reject_with = "Insufficient stock for product: Margherita Pizza"

    result = await session.place_order()

    assert result.error_kind == PlacementErrorKind.REJECTED
    assert session.last_error == "Insufficient stock for product: Margherita Pizza"
    assert len(session.lines) == 1
    assert session.payment_state == PaymentState.IDLE
    assert payments.calls == []


async def test_payment_handle_failure_reuses_order(db, guest_store, feed, address_form):
    await guest_store.add(PIZZA, 2)
    checkout = guest_session(db, guest_store, FakePayments(fail_times=1), feed)
    await checkout.mount()
    checkout.use_manual_address(address_form)

    first = await checkout.place_order()
    second = await checkout.place_order()

    assert first.error_kind == PlacementErrorKind.PAYMENT
    assert second.success
    assert second.order.order_id == first.order.order_id
    assert len(db.rpc_calls) == 1
    assert checkout.payment_state == PaymentState.AWAITING_PAYMENT
    await checkout.unmount()


async def test_place_order_blocked_while_awaiting(session, db):
    await session.place_order()

    again = await session.place_order()

    assert not again.success
    assert len(db.rpc_calls) == 1


async def test_payment_error_resumes_realtime(session, feed):
    await session.place_order()

    await session.on_payment_error("Your card was declined.")

    assert session.payment_state == PaymentState.FAILED
    assert len(feed.active("menu_items")) == 1
    assert len(session.lines) == 1

    retry = await session.retry_payment()
    assert retry.success
    assert session.payment_state == PaymentState.AWAITING_PAYMENT


async def test_redirect_return_after_reload(db, guest_store, payments, feed, notifier):
    checkout = guest_session(db, guest_store, payments, feed, notifier)
    db.orders["order-7"] = {"id": "order-7", "customer_email": "guest@example.com", "order_total": "972"}
    await checkout.mount()

    outcome = await checkout.on_redirect_return(
        "/checkout?order_id=order-7&payment_intent=pi_7&redirect_status=succeeded"
    )

    assert outcome.completed
    assert checkout.payment_state == PaymentState.SUCCEEDED
    assert not checkout.should_redirect_away()
    await checkout.unmount()


@pytest.fixture
async def member(db, server_store, payments):
    checkout = CheckoutSession(
        "s-member", db, server_store, payments,
        discounts=DiscountService(db),
        user_id="user-1",
        customer_email="karim@example.com"
    )
    yield checkout
    await checkout.unmount()


async def test_discount_checked_against_total_with_delivery_and_tax(member, db, server_store):
    db.discount_codes["SAVE10"] = {
        "id": "dc-1", "code": "SAVE10", "discount_type": "percentage", "discount_value": "10",
    }
    await server_store.add(PIZZA, 1)
    await member.mount()

    applied = await member.apply_discount("SAVE10")

    assert applied.discount_amount == Decimal("53.60")
    assert member.totals.grand_total == Decimal("482.40")


async def test_discount_apply_then_remove_restores_totals(member, db, server_store):
    db.discount_codes["SAVE10"] = {
        "id": "dc-1", "code": "SAVE10", "discount_type": "percentage", "discount_value": "10",
    }
    await server_store.add(PIZZA, 2)
    await member.mount()
    before = member.totals

    applied = await member.apply_discount("save10")
    assert applied.valid
    assert member.totals.grand_total == Decimal("874.80")

    member.remove_discount()
    member.remove_discount()
    assert member.totals == before


async def test_discount_dropped_when_cart_falls_below_minimum(member, db, server_store):
    db.discount_codes["BIG"] = {
        "id": "dc-2", "code": "BIG", "discount_type": "fixed",
        "discount_value": "100", "min_order_amount": "800",
    }
    await server_store.add(PIZZA, 2)
    await member.mount()
    assert (await member.apply_discount("BIG")).valid
    line = member.lines[0]

    await server_store.update_quantity(line.id, 1)
    await member.reload_cart()

    assert member.discount is None
    notices = member.drain_notices()
    assert notices[0].kind == "discount_removed"


async def test_guest_cannot_apply_discount(session, db):
    db.discount_codes["SAVE10"] = {
        "id": "dc-1", "code": "SAVE10", "discount_type": "percentage", "discount_value": "10",
    }

    result = await session.apply_discount("SAVE10")

    assert not result.valid
    assert result.message == "You must be logged in to use discount codes"
    assert session.discount is None


async def test_changed_cart_cancels_pending_order(db, guest_store, feed, address_form):
    payments = FakePayments(fail_times=1)
    await guest_store.add(PIZZA, 1)
    checkout = guest_session(db, guest_store, payments, feed)
    await checkout.mount()
    checkout.use_manual_address(address_form)

    first = await checkout.place_order()
    await guest_store.add(PIZZA, 4)
    second = await checkout.place_order()

    assert first.error_kind == PlacementErrorKind.PAYMENT
    assert second.success
    assert second.order.order_id != first.order.order_id
    assert second.order.totals.grand_total == Decimal("2430.00")
    assert payments.calls[-1][2] == second.order.order_id
    assert len(db.rpc_calls) == 2
    assert db.status_updates == [(first.order.order_id, "cancelled")]
    await checkout.unmount()


async def test_retry_refused_after_cart_change(db, guest_store, address_form):
    await guest_store.add(PIZZA, 1)
    checkout = guest_session(db, guest_store, FakePayments(fail_times=1))
    await checkout.mount()
    checkout.use_manual_address(address_form)
    await checkout.place_order()

    line = (await guest_store.load())[0]
    await guest_store.update_quantity(line.id, 3)
    retry = await checkout.retry_payment()

    assert not retry.success
    assert checkout.pending_order is None
    assert len(db.rpc_calls) == 1


async def test_new_product_kind_gets_live_price_updates(session, db, guest_store, feed):
    db.add_product("dishes", {"id": "d-7", "name": "Beef Burger", "price": "100"})
    await guest_store.add(ProductRef(ProductKind.DISH, "d-7"), 1)
    await session.reload_cart()
    assert session.subtotal == Decimal("1000")

    db.add_product("dishes", {"id": "d-7", "name": "Beef Burger", "price": "150"})
    feed.emit("dishes", {"id": "d-7", "price": "150"}, {"id": "d-7"})
    await session.realtime.wait_for_refresh()

    assert len(feed.active("dishes")) == 1
    assert session.subtotal == Decimal("1050")


async def test_saved_address_without_phone_can_order(db, server_store, payments):
    db.addresses["user-1"] = [{
        "id": "a1", "user_id": "user-1", "full_name": "Karim Ahmed",
        "address_line1": "House 4, Road 7", "city": "Dhaka", "state": "Dhaka Division",
        "postal_code": "1212", "country": "Bangladesh", "is_default": True,
    }]
    await server_store.add(PIZZA, 1)
    checkout = CheckoutSession(
        "s-user", db, server_store, payments,
        user_id="user-1", customer_email="karim@example.com"
    )
    await checkout.mount()

    assert checkout.validate_address().valid
    result = await checkout.place_order()

    assert result.success
    assert db.rpc_calls[0]["_user_id"] == "user-1"
    assert db.rpc_calls[0]["_is_guest"] is False
    assert db.rpc_calls[0]["_shipping_address"]["phoneNumber"] == ""
