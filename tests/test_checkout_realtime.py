import asyncio

import pytest

from cart import ProductKind, ProductRef
from checkout_realtime import (
    PRICE_CHANGED_MESSAGE,
    UNAVAILABLE_MESSAGE,
    ChangeEvent,
    CheckoutRealtime,
)
from payment_state import PaymentState, PaymentStateMachine


PIZZA = ProductRef(ProductKind.MENU_ITEM, "mi-1")
BURGER = ProductRef(ProductKind.DISH, "d-7")


class Recorder:

    def __init__(self):
        self.product_refreshes = []
        self.address_refreshes = 0

    async def products(self, refs):
        self.product_refreshes.append(set(refs))

    async def addresses(self):
        self.address_refreshes += 1


@pytest.fixture
def state():
    return PaymentStateMachine("s-1")


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def listeners(feed, state, recorder):
    return CheckoutRealtime(
        feed,
        state,
        refresh_products=recorder.products,
        refresh_addresses=recorder.addresses,
        debounce_seconds=0.01
    )


async def test_mount_subscribes_per_kind_and_addresses(listeners, feed):
    await listeners.mount({PIZZA, BURGER}, user_id="user-1")

    tables = sorted(sub.table for sub in feed.active())
    assert tables == ["customer_addresses", "dishes", "menu_items"]
    address_sub = feed.active("customer_addresses")[0]
    assert address_sub.row_filter == "user_id=eq.user-1"
    assert address_sub.event == "*"


async def test_guest_mount_skips_addresses(listeners, feed):
    await listeners.mount({PIZZA})

    assert [sub.table for sub in feed.active()] == ["menu_items"]


async def test_kind_added_after_mount_gets_subscription(listeners, feed, recorder):
    await listeners.mount({PIZZA})

    await listeners.watch({PIZZA, BURGER})
    feed.emit("dishes", {"id": "d-7", "price": "300"})
    await listeners.wait_for_refresh()

    assert len(feed.active("dishes")) == 1
    assert len(feed.active("menu_items")) == 1
    assert recorder.product_refreshes == [{BURGER}]


async def test_watch_while_suspended_defers_subscription(listeners, feed, state):
    await listeners.mount({PIZZA})
    state.transition(PaymentState.AWAITING_PAYMENT)
    await listeners.suspend()

    await listeners.watch({PIZZA, BURGER})
    assert feed.active() == []

    state.transition(PaymentState.FAILED)
    await listeners.resume()
    await listeners.resume()

    assert sorted(sub.table for sub in feed.active()) == ["dishes", "menu_items"]


async def test_events_for_other_products_are_filtered(listeners, feed, recorder):
    await listeners.mount({PIZZA})

    feed.emit("menu_items", {"id": "mi-99", "price": "10"}, {"id": "mi-99", "price": "12"})
    await listeners.wait_for_refresh()

    assert recorder.product_refreshes == []
    assert listeners.drain_notices() == []


async def test_price_change_queues_notice_and_refresh(listeners, feed, recorder):
    await listeners.mount({PIZZA})

    feed.emit("menu_items", {"id": "mi-1", "price": "480"}, {"id": "mi-1", "price": "450"})
    await listeners.wait_for_refresh()

    assert recorder.product_refreshes == [{PIZZA}]
    notices = listeners.drain_notices()
    assert [n.message for n in notices] == [PRICE_CHANGED_MESSAGE]


async def test_price_compared_with_shown_price_when_old_row_is_bare(feed, state, recorder):
    listeners = CheckoutRealtime(
        feed, state, recorder.products, recorder.addresses,
        debounce_seconds=0.01,
        price_lookup=lambda ref: "450"
    )
    await listeners.mount({PIZZA})

    feed.emit("menu_items", {"id": "mi-1", "price": "450"}, {"id": "mi-1"})
    feed.emit("menu_items", {"id": "mi-1", "price": "500"}, {"id": "mi-1"})
    await listeners.wait_for_refresh()

    assert [n.kind for n in listeners.drain_notices()] == ["price_changed"]


async def test_unavailable_product_notice(listeners, feed):
    await listeners.mount({BURGER})

    feed.emit("dishes", {"id": "d-7", "is_available": False})
    await listeners.wait_for_refresh()

    notice = listeners.drain_notices()[0]
    assert notice.message == UNAVAILABLE_MESSAGE
    assert notice.level == "error"


async def test_burst_of_events_is_debounced(listeners, feed, recorder):
    await listeners.mount({PIZZA, BURGER})

    feed.emit("menu_items", {"id": "mi-1", "price": "460"})
    feed.emit("dishes", {"id": "d-7", "price": "330"})
    feed.emit("menu_items", {"id": "mi-1", "price": "470"})
    await listeners.wait_for_refresh()

    assert recorder.product_refreshes == [{PIZZA, BURGER}]


async def test_address_change_refreshes_addresses(listeners, feed, recorder):
    await listeners.mount({PIZZA}, user_id="user-1")

    feed.emit("customer_addresses", {"id": "a1", "user_id": "user-1"}, event_type="INSERT")
    await listeners.wait_for_refresh()

    assert recorder.address_refreshes == 1
    assert recorder.product_refreshes == []


async def test_suspend_closes_handles_and_resume_reopens(listeners, feed, state):
    await listeners.mount({PIZZA})
    state.transition(PaymentState.AWAITING_PAYMENT)

    await listeners.suspend()
    assert feed.active() == []

    await listeners.resume()
    assert feed.active() == []

    state.transition(PaymentState.FAILED)
    await listeners.resume()
    assert len(feed.active("menu_items")) == 1


async def test_events_ignored_while_payment_in_flight(listeners, feed, state, recorder):
    await listeners.mount({PIZZA})
    handle = feed.active("menu_items")[0]
    state.transition(PaymentState.AWAITING_PAYMENT)

    handle.callback(ChangeEvent("menu_items", "UPDATE", {"id": "mi-1", "price": "1"}, {"price": "450"}))
    await asyncio.sleep(0.02)

    assert recorder.product_refreshes == []
    assert listeners.drain_notices() == []


async def test_mount_deferred_while_awaiting_payment(listeners, feed, state):
    state.transition(PaymentState.AWAITING_PAYMENT)

    await listeners.mount({PIZZA})

    assert feed.active() == []
    assert listeners.mounted


async def test_unmount_closes_everything(listeners, feed):
    await listeners.mount({PIZZA, BURGER}, user_id="user-1")

    await listeners.unmount()

    assert feed.active() == []
    assert not listeners.mounted


def test_change_event_from_realtime_payload():
    event = ChangeEvent.from_payload(
        {"data": {"table": "dishes", "type": "UPDATE", "record": {"id": 7}, "old_record": {"id": 7}}},
        "dishes"
    )

    assert event.row_id == "7"
    assert event.event_type == "UPDATE"


def test_supabase_realtime_package_is_not_shadowed():
    import realtime
    import supabase

    assert realtime.__file__.endswith("__init__.py")
    assert hasattr(realtime, "AuthorizationError")
    assert callable(supabase.acreate_client)
