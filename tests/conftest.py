"""In-memory stand-ins for the store, the processor and the change feed."""

import itertools
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
from postgrest.exceptions import APIError

from cart import GuestCartStore, ServerCartStore
from checkout_realtime import ChangeEvent, ChangeFeed, SubscriptionHandle
from notifications import OrderConfirmationNotifier
from payments import PaymentHandle, PaymentProcessor, PaymentProcessorError
from pricing import to_minor_units


def api_error(code: str, message: str = "constraint violated") -> APIError:
    return APIError({"message": message, "code": code, "hint": None, "details": None})


class FakeDatabase:
    """Mirrors the DatabaseClient surface used by the checkout."""

    JOINS = {"menu_item_id": "menu_items", "product_id": "dishes"}

    def __init__(self):
        self.products: Dict[tuple, Dict[str, Any]] = {}
        self.cart_rows: Dict[str, List[Dict[str, Any]]] = {}
        self.addresses: Dict[str, List[Dict[str, Any]]] = {}
        self.discount_codes: Dict[str, Dict[str, Any]] = {}
        self.discount_usage: List[Dict[str, Any]] = []
        self.usage_error: Optional[APIError] = None
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.rpc_calls: List[Dict[str, Any]] = []
        self.reject_with: Optional[str] = None
        self.status_updates: List[tuple] = []
        self.function_calls: List[tuple] = []
        self.fail_functions = False
        self.fail_products = False
        self.fail_clear = False
        self.events: List[tuple] = []
        self._ids = itertools.count(1)

    # Products
    def add_product(self, table: str, row: Dict[str, Any]):
        self.products[(table, str(row["id"]))] = dict(row)

    async def fetch_product(self, table: str, product_id: str):
        if self.fail_products:
            raise RuntimeError("store unreachable")
        row = self.products.get((table, str(product_id)))
        return dict(row) if row else None

    # Cart
    async def fetch_cart_rows(self, user_id: str):
        rows = []
        for row in self.cart_rows.get(user_id, []):
            joined = dict(row)
            if row.get("menu_item_id"):
                joined["menu_items"] = self.products.get(("menu_items", str(row["menu_item_id"])))
            elif row.get("product_id"):
                joined["dishes"] = self.products.get(("dishes", str(row["product_id"])))
            rows.append(joined)
        return rows

    async def insert_cart_row(self, row: Dict[str, Any]):
        stored = {"id": f"line-{next(self._ids)}", **row}
        self.cart_rows.setdefault(row["user_id"], []).append(stored)
        return dict(stored)

    async def update_cart_quantity(self, line_id: str, user_id: str, quantity: int):
        for row in self.cart_rows.get(user_id, []):
            if row["id"] == line_id:
                row["quantity"] = quantity

    async def delete_cart_row(self, line_id: str, user_id: str):
        self.cart_rows[user_id] = [r for r in self.cart_rows.get(user_id, []) if r["id"] != line_id]

    async def clear_cart(self, user_id: str):
        if self.fail_clear:
            raise RuntimeError("delete failed")
        self.cart_rows[user_id] = []

    # Addresses
    async def fetch_addresses(self, user_id: str):
        return [dict(row) for row in self.addresses.get(user_id, [])]

    # Discounts
    async def fetch_discount_code(self, code: str):
        row = self.discount_codes.get(code)
        if row and row.get("is_active", True):
            return dict(row)
        return None

    async def has_discount_usage(self, discount_code_id: str, user_id: str) -> bool:
        return any(
            u["discount_code_id"] == discount_code_id and u["user_id"] == user_id
            for u in self.discount_usage
        )

    async def insert_discount_usage(self, row: Dict[str, Any]):
        if self.usage_error is not None:
            raise self.usage_error
        for usage in self.discount_usage:
            if (usage["discount_code_id"], usage["order_id"]) == (row["discount_code_id"], row["order_id"]):
                raise api_error("23505", "duplicate key value violates unique constraint")
        self.discount_usage.append(dict(row))

    # Orders
    async def create_order_with_items(self, params: Dict[str, Any]):
        self.rpc_calls.append(params)
        if self.reject_with:
            return {"success": False, "order_id": None, "error": self.reject_with}
        order_id = f"order-{len(self.orders) + 1}"
        self.orders[order_id] = {
            "id": order_id,
            "customer_email": params["_customer_email"],
            "order_total": "0",
            "status": "pending",
        }
        return {"success": True, "order_id": order_id, "error": None}

    async def fetch_order(self, order_id: str):
        return self.orders.get(order_id)

    async def update_order_status(self, order_id: str, status: str) -> bool:
        self.status_updates.append((order_id, status))
        if order_id in self.orders:
            self.orders[order_id]["status"] = status
        return True

    # Edge functions & events
    async def invoke_function(self, name: str, body: Dict[str, Any]):
        self.function_calls.append((name, body))
        if self.fail_functions:
            raise RuntimeError("edge function down")
        return {"ok": True}

    def store_checkout_event(self, event_type: str, data: Dict[str, Any]) -> bool:
        self.events.append((event_type, data))
        return True


class FakePayments(PaymentProcessor):
    """Issues handles; fails the first `fail_times` requests."""

    def __init__(self, fail_times: int = 0, message: str = "Your card was declined."):
        self.fail_times = fail_times
        self.message = message
        self.calls: List[tuple] = []

    async def create_payment_handle(self, amount, currency, order_id, customer_email):
        self.calls.append((amount, currency, order_id, customer_email))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise PaymentProcessorError(self.message)
        minor = to_minor_units(amount, currency)
        return PaymentHandle(
            payment_intent_id=f"pi_{order_id}",
            client_secret=f"pi_{order_id}_secret",
            amount_minor=minor,
            currency=currency.lower(),
            order_id=order_id
        )


class FakeSubscription(SubscriptionHandle):

    def __init__(self, table, callback, event, row_filter):
        self.table = table
        self.callback = callback
        self.event = event
        self.row_filter = row_filter
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    async def close(self):
        self._active = False


class FakeChangeFeed(ChangeFeed):

    def __init__(self):
        self.subscriptions: List[FakeSubscription] = []

    async def subscribe(self, table, callback, event="UPDATE", row_filter=None):
        sub = FakeSubscription(table, callback, event, row_filter)
        self.subscriptions.append(sub)
        return sub

    def active(self, table: Optional[str] = None) -> List[FakeSubscription]:
        return [
            s for s in self.subscriptions
            if s.active and (table is None or s.table == table)
        ]

    def emit(self, table: str, new: Dict[str, Any], old: Optional[Dict[str, Any]] = None, event_type="UPDATE"):
        event = ChangeEvent(table=table, event_type=event_type, new=new, old=old or {})
        for sub in self.active(table):
            sub.callback(event)


# ============================================================================
# FIXTURES
# ============================================================================

MARGHERITA = {"id": "mi-1", "name": "Margherita Pizza", "price": "450", "is_available": True}

ADDRESS_FORM = {
    "full_name": "Rahim Uddin",
    "street_address": "12 Lake Road, Dhanmondi",
    "city": "Dhaka",
    "state_province": "Dhaka Division",
    "postal_code": "1209",
    "country": "Bangladesh",
    "phone_number": "+880 1711-000000",
}


@pytest.fixture
def db():
    fake = FakeDatabase()
    fake.add_product("menu_items", MARGHERITA)
    return fake


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def feed():
    return FakeChangeFeed()


@pytest.fixture
def notifier(db):
    return OrderConfirmationNotifier(db, retry_delay=0)


@pytest.fixture
def guest_store(tmp_path):
    return GuestCartStore("guest-abc", tmp_path)


@pytest.fixture
def server_store(db):
    return ServerCartStore(db, "user-1")


@pytest.fixture
def address_form():
    return dict(ADDRESS_FORM)


@pytest.fixture
def margherita_price():
    return Decimal("450")
