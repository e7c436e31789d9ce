"""
Realtime Refresh Listeners
==========================
Keeps an open checkout fresh while the shopper is still browsing.

CheckoutRealtime owns explicit subscription handles:
- created on mount(), and on watch() for product kinds new to the cart
- closed on suspend() (payment start) and unmount()
- recreated on resume() once payment is no longer in flight

Product feeds cannot express "id in set", so events are filtered
client-side against the ids in the cart. Each event queues a non-blocking
Notice and a debounced refresh of only the affected target (products or
addresses). Events that arrive while the payment state suspends realtime
are dropped.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional, Callable, Awaitable, Iterable, Set
from dataclasses import dataclass, field

from prometheus_client import Counter
from supabase import acreate_client, AsyncClient

from cart import ProductKind, ProductRef
from payment_state import PaymentStateMachine
from pricing import parse_price


logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

DEBOUNCE_SECONDS = 0.5
SUBSCRIBE_RETRY_DELAY = 2.0  # seconds, multiplied by attempt
MAX_SUBSCRIBE_RETRIES = 5

PRICE_CHANGED_MESSAGE = "Price updated for an item in your cart"
UNAVAILABLE_MESSAGE = "An item in your cart is no longer available"
ADDRESSES_TABLE = "customer_addresses"


realtime_events = Counter(
    'realtime_events_total',
    'Realtime change events by outcome',
    ['table', 'outcome']
)


# ============================================================================
# FEED ABSTRACTION
# ============================================================================

@dataclass(frozen=True)
class ChangeEvent:
    """One postgres change, normalized."""
    table: str
    event_type: str
    new: Dict[str, Any] = field(default_factory=dict)
    old: Dict[str, Any] = field(default_factory=dict)

    @property
    def row_id(self) -> Optional[str]:
        value = self.new.get("id") or self.old.get("id")
        return str(value) if value is not None else None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], table: str) -> "ChangeEvent":
        """Accept the realtime client's payload shape ({"data": {...}})."""
        data = payload.get("data", payload) if isinstance(payload, dict) else {}
        return cls(
            table=data.get("table") or table,
            event_type=str(data.get("type") or data.get("eventType") or "UPDATE").upper(),
            new=data.get("record") or data.get("new") or {},
            old=data.get("old_record") or data.get("old") or {}
        )


ChangeCallback = Callable[[ChangeEvent], None]


class SubscriptionHandle(ABC):
    """Owned handle to one live subscription."""

    @property
    @abstractmethod
    def active(self) -> bool:
        ...

    @abstractmethod
    async def close(self):
        ...


class ChangeFeed(ABC):
    """Source of table change events."""

    @abstractmethod
    async def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        event: str = "UPDATE",
        row_filter: Optional[str] = None
    ) -> SubscriptionHandle:
        ...


class _SupabaseSubscription(SubscriptionHandle):

    def __init__(self, feed: "SupabaseChangeFeed", channel, table: str):
        self.feed = feed
        self.channel = channel
        self.table = table
        self.retry_task: Optional[asyncio.Task] = None
        self.status_callback: Optional[Callable] = None
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    async def close(self):
        if not self._active:
            return
        self._active = False

        if self.retry_task and not self.retry_task.done():
            self.retry_task.cancel()

        try:
            client = await self.feed.get_client()
            await client.remove_channel(self.channel)
        except Exception as e:
            logger.warning(f"Failed to remove {self.table} channel: {str(e)}")


class SupabaseChangeFeed(ChangeFeed):
    """postgres_changes channels on the async Supabase client."""

    def __init__(
        self,
        url: str,
        key: str,
        retry_delay: float = SUBSCRIBE_RETRY_DELAY,
        max_retries: int = MAX_SUBSCRIBE_RETRIES
    ):
        self.url = url
        self.key = key
        self.retry_delay = retry_delay
        self.max_retries = max_retries
        self.client: Optional[AsyncClient] = None

    async def get_client(self) -> AsyncClient:
        if self.client is None:
            self.client = await acreate_client(self.url, self.key)
            logger.info("Async Supabase client initialized for realtime")
        return self.client

    async def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        event: str = "UPDATE",
        row_filter: Optional[str] = None
    ) -> SubscriptionHandle:
        client = await self.get_client()
        channel = client.channel(f"checkout-{table}-{uuid.uuid4().hex[:8]}")

        def on_change(payload: Dict[str, Any]):
            callback(ChangeEvent.from_payload(payload, table))

        channel.on_postgres_changes(
            event,
            schema="public",
            table=table,
            filter=row_filter,
            callback=on_change
        )

        handle = _SupabaseSubscription(self, channel, table)

        def on_status(status, error=None):
            status_name = getattr(status, "value", status)
            if status_name == "CHANNEL_ERROR":
                logger.warning(
                    f"Realtime subscription error for {table} "
                    f"(table might not exist or realtime not enabled): {error}"
                )
            elif status_name == "TIMED_OUT" and handle.active:
                logger.warning(f"Realtime subscription timed out for {table}, retrying")
                handle.retry_task = asyncio.get_running_loop().create_task(
                    self._retry(handle, 1)
                )

        handle.status_callback = on_status
        await channel.subscribe(on_status)
        logger.debug(f"Subscribed to {table} changes (filter={row_filter})")
        return handle

    async def _retry(self, handle: _SupabaseSubscription, attempt: int):
        """Resubscribe with linear backoff until subscribed or out of attempts."""
        while handle.active and attempt <= self.max_retries:
            await asyncio.sleep(self.retry_delay * attempt)
            if not handle.active:
                return
            try:
                await handle.channel.subscribe(handle.status_callback)
                return
            except Exception as e:
                logger.warning(
                    f"Failed to retry {handle.table} subscription "
                    f"(attempt {attempt}): {str(e)}"
                )
                attempt += 1

        if handle.active:
            logger.error(f"Giving up on {handle.table} subscription after {self.max_retries} retries")


# ============================================================================
# CHECKOUT LISTENERS
# ============================================================================

@dataclass(frozen=True)
class Notice:
    """Dismissible, non-blocking message for the shopper."""
    kind: str
    message: str
    level: str = "info"
    product_ref: Optional[ProductRef] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "level": self.level,
            "product": str(self.product_ref) if self.product_ref else None,
        }


class CheckoutRealtime:
    """Realtime subscriptions scoped to one checkout view."""

    def __init__(
        self,
        feed: ChangeFeed,
        state: PaymentStateMachine,
        refresh_products: Callable[[Set[ProductRef]], Awaitable[None]],
        refresh_addresses: Callable[[], Awaitable[None]],
        debounce_seconds: float = DEBOUNCE_SECONDS,
        price_lookup: Optional[Callable[[ProductRef], Optional[Any]]] = None
    ):
        self.feed = feed
        self.state = state
        self.refresh_products = refresh_products
        self.refresh_addresses = refresh_addresses
        self.debounce_seconds = debounce_seconds
        self.price_lookup = price_lookup

        self.handles: List[SubscriptionHandle] = []
        self.subscribed_tables: Set[str] = set()
        self.watched: Dict[ProductKind, Set[str]] = {}
        self.user_id: Optional[str] = None
        self.mounted = False

        self.notices: List[Notice] = []
        self._pending_refs: Set[ProductRef] = set()
        self._refresh_tasks: Dict[str, asyncio.Task] = {}

    @property
    def live(self) -> bool:
        return self.mounted and not self.state.suspends_realtime()

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def mount(self, product_refs: Iterable[ProductRef], user_id: Optional[str] = None):
        """Open subscriptions for the cart's products and the shopper's addresses."""
        self.user_id = user_id
        self.mounted = True
        await self.watch(product_refs)

        if not self.live:
            logger.info("Realtime mount deferred, payment in flight")
            return

        await self._subscribe_all()

    async def unmount(self):
        """Close everything (checkout view closed)."""
        await self.suspend()
        self.mounted = False
        self.notices.clear()

    async def suspend(self):
        """Tear down subscriptions and drop queued refreshes (payment start)."""
        for task in self._refresh_tasks.values():
            if not task.done():
                task.cancel()
        self._refresh_tasks.clear()
        self._pending_refs.clear()

        handles, self.handles = self.handles, []
        self.subscribed_tables.clear()
        for handle in handles:
            try:
                await handle.close()
            except Exception as e:
                logger.warning(f"Failed to close realtime subscription: {str(e)}")

        if handles:
            logger.info(f"Realtime suspended ({len(handles)} subscriptions closed)")

    async def resume(self):
        """Resubscribe once payment no longer suspends realtime."""
        if not self.live:
            return
        await self._subscribe_all()

    async def watch(self, product_refs: Iterable[ProductRef]):
        """
        Replace the set of product ids events are filtered against.

        A product kind that enters the cart while listeners are live gets
        its table subscription opened here.
        """
        watched: Dict[ProductKind, Set[str]] = {}
        for ref in product_refs:
            watched.setdefault(ref.kind, set()).add(str(ref.id))
        self.watched = watched

        if self.live:
            await self._subscribe_products()

    async def _subscribe_all(self):
        await self._subscribe_products()

        if self.user_id:
            await self._open(
                ADDRESSES_TABLE,
                self._on_address_event,
                "*",
                f"user_id=eq.{self.user_id}"
            )

    async def _subscribe_products(self):
        for kind in ProductKind:
            if self.watched.get(kind):
                await self._open(kind.table, self._on_product_event, "UPDATE")

    async def _open(self, table: str, callback: ChangeCallback, event: str, row_filter: Optional[str] = None):
        if table in self.subscribed_tables:
            return
        try:
            handle = await self.feed.subscribe(table, callback, event, row_filter)
            self.handles.append(handle)
            self.subscribed_tables.add(table)
        except Exception as e:
            # Checkout keeps working without live updates
            logger.warning(f"Failed to subscribe to {table} updates: {str(e)}")

    # ========================================================================
    # EVENTS
    # ========================================================================

    def _on_product_event(self, event: ChangeEvent):
        if self.state.suspends_realtime():
            realtime_events.labels(table=event.table, outcome="suspended").inc()
            return

        kind = ProductKind.from_table(event.table)
        row_id = event.row_id
        if kind is None or row_id is None or row_id not in self.watched.get(kind, set()):
            realtime_events.labels(table=event.table, outcome="filtered").inc()
            return

        ref = ProductRef(kind=kind, id=row_id)
        realtime_events.labels(table=event.table, outcome="handled").inc()
        logger.info(f"Product {ref} updated during checkout")

        if self._price_changed(ref, event):
            self.notices.append(Notice("price_changed", PRICE_CHANGED_MESSAGE, "info", ref))

        if event.new.get("is_available") is False:
            self.notices.append(Notice("unavailable", UNAVAILABLE_MESSAGE, "error", ref))

        self._pending_refs.add(ref)
        self._schedule("products")

    def _on_address_event(self, event: ChangeEvent):
        if self.state.suspends_realtime():
            realtime_events.labels(table=event.table, outcome="suspended").inc()
            return

        realtime_events.labels(table=event.table, outcome="handled").inc()
        self._schedule("addresses")

    def _price_changed(self, ref: ProductRef, event: ChangeEvent) -> bool:
        if "price" not in event.new:
            return False
        new_price = parse_price(event.new.get("price"))

        if "price" in event.old:
            return parse_price(event.old.get("price")) != new_price

        # Old rows usually carry only the primary key; compare with what is shown
        if self.price_lookup is not None:
            shown = self.price_lookup(ref)
            return shown is not None and parse_price(shown) != new_price

        return False

    def _schedule(self, target: str):
        """(Re)start the debounce timer for one refresh target."""
        existing = self._refresh_tasks.get(target)
        if existing and not existing.done():
            existing.cancel()

        self._refresh_tasks[target] = asyncio.get_running_loop().create_task(
            self._debounced_refresh(target)
        )

    async def _debounced_refresh(self, target: str):
        try:
            await asyncio.sleep(self.debounce_seconds)
        except asyncio.CancelledError:
            return

        if self.state.suspends_realtime():
            return

        try:
            if target == "products":
                refs, self._pending_refs = self._pending_refs, set()
                await self.refresh_products(refs)
            else:
                await self.refresh_addresses()
        except Exception as e:
            logger.error(f"Realtime {target} refresh failed: {str(e)}", exc_info=True)

    async def wait_for_refresh(self):
        """Await any queued refreshes."""
        tasks = [t for t in self._refresh_tasks.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def drain_notices(self) -> List[Notice]:
        notices, self.notices = self.notices, []
        return notices
