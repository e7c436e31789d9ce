"""
Database Module (Production)
=============================
Hardened async data-access layer over Supabase.
Timeouts and a circuit breaker on every call, fire-and-forget event writes.
The supabase client is synchronous, so calls run in the default executor.
"""

import os
import asyncio
import logging
from typing import Dict, List, Any, Optional, Callable
from datetime import datetime, timedelta
from collections import deque
from enum import Enum

from supabase import create_client, Client
from postgrest.exceptions import APIError


logger = logging.getLogger(__name__)


# Configuration
MAX_RETRIES = 3
RETRY_DELAY = 1.0  # seconds
READ_TIMEOUT = 10.0  # seconds
RPC_TIMEOUT = 30.0  # seconds
CIRCUIT_BREAKER_THRESHOLD = 5
CIRCUIT_BREAKER_TIMEOUT = 30  # seconds
MAX_WRITE_QUEUE_SIZE = 1000
BATCH_WRITE_SIZE = 10
BATCH_WRITE_INTERVAL = 2.0  # seconds

# Joined product relations for server-side cart rows
CART_SELECT = "*, menu_items(*), dishes(*), products(*)"


class DatabaseUnavailableError(Exception):
    """Raised when the store cannot be reached (no client, breaker open, timeout)."""
    pass


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"    # Normal operation
    OPEN = "open"        # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """Circuit breaker for database operations."""

    def __init__(
        self,
        threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        timeout: int = CIRCUIT_BREAKER_TIMEOUT
    ):
        self.threshold = threshold
        self.timeout = timeout
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.success_count = 0

    def record_success(self):
        """Record successful operation."""
        self.failure_count = 0

        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= 2:
                self.state = CircuitState.CLOSED
                self.success_count = 0
                logger.info("Circuit breaker closed (recovered)")

    def record_failure(self):
        """Record failed operation."""
        self.failure_count += 1
        self.last_failure_time = datetime.utcnow()

        if self.failure_count >= self.threshold:
            self.state = CircuitState.OPEN
            logger.error(
                f"Circuit breaker opened "
                f"(failures: {self.failure_count})"
            )

    def can_execute(self) -> bool:
        """Check if operation can execute."""
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            if self.last_failure_time:
                elapsed = datetime.utcnow() - self.last_failure_time
                if elapsed >= timedelta(seconds=self.timeout):
                    self.state = CircuitState.HALF_OPEN
                    self.success_count = 0
                    logger.info("Circuit breaker half-open (testing)")
                    return True
            return False

        # HALF_OPEN - allow test requests
        return True

    def get_state(self) -> str:
        """Get current state."""
        return self.state.value


class WriteQueue:
    """Fire-and-forget write queue with batching."""

    def __init__(self, max_size: int = MAX_WRITE_QUEUE_SIZE):
        self.queue: deque = deque(maxlen=max_size)
        self.max_size = max_size
        self.dropped_count = 0

    def enqueue(self, operation: Dict[str, Any]) -> bool:
        """
        Enqueue write operation.

        Returns:
            True if enqueued, False if queue full
        """
        if len(self.queue) >= self.max_size:
            self.dropped_count += 1
            logger.warning(
                f"Write queue full, dropping write "
                f"(dropped: {self.dropped_count})"
            )
            return False

        self.queue.append(operation)
        return True

    def dequeue_batch(self, size: int) -> List[Dict[str, Any]]:
        """Dequeue batch of operations."""
        batch = []
        for _ in range(min(size, len(self.queue))):
            batch.append(self.queue.popleft())
        return batch

    def size(self) -> int:
        return len(self.queue)

    def is_empty(self) -> bool:
        return len(self.queue) == 0


class DatabaseClient:
    """
    Async data-access client for the checkout flow.

    Reads degrade to None / [] on failure. Calls whose rejection must reach
    the shopper (order creation, discount usage) surface the store's error.
    """

    def __init__(
        self,
        client: Optional[Client] = None,
        read_timeout: float = READ_TIMEOUT,
        rpc_timeout: float = RPC_TIMEOUT
    ):
        self.client: Optional[Client] = client
        self.read_timeout = read_timeout
        self.rpc_timeout = rpc_timeout
        self.write_queue = WriteQueue()
        self.circuit_breaker = CircuitBreaker()

        # Background tasks
        self.write_processor_task: Optional[asyncio.Task] = None
        self.is_running = False

        # Stats
        self.read_count = 0
        self.write_count = 0
        self.error_count = 0
        self.retry_count = 0

        if self.client is None:
            self._initialize_client()

        logger.info("DatabaseClient initialized")

    def _initialize_client(self):
        """Initialize Supabase client from the environment."""
        url = os.getenv("SUPABASE_URL")
        key = os.getenv("SUPABASE_KEY")

        if not url or not key:
            logger.error("SUPABASE_URL and SUPABASE_KEY required")
            return

        try:
            self.client = create_client(url, key)
            logger.info("Supabase client initialized")
        except Exception as e:
            logger.error(f"Failed to initialize Supabase client: {str(e)}")

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self):
        """Start background write processor."""
        if self.is_running:
            return

        self.is_running = True
        self.write_processor_task = asyncio.create_task(
            self._write_processor_loop()
        )
        logger.info("Database write processor started")

    async def stop(self):
        """Stop background write processor and flush pending writes."""
        if not self.is_running:
            return

        self.is_running = False

        if self.write_processor_task and not self.write_processor_task.done():
            self.write_processor_task.cancel()
            try:
                await self.write_processor_task
            except asyncio.CancelledError:
                pass

        await self._flush_writes()

        logger.info("Database write processor stopped")

    async def _write_processor_loop(self):
        """Background loop to process write queue."""
        try:
            while self.is_running:
                await asyncio.sleep(BATCH_WRITE_INTERVAL)

                if self.write_queue.is_empty():
                    continue

                await self._process_write_batch()

        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Write processor error: {str(e)}")

    async def _process_write_batch(self):
        """Process batch of writes."""
        batch = self.write_queue.dequeue_batch(BATCH_WRITE_SIZE)

        if not batch:
            return

        logger.debug(f"Processing write batch: {len(batch)} operations")

        for operation in batch:
            try:
                await self._execute_write(operation)
            except Exception as e:
                logger.error(f"Batch write error: {str(e)}")

    async def _execute_write(self, operation: Dict[str, Any]):
        """Execute single queued insert with retry."""
        table = operation.get("table")
        data = operation.get("data")

        if not self.client or not table or not data:
            return

        for attempt in range(MAX_RETRIES + 1):
            try:
                await self._run(
                    f"insert {table}",
                    lambda: self.client.table(table).insert(data).execute(),
                    self.read_timeout
                )
                self.write_count += 1
                return

            except Exception as e:
                logger.error(f"Write error (attempt {attempt + 1}): {str(e)}")

                if attempt < MAX_RETRIES:
                    self.retry_count += 1
                    await asyncio.sleep(RETRY_DELAY * (attempt + 1))

    async def _flush_writes(self):
        """Flush all pending writes."""
        logger.info(f"Flushing {self.write_queue.size()} pending writes")

        while not self.write_queue.is_empty():
            await self._process_write_batch()

    # ========================================================================
    # EXECUTION CORE
    # ========================================================================

    async def _run(self, label: str, operation: Callable[[], Any], timeout: float) -> Any:
        """
        Run a blocking supabase call with timeout and circuit breaker.

        Raises:
            DatabaseUnavailableError: No client, breaker open, or timeout
            APIError: The store rejected the request
        """
        if not self.client:
            raise DatabaseUnavailableError("Database client not initialized")

        if not self.circuit_breaker.can_execute():
            raise DatabaseUnavailableError(f"Circuit breaker open, skipping {label}")

        loop = asyncio.get_running_loop()

        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, operation),
                timeout=timeout
            )
        except APIError:
            # The store answered; a rejection does not count against availability
            self.error_count += 1
            self.circuit_breaker.record_success()
            raise
        except asyncio.TimeoutError:
            self.error_count += 1
            self.circuit_breaker.record_failure()
            raise DatabaseUnavailableError(f"Timeout during {label}")
        except Exception:
            self.error_count += 1
            self.circuit_breaker.record_failure()
            raise

        self.circuit_breaker.record_success()
        return result

    async def _read(self, label: str, operation: Callable[[], Any]) -> Optional[Any]:
        """Run a read; log and return None on any failure."""
        try:
            result = await self._run(label, operation, self.read_timeout)
            self.read_count += 1
            return result.data
        except Exception as e:
            logger.error(f"Read failed ({label}): {str(e)}")
            return None

    # ========================================================================
    # PRODUCTS
    # ========================================================================

    async def fetch_product(self, table: str, product_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one row from a product-like table, or None."""
        rows = await self._read(
            f"fetch {table}",
            lambda: self.client
                .table(table)
                .select("*")
                .eq("id", product_id)
                .limit(1)
                .execute()
        )
        if rows:
            return rows[0]
        return None

    # ========================================================================
    # CART ITEMS
    # ========================================================================

    async def fetch_cart_rows(self, user_id: str) -> List[Dict[str, Any]]:
        """Fetch cart rows for a user with joined product relations."""
        rows = await self._read(
            "fetch cart_items",
            lambda: self.client
                .table("cart_items")
                .select(CART_SELECT)
                .eq("user_id", user_id)
                .order("created_at")
                .execute()
        )
        return rows or []

    async def insert_cart_row(self, row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Insert a cart row; returns the stored row."""
        result = await self._run(
            "insert cart_items",
            lambda: self.client.table("cart_items").insert(row).execute(),
            self.read_timeout
        )
        self.write_count += 1
        return result.data[0] if result.data else None

    async def update_cart_quantity(self, line_id: str, user_id: str, quantity: int):
        """Set quantity on a user's cart row."""
        await self._run(
            "update cart_items",
            lambda: self.client
                .table("cart_items")
                .update({"quantity": quantity})
                .eq("id", line_id)
                .eq("user_id", user_id)
                .execute(),
            self.read_timeout
        )
        self.write_count += 1

    async def delete_cart_row(self, line_id: str, user_id: str):
        """Delete one of a user's cart rows."""
        await self._run(
            "delete cart_items",
            lambda: self.client
                .table("cart_items")
                .delete()
                .eq("id", line_id)
                .eq("user_id", user_id)
                .execute(),
            self.read_timeout
        )
        self.write_count += 1

    async def clear_cart(self, user_id: str):
        """Delete every cart row owned by a user."""
        await self._run(
            "clear cart_items",
            lambda: self.client
                .table("cart_items")
                .delete()
                .eq("user_id", user_id)
                .execute(),
            self.read_timeout
        )
        self.write_count += 1

    # ========================================================================
    # ADDRESSES
    # ========================================================================

    async def fetch_addresses(self, user_id: str) -> List[Dict[str, Any]]:
        """Fetch saved addresses, default first."""
        rows = await self._read(
            "fetch customer_addresses",
            lambda: self.client
                .table("customer_addresses")
                .select("*")
                .eq("user_id", user_id)
                .order("is_default", desc=True)
                .order("created_at", desc=True)
                .execute()
        )
        return rows or []

    # ========================================================================
    # DISCOUNT CODES
    # ========================================================================

    async def fetch_discount_code(self, code: str) -> Optional[Dict[str, Any]]:
        """Fetch an active discount code by its (upper-cased) code."""
        rows = await self._read(
            "fetch discount_codes",
            lambda: self.client
                .table("discount_codes")
                .select("*")
                .eq("code", code)
                .eq("is_active", True)
                .limit(1)
                .execute()
        )
        if rows:
            return rows[0]
        return None

    async def has_discount_usage(self, discount_code_id: str, user_id: str) -> bool:
        """Check whether a user already used a discount code."""
        rows = await self._read(
            "fetch discount_code_usage",
            lambda: self.client
                .table("discount_code_usage")
                .select("id")
                .eq("discount_code_id", discount_code_id)
                .eq("user_id", user_id)
                .limit(1)
                .execute()
        )
        return bool(rows)

    async def insert_discount_usage(self, row: Dict[str, Any]):
        """
        Record discount usage.

        Raises:
            APIError: Constraint violations (23505 duplicate, 23514 limit)
        """
        await self._run(
            "insert discount_code_usage",
            lambda: self.client.table("discount_code_usage").insert(row).execute(),
            self.read_timeout
        )
        self.write_count += 1

    # ========================================================================
    # ORDERS
    # ========================================================================

    async def create_order_with_items(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Call the atomic order-creation procedure.

        Returns:
            {"success": bool, "order_id": str|None, "error": str|None}
        """
        try:
            result = await self._run(
                "rpc create_order_with_items",
                lambda: self.client.rpc("create_order_with_items", params).execute(),
                self.rpc_timeout
            )
        except APIError as e:
            logger.error(f"Order creation rejected: {e.message}")
            return {"success": False, "order_id": None, "error": e.message}
        except DatabaseUnavailableError as e:
            logger.error(f"Order creation unavailable: {str(e)}")
            return {
                "success": False,
                "order_id": None,
                "error": "Ordering is temporarily unavailable. Please try again shortly."
            }
        except Exception as e:
            logger.error(f"Unexpected order creation error: {str(e)}", exc_info=True)
            return {
                "success": False,
                "order_id": None,
                "error": "An unexpected error occurred while creating your order"
            }

        self.write_count += 1
        data = result.data

        # The procedure returns either a bare uuid or a result record
        if isinstance(data, dict):
            return {
                "success": bool(data.get("success", data.get("order_id"))),
                "order_id": data.get("order_id"),
                "error": data.get("error"),
            }
        if isinstance(data, str) and data:
            return {"success": True, "order_id": data, "error": None}

        return {"success": False, "order_id": None, "error": "Failed to create order"}

    async def fetch_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        """Fetch an order header."""
        rows = await self._read(
            "fetch orders",
            lambda: self.client
                .table("orders")
                .select("*")
                .eq("id", order_id)
                .limit(1)
                .execute()
        )
        if rows:
            return rows[0]
        return None

    async def update_order_status(self, order_id: str, status: str) -> bool:
        """Set an order's status; returns False on failure."""
        try:
            await self._run(
                "update orders",
                lambda: self.client
                    .table("orders")
                    .update({
                        "status": status,
                        "updated_at": datetime.utcnow().isoformat()
                    })
                    .eq("id", order_id)
                    .execute(),
                self.read_timeout
            )
            self.write_count += 1
            return True
        except Exception as e:
            logger.error(f"Order status update failed for {order_id}: {str(e)}")
            return False

    # ========================================================================
    # EDGE FUNCTIONS
    # ========================================================================

    async def invoke_function(self, name: str, body: Dict[str, Any]) -> Any:
        """
        Invoke a Supabase edge function.

        Raises:
            Exception: Propagated to the caller (notifier retries)
        """
        return await self._run(
            f"invoke {name}",
            lambda: self.client.functions.invoke(
                name,
                invoke_options={"body": body}
            ),
            self.rpc_timeout
        )

    # ========================================================================
    # WRITE OPERATIONS (Fire-and-forget)
    # ========================================================================

    def store_checkout_event(self, event_type: str, data: Dict[str, Any]) -> bool:
        """
        Store a checkout analytics event (fire-and-forget).

        Returns:
            True if enqueued
        """
        operation = {
            "type": "insert",
            "table": "checkout_events",
            "data": {
                "event_type": event_type,
                "payload": data,
                "created_at": datetime.utcnow().isoformat()
            }
        }

        return self.write_queue.enqueue(operation)

    # ========================================================================
    # STATS & MONITORING
    # ========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get database statistics."""
        return {
            "reads": self.read_count,
            "writes": self.write_count,
            "errors": self.error_count,
            "retries": self.retry_count,
            "queue_size": self.write_queue.size(),
            "queue_dropped": self.write_queue.dropped_count,
            "circuit_breaker": self.circuit_breaker.get_state(),
            "circuit_failures": self.circuit_breaker.failure_count
        }

    def is_healthy(self) -> bool:
        """Check if database is healthy."""
        return (
            self.client is not None and
            self.circuit_breaker.state != CircuitState.OPEN
        )

