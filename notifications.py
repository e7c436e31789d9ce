"""
Order Confirmation Notifications
================================
Best-effort order confirmation by email (send-order-confirmation edge
function) and SMS (Twilio).
Background sending, retry logic, failure logging, idempotency per order.
Never blocks or fails checkout completion.
"""

import asyncio
import logging
from typing import Dict, Any, Optional, Set
from datetime import datetime
from decimal import Decimal
from collections import deque

from prometheus_client import Counter
from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException

from pricing import format_money, DEFAULT_CURRENCY


logger = logging.getLogger(__name__)


# Configuration
MAX_RETRIES = 3
RETRY_DELAY = 2.0  # seconds
MAX_QUEUE_SIZE = 500
PROCESSING_INTERVAL = 1.0  # seconds
MAX_REMEMBERED_IDS = 1000

EMAIL_FUNCTION = "send-order-confirmation"

# Twilio codes for numbers that will never accept a message
NON_RETRYABLE_TWILIO_CODES = (21211, 21614)


notifications_sent = Counter(
    'order_notifications_sent_total',
    'Order confirmations delivered',
    ['channel']
)
notifications_failed = Counter(
    'order_notifications_failed_total',
    'Order confirmations that failed after retries',
    ['channel']
)


class ConfirmationMessage:
    """One order confirmation, fanned out to email and optionally SMS."""

    def __init__(
        self,
        order_id: str,
        email: Optional[str],
        total: Decimal,
        currency: str = DEFAULT_CURRENCY,
        phone: Optional[str] = None
    ):
        self.order_id = order_id
        self.email = email
        self.total = total
        self.currency = currency
        self.phone = phone
        self.message_id = f"order_{order_id}"
        self.attempts = 0
        self.created_at = datetime.utcnow()
        self.last_attempt: Optional[datetime] = None
        self.error: Optional[str] = None

    def sms_body(self, restaurant_name: str) -> str:
        return (
            f"Order confirmed! {restaurant_name}\n"
            f"Order #{self.order_id[:8]}\n"
            f"Total: {format_money(self.total, self.currency)}\n"
            f"Thank you for your order!"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "order_id": self.order_id,
            "email": self.email,
            "phone": self.phone,
            "total": str(self.total),
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat(),
            "last_attempt": self.last_attempt.isoformat() if self.last_attempt else None,
            "error": self.error
        }


class ConfirmationQueue:
    """Queue for background confirmation sending."""

    def __init__(self, max_size: int = MAX_QUEUE_SIZE):
        self.queue: deque = deque(maxlen=max_size)
        self.max_size = max_size
        self.dropped_count = 0
        self.seen_ids: Set[str] = set()
        self.sent_count = 0
        self.failed_count = 0

    def enqueue(self, message: ConfirmationMessage) -> bool:
        """
        Enqueue a confirmation.

        Returns:
            True if enqueued, False if duplicate or queue full
        """
        if message.message_id in self.seen_ids:
            logger.debug(f"Duplicate confirmation ignored: {message.message_id}")
            return False

        if len(self.queue) >= self.max_size:
            self.dropped_count += 1
            logger.warning(
                f"Confirmation queue full, dropping message "
                f"(dropped: {self.dropped_count})"
            )
            return False

        self.seen_ids.add(message.message_id)
        if len(self.seen_ids) > MAX_REMEMBERED_IDS:
            for old_id in list(self.seen_ids)[:200]:
                if old_id != message.message_id:
                    self.seen_ids.discard(old_id)

        self.queue.append(message)
        return True

    def dequeue(self) -> Optional[ConfirmationMessage]:
        if self.queue:
            return self.queue.popleft()
        return None

    def size(self) -> int:
        return len(self.queue)

    def is_empty(self) -> bool:
        return len(self.queue) == 0


class OrderConfirmationNotifier:
    """
    Background order-confirmation sender.

    notify_order_confirmed() only enqueues; delivery happens in the
    processor loop (or flush()).
    """

    def __init__(
        self,
        db,
        sms_client: Optional[Client] = None,
        from_number: Optional[str] = None,
        restaurant_name: str = "Star Cafe",
        send_email: bool = True,
        send_sms: bool = True,
        retry_delay: float = RETRY_DELAY
    ):
        self.db = db
        self.sms_client = sms_client
        self.from_number = from_number
        self.restaurant_name = restaurant_name
        self.send_email = send_email
        self.send_sms = send_sms
        self.retry_delay = retry_delay
        self.queue = ConfirmationQueue()

        self.processor_task: Optional[asyncio.Task] = None
        self.is_running = False

    @classmethod
    def from_config(cls, db, config) -> "OrderConfirmationNotifier":
        """Build from config.Config; SMS stays off without Twilio credentials."""
        sms_client = None
        if config.twilio.enabled:
            try:
                sms_client = Client(config.twilio.account_sid, config.twilio.auth_token)
                logger.info(f"Twilio client initialized (from: {config.twilio.phone_number})")
            except Exception as e:
                logger.error(f"Failed to initialize Twilio client: {str(e)}")

        return cls(
            db,
            sms_client=sms_client,
            from_number=config.twilio.phone_number,
            restaurant_name=config.checkout.restaurant_name,
            send_email=config.features.enable_email_confirmation,
            send_sms=config.features.enable_sms_confirmation
        )

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self):
        """Start background processor."""
        if self.is_running:
            return

        self.is_running = True
        self.processor_task = asyncio.create_task(self._processor_loop())
        logger.info("Confirmation processor started")

    async def stop(self):
        """Stop background processor and flush remaining messages."""
        if not self.is_running:
            return

        self.is_running = False

        if self.processor_task and not self.processor_task.done():
            self.processor_task.cancel()
            try:
                await self.processor_task
            except asyncio.CancelledError:
                pass

        await self.flush()

        logger.info("Confirmation processor stopped")

    async def _processor_loop(self):
        try:
            while self.is_running:
                await asyncio.sleep(PROCESSING_INTERVAL)

                if self.queue.is_empty():
                    continue

                await self._process_next_message()

        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Confirmation processor error: {str(e)}")

    async def flush(self):
        """Deliver everything queued."""
        while not self.queue.is_empty():
            await self._process_next_message()

    async def _process_next_message(self):
        message = self.queue.dequeue()
        if not message:
            return

        if self.send_email and message.email:
            if await self._send_email(message):
                notifications_sent.labels(channel="email").inc()
                self.queue.sent_count += 1
            else:
                notifications_failed.labels(channel="email").inc()
                self.queue.failed_count += 1
                self._log_failure(message, "email")

        if self.send_sms and message.phone and self.sms_client and self.from_number:
            if await self._send_sms(message):
                notifications_sent.labels(channel="sms").inc()
                self.queue.sent_count += 1
            else:
                notifications_failed.labels(channel="sms").inc()
                self.queue.failed_count += 1
                self._log_failure(message, "sms")

    # ========================================================================
    # CHANNELS
    # ========================================================================

    async def _send_email(self, message: ConfirmationMessage) -> bool:
        body = {"orderId": message.order_id, "email": message.email}

        for attempt in range(MAX_RETRIES + 1):
            message.attempts += 1
            message.last_attempt = datetime.utcnow()

            try:
                await self.db.invoke_function(EMAIL_FUNCTION, body)
                logger.info(f"Confirmation email sent: {message.message_id}")
                return True

            except Exception as e:
                logger.error(f"Confirmation email error (attempt {attempt + 1}): {str(e)}")
                message.error = str(e)

                if attempt < MAX_RETRIES:
                    await asyncio.sleep(self.retry_delay * (attempt + 1))

        logger.error(f"Confirmation email failed after {MAX_RETRIES + 1} attempts: {message.message_id}")
        return False

    async def _send_sms(self, message: ConfirmationMessage) -> bool:
        to_number = clean_phone_number(message.phone)
        if not to_number:
            logger.warning(f"Invalid phone number format: {message.phone}")
            return False

        for attempt in range(MAX_RETRIES + 1):
            message.attempts += 1
            message.last_attempt = datetime.utcnow()

            try:
                loop = asyncio.get_running_loop()
                twilio_message = await loop.run_in_executor(
                    None,
                    lambda: self.sms_client.messages.create(
                        body=message.sms_body(self.restaurant_name),
                        from_=self.from_number,
                        to=to_number
                    )
                )
                logger.info(
                    f"Confirmation SMS sent: {message.message_id} "
                    f"(SID: {twilio_message.sid})"
                )
                return True

            except TwilioRestException as e:
                logger.error(f"Twilio error (attempt {attempt + 1}): {e.code} - {e.msg}")
                message.error = f"{e.code}: {e.msg}"

                if e.code in NON_RETRYABLE_TWILIO_CODES:
                    logger.error(f"Invalid number, not retrying: {to_number}")
                    return False

            except Exception as e:
                logger.error(f"SMS send error (attempt {attempt + 1}): {str(e)}")
                message.error = str(e)

            if attempt < MAX_RETRIES:
                await asyncio.sleep(self.retry_delay * (attempt + 1))

        logger.error(f"SMS failed after {MAX_RETRIES + 1} attempts: {message.message_id}")
        return False

    def _log_failure(self, message: ConfirmationMessage, channel: str):
        try:
            self.db.store_checkout_event(
                "confirmation_failed",
                {"channel": channel, **message.to_dict()}
            )
        except Exception as e:
            logger.error(f"Failed to log confirmation failure: {str(e)}")

    # ========================================================================
    # PUBLIC API (Non-blocking)
    # ========================================================================

    def notify_order_confirmed(
        self,
        order_id: str,
        email: Optional[str],
        total: Decimal,
        phone: Optional[str] = None,
        currency: str = DEFAULT_CURRENCY
    ) -> bool:
        """
        Queue an order confirmation (non-blocking).

        Returns:
            True if enqueued; False for duplicates, a full queue or bad input
        """
        if not order_id:
            logger.warning("Order id required for confirmation")
            return False

        message = ConfirmationMessage(order_id, email, total, currency, phone)
        return self.queue.enqueue(message)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "queue_size": self.queue.size(),
            "sent_count": self.queue.sent_count,
            "failed_count": self.queue.failed_count,
            "dropped_count": self.queue.dropped_count,
            "is_running": self.is_running,
            "sms_enabled": self.sms_client is not None
        }


def clean_phone_number(phone: Optional[str]) -> Optional[str]:
    """Normalize to E.164, or None when it cannot be a phone number."""
    if not phone:
        return None

    digits = ''.join(c for c in phone if c.isdigit())
    if len(digits) < 10 or len(digits) > 15:
        return None

    if phone.strip().startswith('+'):
        return f"+{digits}"
    if len(digits) == 10:
        # US number
        return f"+1{digits}"
    return f"+{digits}"
