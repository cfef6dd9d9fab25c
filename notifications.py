"""
Notification Module (Production)
================================
Admin SMS notifications through Twilio.
Background sending, retry logic, failure logging, idempotency protection.
Never blocks or fails the request that triggered it.
"""

import asyncio
import logging
from typing import Dict, Any, Optional, Set, List
from datetime import datetime, timezone
from collections import deque

from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException
from prometheus_client import Counter

from config import TwilioConfig


logger = logging.getLogger(__name__)


# Configuration
MAX_RETRIES = 3
RETRY_DELAY = 2.0  # seconds
MAX_SMS_QUEUE_SIZE = 500
SMS_PROCESSING_INTERVAL = 1.0  # seconds
MAX_SENT_IDS = 1000

# Twilio error codes that will never succeed on retry
NON_RETRYABLE_CODES = (21211, 21614)  # Invalid number, not a mobile number


admin_notifications = Counter(
    'admin_notifications_total',
    'Admin notification outcomes',
    ['result']
)


class SMSMessage:
    """SMS message with metadata."""

    def __init__(self, to_number: str, body: str, message_id: str):
        self.to_number = to_number
        self.body = body
        self.message_id = message_id
        self.attempts = 0
        self.created_at = datetime.now(timezone.utc)
        self.last_attempt: Optional[datetime] = None
        self.error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "message_id": self.message_id,
            "to_number": self.to_number,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat(),
            "last_attempt": self.last_attempt.isoformat() if self.last_attempt else None,
            "error": self.error
        }


class SMSQueue:
    """Queue for background SMS sending with de-duplication."""

    def __init__(self, max_size: int = MAX_SMS_QUEUE_SIZE):
        self.queue: deque = deque()
        self.max_size = max_size
        self.dropped_count = 0
        self.sent_ids: Set[str] = set()
        self._sent_order: deque = deque()
        self.sent_count = 0
        self.failed_count = 0

    def enqueue(self, message: SMSMessage) -> bool:
        """
        Enqueue SMS for sending.

        Returns:
            True if enqueued, False if duplicate or queue full
        """
        if message.message_id in self.sent_ids or any(
            queued.message_id == message.message_id for queued in self.queue
        ):
            logger.debug(f"Duplicate SMS ignored: {message.message_id}")
            admin_notifications.labels(result="duplicate").inc()
            return False

        if len(self.queue) >= self.max_size:
            self.dropped_count += 1
            admin_notifications.labels(result="dropped").inc()
            logger.warning(
                f"SMS queue full, dropping message "
                f"(dropped: {self.dropped_count})"
            )
            return False

        self.queue.append(message)
        return True

    def dequeue(self) -> Optional[SMSMessage]:
        """Dequeue SMS for sending."""
        if self.queue:
            return self.queue.popleft()
        return None

    def mark_sent(self, message_id: str):
        """Remember a delivered message id (oldest forgotten first)."""
        self.sent_ids.add(message_id)
        self._sent_order.append(message_id)
        self.sent_count += 1

        while len(self._sent_order) > MAX_SENT_IDS:
            self.sent_ids.discard(self._sent_order.popleft())

    def mark_failed(self):
        self.failed_count += 1

    def size(self) -> int:
        return len(self.queue)

    def is_empty(self) -> bool:
        return len(self.queue) == 0


class AdminNotifier:
    """
    Notification dispatcher for admin alerts.

    Public methods only enqueue; delivery happens in the background
    processor, so callers are never awaited on delivery and never see
    delivery errors.
    """

    def __init__(
        self,
        settings: Optional[TwilioConfig] = None,
        enabled: bool = True,
        client: Optional[Client] = None,
        from_number: Optional[str] = None,
        admin_numbers: Optional[List[str]] = None,
        retry_delay: float = RETRY_DELAY
    ):
        self.enabled = enabled
        self.client: Optional[Client] = client
        self.from_number = from_number or (settings.phone_number if settings else None)
        self.admin_numbers = list(admin_numbers or (settings.admin_numbers if settings else []))
        self.retry_delay = retry_delay
        self.queue = SMSQueue()

        # Background tasks
        self.processor_task: Optional[asyncio.Task] = None
        self.is_running = False

        if self.enabled and self.client is None and settings is not None:
            self._initialize_client(settings)

        logger.info(
            f"AdminNotifier initialized (enabled={self.enabled}, "
            f"recipients={len(self.admin_numbers)})"
        )

    def _initialize_client(self, settings: TwilioConfig):
        """Initialize Twilio client."""
        try:
            self.client = Client(settings.account_sid, settings.auth_token)
            logger.info(f"Twilio client initialized (from: {self.from_number})")
        except Exception as e:
            logger.error(f"Failed to initialize Twilio client: {str(e)}")

    async def start(self):
        """Start background SMS processor."""
        if self.is_running or not self.enabled:
            return

        self.is_running = True
        self.processor_task = asyncio.create_task(self._processor_loop())
        logger.info("Notification processor started")

    async def stop(self):
        """Stop background processor and flush what is queued."""
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

        logger.info("Notification processor stopped")

    async def _processor_loop(self):
        """Background loop to process SMS queue."""
        try:
            while self.is_running:
                await asyncio.sleep(SMS_PROCESSING_INTERVAL)

                if self.queue.is_empty():
                    continue

                await self._process_next_message()

        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Notification processor error: {str(e)}")

    async def _process_next_message(self):
        message = self.queue.dequeue()

        if not message:
            return

        if await self._send_with_retry(message):
            self.queue.mark_sent(message.message_id)
            admin_notifications.labels(result="sent").inc()
        else:
            self.queue.mark_failed()
            admin_notifications.labels(result="failed").inc()
            logger.error(f"Admin notification failed: {message.to_dict()}")

    async def _send_with_retry(self, message: SMSMessage) -> bool:
        """
        Send SMS with retry logic.

        Returns:
            True if sent successfully
        """
        if not self.client or not self.from_number:
            logger.error("SMS client not initialized")
            return False

        loop = asyncio.get_running_loop()

        for attempt in range(MAX_RETRIES + 1):
            message.attempts = attempt + 1
            message.last_attempt = datetime.now(timezone.utc)

            try:
                twilio_message = await loop.run_in_executor(
                    None,
                    lambda: self.client.messages.create(
                        body=message.body,
                        from_=self.from_number,
                        to=message.to_number
                    )
                )

                logger.info(
                    f"SMS sent successfully: {message.message_id} "
                    f"(SID: {twilio_message.sid})"
                )
                return True

            except TwilioRestException as e:
                logger.error(
                    f"Twilio error (attempt {attempt + 1}): "
                    f"{e.code} - {e.msg}"
                )
                message.error = f"{e.code}: {e.msg}"

                if e.code in NON_RETRYABLE_CODES:
                    logger.error(f"Invalid number, not retrying: {message.to_number}")
                    return False

            except Exception as e:
                logger.error(f"SMS send error (attempt {attempt + 1}): {str(e)}")
                message.error = str(e)

            if attempt < MAX_RETRIES:
                await asyncio.sleep(self.retry_delay * (attempt + 1))

        logger.error(f"SMS failed after {MAX_RETRIES + 1} attempts: {message.message_id}")
        return False

    async def flush(self):
        """Deliver everything currently queued."""
        if not self.queue.is_empty():
            logger.info(f"Flushing {self.queue.size()} pending notifications")

        while not self.queue.is_empty():
            await self._process_next_message()

    # ========================================================================
    # PUBLIC API (Non-blocking)
    # ========================================================================

    def notify_order_created(self, order_id: int, order_token: str) -> int:
        """
        Alert every admin that a new custom order arrived.

        Never raises. Delivery happens in the background.

        Args:
            order_id: Stored order id (used for idempotency)
            order_token: Human readable order token

        Returns:
            Number of messages enqueued
        """
        try:
            if not self.enabled:
                admin_notifications.labels(result="disabled").inc()
                logger.debug(f"Admin notifications disabled, skipping order {order_id}")
                return 0

            body = (
                f"Pesanan custom baru: {order_token}\n"
                f"Order #{order_id} menunggu persetujuan admin."
            )

            enqueued = 0
            for number in self.admin_numbers:
                message = SMSMessage(
                    to_number=number,
                    body=body,
                    message_id=f"order_created_{order_id}_{number}"
                )
                if self.queue.enqueue(message):
                    enqueued += 1

            return enqueued

        except Exception as e:
            logger.error(f"Failed to enqueue admin notification for order {order_id}: {str(e)}")
            return 0

    def get_stats(self) -> Dict[str, Any]:
        """Get notification statistics."""
        return {
            "enabled": self.enabled,
            "queue_size": self.queue.size(),
            "sent_count": self.queue.sent_count,
            "failed_count": self.queue.failed_count,
            "dropped_count": self.queue.dropped_count,
            "is_running": self.is_running
        }

    def is_healthy(self) -> bool:
        """Disabled notifiers are healthy; enabled ones need a client and a running processor."""
        if not self.enabled:
            return True
        return self.client is not None and self.is_running
