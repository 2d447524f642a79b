"""
Escrow Notification Service
Receives domain events after commit, prioritizes them, applies per-recipient cooldowns
and hands them to a delivery backend (log or Expo push)
"""

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from config import Config
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)


class NotificationEvent(Enum):
    """Domain event kinds emitted by the escrow engine"""
    TRANSACTION_PENDING = "transaction_pending"
    TRANSACTION_ACCEPTED = "transaction_accepted"
    TRANSACTION_COMPLETED = "transaction_completed"
    TRANSACTION_CANCELLED = "transaction_cancelled"
    CONDITION_UPDATED = "condition_updated"
    TRANSACTION_REMINDER = "transaction_reminder"


class NotificationPriority(Enum):
    """Delivery priority; lower rank is delivered first"""
    HIGH = 0
    MEDIUM = 1
    LOW = 2


EVENT_PRIORITIES: Dict[NotificationEvent, NotificationPriority] = {
    NotificationEvent.TRANSACTION_PENDING: NotificationPriority.HIGH,
    NotificationEvent.TRANSACTION_ACCEPTED: NotificationPriority.HIGH,
    NotificationEvent.TRANSACTION_COMPLETED: NotificationPriority.HIGH,
    NotificationEvent.TRANSACTION_CANCELLED: NotificationPriority.MEDIUM,
    NotificationEvent.CONDITION_UPDATED: NotificationPriority.MEDIUM,
    NotificationEvent.TRANSACTION_REMINDER: NotificationPriority.LOW,
}


@dataclass
class DomainEvent:
    """A committed change to one transaction"""
    kind: NotificationEvent
    transaction: Dict[str, Any]  # snapshot taken after commit
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def transaction_id(self) -> str:
        return self.transaction["id"]


@dataclass
class PushNotification:
    """One rendered notification for one recipient"""
    recipient_id: str
    kind: NotificationEvent
    priority: NotificationPriority
    title: str
    body: str
    data: Dict[str, Any]
    attempts: int = 0
    enqueued_at: float = field(default_factory=time.monotonic)


class NotificationSink:
    """Interface the escrow engine publishes to"""

    def notify(self, event: DomainEvent, recipients: List[str]) -> None:
        raise NotImplementedError


class NullNotificationSink(NotificationSink):
    """Discards every event"""

    def notify(self, event: DomainEvent, recipients: List[str]) -> None:
        logger.debug(f"Dropping {event.kind.value} for {recipients} (no sink configured)")


# ============================================================================
# Message templates
# ============================================================================

def _amount_label(amount: Any, currency: str) -> str:
    return f"{currency} {MonetaryDecimal.format(Decimal(str(amount)))}"


def render_notification(
    event: DomainEvent, recipient_id: str, currency: str = None
) -> Tuple[str, str]:
    """Title and body for event as seen by recipient_id"""
    currency = currency or Config.CURRENCY_LABEL
    tx = event.transaction
    details = event.details
    amount = _amount_label(tx["amount"], currency)
    sender_name = details.get("sender_name") or "Someone"
    receiver_name = details.get("receiver_name") or "Someone"

    if event.kind is NotificationEvent.TRANSACTION_PENDING:
        return "New Pending Transaction", f"{sender_name} sent you {amount} for escrow"

    if event.kind is NotificationEvent.TRANSACTION_ACCEPTED:
        return "Transaction Accepted", f"{receiver_name} accepted your transaction of {amount}"

    if event.kind is NotificationEvent.TRANSACTION_COMPLETED:
        other = receiver_name if recipient_id == tx["sender_id"] else sender_name
        return "Transaction Completed", f"Your transaction with {other} for {amount} is complete"

    if event.kind is NotificationEvent.TRANSACTION_CANCELLED:
        reason = details.get("reason") or "cancelled"
        return "Transaction Cancelled", f"Transaction for {amount} was cancelled: {reason}"

    if event.kind is NotificationEvent.CONDITION_UPDATED:
        description = details.get("condition_description", "")
        state = "completed" if details.get("completed") else "not completed"
        return "Condition Updated", f'Condition "{description}" was marked as {state}'

    return "Transaction Reminder", f"Transaction {tx['vtid']} for {amount} is waiting for you"


# ============================================================================
# Rate limiting
# ============================================================================

class NotificationRateLimiter:
    """In-memory cooldown tracker keyed by (recipient, kind)"""

    def __init__(
        self,
        cooldowns: Optional[Dict[NotificationPriority, float]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cooldowns = cooldowns or {
            NotificationPriority.HIGH: Config.NOTIFICATION_COOLDOWN_HIGH_SECONDS,
            NotificationPriority.MEDIUM: Config.NOTIFICATION_COOLDOWN_MEDIUM_SECONDS,
            NotificationPriority.LOW: Config.NOTIFICATION_COOLDOWN_LOW_SECONDS,
        }
        self._clock = clock
        self._last_sent: Dict[Tuple[str, NotificationEvent], float] = {}

    def is_rate_limited(
        self, recipient_id: str, kind: NotificationEvent, priority: NotificationPriority
    ) -> Tuple[bool, Optional[int]]:
        """
        Check whether recipient was notified about kind within the priority's cooldown

        Returns:
            Tuple of (is_limited, seconds_until_reset)
        """
        last = self._last_sent.get((recipient_id, kind))
        if last is None:
            return False, None

        remaining = last + self.cooldowns[priority] - self._clock()
        if remaining > 0:
            return True, max(1, int(remaining))
        return False, None

    def record(self, recipient_id: str, kind: NotificationEvent) -> None:
        self._last_sent[(recipient_id, kind)] = self._clock()

    def reset_user_limits(self, recipient_id: str) -> None:
        for key in [key for key in self._last_sent if key[0] == recipient_id]:
            del self._last_sent[key]


# ============================================================================
# Delivery backends
# ============================================================================

class DeliveryBackend:
    """Sends one rendered notification; raises on failure"""

    def deliver(self, notification: PushNotification) -> None:
        raise NotImplementedError


class LoggingDeliveryBackend(DeliveryBackend):
    """Writes notifications to the log instead of a device"""

    def deliver(self, notification: PushNotification) -> None:
        logger.info(
            f"🔔 NOTIFICATION [{notification.priority.name}] to {notification.recipient_id}: "
            f"{notification.title} - {notification.body}"
        )


class ExpoPushDeliveryBackend(DeliveryBackend):
    """Delivers through the Expo push API to every registered device of the recipient"""

    def __init__(
        self,
        token_registry,
        url: Optional[str] = None,
        timeout: Optional[int] = None,
        http: Optional[requests.Session] = None,
    ):
        self.token_registry = token_registry
        self.url = url or Config.EXPO_PUSH_URL
        self.timeout = timeout or Config.EXPO_PUSH_TIMEOUT_SECONDS
        self.http = http or requests.Session()

    def deliver(self, notification: PushNotification) -> None:
        tokens = self.token_registry.tokens_for([notification.recipient_id]).get(notification.recipient_id, [])
        if not tokens:
            logger.info(f"📵 NO_DEVICE_TOKENS: skipping push for user {notification.recipient_id}")
            return

        messages = [
            {
                "to": token,
                "sound": "default",
                "title": notification.title,
                "body": notification.body,
                "data": notification.data,
                "priority": "high" if notification.priority is NotificationPriority.HIGH else "default",
            }
            for token in tokens
        ]
        response = self.http.post(
            self.url,
            json=messages,
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        logger.info(f"📲 PUSH_SENT: {notification.kind.value} to {len(tokens)} device(s) of {notification.recipient_id}")


# ============================================================================
# Queueing sink
# ============================================================================

class QueuedNotificationSink(NotificationSink):
    """
    Priority queue in front of a delivery backend.

    Notifications are ordered by priority then age. One blocked by its
    recipient's cooldown is re-queued at most max_retries times, then dropped.
    Delivery is best effort: backend errors are logged and the notification
    is discarded. Backend calls run without holding the queue lock.
    """

    def __init__(
        self,
        backend: Optional[DeliveryBackend] = None,
        rate_limiter: Optional[NotificationRateLimiter] = None,
        max_retries: Optional[int] = None,
        currency: Optional[str] = None,
        process_immediately: bool = True,
    ):
        self.backend = backend or LoggingDeliveryBackend()
        self.rate_limiter = rate_limiter or NotificationRateLimiter()
        self.max_retries = Config.NOTIFICATION_MAX_RETRIES if max_retries is None else max_retries
        self.currency = currency or Config.CURRENCY_LABEL
        self.process_immediately = process_immediately
        self._queue: List[Tuple[int, float, int, PushNotification]] = []
        self._sequence = itertools.count()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._queue)

    def _push(self, notification: PushNotification) -> None:
        heapq.heappush(
            self._queue,
            (notification.priority.value, notification.enqueued_at, next(self._sequence), notification),
        )

    def notify(self, event: DomainEvent, recipients: List[str]) -> None:
        try:
            priority = EVENT_PRIORITIES.get(event.kind, NotificationPriority.MEDIUM)
            with self._lock:
                for recipient_id in dict.fromkeys(recipients):
                    title, body = render_notification(event, recipient_id, self.currency)
                    self._push(PushNotification(
                        recipient_id=recipient_id,
                        kind=event.kind,
                        priority=priority,
                        title=title,
                        body=body,
                        data={
                            "type": event.kind.value,
                            "transaction_id": event.transaction_id,
                            "vtid": event.transaction.get("vtid"),
                        },
                    ))
            logger.debug(f"📥 NOTIFICATION_QUEUED: {event.kind.value} for {len(recipients)} recipient(s)")
        except Exception as e:
            logger.error(f"❌ NOTIFICATION_QUEUE_FAILED: {event.kind.value} for {event.transaction_id}: {e}")
            return

        if self.process_immediately:
            self.process_queue()

    def _take_ready(self) -> List[PushNotification]:
        """
        Drain the queue under the lock: requeue or drop cooled-down items and
        claim the rest. Claimed items are recorded against the rate limiter
        before the lock is released so a concurrent drain cannot send them twice.
        """
        with self._lock:
            pending = [heapq.heappop(self._queue)[3] for _ in range(len(self._queue))]
            ready: List[PushNotification] = []

            for notification in pending:
                limited, _ = self.rate_limiter.is_rate_limited(
                    notification.recipient_id, notification.kind, notification.priority
                )
                if not limited:
                    self.rate_limiter.record(notification.recipient_id, notification.kind)
                    ready.append(notification)
                    continue

                notification.attempts += 1
                if notification.attempts <= self.max_retries:
                    self._push(notification)
                else:
                    logger.info(
                        f"🗑️ NOTIFICATION_DROPPED: {notification.kind.value} for {notification.recipient_id} "
                        f"still in cooldown after {self.max_retries} retries"
                    )
        return ready

    def process_queue(self) -> int:
        """Deliver everything not held back by a cooldown; returns the number delivered"""
        delivered = 0
        # Backend calls run outside the lock; a slow push must not stall notify()
        for notification in self._take_ready():
            try:
                self.backend.deliver(notification)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"❌ NOTIFICATION_DELIVERY_FAILED: {notification.kind.value} "
                    f"to {notification.recipient_id}: {e}"
                )
        return delivered


def build_notification_sink(token_registry=None) -> QueuedNotificationSink:
    """Sink wired to the configured delivery backend"""
    if Config.PUSH_BACKEND == "expo":
        if token_registry is None:
            from services.device_token_registry import DeviceTokenRegistry
            token_registry = DeviceTokenRegistry()
        backend: DeliveryBackend = ExpoPushDeliveryBackend(token_registry)
    else:
        backend = LoggingDeliveryBackend()
    return QueuedNotificationSink(backend=backend)
