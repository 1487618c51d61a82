import asyncio
import logging
import threading
from collections import defaultdict
from typing import Dict, List, Optional

from common.schemas import ConfirmationEvent

logger = logging.getLogger(__name__)


class SubscriptionClosed(Exception):
    """Raised by Subscription.get once the subscription is cancelled and drained."""


class Subscription:
    """Receive endpoint for one account's events plus its cancellation handle."""

    def __init__(self, bus: "EventBus", account: str, maxsize: int):
        self.account = account
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._cancelled = False
        self._closed = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def offer(self, event: ConfirmationEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Dropping event for {self.account}: subscriber queue is full")
            return False
        return True

    async def get(self) -> ConfirmationEvent:
        """Next queued event. A pending get is woken by cancel().

        Events queued before the cancel are still handed out; after that
        SubscriptionClosed is raised.
        """
        if not self._queue.empty():
            return self._queue.get_nowait()
        if self._cancelled:
            raise SubscriptionClosed(self.account)

        getter = asyncio.ensure_future(self._queue.get())
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({getter, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed.cancel()
            if not getter.done():
                getter.cancel()
        if getter.done() and not getter.cancelled():
            return getter.result()
        raise SubscriptionClosed(self.account)

    def cancel(self):
        if self._cancelled:
            return
        self._cancelled = True
        self._closed.set()
        self._bus._unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ConfirmationEvent:
        try:
            return await self.get()
        except SubscriptionClosed:
            raise StopAsyncIteration


class EventBus:
    """In-process publish/subscribe keyed by receiving account.

    Publishing never blocks: each subscriber has a bounded queue and an event
    is dropped only for a subscriber whose queue is already full.
    """

    def __init__(self, queue_size: int = 1):
        self._queue_size = queue_size
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Subscription]] = defaultdict(list)

    def subscribe(self, account: str, queue_size: Optional[int] = None) -> Subscription:
        subscription = Subscription(self, account, queue_size or self._queue_size)
        with self._lock:
            self._subscribers[account].append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription):
        with self._lock:
            subscribers = self._subscribers.get(subscription.account)
            if not subscribers:
                return
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                del self._subscribers[subscription.account]

    def publish(self, account: str, event: ConfirmationEvent) -> int:
        """Hand event to every current subscriber of account; returns how many took it."""
        with self._lock:
            targets = list(self._subscribers.get(account, ()))
        delivered = sum(1 for s in targets if not s.cancelled and s.offer(event))
        logger.debug(f"Published {event.type} for {account} to {delivered} subscriber(s)")
        return delivered

    def subscriber_count(self, account: str) -> int:
        with self._lock:
            return len(self._subscribers.get(account, ()))
