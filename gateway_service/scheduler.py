"""
Confirmation checking: one asyncio task per open payment.

State machine per payment::

    pending -> checking -> confirmed
                        -> expired

A watch task re-reads the payment from the store on every tick, so a manual
override or a second watcher finishing the payment first stops it. Terminal
transitions go through ``PaymentStore.finalize`` (compare-and-set), and only
the winner of that write publishes the confirmation event.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Protocol, Set

from common.circuit_breaker import LEDGER_CB_CONFIG, CircuitBreaker
from common.error_handling import PaymentNotFoundError, StorageError
from common.retry import STORE_WRITE_RETRY_CONFIG, RetryConfig, calculate_delay, retry_async
from common.schemas import ConfirmationEvent, IncomingTransfer, LedgerScan, Payment, PaymentStatus
from common.settings import Settings
from gateway_service.events import EventBus
from gateway_service.notifier import MerchantNotifier
from gateway_service.store import PaymentStore

logger = logging.getLogger(__name__)


class Ledger(Protocol):
    def query_incoming(self, account: str, since_cursor: Optional[str] = None) -> LedgerScan:
        ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MatchPolicy:
    """At-least matching: confirmed once received >= amount - tolerance.

    Tolerance is the larger of a fixed raw amount and a percentage of the
    expected amount; both default to zero.
    """

    def __init__(self, tolerance_fixed: int = 0, tolerance_percent: Decimal = Decimal("0")):
        self.tolerance_fixed = tolerance_fixed
        self.tolerance_percent = Decimal(tolerance_percent)

    def required(self, amount: int) -> int:
        tolerance = max(self.tolerance_fixed, int(amount * self.tolerance_percent / 100))
        return max(amount - tolerance, 0)

    def is_satisfied(self, payment: Payment) -> bool:
        return payment.received > 0 and payment.received >= self.required(payment.amount)


class CheckScheduler:
    def __init__(
        self,
        store: PaymentStore,
        ledger: Ledger,
        bus: EventBus,
        settings: Settings,
        notifier: Optional[MerchantNotifier] = None,
        ledger_breaker: Optional[CircuitBreaker] = None,
        store_retry: RetryConfig = STORE_WRITE_RETRY_CONFIG,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.ledger = ledger
        self.bus = bus
        self.notifier = notifier
        self.ledger_breaker = ledger_breaker or CircuitBreaker("ledger", LEDGER_CB_CONFIG)
        self.store_retry = store_retry
        self.clock = clock
        self.policy = MatchPolicy(settings.underpayment_tolerance_fixed, settings.underpayment_tolerance_percent)
        self.allowed_duration = timedelta(seconds=settings.allowed_duration_seconds)
        self.backoff = RetryConfig(
            max_attempts=None,
            base_delay=settings.min_check_interval_seconds,
            max_delay=settings.max_check_interval_seconds,
            exponential_base=settings.check_interval_multiplier,
            jitter=False,
        )

        self._tasks: Dict[str, asyncio.Task] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._terminal_writes: Set[asyncio.Task] = set()
        self._notifications: Set[asyncio.Task] = set()
        self._stopping = asyncio.Event()

    # -- task management -------------------------------------------------

    def start_checking(self, payment: Payment) -> asyncio.Task:
        """Start watching payment; returns the running task if one exists."""
        if self._stopping.is_set():
            raise RuntimeError("scheduler is shutting down")
        account = payment.account
        task = self._tasks.get(account)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self._watch(account), name=f"check:{account}")
        self._tasks[account] = task
        task.add_done_callback(lambda t, a=account: self._forget(a, t))
        logger.info(f"Watching payment {account} (index {payment.index})")
        return task

    def _forget(self, account: str, task: asyncio.Task):
        if self._tasks.get(account) is task:
            del self._tasks[account]
            lock = self._locks.get(account)
            if lock is not None and not lock.locked():
                del self._locks[account]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Watch task for {account} crashed: {task.exception()!r}")

    def _lock_for(self, account: str) -> asyncio.Lock:
        return self._locks.setdefault(account, asyncio.Lock())

    def active_accounts(self) -> List[str]:
        return [a for a, t in self._tasks.items() if not t.done()]

    async def rearm(self) -> int:
        """Start a watch for every payment still pending or checking."""
        payments = await asyncio.to_thread(self.store.list_active)
        for payment in payments:
            self.start_checking(payment)
        logger.info(f"Re-armed {len(payments)} payment watch(es)")
        return len(payments)

    async def check_now(self, account: str) -> Payment:
        """Run one check immediately (admin request) and return the result."""
        async with self._lock_for(account):
            payment = await self._tick(account)
        if payment.is_active and account not in self._tasks and not self._stopping.is_set():
            self.start_checking(payment)
        return payment

    async def shutdown(self):
        """Stop polling. Terminal writes already in flight are drained first."""
        self._stopping.set()
        watchers = list(self._tasks.values())
        for task in watchers:
            task.cancel()
        await asyncio.gather(*watchers, return_exceptions=True)
        if self._terminal_writes:
            logger.info(f"Draining {len(self._terminal_writes)} terminal write(s)")
            await asyncio.gather(*list(self._terminal_writes), return_exceptions=True)
        for task in list(self._notifications):
            task.cancel()
        await asyncio.gather(*list(self._notifications), return_exceptions=True)

    # -- checking --------------------------------------------------------

    async def _watch(self, account: str):
        tick = 0
        while True:
            tick += 1
            async with self._lock_for(account):
                try:
                    payment = await self._tick(account)
                except PaymentNotFoundError:
                    logger.error(f"Payment {account} disappeared from the store, stopping watch")
                    return
                except StorageError as e:
                    logger.error(f"Store read failed for {account}: {e}")
                    payment = None
            if payment is not None and not payment.is_active:
                return
            await asyncio.sleep(self._next_delay(payment, tick))

    def _next_delay(self, payment: Optional[Payment], tick: int) -> float:
        delay = calculate_delay(tick, self.backoff)
        if payment is not None:
            remaining = (payment.created_at + self.allowed_duration - self.clock()).total_seconds()
            if remaining > 0:
                delay = min(delay, remaining)
        return delay

    async def _tick(self, account: str) -> Payment:
        payment = await asyncio.to_thread(self.store.load, account)
        if not payment.is_active:
            return payment

        now = self.clock()
        payment.status = PaymentStatus.CHECKING
        payment.last_checked_at = now

        try:
            scan = await self.ledger_breaker.call(self.ledger.query_incoming, account, payment.cursor)
        except Exception as e:
            # Not a non-confirmation: the payment stays open and is retried
            logger.warning(f"Ledger query for {account} failed: {e}")
            await self._record_progress(payment)
            return payment

        completing = self._fold(payment, scan)
        if completing is not None:
            payment.status = PaymentStatus.CONFIRMED
            payment.block_hash = completing.block_hash
            payment.confirmed_amount = payment.received
            payment.confirmed_at = now
            return await self._complete(payment)

        if now - payment.created_at > self.allowed_duration:
            payment.status = PaymentStatus.EXPIRED
            payment.expired_at = now
            return await self._complete(payment)

        if not await self._record_progress(payment):
            return await asyncio.to_thread(self.store.load, account)
        return payment

    def _fold(self, payment: Payment, scan: LedgerScan) -> Optional[IncomingTransfer]:
        """Add unseen transfers; return the one that satisfied the payment, if any."""
        if scan.cursor:
            payment.cursor = scan.cursor
        seen = {t.block_hash for t in payment.transfers}
        completing = None
        for transfer in scan.transfers:
            if transfer.block_hash in seen:
                continue
            seen.add(transfer.block_hash)
            payment.transfers.append(transfer)
            payment.received += transfer.amount
            logger.info(f"Payment {payment.account} received {transfer.amount} raw in {transfer.block_hash}")
            if completing is None and self.policy.is_satisfied(payment):
                completing = transfer
        return completing

    async def _record_progress(self, payment: Payment) -> bool:
        try:
            return await asyncio.to_thread(self.store.record_progress, payment)
        except StorageError as e:
            logger.error(f"Failed to record progress for {payment.account}: {e}")
            return True

    # -- terminal transitions -------------------------------------------

    async def _complete(self, payment: Payment) -> Payment:
        """Persist a terminal transition, then publish. Survives cancellation of the caller."""
        write = asyncio.ensure_future(self._finish(payment))
        self._terminal_writes.add(write)
        write.add_done_callback(self._terminal_writes.discard)
        return await asyncio.shield(write)

    @staticmethod
    def _is_same_transition(stored: Payment, payment: Payment) -> bool:
        return (
            stored.status == payment.status
            and stored.block_hash == payment.block_hash
            and stored.confirmed_at == payment.confirmed_at
            and stored.expired_at == payment.expired_at
        )

    async def _finish(self, payment: Payment) -> Payment:
        attempts = 0

        async def write_terminal() -> bool:
            nonlocal attempts
            attempts += 1
            return await asyncio.to_thread(self.store.finalize, payment)

        try:
            won = await retry_async(write_terminal, self.store_retry, stop_event=self._stopping)
        except StorageError as e:
            # The row is still active, so the next start re-detects it
            logger.critical(f"Could not persist {payment.status.value} for {payment.account}: {e}")
            raise

        if not won:
            stored = await asyncio.to_thread(self.store.load, payment.account)
            # A failed attempt may have committed before reporting the error
            if attempts > 1 and self._is_same_transition(stored, payment):
                logger.warning(f"Terminal write for {payment.account} had already committed")
            else:
                logger.info(f"Payment {payment.account} was already finished elsewhere, ignoring")
                return stored

        logger.info(f"Payment {payment.account} {payment.status.value}")
        if payment.status == PaymentStatus.CONFIRMED:
            self.announce(payment)
        return payment

    def announce(self, payment: Payment):
        """Publish the confirmation and notify the merchant (in the background)."""
        self.bus.publish(payment.account, ConfirmationEvent(payment=payment))
        if self.notifier is not None:
            task = asyncio.create_task(self.notifier.notify(payment))
            self._notifications.add(task)
            task.add_done_callback(self._notifications.discard)
