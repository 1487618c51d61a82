"""
Confirmation checking: confirmation, at-most-once, expiry, upstream failures,
restarts and shutdown.
"""
import asyncio
import tempfile
import time
import unittest

from common.error_handling import StorageError
from common.retry import RetryConfig
from common.schemas import PaymentStatus
from gateway_service.scheduler import CheckScheduler, MatchPolicy
from helpers import FakeLedger, RecordingBus, build, make_settings, wait_for


class SchedulerTestCase(unittest.IsolatedAsyncioTestCase):
    settings_overrides = {}

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.ledger = FakeLedger()
        self.settings = make_settings(self.tmp.name, **self.settings_overrides)
        self.service = build(self.settings, self.ledger)
        self.services = [self.service]

    async def asyncTearDown(self):
        for service in self.services:
            await service.shutdown()

    def tearDown(self):
        self.tmp.cleanup()

    def status_of(self, account, service=None):
        return (service or self.service).store.load(account).status

    def confirmations(self, bus=None):
        bus = bus or self.service.bus
        return [e for _, e in bus.published if e.type == "PaymentConfirmed"]


class TestConfirmation(SchedulerTestCase):

    async def test_confirms_and_publishes_once(self):
        payment, _ = await self.service.create_payment("1")
        subscription = self.service.bus.subscribe(payment.account)

        self.ledger.add(payment.account, payment.amount, block_hash="SEND1")
        event = await asyncio.wait_for(subscription.get(), 5)

        self.assertEqual(event.payment.status, PaymentStatus.CONFIRMED)
        self.assertEqual(event.payment.block_hash, "SEND1")
        stored = self.service.store.load(payment.account)
        self.assertEqual(stored.status, PaymentStatus.CONFIRMED)
        self.assertEqual(stored.confirmed_amount, payment.amount)
        self.assertIsNotNone(stored.confirmed_at)
        await wait_for(lambda: not self.service.scheduler.active_accounts())

    async def test_partial_transfers_add_up(self):
        payment, _ = await self.service.create_payment("1")
        half = payment.amount // 2
        self.ledger.add(payment.account, half, block_hash="A")
        await wait_for(lambda: self.service.store.load(payment.account).received == half)
        self.assertEqual(self.status_of(payment.account), PaymentStatus.CHECKING)

        self.ledger.add(payment.account, payment.amount - half, block_hash="B")
        await wait_for(lambda: self.status_of(payment.account) == PaymentStatus.CONFIRMED)
        stored = self.service.store.load(payment.account)
        self.assertEqual(stored.block_hash, "B")
        self.assertEqual(stored.received, payment.amount)

    async def test_underpayment_is_not_confirmed(self):
        payment, _ = await self.service.create_payment("1")
        self.ledger.add(payment.account, payment.amount - 1)
        await wait_for(lambda: self.ledger.calls >= 5)
        self.assertEqual(self.status_of(payment.account), PaymentStatus.CHECKING)
        self.assertEqual(self.confirmations(), [])

    async def test_same_transfer_reported_twice_counts_once(self):
        payment, _ = await self.service.create_payment("1")
        half = payment.amount // 2
        self.ledger.add(payment.account, half, block_hash="SAME")
        self.ledger.add(payment.account, half, block_hash="SAME", cursor="RECV1")
        await wait_for(lambda: self.service.store.load(payment.account).cursor == "RECV1")
        stored = self.service.store.load(payment.account)
        self.assertEqual(stored.received, half)
        self.assertEqual(stored.status, PaymentStatus.CHECKING)

    async def test_second_observation_is_a_noop(self):
        payment, _ = await self.service.create_payment("1")
        self.ledger.add(payment.account, payment.amount, block_hash="FIRST")
        await wait_for(lambda: self.status_of(payment.account) == PaymentStatus.CONFIRMED)

        self.ledger.add(payment.account, payment.amount, block_hash="SECOND")
        again = await self.service.scheduler.check_now(payment.account)
        self.assertEqual(again.block_hash, "FIRST")
        self.assertEqual(len(self.confirmations()), 1)

    async def test_two_watchers_confirm_once(self):
        """A duplicate watcher (e.g. a second process after a crash) never double-fires"""
        payment, _ = await self.service.create_payment("1")
        await self.service.scheduler.shutdown()

        bus = RecordingBus()
        schedulers = [
            CheckScheduler(self.service.store, self.ledger, bus, self.settings)
            for _ in range(2)
        ]
        self.ledger.add(payment.account, payment.amount, block_hash="SEND1")
        results = await asyncio.gather(*(s.check_now(payment.account) for s in schedulers))

        self.assertTrue(all(r.status == PaymentStatus.CONFIRMED for r in results))
        self.assertEqual(len(self.confirmations(bus)), 1)
        for scheduler in schedulers:
            await scheduler.shutdown()


class TestTolerance(unittest.TestCase):

    def test_default_is_at_least(self):
        policy = MatchPolicy()
        self.assertEqual(policy.required(1000), 1000)

    def test_fixed_and_percent(self):
        self.assertEqual(MatchPolicy(tolerance_fixed=10).required(1000), 990)
        self.assertEqual(MatchPolicy(tolerance_percent=5).required(1000), 950)
        self.assertEqual(MatchPolicy(tolerance_fixed=10, tolerance_percent=5).required(1000), 950)


class TestExpiry(SchedulerTestCase):
    settings_overrides = {"allowed_duration_seconds": 0.2}

    async def test_expires_without_event_and_stays_expired(self):
        payment, _ = await self.service.create_payment("1")
        await wait_for(lambda: self.status_of(payment.account) == PaymentStatus.EXPIRED)
        self.assertIsNotNone(self.service.store.load(payment.account).expired_at)

        # A late transfer must not revive it
        self.ledger.add(payment.account, payment.amount)
        late = await self.service.scheduler.check_now(payment.account)
        self.assertEqual(late.status, PaymentStatus.EXPIRED)
        self.assertEqual(self.confirmations(), [])

    async def test_no_expiry_while_ledger_is_down(self):
        self.ledger.failures_left = 10 ** 6
        payment, _ = await self.service.create_payment("1")
        await asyncio.sleep(0.4)
        self.assertEqual(self.status_of(payment.account), PaymentStatus.CHECKING)


class TestUpstreamFailures(SchedulerTestCase):

    async def test_transient_failures_are_retried(self):
        self.ledger.failures_left = 3
        payment, _ = await self.service.create_payment("1")
        self.ledger.add(payment.account, payment.amount)
        await wait_for(lambda: self.status_of(payment.account) == PaymentStatus.CONFIRMED)
        self.assertGreaterEqual(self.ledger.calls, 4)
        self.assertEqual(len(self.confirmations()), 1)


class TestRestart(SchedulerTestCase):

    async def test_rearm_after_restart(self):
        first, _ = await self.service.create_payment("1")
        second, _ = await self.service.create_payment("2")
        await wait_for(lambda: all(self.status_of(p.account) == PaymentStatus.CHECKING for p in (first, second)))
        await self.service.shutdown()

        restarted = build(self.settings, self.ledger)
        self.services.append(restarted)
        self.assertEqual(await restarted.start(), 2)
        self.assertEqual(sorted(restarted.scheduler.active_accounts()), sorted([first.account, second.account]))

        self.ledger.add(first.account, first.amount)
        self.ledger.add(second.account, second.amount)
        await wait_for(lambda: not restarted.store.list_active())
        events = self.confirmations(restarted.bus)
        self.assertEqual(sorted(e.payment.account for e in events), sorted([first.account, second.account]))

    async def test_start_checking_is_idempotent(self):
        payment, _ = await self.service.create_payment("1")
        scheduler = self.service.scheduler
        self.assertIs(scheduler.start_checking(payment), scheduler.start_checking(payment))


class SlowFinalizeStore:
    """Wraps a PaymentStore so the terminal write takes a while."""

    def __init__(self, store, delay):
        self._store = store
        self._delay = delay

    def finalize(self, payment, *args, **kwargs):
        time.sleep(self._delay)
        return self._store.finalize(payment, *args, **kwargs)

    def __getattr__(self, name):
        return getattr(self._store, name)


class CommitThenFailStore:
    """Wraps a PaymentStore so the first terminal write commits and then reports an error."""

    def __init__(self, store, before_commit=None):
        self._store = store
        self._before_commit = before_commit
        self.failures_left = 1

    def finalize(self, payment, *args, **kwargs):
        if not self.failures_left:
            return self._store.finalize(payment, *args, **kwargs)
        self.failures_left -= 1
        if self._before_commit is not None:
            self._before_commit(payment)
        else:
            self._store.finalize(payment, *args, **kwargs)
        raise StorageError("connection lost after commit")

    def __getattr__(self, name):
        return getattr(self._store, name)


class TestTerminalWriteRetry(SchedulerTestCase):

    def wrap_store(self, **kwargs):
        scheduler = self.service.scheduler
        scheduler.store = CommitThenFailStore(self.service.store, **kwargs)
        scheduler.store_retry = RetryConfig(
            max_attempts=None, base_delay=0.01, jitter=False, retryable_exceptions=[StorageError]
        )

    async def test_committed_write_reported_as_failed_is_still_announced(self):
        self.wrap_store()
        payment, _ = await self.service.create_payment("1")
        self.ledger.add(payment.account, payment.amount, block_hash="SEND1")

        await wait_for(lambda: len(self.confirmations()) == 1)
        self.assertEqual(self.status_of(payment.account), PaymentStatus.CONFIRMED)
        self.assertEqual(self.confirmations()[0].payment.block_hash, "SEND1")
        await wait_for(lambda: not self.service.scheduler.active_accounts())
        self.assertEqual(len(self.confirmations()), 1)

    async def test_other_writer_winning_during_retry_is_not_announced(self):
        store = self.service.store

        def expire_first(payment):
            other = payment.model_copy(deep=True)
            other.status = PaymentStatus.EXPIRED
            other.block_hash = None
            other.confirmed_at = None
            other.expired_at = payment.confirmed_at
            store.finalize(other)

        self.wrap_store(before_commit=expire_first)
        payment, _ = await self.service.create_payment("1")
        self.ledger.add(payment.account, payment.amount)

        await wait_for(lambda: self.status_of(payment.account) == PaymentStatus.EXPIRED)
        await wait_for(lambda: not self.service.scheduler.active_accounts())
        self.assertEqual(self.confirmations(), [])


class TestShutdown(SchedulerTestCase):

    async def test_shutdown_drains_confirmation_write(self):
        store = self.service.store
        self.service.scheduler.store = SlowFinalizeStore(store, 0.3)
        payment, _ = await self.service.create_payment("1")
        self.ledger.add(payment.account, payment.amount)

        await wait_for(lambda: self.ledger.calls >= 1)
        await asyncio.sleep(0.05)
        await self.service.shutdown()
        self.assertEqual(store.load(payment.account).status, PaymentStatus.CONFIRMED)

    async def test_no_new_watches_after_shutdown(self):
        await self.service.shutdown()
        with self.assertRaises(RuntimeError):
            await self.service.create_payment("1")


if __name__ == "__main__":
    unittest.main()
