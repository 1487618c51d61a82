"""
Fakes and builders shared by the gateway tests.
"""
import asyncio
import os
import threading
import time
from decimal import Decimal
from typing import Dict, List, Optional

from common.error_handling import UpstreamUnavailableError
from common.schemas import IncomingTransfer, LedgerScan
from common.settings import Settings
from gateway_service.events import EventBus
from gateway_service.service import PaymentService, build_service

SEED = "0" * 64
OTHER_SEED = "1f" * 32


def make_settings(directory: str, **overrides) -> Settings:
    values = dict(
        seed=SEED,
        database_url=f"sqlite:///{os.path.join(directory, 'gateway.db')}",
        token_secret="test-secret",
        allowed_duration_seconds=30.0,
        min_check_interval_seconds=0.01,
        max_check_interval_seconds=0.05,
        check_interval_multiplier=2.0,
    )
    values.update(overrides)
    return Settings(**values)


class FakeLedger:
    """In-memory ledger. Transfers are visible to every query once added."""

    def __init__(self):
        self._lock = threading.Lock()
        self._transfers: Dict[str, List[IncomingTransfer]] = {}
        self._cursors: Dict[str, str] = {}
        self.failures_left = 0
        self.calls = 0

    def add(self, account: str, amount: int, block_hash: Optional[str] = None, cursor: Optional[str] = None):
        with self._lock:
            transfers = self._transfers.setdefault(account, [])
            transfers.append(IncomingTransfer(
                amount=amount,
                block_hash=block_hash or f"{account[-8:]}-{len(transfers)}",
            ))
            if cursor:
                self._cursors[account] = cursor

    def query_incoming(self, account: str, since_cursor: Optional[str] = None) -> LedgerScan:
        with self._lock:
            self.calls += 1
            if self.failures_left > 0:
                self.failures_left -= 1
                raise UpstreamUnavailableError("node unreachable")
            return LedgerScan(
                transfers=list(self._transfers.get(account, [])),
                cursor=self._cursors.get(account),
            )


class FakePrices:
    def __init__(self, rates: Optional[Dict[str, Decimal]] = None):
        self.rates = rates or {}

    def get_rate(self, currency: str) -> Decimal:
        try:
            return self.rates[currency]
        except KeyError:
            raise UpstreamUnavailableError(f"no price available for {currency}")


class RecordingBus(EventBus):
    """EventBus that also remembers every publish call."""

    def __init__(self):
        super().__init__()
        self.published = []

    def publish(self, account, event):
        self.published.append((account, event))
        return super().publish(account, event)


def build(settings: Settings, ledger: Optional[FakeLedger] = None, prices: Optional[FakePrices] = None,
          record_events: bool = True) -> PaymentService:
    service = build_service(settings, ledger=ledger or FakeLedger(), prices=prices or FakePrices())
    if record_events:
        bus = RecordingBus()
        service.bus = bus
        service.scheduler.bus = bus
    return service


async def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01):
    """Poll predicate (sync or async) until it returns truthy."""
    deadline = time.monotonic() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
