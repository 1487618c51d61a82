"""
PaymentService: the composition root of the gateway.

Owns the settings object and wires allocator, key derivation, store,
scheduler and event bus together. The HTTP layer only talks to this class.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from decimal import Context, Decimal, InvalidOperation, ROUND_HALF_EVEN, localcontext
from typing import AsyncIterator, List, Optional, Protocol, Tuple

from common.circuit_breaker import LEDGER_CB_CONFIG, PRICE_CB_CONFIG, CircuitBreaker
from common.error_handling import InvalidInputError, ServiceError, UpstreamUnavailableError
from common.schemas import ConfirmationEvent, Payment, PaymentStatus, TERMINAL_STATUSES
from common.security import TokenCodec
from common.settings import Settings
from gateway_service import keyspace
from gateway_service.allocator import IndexAllocator
from gateway_service.db import init_schema, make_engine, make_session_factory
from gateway_service.events import EventBus, Subscription
from gateway_service.node_client import NodeClient
from gateway_service.notifier import MerchantNotifier
from gateway_service.price import PriceOracle
from gateway_service.scheduler import CheckScheduler, Ledger, utcnow
from gateway_service.store import PaymentStore

logger = logging.getLogger(__name__)

AMOUNT_PLACES = Decimal("0.000001")
# Fiat conversion works on amounts far wider than the default 28 digits
CONVERSION_PRECISION = 80


class RateSource(Protocol):
    def get_rate(self, currency: str) -> Decimal:
        ...


class PaymentService:
    def __init__(
        self,
        settings: Settings,
        store: PaymentStore,
        allocator: IndexAllocator,
        scheduler: CheckScheduler,
        bus: EventBus,
        tokens: TokenCodec,
        prices: RateSource,
        price_breaker: Optional[CircuitBreaker] = None,
    ):
        keyspace.parse_seed(settings.seed)
        self.settings = settings
        self.store = store
        self.allocator = allocator
        self.scheduler = scheduler
        self.bus = bus
        self.tokens = tokens
        self.prices = prices
        self.price_breaker = price_breaker or CircuitBreaker("price", PRICE_CB_CONFIG)

    # -- amounts ----------------------------------------------------------

    async def get_rate(self, currency: str) -> Decimal:
        code = (currency or "").strip().upper()
        if not code:
            raise InvalidInputError("currency is required", field="currency")
        try:
            return await self.price_breaker.call(self.prices.get_rate, code)
        except UpstreamUnavailableError:
            raise
        except Exception as e:
            raise UpstreamUnavailableError(f"price lookup for {code} failed", original_error=e)

    def to_raw(self, amount: Decimal) -> int:
        """Exact native -> raw conversion; amounts finer than one raw are rejected."""
        digits = len(amount.as_tuple().digits)
        scaled = amount.scaleb(self.settings.raw_exponent, context=Context(prec=max(digits, 1)))
        if scaled != scaled.to_integral_value():
            raise InvalidInputError(f"{amount} has more than {self.settings.raw_exponent} decimal places", field="amount")
        return int(scaled)

    async def _native_amount(self, amount, currency: Optional[str]) -> Tuple[Decimal, Decimal, str]:
        try:
            amount_in_currency = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise InvalidInputError(f"invalid amount {amount!r}", field="amount")
        if not amount_in_currency.is_finite() or amount_in_currency <= 0:
            raise InvalidInputError("amount must be a positive number", field="amount")

        code = (currency or "").strip().upper() or self.settings.native_currency
        if code == self.settings.native_currency:
            return amount_in_currency, amount_in_currency, code
        rate = await self.get_rate(code)
        with localcontext() as ctx:
            ctx.prec = CONVERSION_PRECISION
            native = (amount_in_currency / rate).quantize(AMOUNT_PLACES, rounding=ROUND_HALF_EVEN)
        if native <= 0:
            raise InvalidInputError(f"{amount_in_currency} {code} is below the smallest payable amount", field="amount")
        return native, amount_in_currency, code

    # -- operations -------------------------------------------------------

    async def create_payment(self, amount, currency: Optional[str] = None, state: str = "") -> Tuple[Payment, str]:
        """Allocate, derive, persist, start checking; returns the payment and its token.

        The price lookup happens before allocation, so a failed conversion
        consumes no index.
        """
        native, amount_in_currency, code = await self._native_amount(amount, currency)
        raw = self.to_raw(native)
        if raw <= 0:
            raise InvalidInputError("amount is below one raw unit", field="amount")

        index = await asyncio.to_thread(self.allocator.next_index)
        key = keyspace.derive(self.settings.seed, index, self.settings.account_prefix)
        payment = Payment(
            index=index,
            account=key.account,
            public_key=key.public_key,
            amount=raw,
            amount_in_currency=amount_in_currency,
            currency=code,
            state=state or "",
            created_at=utcnow(),
        )
        await asyncio.to_thread(self.store.save, payment)
        self.scheduler.start_checking(payment)
        token = self.tokens.issue(payment.account, payment.index)
        logger.info(f"Created payment {payment.account} index={index} amount={payment.amount} raw ({amount_in_currency} {code})")
        return payment, token

    async def verify_payment(self, token: str) -> Payment:
        claims = self.tokens.parse(token)
        return await asyncio.to_thread(self.store.load, claims.account)

    @asynccontextmanager
    async def watch_payment(self, token: str) -> AsyncIterator[Subscription]:
        """Subscribe to the token's account for as long as the block runs.

        An already-confirmed payment is delivered right away, so a client that
        connects after the confirmation still gets it.
        """
        claims = self.tokens.parse(token)
        subscription = self.bus.subscribe(claims.account)
        try:
            payment = await asyncio.to_thread(self.store.load, claims.account)
            if payment.status == PaymentStatus.CONFIRMED:
                subscription.offer(ConfirmationEvent(payment=payment))
            yield subscription
        finally:
            subscription.cancel()

    # -- administration ---------------------------------------------------

    async def list_active(self) -> List[Payment]:
        return await asyncio.to_thread(self.store.list_active)

    async def get_payment(self, account: str) -> Payment:
        keyspace.decode_account(account, self.settings.account_prefix)
        return await asyncio.to_thread(self.store.load, account)

    async def check_payment(self, account: str) -> Payment:
        keyspace.decode_account(account, self.settings.account_prefix)
        return await self.scheduler.check_now(account)

    async def override_status(self, account: str, status: PaymentStatus) -> Payment:
        """Manually finish an open payment. A manual confirm is announced like a detected one."""
        if status not in TERMINAL_STATUSES:
            raise InvalidInputError("status must be confirmed or expired", field="status")
        payment = await self.get_payment(account)
        if not payment.is_active:
            raise InvalidInputError(f"payment is already {payment.status.value}", field="status")

        now = utcnow()
        payment.status = status
        if status == PaymentStatus.CONFIRMED:
            payment.confirmed_amount = payment.received
            payment.confirmed_at = now
        else:
            payment.expired_at = now
        if not await asyncio.to_thread(self.store.finalize, payment):
            return await asyncio.to_thread(self.store.load, account)
        logger.warning(f"Payment {account} manually set to {status.value}")
        if status == PaymentStatus.CONFIRMED:
            self.scheduler.announce(payment)
        return payment

    async def apply_retention(self) -> int:
        if self.settings.retention_days is None:
            return 0
        cutoff = utcnow() - timedelta(days=self.settings.retention_days)
        purged = await asyncio.to_thread(self.store.purge_finished, cutoff)
        if purged:
            logger.info(f"Retention removed {purged} finished payment(s) older than {cutoff.isoformat()}")
        return purged

    def remaining_seconds(self, payment: Payment) -> Optional[float]:
        if not payment.is_active:
            return None
        deadline = payment.created_at + timedelta(seconds=self.settings.allowed_duration_seconds)
        return max((deadline - utcnow()).total_seconds(), 0.0)

    def breaker_states(self) -> List[dict]:
        return [self.scheduler.ledger_breaker.status(), self.price_breaker.status()]

    async def start(self) -> int:
        return await self.scheduler.rearm()

    async def shutdown(self):
        await self.scheduler.shutdown()


def build_service(settings: Settings, ledger: Optional[Ledger] = None, prices: Optional[RateSource] = None) -> PaymentService:
    """Wire the production object graph from settings."""
    if not settings.seed:
        raise ServiceError("SEED is not configured")
    engine = make_engine(settings.database_url)
    session_factory = make_session_factory(engine)
    init_schema(engine, session_factory)

    store = PaymentStore(session_factory)
    bus = EventBus()
    notifier = MerchantNotifier(settings.notification_url) if settings.notification_url else None
    scheduler = CheckScheduler(
        store,
        ledger or NodeClient(settings.node_url, timeout=settings.node_timeout_seconds),
        bus,
        settings,
        notifier=notifier,
        ledger_breaker=CircuitBreaker("ledger", LEDGER_CB_CONFIG),
    )
    return PaymentService(
        settings=settings,
        store=store,
        allocator=IndexAllocator(session_factory),
        scheduler=scheduler,
        bus=bus,
        tokens=TokenCodec(settings.token_secret, settings.token_issuer, settings.token_ttl_seconds),
        prices=prices or PriceOracle(settings.price_api_url, settings.price_coin_id),
        price_breaker=CircuitBreaker("price", PRICE_CB_CONFIG),
    )
