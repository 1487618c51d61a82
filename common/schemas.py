from datetime import datetime
from decimal import Decimal
from enum import Enum
from pydantic import BaseModel, Field
from typing import List, Literal, Optional

class PaymentStatus(str, Enum):
    PENDING = "pending"
    CHECKING = "checking"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"

ACTIVE_STATUSES = (PaymentStatus.PENDING, PaymentStatus.CHECKING)
TERMINAL_STATUSES = (PaymentStatus.CONFIRMED, PaymentStatus.EXPIRED)

class IncomingTransfer(BaseModel):
    amount: int
    block_hash: str

class LedgerScan(BaseModel):
    """Transfers reported by one ledger query, plus the last history block it read."""
    transfers: List[IncomingTransfer] = Field(default_factory=list)
    cursor: Optional[str] = None  # None when no new history block was read

class Payment(BaseModel):
    index: int
    account: str
    public_key: str
    amount: int  # raw
    amount_in_currency: Decimal
    currency: str
    state: str = ""
    created_at: datetime
    status: PaymentStatus = PaymentStatus.PENDING
    received: int = 0
    transfers: List[IncomingTransfer] = Field(default_factory=list)
    cursor: Optional[str] = None
    block_hash: Optional[str] = None
    confirmed_amount: Optional[int] = None
    confirmed_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def finished_at(self) -> Optional[datetime]:
        return self.confirmed_at or self.expired_at

class ConfirmationEvent(BaseModel):
    type: Literal["PaymentConfirmed"] = "PaymentConfirmed"
    payment: Payment

class PayRequest(BaseModel):
    amount: Decimal
    currency: Optional[str] = None
    state: str = ""

class PaymentResponse(BaseModel):
    """Public view of a payment. Raw amounts are strings: they overflow JSON numbers."""
    token: Optional[str] = None
    account: str
    amount: str
    amount_in_currency: str
    currency: str
    state: str
    status: PaymentStatus
    fulfilled: bool
    received: str
    block_hash: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    remaining_seconds: Optional[float] = None

    @classmethod
    def from_payment(cls, payment: Payment, token: Optional[str] = None,
                     remaining_seconds: Optional[float] = None) -> "PaymentResponse":
        return cls(
            token=token,
            account=payment.account,
            amount=str(payment.amount),
            amount_in_currency=str(payment.amount_in_currency),
            currency=payment.currency,
            state=payment.state,
            status=payment.status,
            fulfilled=payment.status == PaymentStatus.CONFIRMED,
            received=str(payment.received),
            block_hash=payment.block_hash,
            created_at=payment.created_at,
            confirmed_at=payment.confirmed_at,
            expired_at=payment.expired_at,
            remaining_seconds=remaining_seconds,
        )
