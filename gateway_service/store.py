"""
Durable payment records keyed by receiving account.

Every operation runs in its own transaction. Terminal transitions are
compare-and-set updates on the ``status`` column, which makes the store the
single arbiter of "who confirmed/expired this payment first", across tasks
and across restarts.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from common.error_handling import ConflictError, PaymentNotFoundError, StorageError
from common.schemas import ACTIVE_STATUSES, TERMINAL_STATUSES, Payment, PaymentStatus
from gateway_service.models import PaymentRow

logger = logging.getLogger(__name__)


def _values(payment: Payment) -> dict:
    return {
        "index": payment.index,
        "status": payment.status.value,
        "payload": payment.model_dump_json(),
        "created_at": payment.created_at,
        "finished_at": payment.finished_at,
    }


def _statuses(statuses: Iterable[PaymentStatus]) -> List[str]:
    return [s.value for s in statuses]


class PaymentStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def save(self, payment: Payment):
        """Insert or overwrite the record for payment.account."""
        try:
            with self._session_factory.begin() as db:
                row = db.get(PaymentRow, payment.account)
                if row is None:
                    db.add(PaymentRow(account=payment.account, **_values(payment)))
                else:
                    if row.index != payment.index:
                        raise ConflictError(
                            f"account {payment.account} already bound to index {row.index}, not {payment.index}"
                        )
                    for key, value in _values(payment).items():
                        setattr(row, key, value)
        except IntegrityError as e:
            logger.critical(f"Index {payment.index} already used by another account")
            raise ConflictError(f"index {payment.index} is already in use", original_error=e)
        except SQLAlchemyError as e:
            raise StorageError(f"failed to save payment {payment.account}", original_error=e)

    def load(self, account: str) -> Payment:
        try:
            with self._session_factory() as db:
                row = db.get(PaymentRow, account)
        except SQLAlchemyError as e:
            raise StorageError(f"failed to load payment {account}", original_error=e)
        if row is None:
            raise PaymentNotFoundError(f"no payment for account {account}", field="account")
        return Payment.model_validate_json(row.payload)

    def list_active(self) -> List[Payment]:
        return self._list(ACTIVE_STATUSES)

    def list_all(self, limit: Optional[int] = None) -> List[Payment]:
        return self._list(None, limit)

    def _list(self, statuses, limit: Optional[int] = None) -> List[Payment]:
        query = select(PaymentRow.payload).order_by(PaymentRow.index)
        if statuses is not None:
            query = query.where(PaymentRow.status.in_(_statuses(statuses)))
        if limit is not None:
            query = query.limit(limit)
        try:
            with self._session_factory() as db:
                payloads = db.execute(query).scalars().all()
        except SQLAlchemyError as e:
            raise StorageError("failed to list payments", original_error=e)
        return [Payment.model_validate_json(p) for p in payloads]

    def _conditional_write(self, payment: Payment, expected: Iterable[PaymentStatus]) -> bool:
        try:
            with self._session_factory.begin() as db:
                result = db.execute(
                    update(PaymentRow)
                    .where(PaymentRow.account == payment.account)
                    .where(PaymentRow.status.in_(_statuses(expected)))
                    .values(**_values(payment))
                )
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise StorageError(f"failed to update payment {payment.account}", original_error=e)

    def record_progress(self, payment: Payment) -> bool:
        """Persist a non-terminal update; False once the row has gone terminal."""
        if not payment.is_active:
            raise ValueError("record_progress only accepts active payments")
        return self._conditional_write(payment, ACTIVE_STATUSES)

    def finalize(self, payment: Payment, expected: Iterable[PaymentStatus] = ACTIVE_STATUSES) -> bool:
        """Compare-and-set the terminal transition. True for exactly one caller."""
        if payment.status not in TERMINAL_STATUSES:
            raise ValueError("finalize only accepts confirmed or expired payments")
        return self._conditional_write(payment, expected)

    def purge_finished(self, before: datetime) -> int:
        try:
            with self._session_factory.begin() as db:
                result = db.execute(
                    delete(PaymentRow)
                    .where(PaymentRow.status.in_(_statuses(TERMINAL_STATUSES)))
                    .where(PaymentRow.finished_at < before)
                )
                return result.rowcount
        except SQLAlchemyError as e:
            raise StorageError("failed to purge finished payments", original_error=e)
