import logging

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from common.error_handling import ConflictError, StorageError
from gateway_service.keyspace import MAX_INDEX
from gateway_service.models import AllocatorRow, PAYMENT_INDEX_COUNTER

logger = logging.getLogger(__name__)


class IndexAllocator:
    """Durable, strictly increasing derivation indices."""

    def __init__(self, session_factory: sessionmaker, counter: str = PAYMENT_INDEX_COUNTER):
        self._session_factory = session_factory
        self._counter = counter

    def next_index(self) -> int:
        # The UPDATE takes the write lock before the read, so two callers
        # can never read the same value.
        try:
            with self._session_factory.begin() as db:
                result = db.execute(
                    update(AllocatorRow)
                    .where(AllocatorRow.name == self._counter)
                    .values(last_index=AllocatorRow.last_index + 1)
                )
                if result.rowcount != 1:
                    raise StorageError(f"allocator counter {self._counter!r} is missing")
                index = db.execute(
                    select(AllocatorRow.last_index).where(AllocatorRow.name == self._counter)
                ).scalar_one()
                if index > MAX_INDEX:
                    logger.critical(f"Index space exhausted: allocator reached {index}")
                    raise ConflictError(f"index space exhausted at {index}")
        except SQLAlchemyError as e:
            raise StorageError("index allocation failed", original_error=e)
        return index
