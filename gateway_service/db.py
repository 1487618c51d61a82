from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from gateway_service.models import Base, AllocatorRow, PAYMENT_INDEX_COUNTER

SQLITE_BUSY_TIMEOUT = 30


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT})

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=FULL")
            cursor.close()

        return engine
    return create_engine(url, pool_pre_ping=True, isolation_level="READ COMMITTED")


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_schema(engine: Engine, session_factory: sessionmaker):
    """Create tables and the allocator row. The first issued index is 0."""
    Base.metadata.create_all(bind=engine)
    with session_factory.begin() as db:
        if db.get(AllocatorRow, PAYMENT_INDEX_COUNTER) is None:
            db.add(AllocatorRow(name=PAYMENT_INDEX_COUNTER, last_index=-1))
