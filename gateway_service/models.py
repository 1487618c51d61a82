from sqlalchemy import Column, String, BigInteger, DateTime, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()

PAYMENT_INDEX_COUNTER = "payment_index"

class PaymentRow(Base):
    __tablename__ = "payments"
    account = Column(String(80), primary_key=True)
    index = Column(BigInteger, nullable=False, unique=True)
    status = Column(String(16), nullable=False, index=True)  # pending|checking|confirmed|expired
    payload = Column(Text, nullable=False)  # Payment serialized as JSON
    created_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=True)

class AllocatorRow(Base):
    __tablename__ = "allocator"
    name = Column(String(32), primary_key=True)
    last_index = Column(BigInteger, nullable=False)
