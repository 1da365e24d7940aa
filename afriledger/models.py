
import enum
from datetime import datetime, timezone
from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Enum,
    Integer,
    JSON,
    String,
    func,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

class TransactionType(str, enum.Enum):
    SEND = "send"
    RECEIVE = "receive"
    MINT = "mint"


class Account(Base):
    """
    A phone-number-addressed wallet holder.
    The balance is an integer amount of AFRI minor units (18 decimals) kept as a
    decimal string so it never passes through floating point.
    """
    __tablename__ = "accounts"

    identity_key = Column(String(64), primary_key=True)  # sha256(phone)
    phone = Column(String(32), nullable=False)
    name = Column(String(100), nullable=False)
    pin_hash = Column(String(128), nullable=False)
    wallet_address = Column(String(42), unique=True, nullable=False)
    deposit_wallet_address = Column(String(42), unique=True, nullable=True)
    balance = Column(String(80), default="0", nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    @property
    def balance_units(self) -> int:
        return int(self.balance or "0")

    def credit(self, amount: int) -> None:
        self.balance = str(self.balance_units + amount)

    def debit(self, amount: int) -> None:
        remaining = self.balance_units - amount
        if remaining < 0:
            raise ValueError("balance cannot go negative")
        self.balance = str(remaining)


class Transaction(Base):
    """
    Append-only record of a ledger-affecting event.
    `transaction_hash` is the idempotency key and never changes once written;
    only `status` may move from pending to completed or failed.
    """
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_hash = Column(String(80), unique=True, index=True, nullable=False)
    operation_id = Column(String(64), index=True, nullable=True)
    deposit_event_key = Column(String(100), unique=True, index=True, nullable=True)
    sender_identity = Column(String(64), index=True, nullable=False)
    sender_phone = Column(String(32), nullable=False)
    recipient_identity = Column(String(64), index=True, nullable=True)
    recipient_phone = Column(String(32), nullable=False)
    amount = Column(String(80), nullable=False)
    status = Column(Enum(TransactionStatus), default=TransactionStatus.COMPLETED, nullable=False)
    type = Column(Enum(TransactionType), nullable=False)
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True, nullable=False)
    metadata_json = Column(JSON, nullable=True)


class DepositCursor(Base):
    """Last block height whose deposit events have been fully processed."""
    __tablename__ = "deposit_cursors"

    stream = Column(String(64), primary_key=True)
    block_height = Column(BigInteger, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
