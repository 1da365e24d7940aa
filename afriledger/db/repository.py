from typing import Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from afriledger.models import Account, DepositCursor, Transaction

# serialization_failure, deadlock_detected
LOCK_CONFLICT_SQLSTATES = {"40001", "40P01"}


def is_lock_conflict(error: DBAPIError) -> bool:
    """True when the database aborted the transaction to resolve a lock or serialization conflict."""
    orig = error.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return code in LOCK_CONFLICT_SQLSTATES


class LedgerRepository:
    """
    Keyed access to accounts, transaction records and the deposit cursor.

    Methods only stage changes on the session; committing is left to the
    calling service so several mutations can share one database transaction.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_account(self, identity_key: str, for_update: bool = False) -> Optional[Account]:
        """
        With `for_update` the row is locked and the instance in the session is
        overwritten with the locked row, so the caller never mutates a copy
        read before the lock was taken.
        """
        query = select(Account).where(Account.identity_key == identity_key)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def lock_accounts(self, *identity_keys: str) -> Dict[str, Account]:
        """Locks accounts in identity key order so concurrent callers cannot deadlock each other."""
        accounts = {}
        for identity_key in sorted(set(identity_keys)):
            account = await self.get_account(identity_key, for_update=True)
            if account is not None:
                accounts[identity_key] = account
        return accounts

    async def get_by_wallet(self, wallet_address: str) -> Optional[Account]:
        query = select(Account).where(Account.wallet_address == wallet_address.lower())
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_by_deposit_wallet(self, deposit_wallet_address: str) -> Optional[Account]:
        query = select(Account).where(
            Account.deposit_wallet_address == deposit_wallet_address.lower()
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_transaction(self, transaction_hash: str, for_update: bool = False) -> Optional[Transaction]:
        query = select(Transaction).where(Transaction.transaction_hash == transaction_hash)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_by_deposit_event(self, deposit_event_key: str) -> Optional[Transaction]:
        query = select(Transaction).where(Transaction.deposit_event_key == deposit_event_key)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def list_transactions(self, identity_key: str, limit: int) -> List[Transaction]:
        query = (
            select(Transaction)
            .where(
                or_(
                    Transaction.sender_identity == identity_key,
                    Transaction.recipient_identity == identity_key,
                )
            )
            .order_by(Transaction.timestamp.desc(), Transaction.id.desc())
            .limit(limit)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    def add(self, *records) -> None:
        self.db.add_all(records)

    async def get_cursor(self, stream: str) -> Optional[int]:
        cursor = await self.db.get(DepositCursor, stream)
        return cursor.block_height if cursor else None

    async def advance_cursor(self, stream: str, block_height: int) -> int:
        """Move the cursor forward; never backwards. Returns the stored height."""
        cursor = await self.db.get(DepositCursor, stream)
        if cursor is None:
            cursor = DepositCursor(stream=stream, block_height=block_height)
            self.db.add(cursor)
        elif block_height > cursor.block_height:
            cursor.block_height = block_height
        return cursor.block_height
