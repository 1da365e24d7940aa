import logging
import uuid
from typing import List

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from afriledger.db.repository import LedgerRepository, is_lock_conflict
from afriledger.exceptions import (
    AccountNotFoundError,
    ConcurrencyConflictError,
    DuplicateTransactionError,
    InsufficientBalanceError,
    InvalidInputError,
    LedgerError,
    RecipientNotFoundError,
)
from afriledger.models import Transaction, TransactionStatus, TransactionType
from afriledger.services.identity import hash_phone, is_valid_phone, normalize_phone

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 100


def new_transaction_hash() -> str:
    return f"0x{uuid.uuid4().hex}"


def parse_amount(amount) -> int:
    """Accepts an int or a decimal integer string of minor units; rejects floats."""
    if isinstance(amount, bool) or isinstance(amount, float):
        raise InvalidInputError("Invalid amount")
    try:
        value = int(str(amount).strip())
    except (TypeError, ValueError):
        raise InvalidInputError("Invalid amount")
    if value <= 0:
        raise InvalidInputError("Invalid amount")
    return value


class TransferEngine:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = LedgerRepository(db)

    async def send_money(self, sender_id: str, recipient_phone: str, amount) -> Transaction:
        """
        Moves `amount` minor units from the sender to the account registered for
        `recipient_phone`.

        Debit, credit and the send/receive records are committed as one
        database transaction keyed by a single operation id, so a failure at any
        point leaves both balances untouched. Returns the `send` record.
        """
        value = parse_amount(amount)
        if not is_valid_phone(recipient_phone):
            raise InvalidInputError("Invalid phone number format")

        operation_id = uuid.uuid4().hex
        recipient_id = hash_phone(recipient_phone)
        try:
            locked = await self.repo.lock_accounts(sender_id, recipient_id)
            sender = locked.get(sender_id)
            if not sender:
                raise AccountNotFoundError("Sender not found")

            if sender.balance_units < value:
                raise InsufficientBalanceError()

            recipient = locked.get(recipient_id)
            if not recipient:
                raise RecipientNotFoundError()
            if recipient.identity_key == sender.identity_key:
                raise InvalidInputError("Cannot send money to yourself")

            sender.debit(value)
            recipient.credit(value)

            common = dict(
                operation_id=operation_id,
                sender_identity=sender.identity_key,
                sender_phone=sender.phone,
                recipient_identity=recipient.identity_key,
                recipient_phone=normalize_phone(recipient_phone),
                amount=str(value),
                status=TransactionStatus.COMPLETED,
            )
            sent = Transaction(transaction_hash=new_transaction_hash(), type=TransactionType.SEND, **common)
            received = Transaction(transaction_hash=new_transaction_hash(), type=TransactionType.RECEIVE, **common)
            self.repo.add(sent, received)

            await self.db.commit()
        except LedgerError:
            await self.db.rollback()
            raise
        except StaleDataError:
            await self.db.rollback()
            logger.warning(f"Concurrent update detected during transfer {operation_id}")
            raise ConcurrencyConflictError()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateTransactionError()
        except DBAPIError as e:
            await self.db.rollback()
            if is_lock_conflict(e):
                logger.warning(f"Lock conflict during transfer {operation_id}: {e.orig}")
                raise ConcurrencyConflictError()
            raise
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Transfer successful: {value} from {sender.identity_key} to {recipient.identity_key} "
            f"(op: {operation_id}, TX: {sent.transaction_hash})"
        )
        return sent

    async def get_transaction_history(self, identity_key: str, limit: int = 20) -> List[Transaction]:
        if limit < 1 or limit > MAX_HISTORY_LIMIT:
            raise InvalidInputError(f"limit must be between 1 and {MAX_HISTORY_LIMIT}")
        transactions = await self.repo.list_transactions(identity_key, limit)
        logger.debug(f"Retrieved {len(transactions)} transactions for {identity_key}")
        return transactions
