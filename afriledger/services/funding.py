import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_DOWN, localcontext
from typing import Optional

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from afriledger.chain.base import ChainClient, guarded_call
from afriledger.core.config import settings
from afriledger.db.repository import LedgerRepository, is_lock_conflict
from afriledger.exceptions import (
    AccountNotFoundError,
    ConcurrencyConflictError,
    DuplicateTransactionError,
    InvalidInputError,
    LedgerError,
    TransactionNotFoundError,
)
from afriledger.models import Transaction, TransactionStatus, TransactionType
from afriledger.services.exchange_rates import PRICE_SCALE, ExchangeRateCache
from afriledger.services.transfers import parse_amount

logger = logging.getLogger(__name__)

FUNDING_METHODS = ("mobileMoney", "bankTransfer", "wallet")
CHAIN_SENDER = "blockchain-deposit"
CREDIT_ATTEMPTS = 5


@dataclass
class FundingResult:
    tx_hash: Optional[str]
    amount: Optional[str] = None
    user_wallet: Optional[str] = None
    error: Optional[str] = None
    duplicate: bool = False

    @property
    def ok(self) -> bool:
        return self.tx_hash is not None


@dataclass
class BalanceView:
    balance: str
    source: str
    decimals: int = 18
    symbol: str = "AFRI"


class FundingService:
    """
    Turns external value into ledger credits.

    Chain deposits are minted to the account's outbound wallet and credited
    once per deposit event; fiat top-ups are priced through the exchange rate
    cache and parked as pending records until settlement is confirmed.
    """

    def __init__(
        self,
        db: AsyncSession,
        chain: ChainClient,
        rates: Optional[ExchangeRateCache] = None,
        call_timeout: float = None,
    ):
        self.db = db
        self.repo = LedgerRepository(db)
        self.chain = chain
        self.rates = rates
        self.call_timeout = call_timeout or settings.EXTERNAL_CALL_TIMEOUT_SECONDS

    async def fund_account_from_chain(
        self, deposit_wallet_address: str, amount, source_event_key: Optional[str] = None
    ) -> FundingResult:
        value = parse_amount(amount)

        if source_event_key:
            existing = await self.repo.get_by_deposit_event(source_event_key)
            if existing:
                logger.info(f"Deposit {source_event_key} already credited (TX: {existing.transaction_hash})")
                return FundingResult(tx_hash=existing.transaction_hash, amount=existing.amount, duplicate=True)

        account = await self.repo.get_by_deposit_wallet(deposit_wallet_address)
        if not account:
            logger.warning(f"User not found for deposit wallet: {deposit_wallet_address}")
            return FundingResult(tx_hash=None, error="Account not found")

        identity_key, wallet = account.identity_key, account.wallet_address
        # Mint to the outbound wallet, never the deposit wallet.
        tx_hash = await guarded_call(
            self.chain.submit_mint(wallet, value),
            timeout=self.call_timeout,
            operation=f"Mint to {wallet}",
        )

        # The tokens exist on-chain from here on, so a lost race only retries the credit.
        for attempt in range(1, CREDIT_ATTEMPTS + 1):
            try:
                await self._credit_mint(
                    identity_key, value, tx_hash, deposit_wallet_address.lower(), source_event_key
                )
                break
            except IntegrityError:
                await self.db.rollback()
                logger.warning(f"Mint {tx_hash} already recorded, skipping ledger credit")
                return FundingResult(tx_hash=tx_hash, amount=str(value), user_wallet=wallet, duplicate=True)
            except (StaleDataError, DBAPIError) as e:
                await self.db.rollback()
                if isinstance(e, DBAPIError) and not is_lock_conflict(e):
                    logger.error(f"Mint {tx_hash} to {wallet} confirmed but ledger credit failed: {e}")
                    raise
                if attempt == CREDIT_ATTEMPTS:
                    logger.error(
                        f"Mint {tx_hash} to {wallet} confirmed but ledger credit lost {attempt} races; "
                        f"reconcile {value} units for {identity_key} manually"
                    )
                    raise ConcurrencyConflictError()
                logger.warning(
                    f"Concurrent update while crediting mint {tx_hash}, retrying ({attempt}/{CREDIT_ATTEMPTS})"
                )
            except Exception as e:
                await self.db.rollback()
                logger.error(f"Mint {tx_hash} to {wallet} confirmed but ledger credit failed: {e}")
                raise

        logger.info(f"Updated balance for user {identity_key}: +{value} to wallet {wallet}")
        return FundingResult(tx_hash=tx_hash, amount=str(value), user_wallet=wallet)

    async def _credit_mint(
        self, identity_key: str, value: int, tx_hash: str, deposit_wallet: str, source_event_key: Optional[str]
    ) -> None:
        account = await self.repo.get_account(identity_key, for_update=True)
        if not account:
            raise AccountNotFoundError()
        account.credit(value)
        self.repo.add(
            Transaction(
                transaction_hash=tx_hash,
                deposit_event_key=source_event_key,
                sender_identity=CHAIN_SENDER,
                sender_phone="blockchain",
                recipient_identity=account.identity_key,
                recipient_phone=account.phone,
                amount=str(value),
                status=TransactionStatus.COMPLETED,
                type=TransactionType.RECEIVE,
                metadata_json={
                    "source": "eth-deposit",
                    "depositWalletAddress": deposit_wallet,
                    "receivingWallet": account.wallet_address,
                    "depositEvent": source_event_key,
                },
            )
        )
        await self.db.commit()

    async def fund_account_from_fiat(
        self,
        identity_key: str,
        amount,
        currency: str,
        method: str,
        tx_hash: Optional[str] = None,
    ) -> Transaction:
        if method not in FUNDING_METHODS:
            raise InvalidInputError(f"Invalid funding method: {method}")
        try:
            fiat_amount = Decimal(str(amount))
        except InvalidOperation:
            raise InvalidInputError("Invalid amount")
        if not fiat_amount.is_finite() or fiat_amount <= 0:
            raise InvalidInputError("Invalid amount")

        account = await self.repo.get_account(identity_key)
        if not account:
            raise AccountNotFoundError()

        afri, rate = await self.rates.quote(fiat_amount, currency)
        with localcontext() as ctx:
            ctx.prec = 100
            units = int((afri * PRICE_SCALE).to_integral_value(rounding=ROUND_DOWN))
        if units <= 0:
            raise InvalidInputError("Amount too small to convert")

        record = Transaction(
            transaction_hash=tx_hash or f"pending-{uuid.uuid4().hex}",
            sender_identity=identity_key,
            sender_phone=account.phone,
            recipient_identity=identity_key,
            recipient_phone=account.phone,
            amount=str(units),
            status=TransactionStatus.PENDING,
            type=TransactionType.RECEIVE,
            metadata_json={
                "method": method,
                "currency": currency.upper(),
                "fiatAmount": str(fiat_amount),
                "conversionRate": str(rate),
                "walletAddress": account.wallet_address,
            },
        )
        self.repo.add(record)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateTransactionError()

        logger.info(
            f"Recorded pending {method} funding of {fiat_amount} {currency} "
            f"({units} AFRI units) for {identity_key} (TX: {record.transaction_hash})"
        )
        return record

    async def settle_fiat_funding(self, tx_hash: str, succeeded: bool) -> Transaction:
        """Confirmation hook for pending fiat fundings: credits on success, marks failed otherwise."""
        try:
            # Locking the record serialises duplicate confirmations; the loser sees the settled status.
            record = await self.repo.get_transaction(tx_hash, for_update=True)
            if not record:
                raise TransactionNotFoundError()
            if record.status != TransactionStatus.PENDING:
                raise InvalidInputError(f"Transaction is already {record.status.value}")

            if succeeded:
                account = await self.repo.get_account(record.recipient_identity, for_update=True)
                if not account:
                    raise AccountNotFoundError()
                account.credit(int(record.amount))
                record.status = TransactionStatus.COMPLETED
            else:
                record.status = TransactionStatus.FAILED
            await self.db.commit()
        except LedgerError:
            await self.db.rollback()
            raise
        except StaleDataError:
            await self.db.rollback()
            raise ConcurrencyConflictError()
        except DBAPIError as e:
            await self.db.rollback()
            if is_lock_conflict(e):
                raise ConcurrencyConflictError()
            raise
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Funding {tx_hash} settled as {record.status.value}")
        return record

    async def get_balance(self, identity_key: str) -> BalanceView:
        """
        Ledger balance first; while the ledger lags reconciliation, fall back to
        the on-chain balance of the deposit wallet, then of the outbound wallet.
        """
        account = await self.repo.get_account(identity_key)
        if not account:
            raise AccountNotFoundError()

        if account.balance_units > 0:
            return BalanceView(balance=account.balance, source="database")

        if account.deposit_wallet_address:
            on_chain = await guarded_call(
                self.chain.get_token_balance(account.deposit_wallet_address),
                timeout=self.call_timeout,
                operation="Deposit wallet balance lookup",
            )
            if on_chain:
                return BalanceView(balance=str(on_chain), source="deposit-wallet")

        on_chain = await guarded_call(
            self.chain.get_token_balance(account.wallet_address),
            timeout=self.call_timeout,
            operation="Wallet balance lookup",
        )
        if on_chain:
            return BalanceView(balance=str(on_chain), source="outbound-wallet")

        return BalanceView(balance="0", source="none")
