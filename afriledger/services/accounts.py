import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from afriledger.core.config import settings
from afriledger.db.repository import LedgerRepository
from afriledger.exceptions import (
    AccountNotFoundError,
    DuplicateAccountError,
    InvalidInputError,
    InvalidPinError,
)
from afriledger.models import Account
from afriledger.services import identity

logger = logging.getLogger(__name__)


class AccountService:
    """Onboarding, PIN checks and deposit wallet management."""

    def __init__(self, db: AsyncSession, pin_hash_rounds: int = None):
        self.db = db
        self.repo = LedgerRepository(db)
        self.pin_hash_rounds = pin_hash_rounds or settings.PIN_HASH_ROUNDS

    async def get_account(self, identity_key: str) -> Account:
        account = await self.repo.get_account(identity_key)
        if not account:
            logger.warning(f"Account lookup failed: {identity_key}")
            raise AccountNotFoundError()
        return account

    async def create_account(self, phone: str, name: str, pin: str) -> Account:
        if not identity.is_valid_phone(phone):
            raise InvalidInputError("Invalid phone number format")
        if not identity.is_valid_pin(pin):
            raise InvalidInputError("PIN must be 4 digits")
        if not 2 <= len(name or "") <= 100:
            raise InvalidInputError("Name must be 2-100 characters")

        identity_key = identity.hash_phone(phone)
        if await self.repo.get_account(identity_key):
            raise DuplicateAccountError()

        account = Account(
            identity_key=identity_key,
            phone=identity.normalize_phone(phone),
            name=name,
            pin_hash=identity.hash_pin(pin, rounds=self.pin_hash_rounds),
            wallet_address=identity.generate_wallet_address(),
            balance="0",
        )
        self.db.add(account)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateAccountError()
        logger.info(f"Created account {identity_key} with wallet {account.wallet_address}")
        return account

    async def verify_pin(self, identity_key: str, pin: str) -> bool:
        account = await self.get_account(identity_key)
        if not identity.check_pin(pin, account.pin_hash):
            logger.warning(f"Invalid PIN for {identity_key}")
            raise InvalidPinError()
        return True

    async def connect_deposit_wallet(self, identity_key: str, deposit_wallet_address: str) -> Account:
        """Points future chain deposits from `deposit_wallet_address` at this account."""
        if not identity.is_valid_address(deposit_wallet_address):
            raise InvalidInputError("Invalid wallet address")
        account = await self.get_account(identity_key)
        address = deposit_wallet_address.lower()
        owner = await self.repo.get_by_deposit_wallet(address)
        if owner and owner.identity_key != identity_key:
            raise DuplicateAccountError("Deposit wallet already linked to another account")

        old_wallet = account.deposit_wallet_address
        account.deposit_wallet_address = address
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateAccountError("Deposit wallet already linked to another account")
        logger.info(f"Updated deposit wallet for {identity_key}: {old_wallet} -> {address}")
        return account
