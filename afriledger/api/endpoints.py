
from decimal import Decimal
from typing import Dict, List

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from afriledger.api.deps import get_chain_client, get_deposit_poller, get_rate_cache
from afriledger.chain.base import ChainClient
from afriledger.db.session import get_db
from afriledger.schemas import (
    AccountCreate,
    AccountResponse,
    BalanceResponse,
    ConversionResponse,
    DepositWalletUpdate,
    FiatFundingCreate,
    FundingSettlement,
    PollerStatusResponse,
    TransactionResponse,
    TransferCreate,
)
from afriledger.services.accounts import AccountService
from afriledger.services.deposit_poller import DepositPoller
from afriledger.services.exchange_rates import ExchangeRateCache
from afriledger.services.funding import FundingService
from afriledger.services.transfers import TransferEngine

router = APIRouter()

@router.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
async def create_account(account: AccountCreate, db: AsyncSession = Depends(get_db)):
    service = AccountService(db)
    return await service.create_account(account.phone, account.name, account.pin)

@router.get("/accounts/{identity_key}", response_model=AccountResponse)
async def get_account(identity_key: str, db: AsyncSession = Depends(get_db)):
    return await AccountService(db).get_account(identity_key)

@router.put("/accounts/{identity_key}/deposit-wallet", response_model=AccountResponse)
async def connect_deposit_wallet(
    identity_key: str, body: DepositWalletUpdate, db: AsyncSession = Depends(get_db)
):
    service = AccountService(db)
    return await service.connect_deposit_wallet(identity_key, body.deposit_wallet_address)

@router.get("/accounts/{identity_key}/balance", response_model=BalanceResponse)
async def get_balance(
    identity_key: str,
    db: AsyncSession = Depends(get_db),
    chain: ChainClient = Depends(get_chain_client),
):
    view = await FundingService(db, chain).get_balance(identity_key)
    return BalanceResponse(balance=view.balance, decimals=view.decimals, symbol=view.symbol, source=view.source)

@router.post("/transfers/send", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
async def send_money(transfer: TransferCreate, db: AsyncSession = Depends(get_db)):
    await AccountService(db).verify_pin(transfer.sender_identity, transfer.pin)
    engine = TransferEngine(db)
    return await engine.send_money(transfer.sender_identity, transfer.recipient_phone, transfer.amount)

@router.get("/transfers/history/{identity_key}", response_model=List[TransactionResponse])
async def get_history(
    identity_key: str,
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    return await TransferEngine(db).get_transaction_history(identity_key, limit)

@router.post("/funding/fiat", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
async def fund_from_fiat(
    funding: FiatFundingCreate,
    db: AsyncSession = Depends(get_db),
    chain: ChainClient = Depends(get_chain_client),
    rates: ExchangeRateCache = Depends(get_rate_cache),
):
    service = FundingService(db, chain, rates)
    return await service.fund_account_from_fiat(
        funding.identity_key,
        funding.amount,
        funding.currency,
        funding.method,
        tx_hash=funding.transaction_hash,
    )

@router.post("/funding/{tx_hash}/settle", response_model=TransactionResponse)
async def settle_funding(
    tx_hash: str,
    body: FundingSettlement,
    db: AsyncSession = Depends(get_db),
    chain: ChainClient = Depends(get_chain_client),
):
    return await FundingService(db, chain).settle_fiat_funding(tx_hash, body.succeeded)

@router.get("/rates", response_model=Dict[str, str])
async def get_rates(rates: ExchangeRateCache = Depends(get_rate_cache)):
    return await rates.fetch_all_prices()

@router.get("/rates/{currency}/convert", response_model=ConversionResponse)
async def convert(
    currency: str,
    amount: Decimal = Query(..., gt=0),
    rates: ExchangeRateCache = Depends(get_rate_cache),
):
    afri_amount, rate = await rates.quote(amount, currency)
    return ConversionResponse(amount=amount, currency=currency.upper(), afri_amount=afri_amount, rate=rate)

@router.get("/deposits/poller", response_model=PollerStatusResponse)
async def poller_status(poller: DepositPoller = Depends(get_deposit_poller)):
    return poller.status()

@router.post("/deposits/poller/restart", response_model=PollerStatusResponse)
async def restart_poller(poller: DepositPoller = Depends(get_deposit_poller)):
    poller.restart()
    poller.start()
    return poller.status()
