
import itertools
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy.orm.exc import StaleDataError

from afriledger.core.config import settings
from afriledger.db.repository import LedgerRepository
from afriledger.exceptions import ExternalServiceError, InvalidInputError, UnsupportedCurrencyError
from afriledger.models import Account, TransactionStatus, TransactionType
from afriledger.services.exchange_rates import ExchangeRateCache
from afriledger.services.funding import CHAIN_SENDER, FundingService

WEI = 10**18
ALICE = "+254700000001"
DEPOSIT_WALLET = "0x" + "ab" * 20


@pytest.mark.asyncio
async def test_chain_funding_mints_to_outbound_wallet(db_session, chain, make_account):
    alice = await make_account(ALICE, deposit_wallet=DEPOSIT_WALLET)

    result = await FundingService(db_session, chain).fund_account_from_chain(
        DEPOSIT_WALLET.upper().replace("0X", "0x"), 5 * WEI, source_event_key="0xdead:0"
    )

    assert result.ok and not result.duplicate
    assert result.user_wallet == alice.wallet_address
    assert chain.minted == [(alice.wallet_address, 5 * WEI)]
    assert DEPOSIT_WALLET not in chain.balances

    account = await db_session.get(Account, alice.identity_key)
    assert account.balance == str(5 * WEI)

    history = await FundingService(db_session, chain).repo.list_transactions(alice.identity_key, 10)
    assert len(history) == 1
    record = history[0]
    assert record.type == TransactionType.RECEIVE
    assert record.sender_identity == CHAIN_SENDER
    assert record.transaction_hash == result.tx_hash
    assert record.metadata_json["depositWalletAddress"] == DEPOSIT_WALLET
    assert record.metadata_json["receivingWallet"] == alice.wallet_address

@pytest.mark.asyncio
async def test_unknown_deposit_wallet_is_a_soft_failure(db_session, chain):
    result = await FundingService(db_session, chain).fund_account_from_chain("0x" + "11" * 20, WEI)

    assert not result.ok
    assert result.error == "Account not found"
    assert chain.minted == []

@pytest.mark.asyncio
async def test_replayed_deposit_event_is_not_credited_twice(session_factory, chain, make_account):
    alice = await make_account(ALICE, deposit_wallet=DEPOSIT_WALLET)

    async with session_factory() as db:
        first = await FundingService(db, chain).fund_account_from_chain(DEPOSIT_WALLET, 7, source_event_key="0xabc:1")
    async with session_factory() as db:
        second = await FundingService(db, chain).fund_account_from_chain(DEPOSIT_WALLET, 7, source_event_key="0xabc:1")

    assert second.duplicate
    assert second.tx_hash == first.tx_hash
    assert len(chain.minted) == 1
    async with session_factory() as db:
        assert (await db.get(Account, alice.identity_key)).balance == "7"

@pytest.mark.asyncio
async def test_failed_mint_leaves_ledger_untouched(db_session, chain, make_account):
    alice = await make_account(ALICE, deposit_wallet=DEPOSIT_WALLET)
    chain.fail_mint = True

    with pytest.raises(ExternalServiceError):
        await FundingService(db_session, chain).fund_account_from_chain(DEPOSIT_WALLET, WEI, source_event_key="0x1:0")

    assert (await db_session.get(Account, alice.identity_key)).balance == "0"
    assert await FundingService(db_session, chain).repo.get_by_deposit_event("0x1:0") is None

@pytest.mark.asyncio
async def test_fiat_funding_is_pending_until_settled(session_factory, chain, rate_cache, make_account):
    alice = await make_account(ALICE)

    async with session_factory() as db:
        record = await FundingService(db, chain, rate_cache).fund_account_from_fiat(
            alice.identity_key, Decimal("1.5"), "USD", "mobileMoney"
        )
    assert record.status == TransactionStatus.PENDING
    assert record.amount == str(15_000 * WEI)
    assert record.metadata_json["method"] == "mobileMoney"
    assert record.transaction_hash.startswith("pending-")

    async with session_factory() as db:
        assert (await db.get(Account, alice.identity_key)).balance == "0"
        settled = await FundingService(db, chain).settle_fiat_funding(record.transaction_hash, succeeded=True)
        assert settled.status == TransactionStatus.COMPLETED

    async with session_factory() as db:
        assert (await db.get(Account, alice.identity_key)).balance == str(15_000 * WEI)
        with pytest.raises(InvalidInputError):
            await FundingService(db, chain).settle_fiat_funding(record.transaction_hash, succeeded=True)

@pytest.mark.asyncio
async def test_failed_fiat_settlement_does_not_credit(db_session, chain, rate_cache, make_account):
    alice = await make_account(ALICE)
    service = FundingService(db_session, chain, rate_cache)

    record = await service.fund_account_from_fiat(alice.identity_key, 10, "KES", "bankTransfer", tx_hash="bank-ref-1")
    settled = await service.settle_fiat_funding("bank-ref-1", succeeded=False)

    assert settled.status == TransactionStatus.FAILED
    assert record.amount == str(770 * WEI)
    assert (await db_session.get(Account, alice.identity_key)).balance == "0"

@pytest.mark.asyncio
async def test_fiat_funding_validation(db_session, chain, rate_cache, make_account):
    alice = await make_account(ALICE)
    service = FundingService(db_session, chain, rate_cache)

    with pytest.raises(InvalidInputError):
        await service.fund_account_from_fiat(alice.identity_key, 10, "USD", "cheque")
    with pytest.raises(InvalidInputError):
        await service.fund_account_from_fiat(alice.identity_key, -1, "USD", "wallet")
    with pytest.raises(UnsupportedCurrencyError):
        await service.fund_account_from_fiat(alice.identity_key, 10, "XYZ", "wallet")

@pytest.mark.asyncio
async def test_balance_lookup_tiers(session_factory, chain, make_account):
    alice = await make_account(ALICE, deposit_wallet=DEPOSIT_WALLET)

    async with session_factory() as db:
        assert (await FundingService(db, chain).get_balance(alice.identity_key)).source == "none"

    chain.balances[alice.wallet_address] = 3
    async with session_factory() as db:
        view = await FundingService(db, chain).get_balance(alice.identity_key)
        assert (view.balance, view.source) == ("3", "outbound-wallet")

    chain.balances[DEPOSIT_WALLET] = 9
    async with session_factory() as db:
        view = await FundingService(db, chain).get_balance(alice.identity_key)
        assert (view.balance, view.source) == ("9", "deposit-wallet")

    async with session_factory() as db:
        account = await db.get(Account, alice.identity_key)
        account.balance = "42"
        await db.commit()
        view = await FundingService(db, chain).get_balance(alice.identity_key)
        assert (view.balance, view.source) == ("42", "database")

@pytest.mark.asyncio
async def test_funding_endpoints(client: AsyncClient, make_account):
    alice = await make_account(ALICE)

    resp = await client.post("/api/funding/fiat", json={
        "identity_key": alice.identity_key,
        "amount": "2",
        "currency": "GBP",
        "method": "wallet",
    })
    assert resp.status_code == 201
    tx_hash = resp.json()["transaction_hash"]
    assert resp.json()["status"] == "pending"
    assert resp.json()["metadata"]["currency"] == "GBP"

    settled = await client.post(f"/api/funding/{tx_hash}/settle", json={"succeeded": True})
    assert settled.status_code == 200
    assert settled.json()["status"] == "completed"

    balance = await client.get(f"/api/accounts/{alice.identity_key}/balance")
    assert balance.json() == {"balance": str(25_000 * WEI), "decimals": 18, "symbol": "AFRI", "source": "database"}

    missing = await client.post("/api/funding/nope/settle", json={"succeeded": True})
    assert missing.status_code == 404

@pytest.mark.asyncio
async def test_duplicate_settlement_with_stale_view_credits_once(session_factory, chain, rate_cache, make_account):
    alice = await make_account(ALICE)
    async with session_factory() as db:
        record = await FundingService(db, chain, rate_cache).fund_account_from_fiat(
            alice.identity_key, 1, "USD", "mobileMoney", tx_hash="momo-ref-7"
        )

    async with session_factory() as first, session_factory() as second:
        # The second confirmation reads the record while it is still pending.
        assert (await LedgerRepository(second).get_transaction("momo-ref-7")).status == TransactionStatus.PENDING

        await FundingService(first, chain).settle_fiat_funding("momo-ref-7", succeeded=True)
        with pytest.raises(InvalidInputError):
            await FundingService(second, chain).settle_fiat_funding("momo-ref-7", succeeded=True)

    async with session_factory() as db:
        assert (await db.get(Account, alice.identity_key)).balance == record.amount

class RisingOracle:
    """Every read returns a price one AFRI higher than the last."""

    def __init__(self, price: int):
        self.price = price
        self.calls = 0

    async def get_latest_price(self, pair: str) -> int:
        self.calls += 1
        price = self.price
        self.price += WEI
        return price

@pytest.mark.asyncio
async def test_fiat_funding_records_the_rate_it_applied(db_session, chain, make_account):
    alice = await make_account(ALICE)
    oracle = RisingOracle(10_000 * WEI)
    ticks = itertools.count(step=1_000)
    # Every lookup is older than the TTL, so each one goes back to the oracle.
    rates = ExchangeRateCache(oracle, settings.CURRENCY_PAIRS, ttl_seconds=300, call_timeout=1,
                              clock=lambda: next(ticks))

    record = await FundingService(db_session, chain, rates).fund_account_from_fiat(
        alice.identity_key, 2, "USD", "wallet"
    )

    assert oracle.calls == 1
    assert Decimal(record.metadata_json["conversionRate"]) == Decimal("10000")
    assert record.amount == str(20_000 * WEI)

@pytest.mark.asyncio
async def test_credit_after_mint_is_retried_on_version_conflict(db_session, chain, make_account, monkeypatch):
    alice = await make_account(ALICE, deposit_wallet=DEPOSIT_WALLET)
    credit_mint = FundingService._credit_mint
    attempts = []

    async def conflicting_once(self, *args):
        attempts.append(args)
        if len(attempts) == 1:
            raise StaleDataError("UPDATE statement on table 'accounts' expected to update 1 row(s); 0 were matched.")
        return await credit_mint(self, *args)

    monkeypatch.setattr(FundingService, "_credit_mint", conflicting_once)

    result = await FundingService(db_session, chain).fund_account_from_chain(
        DEPOSIT_WALLET, 3 * WEI, source_event_key="0x666:0"
    )

    assert result.ok and not result.duplicate
    assert len(attempts) == 2
    assert len(chain.minted) == 1
    assert (await db_session.get(Account, alice.identity_key)).balance == str(3 * WEI)
