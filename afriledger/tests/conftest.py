
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PIN_HASH_ROUNDS", "4")
os.environ.setdefault("DEPOSIT_POLLER_ENABLED", "false")

import pytest
import pytest_asyncio
from typing import AsyncGenerator, Dict, List
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from afriledger.api.deps import get_chain_client, get_deposit_poller, get_rate_cache
from afriledger.chain.base import DepositEvent
from afriledger.core.config import settings
from afriledger.db.session import get_db
from afriledger.main import app
from afriledger.models import Base
from afriledger.services.accounts import AccountService
from afriledger.services.deposit_poller import DepositPoller
from afriledger.services.exchange_rates import ExchangeRateCache

WEI = 10**18


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeOracle:
    def __init__(self, prices: Dict[str, int]):
        self.prices = dict(prices)
        self.calls: List[str] = []
        self.failing = set()

    async def get_latest_price(self, pair: str) -> int:
        self.calls.append(pair)
        if pair in self.failing or pair not in self.prices:
            raise RuntimeError(f"oracle reverted for {pair}")
        return self.prices[pair]


class FakeChain:
    def __init__(self, height: int = 100):
        self.height = height
        self.events: List[DepositEvent] = []
        self.balances: Dict[str, int] = {}
        self.minted: List[tuple] = []
        self.height_calls = 0
        self.event_queries: List[tuple] = []
        self.fail_height = False
        self.fail_mint = False
        self.before_mint = None

    async def get_current_height(self) -> int:
        self.height_calls += 1
        if self.fail_height:
            raise ConnectionError("rpc unavailable")
        return self.height

    async def query_deposit_events(self, from_block: int, to_block: int) -> List[DepositEvent]:
        self.event_queries.append((from_block, to_block))
        return [ev for ev in self.events if from_block <= ev.block_number <= to_block]

    async def submit_mint(self, to_address: str, amount: int) -> str:
        if self.before_mint is not None:
            await self.before_mint(to_address, amount)
        if self.fail_mint:
            raise RuntimeError("execution reverted")
        self.minted.append((to_address, amount))
        self.balances[to_address] = self.balances.get(to_address, 0) + amount
        return "0x" + f"{len(self.minted):064x}"

    async def get_token_balance(self, address: str) -> int:
        return self.balances.get(address, 0)

    def deposit(self, depositor: str, amount: int, block: int, tx: str, log_index: int = 0) -> DepositEvent:
        event = DepositEvent(depositor=depositor, amount=amount, block_number=block,
                             transaction_hash=tx, log_index=log_index)
        self.events.append(event)
        return event


@pytest_asyncio.fixture(loop_scope="function")
async def session_factory() -> AsyncGenerator[async_sessionmaker, None]:
    # In-memory database shared by every session of one test
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, expire_on_commit=False)

    await engine.dispose()

@pytest_asyncio.fixture(loop_scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()

@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle({
        "USD/AFRI": 10_000 * WEI,
        "EUR/AFRI": 11_000 * WEI,
        "KES/AFRI": 77 * WEI,
        "NGN/AFRI": 6 * WEI,
        "GBP/AFRI": 12_500 * WEI,
        "ZAR/AFRI": 540 * WEI,
        "ETH/USD": 2_500 * WEI,
    })

@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()

@pytest.fixture
def rate_cache(oracle, clock) -> ExchangeRateCache:
    return ExchangeRateCache(oracle, settings.CURRENCY_PAIRS, ttl_seconds=300, call_timeout=1, clock=clock)

@pytest.fixture
def poller(chain, rate_cache, session_factory) -> DepositPoller:
    async def no_sleep(delay):
        return None

    return DepositPoller(
        chain,
        rate_cache,
        session_factory,
        poll_interval=30,
        base_delay=30,
        max_retries=3,
        call_timeout=1,
        fallback_eth_afri_price=25_000_000 * WEI,
        sleep=no_sleep,
    )

@pytest.fixture
def make_account(session_factory):
    async def _make(phone: str, name: str = "Test User", pin: str = "1234", balance: int = 0,
                    deposit_wallet: str = None):
        async with session_factory() as db:
            service = AccountService(db, pin_hash_rounds=4)
            account = await service.create_account(phone, name, pin)
            if deposit_wallet:
                account = await service.connect_deposit_wallet(account.identity_key, deposit_wallet)
            if balance:
                account.balance = str(balance)
                await db.commit()
            return account
    return _make

@pytest_asyncio.fixture(loop_scope="function")
async def client(session_factory, chain, rate_cache, poller) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_chain_client] = lambda: chain
    app.dependency_overrides[get_rate_cache] = lambda: rate_cache
    app.dependency_overrides[get_deposit_poller] = lambda: poller

    transport = ASGITransport(app=app)

    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
    await poller.shutdown()
