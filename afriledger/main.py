import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from afriledger.api.endpoints import router
from afriledger.chain.web3_client import Web3ChainClient, Web3PriceOracle
from afriledger.core.config import settings
from afriledger.db.session import AsyncSessionLocal, engine
from afriledger.models import Base
from afriledger.services.deposit_poller import DepositPoller
from afriledger.services.exchange_rates import ExchangeRateCache

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    chain = Web3ChainClient.from_rpc(settings.RPC_URL, settings.AFRICOIN_ADDRESS, settings.BACKEND_PRIVATE_KEY)
    rate_cache = ExchangeRateCache(
        Web3PriceOracle(chain.w3, settings.MOCK_ORACLE_ADDRESS),
        settings.CURRENCY_PAIRS,
        ttl_seconds=settings.PRICE_CACHE_TTL_SECONDS,
        call_timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
    )
    app.state.chain_client = chain
    app.state.rate_cache = rate_cache
    app.state.deposit_poller = None

    if settings.DEPOSIT_POLLER_ENABLED:
        poller = DepositPoller(
            chain,
            rate_cache,
            AsyncSessionLocal,
            poll_interval=settings.DEPOSIT_POLL_INTERVAL_SECONDS,
            base_delay=settings.DEPOSIT_RETRY_BASE_DELAY_SECONDS,
            max_retries=settings.DEPOSIT_MAX_RETRIES,
            call_timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
            eth_usd_pair=settings.ETH_USD_PAIR,
            usd_afri_pair=settings.USD_AFRI_PAIR,
            fallback_eth_afri_price=settings.FALLBACK_ETH_AFRI_PRICE,
        )
        app.state.deposit_poller = poller
        poller.start()
        logger.info("Deposit poller started - listening for ETH deposits...")

    yield

    if app.state.deposit_poller is not None:
        await app.state.deposit_poller.shutdown()
        logger.info("Deposit poller stopped")
    await engine.dispose()


app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)
app.include_router(router, prefix="/api")


@app.get("/health")
async def health():
    return {"status": "ok"}
