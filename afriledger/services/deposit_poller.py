import asyncio
import enum
import logging
import time
from typing import Awaitable, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from afriledger.chain.base import ChainClient, DepositEvent, guarded_call
from afriledger.db.repository import LedgerRepository
from afriledger.exceptions import ExternalServiceError, LedgerError
from afriledger.services.exchange_rates import PRICE_SCALE, ExchangeRateCache
from afriledger.services.funding import FundingService

logger = logging.getLogger(__name__)

DEFAULT_STREAM = "africoin-deposits"


class PollerState(str, enum.Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    RECOVERING = "recovering"
    STOPPED = "stopped"


class DepositPoller:
    """
    Mirrors on-chain Deposit events into the ledger.

    Each tick reads the chain height, fetches the events between the stored
    cursor and that height, credits them in block order through the funding
    service and only then moves the cursor. A failed scan backs off
    exponentially; once the retry ceiling is exceeded the poller stops and
    stays stopped until `restart()` is called.
    """

    def __init__(
        self,
        chain: ChainClient,
        rates: ExchangeRateCache,
        session_factory: async_sessionmaker,
        *,
        poll_interval: float = 30.0,
        base_delay: float = 30.0,
        max_retries: int = 3,
        call_timeout: float = 10.0,
        eth_usd_pair: str = "ETH/USD",
        usd_afri_pair: str = "USD/AFRI",
        fallback_eth_afri_price: Optional[int] = None,
        stream: str = DEFAULT_STREAM,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.chain = chain
        self.rates = rates
        self.session_factory = session_factory
        self.poll_interval = poll_interval
        self.base_delay = base_delay
        self.max_retries = max_retries
        self.call_timeout = call_timeout
        self.eth_usd_pair = eth_usd_pair
        self.usd_afri_pair = usd_afri_pair
        self.fallback_eth_afri_price = fallback_eth_afri_price
        self.stream = stream
        self.sleep = sleep

        self.state = PollerState.IDLE
        self.retry_count = 0
        self.cursor: Optional[int] = None
        self.last_error: Optional[str] = None
        self.last_tick_at: Optional[float] = None
        self.stats = {"credited": 0, "duplicates": 0, "skipped": 0, "failed": 0, "fallback_priced": 0}
        self._stop_requested = False
        self._task: Optional[asyncio.Task] = None

    # State transitions

    def _begin_scan(self) -> None:
        self.state = PollerState.SCANNING
        self.last_tick_at = time.time()

    def _scan_succeeded(self) -> float:
        self.retry_count = 0
        self.last_error = None
        self.state = PollerState.IDLE
        return self.poll_interval

    def _scan_failed(self, error: Exception) -> Optional[float]:
        self.retry_count += 1
        self.last_error = str(error)
        if self.retry_count > self.max_retries:
            self.state = PollerState.STOPPED
            logger.error(
                f"Deposit polling failed {self.retry_count} times, max retries ({self.max_retries}) exceeded. "
                f"Poller stopped at cursor {self.cursor}; restart required."
            )
            return None
        self.state = PollerState.RECOVERING
        delay = self.backoff_delay(self.retry_count)
        logger.warning(
            f"Polling error (attempt {self.retry_count}/{self.max_retries}): {error}. Retrying in {delay:.1f}s"
        )
        return delay

    def backoff_delay(self, retry_count: int) -> float:
        return self.base_delay * (2 ** (retry_count - 1))

    def stop(self) -> None:
        self._stop_requested = True
        self.state = PollerState.STOPPED
        logger.info("Stopping deposit poller")

    def restart(self) -> None:
        """Leave the stopped state. The next tick resumes from the persisted cursor."""
        self._stop_requested = False
        self.retry_count = 0
        self.last_error = None
        self.state = PollerState.IDLE
        logger.info("Deposit poller restarted")

    # Scanning

    async def tick(self) -> Optional[float]:
        """
        Runs one poll cycle. Returns the delay before the next cycle, or None
        once the poller is stopped. Never raises.
        """
        if self.state == PollerState.STOPPED:
            return None

        self._begin_scan()
        try:
            await self._scan()
        except Exception as e:
            logger.exception(f"Deposit scan failed: {e}")
            delay = self._scan_failed(e)
        else:
            delay = self._scan_succeeded()

        if self._stop_requested:
            self.state = PollerState.STOPPED
            return None
        return delay

    async def _scan(self) -> None:
        height = await guarded_call(
            self.chain.get_current_height(), timeout=self.call_timeout, operation="Block height lookup"
        )
        cursor = await self._load_cursor(height)
        if height <= cursor:
            return

        events = await guarded_call(
            self.chain.query_deposit_events(cursor + 1, height),
            timeout=self.call_timeout,
            operation=f"Deposit event query {cursor + 1}-{height}",
        )
        events = sorted(events, key=lambda ev: (ev.block_number, ev.log_index))
        logger.info(f"Found {len(events)} deposit events in blocks {cursor + 1}-{height}")

        for event in events:
            await self._process_event(event)

        async with self.session_factory() as db:
            self.cursor = await LedgerRepository(db).advance_cursor(self.stream, height)
            await db.commit()

    async def _load_cursor(self, height: int) -> int:
        async with self.session_factory() as db:
            repo = LedgerRepository(db)
            cursor = await repo.get_cursor(self.stream)
            if cursor is None:
                # First run starts at the chain tip; history is not replayed.
                cursor = await repo.advance_cursor(self.stream, height)
                await db.commit()
                logger.info(f"Initialised deposit cursor for {self.stream} at block {height}")
        self.cursor = cursor
        return cursor

    async def _process_event(self, event: DepositEvent) -> None:
        async with self.session_factory() as db:
            if await LedgerRepository(db).get_by_deposit_event(event.key):
                self.stats["duplicates"] += 1
                logger.info(f"Deposit {event.key} already credited, skipping")
                return

        logger.info(f"Deposit detected: {event.depositor} sent {event.amount} wei (block {event.block_number})")
        # Pricing failures without a fallback abort the scan so the batch is retried.
        afri_amount = await self.price_deposit(event.amount)

        try:
            async with self.session_factory() as db:
                result = await FundingService(
                    db, self.chain, self.rates, call_timeout=self.call_timeout
                ).fund_account_from_chain(event.depositor, afri_amount, source_event_key=event.key)
        except LedgerError as e:
            self.stats["failed"] += 1
            logger.error(f"Failed to process deposit {event.key}: {e.detail}")
            return

        if result.duplicate:
            self.stats["duplicates"] += 1
        elif result.ok:
            self.stats["credited"] += 1
            logger.info(f"Minted {afri_amount} AFRI units to {result.user_wallet}. TX: {result.tx_hash}")
        else:
            self.stats["skipped"] += 1
            logger.warning(f"Deposit {event.key} from {event.depositor} not credited: {result.error}")

    async def price_deposit(self, wei_amount: int) -> int:
        """AFRI minor units for `wei_amount` via ETH/USD x USD/AFRI."""
        try:
            eth_usd = int(await self.rates.fetch_price(self.eth_usd_pair))
            usd_afri = int(await self.rates.fetch_price(self.usd_afri_pair))
            eth_afri = eth_usd * usd_afri // PRICE_SCALE
        except ExternalServiceError:
            if self.fallback_eth_afri_price is None:
                raise
            # TODO: defer the event instead of minting at a fixed rate once a retry queue exists.
            logger.error(f"Oracle unavailable, using fallback ETH/AFRI price {self.fallback_eth_afri_price}")
            self.stats["fallback_priced"] += 1
            eth_afri = self.fallback_eth_afri_price
        return wei_amount * eth_afri // PRICE_SCALE

    async def run(self) -> None:
        logger.info("Starting deposit event poller...")
        while not self._stop_requested:
            delay = await self.tick()
            if delay is None:
                break
            await self.sleep(delay)
        logger.info(f"Deposit poller exited in state {self.state.value}")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Schedules `run()` on the current event loop unless it is already running."""
        if not self.running:
            self._task = asyncio.create_task(self.run(), name=f"deposit-poller-{self.stream}")
        return self._task

    async def shutdown(self) -> None:
        self.stop()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    def status(self) -> Dict:
        return {
            "state": self.state.value,
            "running": self.running,
            "cursor": self.cursor,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "last_error": self.last_error,
            "last_tick_at": self.last_tick_at,
            "stats": dict(self.stats),
        }
