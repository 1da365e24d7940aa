import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import Callable, Dict, Mapping, Optional, Tuple

from afriledger.chain.base import PriceOracle, guarded_call
from afriledger.exceptions import UnsupportedCurrencyError

logger = logging.getLogger(__name__)

PRICE_DECIMALS = 18
PRICE_SCALE = 10**PRICE_DECIMALS


def to_display(units: int, decimals: int = PRICE_DECIMALS) -> Decimal:
    """Scale an 18-decimal integer down to a human-readable Decimal."""
    with localcontext() as ctx:
        ctx.prec = 100
        return Decimal(units) / Decimal(10**decimals)


@dataclass
class PriceCacheEntry:
    price: str
    timestamp: float


class ExchangeRateCache:
    """
    Time-bounded cache in front of the on-chain price oracle.

    Built once at application startup and shared by the request handlers and the
    deposit poller. Entries are simply overwritten on refresh; concurrent
    refreshes of the same pair are harmless because any fresh price is valid
    for the whole TTL window.
    """

    def __init__(
        self,
        oracle: PriceOracle,
        currency_pairs: Mapping[str, str],
        ttl_seconds: float = 300.0,
        call_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.oracle = oracle
        self.currency_pairs = dict(currency_pairs)
        self.ttl_seconds = ttl_seconds
        self.call_timeout = call_timeout
        self.clock = clock
        self._entries: Dict[str, PriceCacheEntry] = {}

    def _cached(self, pair: str) -> Optional[PriceCacheEntry]:
        entry = self._entries.get(pair)
        if entry is None:
            return None
        if self.clock() - entry.timestamp < self.ttl_seconds:
            return entry
        return None

    async def fetch_price(self, pair: str) -> str:
        """
        Returns the oracle price for `pair` as an 18-decimal integer string,
        from cache while it is younger than the TTL.
        Raises ExternalServiceError if the oracle cannot be reached.
        """
        entry = self._cached(pair)
        if entry is not None:
            return entry.price

        price = await guarded_call(
            self.oracle.get_latest_price(pair),
            timeout=self.call_timeout,
            operation=f"Oracle price fetch for {pair}",
        )
        self._entries[pair] = PriceCacheEntry(price=str(int(price)), timestamp=self.clock())
        logger.info(f"Fetched price for {pair}: {price}")
        return self._entries[pair].price

    async def fetch_all_prices(self) -> Dict[str, str]:
        """Fetches every configured pair concurrently; failed pairs are logged and left out."""
        pairs = list(dict.fromkeys(self.currency_pairs.values()))
        results = await asyncio.gather(
            *(self.fetch_price(pair) for pair in pairs), return_exceptions=True
        )
        prices = {}
        for pair, result in zip(pairs, results):
            if isinstance(result, Exception):
                logger.warning(f"Failed to fetch price for {pair}: {result}")
                continue
            prices[pair] = result
        return prices

    def pair_for(self, currency: str) -> str:
        pair = self.currency_pairs.get(currency.upper())
        if pair is None:
            raise UnsupportedCurrencyError(currency)
        return pair

    async def get_conversion_rate(self, currency: str) -> Decimal:
        price = await self.fetch_price(self.pair_for(currency))
        return to_display(int(price))

    async def quote(self, amount: Decimal, currency: str) -> Tuple[Decimal, Decimal]:
        """
        Converts a fiat/crypto amount to AFRI from a single price read.
        Returns `(afri_amount, rate)`; the rate is the one actually applied.
        """
        pair = self.pair_for(currency)
        price = int(await self.fetch_price(pair))
        rate = to_display(price)
        with localcontext() as ctx:
            ctx.prec = 100
            converted = Decimal(amount) * Decimal(price) / Decimal(PRICE_SCALE)
        logger.info(f"Converted {amount} {currency} to {converted} AFRI (rate: {rate})")
        return converted, rate

    async def convert_to_afri(self, amount: Decimal, currency: str) -> Decimal:
        converted, _ = await self.quote(amount, currency)
        return converted

    def clear_cache(self) -> None:
        self._entries.clear()
        logger.info("Price cache cleared")

    def cached_prices(self) -> Dict[str, PriceCacheEntry]:
        return dict(self._entries)
