"""
Interfaces of the on-chain collaborators.

The ledger only ever talks to the token contract and the price oracle through
these protocols; `web3_client` holds the production implementations and the
test suite supplies in-memory fakes.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, List, Protocol, TypeVar

from afriledger.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class DepositEvent:
    depositor: str
    amount: int  # wei
    block_number: int
    transaction_hash: str
    log_index: int = 0

    @property
    def key(self) -> str:
        return f"{self.transaction_hash}:{self.log_index}"


class ChainClient(Protocol):
    async def get_current_height(self) -> int: ...

    async def query_deposit_events(self, from_block: int, to_block: int) -> List[DepositEvent]: ...

    async def submit_mint(self, to_address: str, amount: int) -> str:
        """Mint `amount` minor units to `to_address`, wait for the receipt and return its hash."""
        ...

    async def get_token_balance(self, address: str) -> int: ...


class PriceOracle(Protocol):
    async def get_latest_price(self, pair: str) -> int:
        """Latest price for a pair such as ``ETH/USD``, scaled by 10**18."""
        ...


async def guarded_call(call: Awaitable[T], *, timeout: float, operation: str) -> T:
    """Await a chain/oracle call with a deadline, translating failures to ExternalServiceError."""
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except ExternalServiceError:
        raise
    except asyncio.TimeoutError as e:
        logger.error(f"{operation} timed out after {timeout}s")
        raise ExternalServiceError(f"{operation} timed out", e) from e
    except Exception as e:
        logger.error(f"{operation} failed: {e}")
        raise ExternalServiceError(f"{operation} failed: {e}", e) from e
