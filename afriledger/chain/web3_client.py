import asyncio
import logging
from typing import List, Optional

from web3 import AsyncWeb3

from afriledger.chain.base import DepositEvent

logger = logging.getLogger(__name__)

AFRICOIN_ABI = [
    {
        "inputs": [
            {"internalType": "address", "name": "to", "type": "address"},
            {"internalType": "uint256", "name": "amount", "type": "uint256"},
        ],
        "name": "mint",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "address", "name": "user", "type": "address"},
            {"indexed": False, "internalType": "uint256", "name": "ethAmount", "type": "uint256"},
        ],
        "name": "Deposit",
        "type": "event",
    },
]

MOCK_ORACLE_ABI = [
    {
        "inputs": [{"internalType": "bytes32", "name": "pair", "type": "bytes32"}],
        "name": "getLatestPrice",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]


def _to_hex(value) -> str:
    return AsyncWeb3.to_hex(value) if not isinstance(value, str) else value


class Web3ChainClient:
    """AfriCoin token contract over JSON-RPC. Mints are signed with the backend key."""

    def __init__(self, w3: AsyncWeb3, token_address: str, private_key: Optional[str] = None):
        self.w3 = w3
        self.contract = w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(token_address), abi=AFRICOIN_ABI
        )
        self.signer = w3.eth.account.from_key(private_key) if private_key else None
        # One signer, one nonce sequence.
        self._mint_lock = asyncio.Lock()

    @classmethod
    def from_rpc(cls, rpc_url: str, token_address: str, private_key: Optional[str] = None):
        return cls(AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url)), token_address, private_key)

    async def get_current_height(self) -> int:
        return await self.w3.eth.get_block_number()

    async def query_deposit_events(self, from_block: int, to_block: int) -> List[DepositEvent]:
        logs = await self.contract.events.Deposit().get_logs(from_block=from_block, to_block=to_block)
        return [
            DepositEvent(
                depositor=log["args"]["user"],
                amount=int(log["args"]["ethAmount"]),
                block_number=log["blockNumber"],
                transaction_hash=_to_hex(log["transactionHash"]),
                log_index=log["logIndex"],
            )
            for log in logs
        ]

    async def submit_mint(self, to_address: str, amount: int) -> str:
        if self.signer is None:
            raise RuntimeError("BACKEND_PRIVATE_KEY is not configured, cannot mint")
        async with self._mint_lock:
            nonce = await self.w3.eth.get_transaction_count(self.signer.address)
            tx = await self.contract.functions.mint(
                AsyncWeb3.to_checksum_address(to_address), amount
            ).build_transaction({"from": self.signer.address, "nonce": nonce})
            signed = self.signer.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash)
        if receipt["status"] != 1:
            raise RuntimeError(f"Mint transaction {_to_hex(tx_hash)} reverted")
        logger.info(f"Tokens minted on-chain. TX: {_to_hex(receipt['transactionHash'])}")
        return _to_hex(receipt["transactionHash"])

    async def get_token_balance(self, address: str) -> int:
        return await self.contract.functions.balanceOf(AsyncWeb3.to_checksum_address(address)).call()


class Web3PriceOracle:
    """Price feed contract keyed by keccak256 of the pair name, e.g. keccak("ETH/USD")."""

    def __init__(self, w3: AsyncWeb3, oracle_address: str):
        self.contract = w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(oracle_address), abi=MOCK_ORACLE_ABI
        )

    async def get_latest_price(self, pair: str) -> int:
        pair_id = AsyncWeb3.keccak(text=pair)
        return await self.contract.functions.getLatestPrice(pair_id).call()
