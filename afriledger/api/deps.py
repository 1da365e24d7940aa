from fastapi import HTTPException, Request

from afriledger.chain.base import ChainClient
from afriledger.services.deposit_poller import DepositPoller
from afriledger.services.exchange_rates import ExchangeRateCache


def get_rate_cache(request: Request) -> ExchangeRateCache:
    return request.app.state.rate_cache


def get_chain_client(request: Request) -> ChainClient:
    return request.app.state.chain_client


def get_deposit_poller(request: Request) -> DepositPoller:
    poller = getattr(request.app.state, "deposit_poller", None)
    if poller is None:
        raise HTTPException(status_code=503, detail="Deposit poller is not enabled")
    return poller
