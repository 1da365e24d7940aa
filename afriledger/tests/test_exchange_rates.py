
from decimal import Decimal

import pytest
from httpx import AsyncClient

from afriledger.exceptions import ExternalServiceError, UnsupportedCurrencyError

WEI = 10**18


@pytest.mark.asyncio
async def test_price_is_served_from_cache_within_ttl(rate_cache, oracle, clock):
    assert await rate_cache.fetch_price("USD/AFRI") == str(10_000 * WEI)

    oracle.prices["USD/AFRI"] = 12_000 * WEI
    clock.advance(299.9)
    assert await rate_cache.fetch_price("USD/AFRI") == str(10_000 * WEI)
    assert oracle.calls == ["USD/AFRI"]

    clock.advance(0.2)
    assert await rate_cache.fetch_price("USD/AFRI") == str(12_000 * WEI)
    assert oracle.calls == ["USD/AFRI", "USD/AFRI"]

@pytest.mark.asyncio
async def test_oracle_failure_is_an_external_service_error(rate_cache, oracle):
    oracle.failing.add("EUR/AFRI")

    with pytest.raises(ExternalServiceError):
        await rate_cache.fetch_price("EUR/AFRI")
    assert "EUR/AFRI" not in rate_cache.cached_prices()

@pytest.mark.asyncio
async def test_unsupported_currency_leaves_cache_untouched(rate_cache, oracle):
    await rate_cache.fetch_price("USD/AFRI")
    before = rate_cache.cached_prices()

    with pytest.raises(UnsupportedCurrencyError):
        await rate_cache.convert_to_afri(Decimal("10"), "XYZ")

    assert rate_cache.cached_prices() == before
    assert oracle.calls == ["USD/AFRI"]

@pytest.mark.asyncio
async def test_fetch_all_prices_skips_failed_pairs(rate_cache, oracle):
    oracle.failing.add("NGN/AFRI")

    prices = await rate_cache.fetch_all_prices()

    assert "NGN/AFRI" not in prices
    assert prices["KES/AFRI"] == str(77 * WEI)
    assert set(prices) == {"USD/AFRI", "EUR/AFRI", "KES/AFRI", "GBP/AFRI", "ZAR/AFRI"}

@pytest.mark.asyncio
async def test_convert_to_afri(rate_cache):
    assert await rate_cache.convert_to_afri(Decimal("2.5"), "usd") == Decimal("25000")
    assert await rate_cache.get_conversion_rate("KES") == Decimal("77")

@pytest.mark.asyncio
async def test_clear_cache_forces_refetch(rate_cache, oracle):
    await rate_cache.fetch_price("GBP/AFRI")
    rate_cache.clear_cache()
    await rate_cache.fetch_price("GBP/AFRI")

    assert oracle.calls == ["GBP/AFRI", "GBP/AFRI"]

@pytest.mark.asyncio
async def test_rates_endpoints(client: AsyncClient, oracle):
    rates = await client.get("/api/rates")
    assert rates.status_code == 200
    assert rates.json()["USD/AFRI"] == str(10_000 * WEI)

    converted = await client.get("/api/rates/EUR/convert", params={"amount": "3"})
    assert converted.status_code == 200
    assert Decimal(converted.json()["afri_amount"]) == Decimal("33000")

    unsupported = await client.get("/api/rates/XYZ/convert", params={"amount": "3"})
    assert unsupported.status_code == 400
