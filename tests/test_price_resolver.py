from types import SimpleNamespace

import pytest

from analyzer.price_resolver import PriceResolver, closest_price, day_start_ms
from scanner.models import TokenInfo
from utils.cache import CacheService, SOL_PRICE, TOKEN_INFO
from utils.resilience import CircuitBreaker, CircuitOpenError, HttpStatusError, RemoteCallFailed
from tests.factories import OTHER_MINT, TOKEN_MINT

DAY = "2023-11-14"
DAY_START_MS = 1_699_920_000_000


class FakeApi:
    """Stands in for PriceResolver._get_json; routes by URL suffix."""

    def __init__(self, routes: dict):
        self.routes = routes
        self.calls: list[tuple[str, dict | None]] = []

    async def __call__(self, breaker, url, context, params=None, headers=None):
        self.calls.append((url, params))
        for suffix, outcome in self.routes.items():
            if url.endswith(suffix):
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
        raise RemoteCallFailed(context, HttpStatusError(404, "not found"))

    def count(self, suffix: str) -> int:
        return sum(1 for url, _ in self.calls if url.endswith(suffix))


def _resolver(api: FakeApi, now: float = DAY_START_MS / 1000 + 2.5 * 86400) -> PriceResolver:
    settings = SimpleNamespace(
        coingecko_base_url="https://api.coingecko.com/api/v3",
        coingecko_api_key="",
        jupiter_token_api_url="https://lite-api.jup.ag/tokens/v1",
        default_sol_price_usd=150.0,
    )
    resolver = PriceResolver(
        session=None,
        cache=CacheService(),
        price_breaker=CircuitBreaker("price_history"),
        metadata_breaker=CircuitBreaker("token_metadata"),
        settings=settings,
        now=lambda: now,
    )
    resolver._get_json = api
    return resolver


# ---------------------------------------------------------------------------
# closest_price
# ---------------------------------------------------------------------------


def test_closest_price_midpoint_resolves_to_first_point():
    prices = [[1_700_000_000_000, 140.2], [1_700_003_600_000, 141.0]]
    assert closest_price(prices, 1_700_001_800_000) == (1_700_000_000_000, 140.2)


def test_closest_price_picks_smallest_distance():
    prices = [[1_000, 1.0], [2_000, 2.0], [3_000, 3.0]]
    assert closest_price(prices, 2_400) == (2_000, 2.0)
    assert closest_price(prices, 99_999) == (3_000, 3.0)


def test_closest_price_empty_series():
    assert closest_price([], 1_000) is None


def test_day_start_is_utc_midnight():
    assert day_start_ms(DAY) == DAY_START_MS


# ---------------------------------------------------------------------------
# SOL price
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sol_price_uses_closest_point_and_is_cached_per_day():
    api = FakeApi({
        "/market_chart": {
            "prices": [
                [DAY_START_MS - 3_600_000, 139.0],
                [DAY_START_MS + 600_000, 140.2],
                [DAY_START_MS + 7_200_000, 141.0],
            ]
        }
    })
    resolver = _resolver(api)

    assert await resolver.get_sol_price(DAY) == 140.2
    assert await resolver.get_sol_price(DAY) == 140.2

    assert api.count("/market_chart") == 1
    url, params = api.calls[0]
    assert url == "https://api.coingecko.com/api/v3/coins/solana/market_chart"
    assert params == {"vs_currency": "usd", "days": "3"}


@pytest.mark.asyncio
async def test_sol_price_failure_falls_back_to_default_and_caches_it():
    api = FakeApi({"/market_chart": RemoteCallFailed("SOL price", HttpStatusError(500))})
    resolver = _resolver(api)

    assert await resolver.get_sol_price(DAY) == 150.0
    assert await resolver.get_sol_price(DAY) == 150.0

    assert api.count("/market_chart") == 1
    assert resolver.cache.get(SOL_PRICE, DAY).price_usd == 150.0


@pytest.mark.asyncio
async def test_sol_price_open_circuit_falls_back_too():
    api = FakeApi({"/market_chart": CircuitOpenError("SOL price", "price_history", 30)})
    resolver = _resolver(api)

    assert await resolver.get_sol_price(DAY) == 150.0


@pytest.mark.asyncio
async def test_sol_price_empty_series_falls_back():
    resolver = _resolver(FakeApi({"/market_chart": {"prices": []}}))
    assert await resolver.get_sol_price(DAY) == 150.0


# ---------------------------------------------------------------------------
# Token metadata
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_token_info_direct_lookup():
    api = FakeApi({
        f"/token/{TOKEN_MINT}": {"symbol": "USDC", "name": "USD Coin", "logoURI": "https://usdc.png"},
    })
    resolver = _resolver(api)

    info = await resolver.get_token_info(TOKEN_MINT)

    assert info == TokenInfo("USDC", "USD Coin", "https://usdc.png")
    assert api.count("/mints/tradable") == 0


@pytest.mark.asyncio
async def test_token_info_falls_back_to_tradable_list():
    api = FakeApi({
        "/mints/tradable": [
            {"address": OTHER_MINT, "symbol": "BONK", "name": "Bonk", "logoURI": None},
            {"address": TOKEN_MINT, "symbol": "USDC", "name": "USD Coin", "logoURI": "https://usdc.png"},
        ],
    })
    resolver = _resolver(api)

    assert (await resolver.get_token_info(TOKEN_MINT)).symbol == "USDC"
    bonk = await resolver.get_token_info(OTHER_MINT)

    assert bonk == TokenInfo("BONK", "Bonk", None)
    # the listing is downloaded once and reused
    assert api.count("/mints/tradable") == 1


@pytest.mark.asyncio
async def test_token_info_placeholder_is_cached():
    api = FakeApi({"/mints/tradable": RemoteCallFailed("tradable token list", HttpStatusError(503))})
    resolver = _resolver(api)

    info = await resolver.get_token_info(TOKEN_MINT)
    again = await resolver.get_token_info(TOKEN_MINT)

    assert info == TokenInfo(TOKEN_MINT[:8] + "...", "Unknown Token", None)
    assert again is info
    assert resolver.cache.get(TOKEN_INFO, TOKEN_MINT) is info
    assert len(api.calls) == 2
