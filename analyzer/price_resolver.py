"""
Price Resolver
==============
Answers the two questions a trade needs beyond the chain itself:

1. What was SOL worth (in USD) on the day of this trade?
   - CoinGecko market_chart, asked for enough days back to cover that date
   - Pick the price point closest to midnight UTC of that day (no interpolation)
   - Cached per calendar day. If CoinGecko fails we fall back to a default
     price and cache that too, so a flaky API isn't hit for every trade

2. What is this token called?
   - Jupiter token lookup by mint first
   - Then the bulk "all tradable tokens" listing, searched by address
   - Then a placeholder: first 8 chars of the mint + "...", "Unknown Token"
   - Whatever we end up with is cached per mint

Each API gets its own circuit breaker: a dead price API must not stop
token lookups, and neither may stop the RPC.
"""

import math
import time
from datetime import datetime, timezone
from typing import Any, Callable

import aiohttp

from scanner.models import PriceQuote, TokenInfo
from utils.cache import CacheService, SOL_PRICE, TOKEN_INFO, TOKEN_LIST
from utils.logger import get_logger
from utils.resilience import CircuitBreaker, HttpStatusError, ResilienceError

logger = get_logger(__name__)

DAY_MS = 24 * 60 * 60 * 1000
TRADABLE_LIST_KEY = "tradable"


def closest_price(prices: list, target_ms: int) -> tuple[int, float] | None:
    """
    Closest [timestamp_ms, price] point to `target_ms` in a market_chart series.

    Straight linear scan; on equal distance the earlier point in the list wins.
    """
    best = None
    best_diff = None
    for point in prices:
        if not isinstance(point, (list, tuple)) or len(point) < 2:
            continue
        diff = abs(target_ms - point[0])
        if best_diff is None or diff < best_diff:
            best = (int(point[0]), float(point[1]))
            best_diff = diff
    return best


def day_start_ms(date_key: str) -> int:
    """Midnight UTC of an ISO date, in epoch milliseconds."""
    day = datetime.strptime(date_key, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    return int(day.timestamp() * 1000)


class PriceResolver:
    """
    Historical SOL price and token metadata, both cached.

    Usage:
        prices = PriceResolver(session, cache, price_breaker, metadata_breaker, settings)
        sol_usd = await prices.get_sol_price("2024-05-01")
        info = await prices.get_token_info(mint)
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        cache: CacheService,
        price_breaker: CircuitBreaker,
        metadata_breaker: CircuitBreaker,
        settings,
        now: Callable[[], float] = time.time,
    ):
        self.session = session
        self.cache = cache
        self.price_breaker = price_breaker
        self.metadata_breaker = metadata_breaker
        self.coingecko_base_url = settings.coingecko_base_url.rstrip("/")
        self.coingecko_api_key = settings.coingecko_api_key
        self.jupiter_url = settings.jupiter_token_api_url.rstrip("/")
        self.default_sol_price = settings.default_sol_price_usd
        self._now = now

    async def _get_json(
        self,
        breaker: CircuitBreaker,
        url: str,
        context: str,
        params: dict | None = None,
        headers: dict | None = None,
    ) -> Any:
        """GET a JSON document through `breaker`."""

        async def _request():
            async with self.session.get(url, params=params, headers=headers) as response:
                if response.status != 200:
                    raise HttpStatusError(response.status, await response.text())
                return await response.json(content_type=None)

        return await breaker.call(_request, context)

    # =========================================================================
    # SOL price by day
    # =========================================================================

    async def get_sol_price(self, date_key: str) -> float:
        """SOL/USD for a calendar day (ISO date string). Never raises."""
        cached = self.cache.get(SOL_PRICE, date_key)
        if cached is not None:
            return cached.price_usd

        quote = await self._fetch_sol_price(date_key)
        self.cache.set(SOL_PRICE, date_key, quote)
        return quote.price_usd

    async def _fetch_sol_price(self, date_key: str) -> PriceQuote:
        try:
            target_ms = day_start_ms(date_key)
        except ValueError:
            logger.warning("sol_price_bad_date", date=date_key)
            return PriceQuote(date_key, self.default_sol_price)

        now_ms = self._now() * 1000
        days = max(1, math.ceil((now_ms - target_ms) / DAY_MS))
        headers = {"Accept": "application/json"}
        if self.coingecko_api_key:
            headers["x-cg-pro-api-key"] = self.coingecko_api_key

        try:
            data = await self._get_json(
                self.price_breaker,
                f"{self.coingecko_base_url}/coins/solana/market_chart",
                f"SOL price {date_key}",
                params={"vs_currency": "usd", "days": str(days)},
                headers=headers,
            )
        except ResilienceError as e:
            logger.warning(
                "sol_price_fallback",
                date=date_key,
                fallback=self.default_sol_price,
                error=str(e),
            )
            return PriceQuote(date_key, self.default_sol_price)

        point = closest_price((data or {}).get("prices") or [], target_ms) if isinstance(data, dict) else None
        if point is None:
            logger.warning("sol_price_no_data", date=date_key, fallback=self.default_sol_price)
            return PriceQuote(date_key, self.default_sol_price)

        logger.debug("sol_price_resolved", date=date_key, price=point[1], days=days)
        return PriceQuote(date_key, point[1])

    # =========================================================================
    # Token metadata
    # =========================================================================

    async def get_token_info(self, mint: str) -> TokenInfo:
        """Symbol, name and logo for a mint. Never raises; placeholder at worst."""
        cached = self.cache.get(TOKEN_INFO, mint)
        if cached is not None:
            return cached

        info = await self._lookup_direct(mint)
        if info is None:
            info = await self._lookup_in_tradable_list(mint)
        if info is None:
            logger.debug("token_info_placeholder", mint=mint[:8] + "...")
            info = TokenInfo.placeholder(mint)

        self.cache.set(TOKEN_INFO, mint, info)
        return info

    @staticmethod
    def _to_info(mint: str, data: dict) -> TokenInfo:
        placeholder = TokenInfo.placeholder(mint)
        return TokenInfo(
            symbol=data.get("symbol") or placeholder.symbol,
            name=data.get("name") or placeholder.name,
            logo_uri=data.get("logoURI") or None,
        )

    async def _lookup_direct(self, mint: str) -> TokenInfo | None:
        try:
            data = await self._get_json(
                self.metadata_breaker,
                f"{self.jupiter_url}/token/{mint}",
                f"token info {mint[:8]}...",
                headers={"Accept": "application/json"},
            )
        except ResilienceError as e:
            logger.debug("token_info_direct_failed", mint=mint[:8] + "...", error=str(e))
            return None

        if not isinstance(data, dict) or not (data.get("symbol") or data.get("name")):
            return None
        return self._to_info(mint, data)

    async def _tradable_tokens(self) -> dict[str, dict] | None:
        """The bulk listing, indexed by mint address (cached with a TTL)."""
        tokens = self.cache.get(TOKEN_LIST, TRADABLE_LIST_KEY)
        if tokens is not None:
            return tokens

        try:
            data = await self._get_json(
                self.metadata_breaker,
                f"{self.jupiter_url}/mints/tradable",
                "tradable token list",
                headers={"Accept": "application/json"},
            )
        except ResilienceError as e:
            logger.warning("token_list_failed", error=str(e))
            return None

        if not isinstance(data, list):
            logger.warning("token_list_unexpected_payload", type=type(data).__name__)
            return None

        tokens = {}
        for token in data:
            if isinstance(token, dict) and token.get("address"):
                tokens[token["address"]] = token
        self.cache.set(TOKEN_LIST, TRADABLE_LIST_KEY, tokens)
        logger.info("token_list_loaded", count=len(tokens))
        return tokens

    async def _lookup_in_tradable_list(self, mint: str) -> TokenInfo | None:
        tokens = await self._tradable_tokens()
        if not tokens or mint not in tokens:
            return None
        return self._to_info(mint, tokens[mint])
