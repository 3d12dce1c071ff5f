"""
Cache Service
=============
One explicit home for every cache the scanner keeps in memory.

Each cache "kind" answers a different question at a different granularity,
so each has its own retention policy:

- sol_price:        SOL/USD per calendar day — kept for the process lifetime
- token_info:       symbol/name/logo per mint — kept for the process lifetime
- token_list:       the bulk "all tradable tokens" listing — refreshed periodically
- wallet_analysis:  finished scan results per (wallet, mint) — short-lived

The service is created once at startup and handed to the components that
need it, so tests can build their own with a fake clock.
"""

import time
from typing import Any, Callable

from utils.logger import get_logger

logger = get_logger(__name__)

SOL_PRICE = "sol_price"
TOKEN_INFO = "token_info"
TOKEN_LIST = "token_list"
WALLET_ANALYSIS = "wallet_analysis"

# None = never expires
DEFAULT_TTLS: dict[str, float | None] = {
    SOL_PRICE: None,
    TOKEN_INFO: None,
    TOKEN_LIST: 30 * 60,
    WALLET_ANALYSIS: 30 * 60,
}


class CacheService:
    """
    In-memory key/value caches with a TTL policy per kind.

    Usage:
        cache = CacheService(ttls={"wallet_analysis": 600})
        cache.set("sol_price", "2024-05-01", 142.3)
        price = cache.get("sol_price", "2024-05-01")
    """

    def __init__(
        self,
        ttls: dict[str, float | None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttls = dict(DEFAULT_TTLS)
        if ttls:
            self.ttls.update(ttls)
        self._clock = clock
        # kind -> key -> (stored_at, value)
        self._stores: dict[str, dict[Any, tuple[float, Any]]] = {}

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] = time.monotonic) -> "CacheService":
        return cls(
            ttls={
                TOKEN_LIST: settings.token_list_ttl,
                WALLET_ANALYSIS: settings.wallet_cache_ttl,
            },
            clock=clock,
        )

    def get(self, kind: str, key: Any, default: Any = None) -> Any:
        """Return a fresh cached value, or `default` if missing or expired."""
        store = self._stores.get(kind)
        if not store or key not in store:
            return default

        stored_at, value = store[key]
        ttl = self.ttls.get(kind)
        if ttl is not None and self._clock() - stored_at >= ttl:
            del store[key]
            return default
        return value

    def set(self, kind: str, key: Any, value: Any) -> None:
        self._stores.setdefault(kind, {})[key] = (self._clock(), value)

    def clear(self, kind: str | None = None) -> None:
        """Clear one kind, or everything when `kind` is None."""
        if kind is None:
            self._stores.clear()
            logger.info("all_caches_cleared")
        else:
            self._stores.pop(kind, None)
            logger.info("cache_cleared", kind=kind)

    def clear_where(self, kind: str, predicate: Callable[[Any], bool]) -> int:
        """Drop every key of `kind` matching `predicate`. Returns how many went."""
        store = self._stores.get(kind, {})
        doomed = [key for key in store if predicate(key)]
        for key in doomed:
            del store[key]
        return len(doomed)

    def size(self, kind: str) -> int:
        return len(self._stores.get(kind, {}))
