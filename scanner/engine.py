"""
Scan Engine
===========
The one object the outside world talks to. It owns every long-lived
resource and wires the pipeline together:

- One aiohttp session (shared by the RPC, price and metadata clients)
- Three circuit breakers: Solana RPC, price history, token metadata
- The cache service (SOL prices, token info, token list, scan results)
- The trade ledger database

Usage:
    engine = ScanEngine(settings)
    await engine.initialize()
    result = await engine.scan(wallet)
    engine.clear_cache(wallet)
    await engine.close()
"""

import aiohttp

from analyzer.price_resolver import PriceResolver
from analyzer.trade_classifier import TradeClassifier
from config.settings import Settings
from database.db import Database
from discovery.account_explorer import AccountExplorer
from discovery.signature_harvester import SignatureHarvester
from discovery.transaction_fetcher import TransactionFetcher
from scanner.context import ScanContext
from scanner.models import ScanResult, TransactionRecord
from scanner.trade_scanner import TradeScanner
from utils.cache import CacheService
from utils.logger import get_logger
from utils.resilience import CircuitBreaker
from utils.solana_client import SolanaClient

logger = get_logger(__name__)


class ScanEngine:
    """
    Long-lived wallet scanning service.

    Build it once per process; every scan reuses its session, breakers and caches.
    """

    def __init__(self, settings: Settings, db: Database | None = None):
        self.settings = settings
        self.db = db or Database(settings.db_path)
        self.cache = CacheService.from_settings(settings)

        self.rpc_breaker = CircuitBreaker.from_settings("solana_rpc", settings)
        self.price_breaker = CircuitBreaker.from_settings("price_history", settings)
        self.metadata_breaker = CircuitBreaker.from_settings("token_metadata", settings)

        self.session: aiohttp.ClientSession | None = None
        self.solana: SolanaClient | None = None
        self.fetcher: TransactionFetcher | None = None
        self.scanner: TradeScanner | None = None

    async def initialize(self) -> None:
        """Open the HTTP session and the database, then build the pipeline."""
        await self.db.initialize()
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.settings.request_timeout_seconds)
        )

        self.solana = SolanaClient(self.settings.rpc_url, self.session, self.rpc_breaker)
        prices = PriceResolver(
            self.session,
            self.cache,
            self.price_breaker,
            self.metadata_breaker,
            self.settings,
        )
        self.fetcher = TransactionFetcher(self.solana)
        self.scanner = TradeScanner(
            explorer=AccountExplorer(self.solana),
            harvester=SignatureHarvester(
                self.solana,
                self.fetcher,
                min_native_movement=self.settings.min_native_movement,
                page_delay_seconds=self.settings.page_delay_seconds,
            ),
            fetcher=self.fetcher,
            classifier=TradeClassifier(
                prices,
                dust_threshold=self.settings.trade_dust_threshold,
                min_native_movement=self.settings.min_native_movement,
            ),
            store=self.db,
            cache=self.cache,
            root_page_size=self.settings.root_page_size,
            account_page_size=self.settings.account_page_size,
        )
        logger.info("scan_engine_ready", rpc=self.settings.rpc_url.split("?")[0])

    async def close(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None
        await self.db.close()

    async def scan(
        self,
        wallet_address: str,
        token_mint: str | None = None,
        use_cache: bool = True,
        ctx: ScanContext | None = None,
    ) -> ScanResult:
        """Scan a wallet (every token, or one). See TradeScanner.scan."""
        return await self.scanner.scan(wallet_address, token_mint, use_cache=use_cache, ctx=ctx)

    def clear_cache(self, wallet_address: str | None = None) -> None:
        """Drop cached results for one wallet, or every cache when None."""
        self.scanner.clear_cache(wallet_address)

    async def fetch_transaction(self, signature: str) -> TransactionRecord | None:
        """Fetch one transaction outside of any scan (used by --inspect)."""
        return await self.fetcher.fetch(signature)
