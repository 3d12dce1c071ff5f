"""
Scan Orchestrator
=================
Runs one wallet scan end to end and decides how much work it needs.

Full vs incremental:
- No watermark stored for (wallet, token)? FULL scan: walk every token
  account the wallet owns and page through all of their history
- Watermark found? INCREMENTAL scan: only history at or after the
  watermark, and (for a single token) only the accounts holding that token

The pipeline, per account:
    harvest signatures -> skip ones already seen -> fetch -> classify

When scanning one token, every fetched transaction is also checked for
wallet-owned accounts of that token we didn't know about (closed and
re-opened ATAs). Those get queued and harvested in the same scan.

When things go wrong:
- Invalid address: InvalidAddressError, before any network call
- One account, page or signature failing: logged and skipped further down,
  but the scan is then reported partial (history may be missing)
- A circuit breaker opening, or the scan being cancelled: we stop, keep
  every trade found so far, persist them, and report the scan as partial.
  The watermark is only advanced by a complete scan, so the next run
  still covers what this one missed.
"""

from collections import deque
from dataclasses import replace

from analyzer.trade_classifier import TradeClassifier
from discovery.account_explorer import AccountExplorer
from discovery.signature_harvester import SignatureHarvester
from discovery.transaction_fetcher import TransactionFetcher
from scanner.context import ScanCancelled, ScanContext
from scanner.models import ALL_TOKENS, ScanResult, SignatureRef, Trade
from utils.address import is_valid_address
from utils.cache import CacheService, WALLET_ANALYSIS
from utils.logger import bind_scan_context, clear_scan_context, get_logger
from utils.resilience import CircuitOpenError

logger = get_logger(__name__)


class InvalidAddressError(ValueError):
    """The wallet (or token) address isn't a valid Solana public key."""


class TradeScanner:
    """
    Wallet scan orchestrator.

    Usage:
        scanner = TradeScanner(explorer, harvester, fetcher, classifier, db, cache)
        result = await scanner.scan(wallet)                 # every token
        result = await scanner.scan(wallet, token_mint)     # one token
        scanner.clear_cache(wallet)
    """

    def __init__(
        self,
        explorer: AccountExplorer,
        harvester: SignatureHarvester,
        fetcher: TransactionFetcher,
        classifier: TradeClassifier,
        store,
        cache: CacheService,
        root_page_size: int = 1000,
        account_page_size: int = 250,
        address_checker=is_valid_address,
    ):
        self.explorer = explorer
        self.harvester = harvester
        self.fetcher = fetcher
        self.classifier = classifier
        self.store = store
        self.cache = cache
        self.root_page_size = root_page_size
        self.account_page_size = account_page_size
        self.is_valid_address = address_checker

    async def scan(
        self,
        wallet_address: str,
        token_mint: str | None = None,
        use_cache: bool = True,
        ctx: ScanContext | None = None,
    ) -> ScanResult:
        """
        Scan a wallet's trades (all tokens, or just `token_mint`).

        Args:
            wallet_address: Wallet to scan
            token_mint: Only trades of this token; None = every token
            use_cache: Reuse a recent result for the same (wallet, token)
            ctx: Scan context; pass one in to be able to cancel the scan

        Returns:
            ScanResult with the trades found by this run

        Raises:
            InvalidAddressError: wallet or token address is malformed
        """
        if not self.is_valid_address(wallet_address):
            raise InvalidAddressError(f"Invalid Solana wallet address: {wallet_address!r}")
        if token_mint is not None and not self.is_valid_address(token_mint):
            raise InvalidAddressError(f"Invalid token mint address: {token_mint!r}")

        bind_scan_context(wallet_address, token_mint)
        try:
            return await self._scan(wallet_address, token_mint, use_cache, ctx)
        finally:
            clear_scan_context()

    async def _scan(
        self,
        wallet_address: str,
        token_mint: str | None,
        use_cache: bool,
        ctx: ScanContext | None,
    ) -> ScanResult:
        mint_key = token_mint or ALL_TOKENS
        cache_key = (wallet_address, mint_key)

        if use_cache:
            cached = self.cache.get(WALLET_ANALYSIS, cache_key)
            if cached is not None:
                logger.info("scan_cache_hit", wallet=wallet_address[:8] + "...", token=mint_key[:8])
                return replace(cached, mode="cached", new_trades=0)

        ctx = ctx or ScanContext(wallet_address, token_mint)
        watermark = await self.store.get_watermark(wallet_address, mint_key)
        cutoff = watermark.last_seen_timestamp if watermark else 0

        result = ScanResult(
            wallet_address=wallet_address,
            token_mint=token_mint,
            mode="incremental" if cutoff else "full",
        )
        logger.info(
            "scan_started",
            wallet=wallet_address[:8] + "...",
            token=mint_key[:8],
            mode=result.mode,
            cutoff=cutoff,
        )

        trades: dict[str, Trade] = {}
        signatures: dict[str, SignatureRef] = {}
        try:
            await self._run(wallet_address, token_mint, cutoff, ctx, result, signatures, trades)
        except CircuitOpenError as e:
            result.complete = False
            result.partial_reason = f"rate_limited: {e}"
            logger.warning(
                "scan_partial_rate_limited",
                wallet=wallet_address[:8] + "...",
                endpoint=e.endpoint,
                retry_in_s=round(e.retry_in, 1),
                trades_so_far=len(trades),
            )
        except ScanCancelled:
            result.complete = False
            result.partial_reason = "cancelled"
            logger.warning("scan_cancelled", wallet=wallet_address[:8] + "...", trades_so_far=len(trades))

        if result.complete and ctx.failed_calls():
            result.complete = False
            result.partial_reason = (
                f"rate_limited_skips: {ctx.failed_signatures} signatures, "
                f"{ctx.failed_pages} pages, {ctx.skipped_accounts} accounts failed"
            )
            logger.warning(
                "scan_partial_skipped_history",
                failed_signatures=ctx.failed_signatures,
                failed_pages=ctx.failed_pages,
                failed_accounts=ctx.skipped_accounts,
                trades_so_far=len(trades),
            )

        result.trades = sorted(trades.values(), key=lambda t: t.timestamp, reverse=True)
        result.signatures_scanned = len(signatures)

        # Persist whatever we have, complete or not
        result.new_trades = await self.store.upsert_trades(wallet_address, result.trades)
        if result.complete:
            if result.trades:
                newest = max(t.block_time for t in result.trades)
                await self.store.set_watermark(wallet_address, mint_key, newest)
            self.cache.set(WALLET_ANALYSIS, cache_key, result)

        logger.info(
            "scan_complete" if result.complete else "scan_partial",
            **result.summary(),
            rpc_calls=ctx.rpc_calls,
            skipped_signatures=ctx.skipped_signatures,
            failed_signatures=ctx.failed_signatures,
            failed_pages=ctx.failed_pages,
            skipped_accounts=ctx.skipped_accounts,
        )
        return result

    async def _run(
        self,
        wallet_address: str,
        token_mint: str | None,
        cutoff: int,
        ctx: ScanContext,
        result: ScanResult,
        signatures: dict[str, SignatureRef],
        trades: dict[str, Trade],
    ) -> None:
        """Discover accounts, then harvest, fetch and classify account by account."""
        if cutoff and token_mint:
            accounts = await self.explorer.discover_for_mint(wallet_address, token_mint, ctx)
        else:
            accounts = await self.explorer.discover(wallet_address, ctx)

        # Wallet first: its history is usually where most trades show up
        queue = deque([wallet_address] + sorted(a for a in accounts if a != wallet_address))
        known = set(accounts) | {wallet_address}
        processed: set[str] = set()

        while queue:
            account = queue.popleft()
            if account in processed:
                continue
            processed.add(account)

            is_root = account == wallet_address
            refs = await self.harvester.harvest(
                account,
                cutoff=cutoff,
                page_size=self.root_page_size if is_root else self.account_page_size,
                is_root=is_root,
                ctx=ctx,
            )
            result.accounts_scanned += 1

            new_refs = [ref for ref in refs if ref.signature not in signatures]
            for ref in new_refs:
                signatures[ref.signature] = ref

            for ref in new_refs:
                tx = await self.fetcher.fetch(ref.signature, ctx)
                if tx is None:
                    continue

                if token_mint:
                    for found in self.explorer.accounts_from_transaction(tx, wallet_address, token_mint):
                        if found not in known:
                            known.add(found)
                            queue.append(found)
                            logger.info(
                                "rotated_account_found",
                                account=found[:8] + "...",
                                via=ref.signature[:8] + "...",
                            )

                trade = await self.classifier.classify(
                    tx,
                    target_mint=token_mint,
                    wallet=wallet_address if token_mint else None,
                )
                if trade is not None:
                    trades[trade.signature] = trade

            logger.debug(
                "account_processed",
                account=account[:8] + "...",
                signatures=len(new_refs),
                trades_total=len(trades),
                queue=len(queue),
            )

    def clear_cache(self, wallet_address: str | None = None) -> None:
        """Forget cached scan results for one wallet, or every cache when None."""
        if wallet_address is None:
            self.cache.clear()
            return
        removed = self.cache.clear_where(WALLET_ANALYSIS, lambda key: key[0] == wallet_address)
        logger.info("wallet_cache_cleared", wallet=wallet_address[:8] + "...", entries=removed)
