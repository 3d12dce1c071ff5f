"""
Signature Harvester
===================
Pages through getSignaturesForAddress for one account and collects every
transaction signature that touched it.

How paging works:
- The RPC returns signatures newest first, up to `limit` per page
- The next page is requested with `before` = last signature of this page
- A page shorter than the page size means we've hit the beginning of history
- With a cutoff (incremental scans), we stop once a page reaches past it

Token sub-accounts get an extra filter: each signature is fetched and only
kept if the transaction moved token balances AND at least 0.0001 SOL. Token
accounts see plenty of plain transfers and rent shuffles we don't care about.
The wallet itself is never filtered — its history is needed in full.
"""

import asyncio

from scanner.context import ScanContext
from scanner.models import SignatureRef
from discovery.transaction_fetcher import TransactionFetcher
from utils.logger import get_logger
from utils.resilience import RemoteCallFailed
from utils.solana_client import SolanaClient

logger = get_logger(__name__)


class SignatureHarvester:
    """
    Usage:
        harvester = SignatureHarvester(solana, fetcher)
        refs = await harvester.harvest(wallet, cutoff=0, page_size=1000, is_root=True)
    """

    def __init__(
        self,
        solana: SolanaClient,
        fetcher: TransactionFetcher,
        min_native_movement: float = 0.0001,
        page_delay_seconds: float = 0.1,
    ):
        self.solana = solana
        self.fetcher = fetcher
        self.min_native_movement = min_native_movement
        self.page_delay_seconds = page_delay_seconds

    async def harvest(
        self,
        account: str,
        cutoff: int = 0,
        page_size: int = 1000,
        is_root: bool = False,
        ctx: ScanContext | None = None,
    ) -> list[SignatureRef]:
        """
        Collect signatures for `account`, newest first.

        Args:
            account: Address to page through
            cutoff: Epoch seconds; 0 = all history. Older signatures are dropped
            page_size: Rows per getSignaturesForAddress page
            is_root: True for the wallet itself (no per-signature filter)
            ctx: Scan context (cancellation, transaction cache, counters)
        """
        collected: list[SignatureRef] = []
        before: str | None = None
        pages = 0

        while True:
            if ctx:
                ctx.raise_if_cancelled()
                ctx.rpc_calls += 1

            try:
                page = await self.solana.get_signatures_for_address(
                    account, limit=page_size, before=before
                )
            except RemoteCallFailed as e:
                logger.warning(
                    "signature_page_failed",
                    account=account[:8] + "...",
                    page=pages + 1,
                    error=str(e.cause),
                )
                if ctx:
                    ctx.failed_pages += 1
                break

            pages += 1
            if not page:
                break

            for ref in page:
                if cutoff > 0 and ref.block_time < cutoff:
                    continue
                if is_root or await self._looks_like_trade(ref, ctx):
                    collected.append(ref)

            oldest = page[-1]
            if cutoff > 0 and oldest.block_time < cutoff:
                break
            if len(page) < page_size:
                break

            before = oldest.signature
            if ctx:
                await ctx.sleep(self.page_delay_seconds)
            else:
                await asyncio.sleep(self.page_delay_seconds)

        logger.debug(
            "signatures_harvested",
            account=account[:8] + "...",
            pages=pages,
            kept=len(collected),
            root=is_root,
        )
        return collected

    async def _looks_like_trade(self, ref: SignatureRef, ctx: ScanContext | None) -> bool:
        """Sub-account filter: token balances present and enough SOL moved."""
        tx = await self.fetcher.fetch(ref.signature, ctx)
        if tx is None:
            return False
        if not tx.has_token_balances():
            return False
        return abs(tx.native_change()) >= self.min_native_movement
