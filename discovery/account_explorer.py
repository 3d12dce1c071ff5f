"""
Account Graph Explorer
======================
A wallet doesn't hold tokens directly — it owns token accounts (ATAs),
one or more per mint. Trades show up in the history of those accounts,
not always in the wallet's own history. So before we can harvest a
wallet's trades we need the full set of accounts it owns.

The process:
1. Start a work queue with the wallet address
2. For each address popped: ask the RPC "which token accounts does this own?"
3. Every account we haven't seen goes into the discovered set (and the queue)
4. Stop when the queue is empty — a processed set guards against revisits

Accounts also rotate: a wallet may close an ATA and open a new one for the
same mint later. Closed accounts no longer show up in getTokenAccountsByOwner,
so `accounts_from_transaction` recovers them from fetched transaction bodies.
"""

from collections import deque

from scanner.context import ScanContext
from scanner.models import TransactionRecord
from utils.logger import get_logger
from utils.resilience import RemoteCallFailed
from utils.solana_client import SolanaClient

logger = get_logger(__name__)


class AccountExplorer:
    """
    Breadth-first discovery of every token account tied to a wallet.

    Usage:
        explorer = AccountExplorer(solana)
        accounts = await explorer.discover(wallet)             # all mints
        accounts = await explorer.discover_for_mint(wallet, m)  # one mint
    """

    def __init__(self, solana: SolanaClient):
        self.solana = solana

    async def discover(self, wallet_address: str, ctx: ScanContext | None = None) -> set[str]:
        """
        Discover every token sub-account reachable from the wallet.

        Returns the deduplicated set of account public keys, always
        including the wallet itself. Per-account RPC failures are logged
        and skipped; an open circuit propagates to the caller.
        """
        discovered: set[str] = set()
        processed: set[str] = set()
        queue: deque[str] = deque([wallet_address])

        while queue:
            account = queue.popleft()
            if account in processed:
                continue
            processed.add(account)

            if ctx:
                ctx.raise_if_cancelled()
                ctx.rpc_calls += 1

            try:
                token_accounts = await self.solana.get_token_accounts_by_owner(account)
            except RemoteCallFailed as e:
                logger.warning("account_scan_failed", account=account[:8] + "...", error=str(e.cause))
                if ctx:
                    ctx.skipped_accounts += 1
                continue

            new_accounts = 0
            for token_account in token_accounts:
                pubkey = token_account.pubkey
                if not pubkey or pubkey in discovered or pubkey == wallet_address:
                    continue
                discovered.add(pubkey)
                new_accounts += 1
                if pubkey not in processed:
                    queue.append(pubkey)

            logger.debug(
                "account_scanned",
                account=account[:8] + "...",
                token_accounts=len(token_accounts),
                new=new_accounts,
                queue=len(queue),
            )

        discovered.add(wallet_address)
        logger.info("accounts_discovered", wallet=wallet_address[:8] + "...", total=len(discovered))
        return discovered

    async def discover_for_mint(
        self, wallet_address: str, token_mint: str, ctx: ScanContext | None = None
    ) -> set[str]:
        """
        Currently active accounts the wallet holds for one mint, plus the wallet.

        Cheaper than a full walk — used to seed incremental scans.
        """
        accounts = {wallet_address}
        if ctx:
            ctx.raise_if_cancelled()
            ctx.rpc_calls += 1

        try:
            token_accounts = await self.solana.get_token_accounts_by_owner(wallet_address, mint=token_mint)
        except RemoteCallFailed as e:
            logger.warning(
                "mint_account_lookup_failed",
                wallet=wallet_address[:8] + "...",
                mint=token_mint[:8] + "...",
                error=str(e.cause),
            )
            if ctx:
                ctx.skipped_accounts += 1
            return accounts

        accounts.update(a.pubkey for a in token_accounts if a.pubkey)
        logger.info(
            "mint_accounts_discovered",
            wallet=wallet_address[:8] + "...",
            mint=token_mint[:8] + "...",
            total=len(accounts),
        )
        return accounts

    @staticmethod
    def accounts_from_transaction(
        tx: TransactionRecord, wallet_address: str, token_mint: str
    ) -> set[str]:
        """
        Token accounts owned by the wallet for `token_mint` that appear in `tx`.

        Needs account keys, so raw (base64) transaction bodies yield nothing.
        """
        found: set[str] = set()
        if not tx.account_keys:
            return found

        balances = (tx.pre_token_balances or ()) + (tx.post_token_balances or ())
        for balance in balances:
            if balance.mint != token_mint or balance.owner != wallet_address:
                continue
            if 0 <= balance.account_index < len(tx.account_keys):
                pubkey = tx.account_keys[balance.account_index]
                if pubkey and pubkey != wallet_address:
                    found.add(pubkey)
        return found
