"""
Trade Classifier
================
Decides whether a fetched transaction is a buy/sell trade, and if so,
turns it into a Trade record.

How we detect a trade:
1. The transaction must carry both pre- and post-token-balance lists
2. Pre and post balances are merged per (account index, mint); a side
   that's missing counts as 0
3. change = post - pre for every entry. We drop:
   - dust (|change| below the threshold, 0.001 by default)
   - wrapped SOL (wrapping/unwrapping isn't a trade)
   - entries owned by the System program (account creation/closure noise)
4. Nothing left? Not a trade
5. The entry with the biggest |change| is the primary token change.
   Everything that survived is kept in all_token_changes for reference
6. SOL movement of the fee payer, with the fee added back:
   (post - pre + fee) / 1e9. Less than 0.0001 SOL? Not a market trade
7. SOL left the wallet -> BUY. SOL came in -> SELL
8. USD value = |SOL moved| * SOL price on that day

Scoped mode (one target mint): only entries for that mint (and that wallet,
when given) are considered, each must clear the dust threshold on its own,
and they're summed instead of picking the biggest one — a wallet can move
the same token through several of its accounts in one transaction.

`detect_trade` is pure (no I/O, same input -> same output). Everything
that needs the network lives in TradeClassifier.classify.
"""

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from scanner.models import (
    LAMPORTS_PER_SOL,
    SYSTEM_PROGRAM_ID,
    WRAPPED_SOL_MINT,
    TokenBalance,
    TokenChange,
    Trade,
    TradeDirection,
    TransactionRecord,
)
from utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TradeCandidate:
    """A transaction that passed detection but isn't priced or named yet."""

    signature: str
    block_time: int
    direction: TradeDirection
    primary: TokenChange
    changes: tuple[TokenChange, ...]
    native_change: float  # SOL, fee-adjusted, signed
    fee: int  # lamports


# =============================================================================
# Balance diffing
# =============================================================================


def _merge_balances(
    tx: TransactionRecord,
    target_mint: str | None = None,
    wallet: str | None = None,
) -> list[tuple[TokenBalance | None, TokenBalance | None]]:
    """
    Pair pre and post balances by (account index, mint).

    Order is stable: pre-balance order first, then post-only entries.
    """
    merged: dict[tuple[int, str], list] = {}

    def _wanted(balance: TokenBalance) -> bool:
        if target_mint is not None and balance.mint != target_mint:
            return False
        if wallet is not None and balance.owner != wallet:
            return False
        return True

    for balance in tx.pre_token_balances or ():
        if _wanted(balance):
            merged[(balance.account_index, balance.mint)] = [balance, None]

    for balance in tx.post_token_balances or ():
        if not _wanted(balance):
            continue
        key = (balance.account_index, balance.mint)
        if key in merged:
            merged[key][1] = balance
        else:
            merged[key] = [None, balance]

    return [(pre, post) for pre, post in merged.values()]


def _to_change(pre: TokenBalance | None, post: TokenBalance | None) -> TokenChange:
    mint = pre.mint if pre else post.mint
    owner = (pre.owner if pre else None) or (post.owner if post else None)
    pre_amount = pre.ui_amount if pre else 0.0
    post_amount = post.ui_amount if post else 0.0
    return TokenChange(
        mint=mint,
        owner=owner,
        change=post_amount - pre_amount,
        pre_amount=pre_amount,
        post_amount=post_amount,
    )


def balance_changes(tx: TransactionRecord, dust_threshold: float = 0.000001) -> list[TokenChange]:
    """
    Every token balance that moved in `tx`, wrapped SOL included.

    The raw view used when inspecting a single transaction. No trade
    semantics are applied, only the (much finer) dust filter.
    """
    if tx.pre_token_balances is None or tx.post_token_balances is None:
        return []
    changes = [_to_change(pre, post) for pre, post in _merge_balances(tx)]
    return [c for c in changes if abs(c.change) >= dust_threshold]


# =============================================================================
# Detection
# =============================================================================


def detect_trade(
    tx: TransactionRecord,
    dust_threshold: float = 0.001,
    min_native_movement: float = 0.0001,
    target_mint: str | None = None,
    wallet: str | None = None,
) -> TradeCandidate | None:
    """
    Run the detection rules on one transaction.

    Args:
        tx: The fetched transaction
        dust_threshold: Smallest token delta that counts
        min_native_movement: Smallest fee-adjusted SOL movement that counts
        target_mint: Scoped mode — only this mint is considered
        wallet: With target_mint, only balances owned by this wallet

    Returns:
        A TradeCandidate, or None if this isn't a trade
    """
    if tx.pre_token_balances is None or tx.post_token_balances is None:
        return None

    if target_mint is None:
        changes = []
        for pre, post in _merge_balances(tx):
            change = _to_change(pre, post)
            if abs(change.change) < dust_threshold:
                continue
            if change.mint == WRAPPED_SOL_MINT:
                continue
            if change.owner == SYSTEM_PROGRAM_ID:
                continue
            changes.append(change)

        if not changes:
            return None

        # max() keeps the first of equal magnitudes
        primary = max(changes, key=lambda c: abs(c.change))
    else:
        changes = [
            change
            for change in (_to_change(pre, post) for pre, post in _merge_balances(tx, target_mint, wallet))
            if abs(change.change) >= dust_threshold
        ]
        if not changes:
            return None

        total = sum(c.change for c in changes)
        if abs(total) < dust_threshold:
            return None

        primary = TokenChange(
            mint=target_mint,
            owner=wallet or changes[0].owner,
            change=total,
            pre_amount=sum(c.pre_amount for c in changes),
            post_amount=sum(c.post_amount for c in changes),
        )

    native = tx.native_change()
    if abs(native) < min_native_movement:
        return None

    return TradeCandidate(
        signature=tx.signature,
        block_time=tx.block_time,
        direction=TradeDirection.BUY if native < 0 else TradeDirection.SELL,
        primary=primary,
        changes=tuple(changes),
        native_change=native,
        fee=tx.fee,
    )


def date_key(block_time: int) -> str:
    """UTC calendar day of a block time, e.g. '2024-05-01'."""
    return datetime.fromtimestamp(block_time, tz=timezone.utc).strftime("%Y-%m-%d")


# =============================================================================
# Classification (detection + enrichment)
# =============================================================================


class TradeClassifier:
    """
    Turns transactions into priced, named Trade records.

    Usage:
        classifier = TradeClassifier(prices)
        trade = await classifier.classify(tx)                          # any token
        trade = await classifier.classify(tx, target_mint=m, wallet=w)  # one token
    """

    def __init__(self, prices, dust_threshold: float = 0.001, min_native_movement: float = 0.0001):
        self.prices = prices
        self.dust_threshold = dust_threshold
        self.min_native_movement = min_native_movement

    async def classify(
        self,
        tx: TransactionRecord,
        target_mint: str | None = None,
        wallet: str | None = None,
    ) -> Trade | None:
        candidate = detect_trade(
            tx,
            dust_threshold=self.dust_threshold,
            min_native_movement=self.min_native_movement,
            target_mint=target_mint,
            wallet=wallet,
        )
        if candidate is None:
            logger.debug("not_a_trade", signature=tx.signature[:8] + "...")
            return None

        # Fire every metadata lookup at once, plus the day's SOL price
        mints = list(dict.fromkeys([candidate.primary.mint] + [c.mint for c in candidate.changes]))
        *infos, sol_price = await asyncio.gather(
            *(self.prices.get_token_info(mint) for mint in mints),
            self.prices.get_sol_price(date_key(candidate.block_time)),
        )
        info_by_mint = dict(zip(mints, infos))
        primary_info = info_by_mint[candidate.primary.mint]

        native_amount = abs(candidate.native_change)
        trade = Trade(
            signature=candidate.signature,
            timestamp=candidate.block_time * 1000,
            direction=candidate.direction,
            token_mint=candidate.primary.mint,
            token_symbol=primary_info.symbol,
            token_name=primary_info.name,
            token_logo=primary_info.logo_uri,
            token_amount_change=candidate.primary.change,
            native_amount=native_amount,
            usd_value=native_amount * sol_price,
            fee=candidate.fee / LAMPORTS_PER_SOL,
            all_token_changes=tuple(
                replace(c, symbol=info_by_mint[c.mint].symbol) for c in candidate.changes
            ),
        )

        logger.debug(
            "trade_found",
            signature=trade.signature[:8] + "...",
            direction=trade.direction.value,
            token=trade.token_symbol,
            amount=round(trade.token_amount_change, 6),
            sol=round(native_amount, 6),
            usd=round(trade.usd_value, 2),
        )
        return trade
