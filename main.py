"""
Wallet Trade Scanner — Main Entry Point
=======================================
Running this file:
1. Loads your configuration from .env
2. Warns about anything odd in it
3. Connects to the trade ledger database
4. Scans a wallet (or inspects one transaction) and logs what it found

Usage:
    python main.py --wallet <ADDRESS>                   # Every token the wallet traded
    python main.py --wallet <ADDRESS> --token <MINT>    # One token only
    python main.py --wallet <ADDRESS> --no-cache        # Ignore cached results
    python main.py --wallet <ADDRESS> --clear-cache     # Forget cached results first
    python main.py --inspect <SIGNATURE>                # Show raw token balance changes
"""

import asyncio
import argparse
import sys

from analyzer.trade_classifier import balance_changes, detect_trade
from config.settings import settings
from scanner.engine import ScanEngine
from scanner.trade_scanner import InvalidAddressError
from utils.logger import setup_logging, get_logger

logger = get_logger(__name__)


async def inspect_transaction(engine: ScanEngine, signature: str) -> None:
    """Log every token balance change in one transaction, and whether it's a trade."""
    tx = await engine.fetch_transaction(signature)
    if tx is None:
        logger.warning("transaction_not_available", signature=signature)
        return

    logger.info(
        "transaction",
        signature=signature,
        block_time=tx.block_time,
        fee_sol=tx.fee / 1e9,
        sol_change=round(tx.native_change(), 9),
        failed=tx.failed,
    )
    for change in balance_changes(tx, settings.balance_diff_dust_threshold):
        logger.info(
            "token_balance_change",
            mint=change.mint,
            owner=change.owner,
            pre=change.pre_amount,
            post=change.post_amount,
            change=change.change,
        )

    candidate = detect_trade(
        tx,
        dust_threshold=settings.trade_dust_threshold,
        min_native_movement=settings.min_native_movement,
    )
    if candidate:
        logger.info(
            "classified_as_trade",
            direction=candidate.direction.value,
            mint=candidate.primary.mint,
            token_change=candidate.primary.change,
            sol=abs(candidate.native_change),
        )
    else:
        logger.info("not_a_trade")


async def main() -> None:
    """Main async entry point."""

    # Parse command-line arguments
    parser = argparse.ArgumentParser(description="Solana Wallet Trade Scanner")
    parser.add_argument("--wallet", help="Wallet address to scan")
    parser.add_argument("--token", help="Only scan trades of this token mint")
    parser.add_argument("--no-cache", action="store_true", help="Ignore cached scan results")
    parser.add_argument("--clear-cache", action="store_true", help="Clear cached results before scanning")
    parser.add_argument("--inspect", metavar="SIGNATURE", help="Show token balance changes of one transaction")
    parser.add_argument("--log-level", help="Override LOG_LEVEL (DEBUG, INFO, WARNING, ERROR)")
    args = parser.parse_args()

    if not args.wallet and not args.inspect:
        parser.error("either --wallet or --inspect is required")

    # Set up logging
    setup_logging(
        log_level=args.log_level or settings.log_level,
        log_dir="logs",
        json_output=settings.log_json,
    )

    for problem in settings.validate():
        logger.warning("config_issue", issue=problem)

    engine = ScanEngine(settings)
    await engine.initialize()

    try:
        if args.inspect:
            await inspect_transaction(engine, args.inspect)
            return

        if args.clear_cache:
            engine.clear_cache(args.wallet)

        result = await engine.scan(args.wallet, args.token, use_cache=not args.no_cache)

        for trade in result.trades:
            logger.info(
                "trade",
                time=trade.timestamp,
                direction=trade.direction.value,
                token=trade.token_symbol,
                amount=round(trade.token_amount_change, 6),
                sol=round(trade.native_amount, 6),
                usd=round(trade.usd_value, 2),
                signature=trade.signature,
            )

        logger.info("scan_summary", **result.summary())
        if not result.complete:
            logger.warning(
                "scan_incomplete",
                reason=result.partial_reason,
                note="Trades found so far were saved. Run again later to finish.",
            )

    except InvalidAddressError as e:
        logger.error("invalid_address", error=str(e))
        sys.exit(2)
    except KeyboardInterrupt:
        logger.info("scan_stopping", reason="keyboard_interrupt")
    finally:
        # Clean shutdown: always close connections properly
        await engine.close()


def cli() -> None:
    # asyncio.run() starts the async event loop and runs our main function
    asyncio.run(main())


if __name__ == "__main__":
    cli()
