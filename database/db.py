"""
Database Manager
================
Handles all trade ledger operations: creating tables, storing trades,
reading and advancing scan watermarks.

Uses SQLite because:
- No server to manage (it's just a file)
- Fast enough for our use case
- We use async (aiosqlite) so database operations don't block a scan

Every function here is a clean interface to the database.
Other modules never write raw SQL — they call these functions instead.
"""

import json
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from database.models import CREATE_TABLES_SQL
from scanner.models import ScanWatermark, Trade
from utils.logger import get_logger

logger = get_logger(__name__)


class Database:
    """
    Async trade ledger.

    Usage:
        db = Database("path/to/trade_ledger.db")
        await db.initialize()  # Creates tables if they don't exist
        inserted = await db.upsert_trades(wallet, trades)
        await db.close()
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.connection: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """
        Connect to the database and create tables if they don't exist.
        Called once when the engine starts up.
        """
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self.connection = await aiosqlite.connect(self.db_path)
        # Enable WAL mode for better concurrent read/write performance
        await self.connection.execute("PRAGMA journal_mode=WAL")
        # Return rows as dictionaries instead of tuples (much easier to work with)
        self.connection.row_factory = aiosqlite.Row

        # IF NOT EXISTS means it's safe to run multiple times
        await self.connection.executescript(CREATE_TABLES_SQL)
        await self.connection.commit()

        logger.info("database_initialized", path=self.db_path)

    async def close(self) -> None:
        """Close the database connection cleanly."""
        if self.connection:
            await self.connection.close()
            self.connection = None
            logger.info("database_closed")

    # =========================================================================
    # Scan Watermarks
    # =========================================================================

    async def get_watermark(self, wallet_address: str, token_mint: str) -> ScanWatermark | None:
        """Where the last scan of this (wallet, token) pair stopped, if ever."""
        cursor = await self.connection.execute(
            "SELECT * FROM scan_watermarks WHERE wallet_address = ? AND token_mint = ?",
            (wallet_address, token_mint),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return ScanWatermark(
            wallet_address=row["wallet_address"],
            token_mint=row["token_mint"],
            last_seen_timestamp=row["last_seen_timestamp"],
        )

    async def set_watermark(self, wallet_address: str, token_mint: str, timestamp: int) -> None:
        """
        Move the watermark forward. It never moves backwards — an older
        timestamp than the stored one is ignored.
        """
        await self.connection.execute(
            """
            INSERT INTO scan_watermarks (wallet_address, token_mint, last_seen_timestamp, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(wallet_address, token_mint) DO UPDATE SET
                last_seen_timestamp = MAX(last_seen_timestamp, excluded.last_seen_timestamp),
                updated_at = excluded.updated_at
            """,
            (wallet_address, token_mint, timestamp, datetime.now(timezone.utc).isoformat()),
        )
        await self.connection.commit()

    # =========================================================================
    # Trades
    # =========================================================================

    async def upsert_trades(self, wallet_address: str, trades: list[Trade]) -> int:
        """
        Save trades for a wallet. A signature already stored for this wallet
        is refreshed in place, never duplicated.

        Returns:
            How many of the trades were new rows
        """
        if not trades:
            return 0

        signatures = [t.signature for t in trades]
        existing: set[str] = set()
        # SQLite caps bound parameters per statement
        for start in range(0, len(signatures), 500):
            chunk = signatures[start:start + 500]
            placeholders = ",".join("?" * len(chunk))
            cursor = await self.connection.execute(
                f"SELECT signature FROM trades WHERE wallet_address = ? AND signature IN ({placeholders})",
                (wallet_address, *chunk),
            )
            existing.update(row["signature"] for row in await cursor.fetchall())

        sql = """
            INSERT INTO trades (
                wallet_address, signature, block_time, direction,
                token_mint, token_symbol, token_name, token_logo, token_amount_change,
                native_amount, usd_value, fee_sol, all_token_changes
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(wallet_address, signature) DO UPDATE SET
                token_symbol = excluded.token_symbol,
                token_name = excluded.token_name,
                token_logo = excluded.token_logo,
                usd_value = excluded.usd_value
        """
        rows = [
            (
                wallet_address,
                t.signature,
                t.block_time,
                t.direction.value,
                t.token_mint,
                t.token_symbol,
                t.token_name,
                t.token_logo,
                t.token_amount_change,
                t.native_amount,
                t.usd_value,
                t.fee,
                json.dumps(t.to_dict()["all_token_changes"]),
            )
            for t in trades
        ]
        await self.connection.executemany(sql, rows)
        await self.connection.commit()

        inserted = len(set(signatures) - existing)
        logger.debug("trades_upserted", wallet=wallet_address[:8] + "...", total=len(trades), new=inserted)
        return inserted

    async def get_trades(self, wallet_address: str, token_mint: str | None = None) -> list[dict]:
        """All stored trades for a wallet (optionally one token), newest first."""
        if token_mint:
            cursor = await self.connection.execute(
                "SELECT * FROM trades WHERE wallet_address = ? AND token_mint = ? ORDER BY block_time DESC",
                (wallet_address, token_mint),
            )
        else:
            cursor = await self.connection.execute(
                "SELECT * FROM trades WHERE wallet_address = ? ORDER BY block_time DESC",
                (wallet_address,),
            )
        rows = await cursor.fetchall()
        results = []
        for row in rows:
            trade = dict(row)
            trade["all_token_changes"] = json.loads(trade["all_token_changes"] or "[]")
            results.append(trade)
        return results
