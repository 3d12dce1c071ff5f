import pytest

from database.db import Database
from scanner.models import TokenChange, Trade, TradeDirection
from tests.factories import OTHER_MINT, TOKEN_MINT, WALLET


def _trade(signature: str, block_time: int, direction=TradeDirection.BUY) -> Trade:
    return Trade(
        signature=signature,
        timestamp=block_time * 1000,
        direction=direction,
        token_mint=TOKEN_MINT,
        token_symbol="USDC",
        token_name="USD Coin",
        token_logo=None,
        token_amount_change=25.0,
        native_amount=0.5,
        usd_value=70.0,
        fee=0.000005,
        all_token_changes=(
            TokenChange(TOKEN_MINT, WALLET, 25.0, 0.0, 25.0, "USDC"),
            TokenChange(OTHER_MINT, "pool", -3.0, 10.0, 7.0, "BONK"),
        ),
    )


@pytest.mark.asyncio
async def test_watermark_round_trip_and_never_moves_backwards(tmp_path):
    db = Database(str(tmp_path / "ledger.db"))
    await db.initialize()
    try:
        assert await db.get_watermark(WALLET, TOKEN_MINT) is None

        await db.set_watermark(WALLET, TOKEN_MINT, 1_700_000_000)
        await db.set_watermark(WALLET, TOKEN_MINT, 1_600_000_000)

        watermark = await db.get_watermark(WALLET, TOKEN_MINT)
        assert watermark.last_seen_timestamp == 1_700_000_000
        assert await db.get_watermark(WALLET, "*") is None
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_upsert_trades_counts_only_new_rows(tmp_path):
    db = Database(str(tmp_path / "ledger.db"))
    await db.initialize()
    try:
        assert await db.upsert_trades(WALLET, [_trade("a", 1_700_000_000), _trade("b", 1_700_000_100)]) == 2
        assert await db.upsert_trades(WALLET, [_trade("b", 1_700_000_100), _trade("c", 1_700_000_200)]) == 1
        assert await db.upsert_trades(WALLET, []) == 0

        rows = await db.get_trades(WALLET)
        assert [r["signature"] for r in rows] == ["c", "b", "a"]
        assert rows[0]["direction"] == "BUY"
        assert rows[0]["all_token_changes"][1] == {
            "mint": OTHER_MINT,
            "owner": "pool",
            "pre_amount": 10.0,
            "post_amount": 7.0,
            "change": -3.0,
            "symbol": "BONK",
        }
        assert await db.get_trades(WALLET, OTHER_MINT) == []
    finally:
        await db.close()
