"""
Database Schema
===============
Defines the tables of the trade ledger.

- trades: every trade found for a wallet, one row per (wallet, signature)
- scan_watermarks: where the last scan of a (wallet, token) pair stopped

The watermark is what makes incremental scans possible: the next scan of
the same pair only looks at history newer than it.

We use raw SQL (not an ORM) to keep things simple and fast.
"""

CREATE_TABLES_SQL = """

-- =============================================
-- Trades found by wallet scans
-- =============================================
CREATE TABLE IF NOT EXISTS trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,

    wallet_address TEXT NOT NULL,           -- Wallet that was scanned
    signature TEXT NOT NULL,                -- Transaction signature
    block_time INTEGER NOT NULL,            -- Epoch seconds
    direction TEXT NOT NULL,                -- BUY or SELL

    -- The token that moved the most (or the scanned token)
    token_mint TEXT NOT NULL,
    token_symbol TEXT,
    token_name TEXT,
    token_logo TEXT,
    token_amount_change REAL,               -- Signed token delta

    -- Value
    native_amount REAL,                     -- SOL moved (fee-adjusted, absolute)
    usd_value REAL,                         -- native_amount * SOL price that day
    fee_sol REAL,                           -- Network fee in SOL

    all_token_changes TEXT,                 -- JSON: every non-dust token delta

    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,

    UNIQUE(wallet_address, signature)
);

-- =============================================
-- Scan watermarks (incremental sync boundary)
-- =============================================
CREATE TABLE IF NOT EXISTS scan_watermarks (
    wallet_address TEXT NOT NULL,
    token_mint TEXT NOT NULL,               -- Mint address, or '*' for whole-wallet scans
    last_seen_timestamp INTEGER NOT NULL,   -- Epoch seconds of the newest trade stored
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,

    PRIMARY KEY (wallet_address, token_mint)
);

-- =============================================
-- Indexes
-- =============================================
CREATE INDEX IF NOT EXISTS idx_trades_wallet_time ON trades(wallet_address, block_time);
CREATE INDEX IF NOT EXISTS idx_trades_wallet_mint ON trades(wallet_address, token_mint);
"""
