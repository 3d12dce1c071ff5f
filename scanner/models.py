"""
Data Model
==========
The plain data types that flow through a scan:

    TokenAccount -> SignatureRef -> TransactionRecord -> Trade

plus the small records the price resolver and the store deal in.
Everything here is immutable once built; components create new values
instead of mutating old ones.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

LAMPORTS_PER_SOL = 1_000_000_000

# Wrapped SOL mint: wrapping/unwrapping is not a trade
WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"

# System program: token balances "owned" by it are account creation/closure noise
SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"

# SPL Token program: filter for getTokenAccountsByOwner
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"

# Watermark key for wallet-wide scans (no single target mint)
ALL_TOKENS = "*"


class TradeDirection(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


@dataclass(frozen=True)
class TokenAccount:
    mint: str
    owner: str
    pubkey: str

    @classmethod
    def from_rpc(cls, item: dict) -> "TokenAccount":
        """Build from one `getTokenAccountsByOwner` row (jsonParsed encoding)."""
        data = (item.get("account") or {}).get("data")
        info = data.get("parsed", {}).get("info", {}) if isinstance(data, dict) else {}
        return cls(
            mint=info.get("mint", ""),
            owner=info.get("owner", ""),
            pubkey=item.get("pubkey", ""),
        )


@dataclass(frozen=True)
class SignatureRef:
    signature: str
    block_time: int  # epoch seconds

    @classmethod
    def from_rpc(cls, item: dict) -> "SignatureRef":
        return cls(signature=item["signature"], block_time=item.get("blockTime") or 0)


@dataclass(frozen=True)
class TokenBalance:
    account_index: int
    mint: str
    owner: str | None
    ui_amount: float

    @classmethod
    def from_rpc(cls, item: dict) -> "TokenBalance":
        amount = item.get("uiTokenAmount") or {}
        # uiAmountString keeps full precision; uiAmount is null for zero on some nodes
        raw = amount.get("uiAmountString")
        if raw in (None, ""):
            raw = amount.get("uiAmount")
        return cls(
            account_index=item.get("accountIndex", 0),
            mint=item.get("mint", ""),
            owner=item.get("owner"),
            ui_amount=float(raw) if raw not in (None, "") else 0.0,
        )


@dataclass(frozen=True)
class TransactionRecord:
    """
    A fetched transaction body, reduced to what classification needs.

    `pre_token_balances` / `post_token_balances` are None when the node did
    not include them — that is different from an empty list.
    """

    signature: str
    block_time: int
    fee: int  # lamports
    failed: bool
    pre_balances: tuple[int, ...]
    post_balances: tuple[int, ...]
    pre_token_balances: tuple[TokenBalance, ...] | None
    post_token_balances: tuple[TokenBalance, ...] | None
    account_keys: tuple[str, ...] = ()

    @classmethod
    def from_rpc(cls, signature: str, result: dict) -> "TransactionRecord":
        """Build from a `getTransaction` result (jsonParsed or base64 encoding)."""
        meta = result.get("meta") or {}

        def _balances(key: str) -> tuple[TokenBalance, ...] | None:
            raw = meta.get(key)
            if raw is None:
                return None
            return tuple(TokenBalance.from_rpc(b) for b in raw)

        # jsonParsed gives a message with accountKeys; base64 gives [data, "base64"]
        keys: list[str] = []
        tx = result.get("transaction")
        if isinstance(tx, dict):
            for key in tx.get("message", {}).get("accountKeys", []) or []:
                keys.append(key.get("pubkey", "") if isinstance(key, dict) else str(key))
            signatures = tx.get("signatures") or []
            if signatures and not signature:
                signature = signatures[0]

        return cls(
            signature=signature,
            block_time=result.get("blockTime") or 0,
            fee=meta.get("fee") or 0,
            failed=meta.get("err") is not None,
            pre_balances=tuple(meta.get("preBalances") or ()),
            post_balances=tuple(meta.get("postBalances") or ()),
            pre_token_balances=_balances("preTokenBalances"),
            post_token_balances=_balances("postTokenBalances"),
            account_keys=tuple(keys),
        )

    def native_change(self) -> float:
        """Fee-adjusted SOL movement of the first account (the fee payer)."""
        pre = self.pre_balances[0] if self.pre_balances else 0
        post = self.post_balances[0] if self.post_balances else 0
        return (post - pre + self.fee) / LAMPORTS_PER_SOL

    def has_token_balances(self) -> bool:
        return bool(self.pre_token_balances) and bool(self.post_token_balances)


@dataclass(frozen=True)
class TokenChange:
    mint: str
    owner: str | None
    change: float
    pre_amount: float
    post_amount: float
    symbol: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "mint": self.mint,
            "owner": self.owner,
            "pre_amount": self.pre_amount,
            "post_amount": self.post_amount,
            "change": self.change,
            "symbol": self.symbol,
        }


@dataclass(frozen=True)
class TokenInfo:
    symbol: str
    name: str
    logo_uri: str | None = None

    @classmethod
    def placeholder(cls, mint: str) -> "TokenInfo":
        return cls(symbol=mint[:8] + "...", name="Unknown Token", logo_uri=None)


@dataclass(frozen=True)
class PriceQuote:
    date_bucket: str  # ISO date, e.g. "2024-05-01"
    price_usd: float


@dataclass(frozen=True)
class Trade:
    signature: str
    timestamp: int  # epoch milliseconds
    direction: TradeDirection
    token_mint: str
    token_symbol: str
    token_name: str
    token_logo: str | None
    token_amount_change: float
    native_amount: float
    usd_value: float
    fee: float  # SOL
    all_token_changes: tuple[TokenChange, ...] = ()

    @property
    def block_time(self) -> int:
        return self.timestamp // 1000

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "timestamp": self.timestamp,
            "direction": self.direction.value,
            "token_mint": self.token_mint,
            "token_symbol": self.token_symbol,
            "token_name": self.token_name,
            "token_logo": self.token_logo,
            "token_amount_change": self.token_amount_change,
            "native_amount": self.native_amount,
            "usd_value": self.usd_value,
            "fee": self.fee,
            "all_token_changes": [c.to_dict() for c in self.all_token_changes],
        }


@dataclass(frozen=True)
class ScanWatermark:
    wallet_address: str
    token_mint: str
    last_seen_timestamp: int  # epoch seconds


@dataclass
class ScanResult:
    """What a scan hands back to its caller."""

    wallet_address: str
    token_mint: str | None
    trades: list[Trade] = field(default_factory=list)
    mode: str = "full"  # full | incremental | cached
    complete: bool = True
    partial_reason: str | None = None
    new_trades: int = 0
    accounts_scanned: int = 0
    signatures_scanned: int = 0
    finished_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def total_volume(self) -> float:
        return sum(t.usd_value for t in self.trades)

    @property
    def unique_tokens(self) -> set[str]:
        return {t.token_mint for t in self.trades}

    def summary(self) -> dict[str, Any]:
        return {
            "wallet": self.wallet_address,
            "token": self.token_mint,
            "mode": self.mode,
            "complete": self.complete,
            "partial_reason": self.partial_reason,
            "trades": len(self.trades),
            "new_trades": self.new_trades,
            "total_volume_usd": round(self.total_volume, 2),
            "unique_tokens": len(self.unique_tokens),
            "accounts_scanned": self.accounts_scanned,
            "signatures_scanned": self.signatures_scanned,
        }
