"""
Configuration Manager
=====================
This is the single source of truth for ALL scanner settings.
It loads endpoints and API keys from a .env file,
and defines default values for every tunable parameter.

How it works:
- On startup, it reads your .env file
- Each setting has a sensible default so the scanner works out of the box
- You can override anything by changing the .env file or setting environment variables
- The Settings object is created once and passed to every component that needs it
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from dotenv import load_dotenv


# Load environment variables from .env file in the project root
load_dotenv(Path(__file__).parent.parent / ".env")


def _get_env(key: str, default: str = "") -> str:
    """Get an environment variable, returning default if not set."""
    return os.getenv(key, default)


def _get_env_float(key: str, default: float) -> float:
    """Get an environment variable as a float number."""
    val = os.getenv(key)
    return float(val) if val else default


def _get_env_int(key: str, default: int) -> int:
    """Get an environment variable as a whole number."""
    val = os.getenv(key)
    return int(val) if val else default


@dataclass
class Settings:
    """
    All scanner configuration in one place.

    Sections:
    - Endpoints: Solana RPC, price history, token metadata
    - Resilience: circuit breaker and retry tuning
    - Harvesting: page sizes and pacing
    - Classification: dust thresholds
    - Caching: how long results live
    - System: database path, logging level
    """

    # =========================================================================
    # Endpoints
    # =========================================================================

    # Solana JSON-RPC endpoint (dRPC, Helius, Alchemy... anything that speaks JSON-RPC 2.0)
    rpc_url: str = field(default_factory=lambda: _get_env(
        "SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com"
    ))

    # CoinGecko: historical SOL price (bucketed by day)
    coingecko_base_url: str = field(default_factory=lambda: _get_env(
        "COINGECKO_BASE_URL", "https://api.coingecko.com/api/v3"
    ))
    coingecko_api_key: str = field(default_factory=lambda: _get_env("COINGECKO_API_KEY"))

    # Jupiter token API: symbol, name, logo per mint
    jupiter_token_api_url: str = field(default_factory=lambda: _get_env(
        "JUPITER_TOKEN_API_URL", "https://lite-api.jup.ag/tokens/v1"
    ))

    # Price used when the price history endpoint is unreachable
    default_sol_price_usd: float = field(
        default_factory=lambda: _get_env_float("DEFAULT_SOL_PRICE_USD", 150.0)
    )

    # =========================================================================
    # Resilience
    # =========================================================================

    # Consecutive failed calls before an endpoint's circuit opens
    circuit_max_failures: int = field(
        default_factory=lambda: _get_env_int("CIRCUIT_MAX_FAILURES", 5)
    )

    # How long an open circuit refuses calls before allowing a trial request
    circuit_cooldown_seconds: float = field(
        default_factory=lambda: _get_env_float("CIRCUIT_COOLDOWN_SECONDS", 60.0)
    )

    # Per-request HTTP timeout
    request_timeout_seconds: float = field(
        default_factory=lambda: _get_env_float("REQUEST_TIMEOUT_SECONDS", 30.0)
    )

    # Attempts per remote call (first try included)
    retry_max_attempts: int = field(
        default_factory=lambda: _get_env_int("RETRY_MAX_ATTEMPTS", 4)
    )

    # Backoff bases: network/timeouts back off harder than plain 5xx
    retry_network_base_delay: float = 3.0
    retry_server_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_jitter: float = 1.0

    # =========================================================================
    # Signature Harvesting
    # =========================================================================

    # Page size when paging the wallet itself (max the RPC allows)
    root_page_size: int = field(
        default_factory=lambda: _get_env_int("ROOT_PAGE_SIZE", 1000)
    )

    # Page size for token sub-accounts (each row may cost a getTransaction)
    account_page_size: int = field(
        default_factory=lambda: _get_env_int("ACCOUNT_PAGE_SIZE", 250)
    )

    # Pause between signature pages to stay under rate limits
    page_delay_seconds: float = field(
        default_factory=lambda: _get_env_float("PAGE_DELAY_SECONDS", 0.1)
    )

    # =========================================================================
    # Trade Classification
    # =========================================================================

    # Token deltas smaller than this are dust when classifying trades
    trade_dust_threshold: float = field(
        default_factory=lambda: _get_env_float("TRADE_DUST_THRESHOLD", 0.001)
    )

    # Finer threshold for raw balance-diff reports (--inspect)
    balance_diff_dust_threshold: float = field(
        default_factory=lambda: _get_env_float("BALANCE_DIFF_DUST_THRESHOLD", 0.000001)
    )

    # SOL movement below this is not a market trade (fee-adjusted)
    min_native_movement: float = field(
        default_factory=lambda: _get_env_float("MIN_NATIVE_MOVEMENT", 0.0001)
    )

    # =========================================================================
    # Caching
    # =========================================================================

    # Whole-wallet scan results are reused for this long (seconds)
    wallet_cache_ttl: int = field(
        default_factory=lambda: _get_env_int("WALLET_CACHE_TTL", 30 * 60)
    )

    # The bulk "all tradable tokens" listing is refreshed this often (seconds)
    token_list_ttl: int = field(
        default_factory=lambda: _get_env_int("TOKEN_LIST_TTL", 30 * 60)
    )

    # =========================================================================
    # System
    # =========================================================================

    # Path to the SQLite trade ledger
    db_path: str = field(
        default_factory=lambda: _get_env(
            "DB_PATH", str(Path(__file__).parent.parent / "data" / "trade_ledger.db")
        )
    )

    # Logging level: DEBUG, INFO, WARNING, ERROR
    log_level: str = field(default_factory=lambda: _get_env("LOG_LEVEL", "INFO"))

    # One JSON object per log line (for log shippers) instead of console output
    log_json: bool = field(
        default_factory=lambda: _get_env("LOG_JSON", "false").lower() in ("1", "true", "yes")
    )

    def validate(self) -> list[str]:
        """
        Check that the settings make sense together.
        Returns a list of problems found (empty list = all good).
        """
        problems = []

        if not self.rpc_url.startswith(("http://", "https://")):
            problems.append("SOLANA_RPC_URL must be an http(s) URL")
        if self.rpc_url == "https://api.mainnet-beta.solana.com":
            problems.append("SOLANA_RPC_URL is the public endpoint — expect heavy rate limiting")
        if self.circuit_max_failures < 1:
            problems.append("CIRCUIT_MAX_FAILURES must be at least 1")
        if self.retry_max_attempts < 1:
            problems.append("RETRY_MAX_ATTEMPTS must be at least 1")
        if not 1 <= self.root_page_size <= 1000:
            problems.append("ROOT_PAGE_SIZE must be between 1 and 1000")
        if not 1 <= self.account_page_size <= 1000:
            problems.append("ACCOUNT_PAGE_SIZE must be between 1 and 1000")
        if self.balance_diff_dust_threshold > self.trade_dust_threshold:
            problems.append("BALANCE_DIFF_DUST_THRESHOLD is larger than TRADE_DUST_THRESHOLD")

        return problems


# Create a global settings instance for the command-line entry point
# Usage: from config.settings import settings
settings = Settings()
