"""
Logging Setup
=============
Structured logging for the scanner, built on 'structlog'.

A full wallet scan can run for many minutes against a flaky RPC node.
Every retry, skipped signature and circuit trip is logged as an event
name plus key/value context, so a scan can be followed afterwards.

Per-scan context:
    bind_scan_context() puts the wallet and token on every log line
    emitted while that scan runs (including from the discovery and
    analyzer modules), without passing them around explicitly.

Log levels:
- DEBUG: pages, fetched transactions, classification decisions
- INFO: scan milestones (accounts discovered, trades found, summary)
- WARNING: degraded but continuing (retry, skipped account, partial scan)
- ERROR: a remote call failed permanently
"""

import sys
import logging
from pathlib import Path

import structlog


def setup_logging(log_level: str = "INFO", log_dir: str | None = None, json_output: bool = False) -> None:
    """
    Configure logging for the entire application.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        log_dir: Optional directory to also write scanner.log into
        json_output: One JSON object per line instead of console output
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path / "scanner.log")
        file_handler.setLevel(numeric_level)
        logging.getLogger().addHandler(file_handler)

    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S" if not json_output else "iso"),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def short_address(address: str | None) -> str | None:
    """First 8 characters of an address, for log lines."""
    if not address:
        return address
    return address[:8] + "..."


def bind_scan_context(wallet_address: str, token_mint: str | None = None) -> None:
    """Attach wallet/token to every log line until clear_scan_context()."""
    structlog.contextvars.bind_contextvars(
        scan_wallet=short_address(wallet_address),
        scan_token=short_address(token_mint) if token_mint else "all",
    )


def clear_scan_context() -> None:
    structlog.contextvars.unbind_contextvars("scan_wallet", "scan_token")


def get_logger(module_name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a logger for a specific module.

    Usage:
        from utils.logger import get_logger
        logger = get_logger(__name__)
        logger.info("trade_found", signature="5x...", direction="BUY")
    """
    return structlog.get_logger(module_name)
