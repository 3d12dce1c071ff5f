import structlog

from utils.logger import bind_scan_context, clear_scan_context, short_address
from tests.factories import TOKEN_MINT, WALLET


def test_short_address():
    assert short_address(WALLET) == WALLET[:8] + "..."
    assert short_address(None) is None


def test_scan_context_is_bound_and_cleared():
    bind_scan_context(WALLET, TOKEN_MINT)
    try:
        bound = structlog.contextvars.get_contextvars()
        assert bound["scan_wallet"] == WALLET[:8] + "..."
        assert bound["scan_token"] == TOKEN_MINT[:8] + "..."
    finally:
        clear_scan_context()

    assert "scan_wallet" not in structlog.contextvars.get_contextvars()


def test_wallet_wide_scan_context():
    bind_scan_context(WALLET)
    try:
        assert structlog.contextvars.get_contextvars()["scan_token"] == "all"
    finally:
        clear_scan_context()
