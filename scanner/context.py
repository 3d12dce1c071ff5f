"""
Scan Context
============
Per-scan state that every component in the pipeline shares:

- a cancellation token, checked before every RPC call and every delay
- the per-scan transaction cache (a signature is fetched at most once)
- a few counters for the final report

A new ScanContext is created for every scan, so two scans never share
discovery sets or caches. Only the circuit breakers are shared across scans.
"""

import asyncio

from scanner.models import TransactionRecord


class ScanCancelled(Exception):
    """The scan was cancelled between two remote calls."""


class ScanContext:
    def __init__(self, wallet_address: str = "", token_mint: str | None = None):
        self.wallet_address = wallet_address
        self.token_mint = token_mint
        self._cancelled = asyncio.Event()
        # signature -> TransactionRecord, or None when the node had nothing
        self.transactions: dict[str, TransactionRecord | None] = {}
        self.rpc_calls = 0
        # not-found and failed fetches alike
        self.skipped_signatures = 0
        # remote calls that failed and were skipped; any of them leaves a gap
        self.failed_signatures = 0
        self.failed_pages = 0
        self.skipped_accounts = 0

    def cancel(self) -> None:
        self._cancelled.set()

    def failed_calls(self) -> int:
        """Remote calls skipped after failing. Non-zero means history may be missing."""
        return self.failed_signatures + self.failed_pages + self.skipped_accounts

    def raise_if_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise ScanCancelled(f"scan of {self.wallet_address[:8]}... cancelled")

    async def sleep(self, seconds: float) -> None:
        """Cancellable pause: returns early (and raises) if the scan is cancelled."""
        self.raise_if_cancelled()
        if seconds > 0:
            try:
                await asyncio.wait_for(self._cancelled.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                pass
        self.raise_if_cancelled()
