"""
Solana Client Helper
====================
A thin wrapper around the Solana JSON-RPC calls the scanner needs.

This module handles:
- Building JSON-RPC 2.0 requests and posting them over HTTPS
- Turning HTTP failures and JSON-RPC error objects into typed exceptions
- Routing every call through the RPC circuit breaker (retries, backoff, cooldown)

Only three methods are used by a scan:
- getTokenAccountsByOwner: which token accounts does an address own?
- getSignaturesForAddress: which transactions touched an address? (paginated)
- getTransaction: the full body of one transaction
"""

from typing import Any

import aiohttp

from scanner.models import SignatureRef, TokenAccount, TOKEN_PROGRAM_ID
from utils.logger import get_logger
from utils.resilience import CircuitBreaker, HttpStatusError, RpcError

logger = get_logger(__name__)


class SolanaClient:
    """
    Async Solana JSON-RPC client.

    Usage:
        client = SolanaClient(rpc_url, session, breaker)
        accounts = await client.get_token_accounts_by_owner("wallet_address_here")
        page = await client.get_signatures_for_address("wallet_address_here", limit=1000)
    """

    def __init__(
        self,
        rpc_url: str,
        session: aiohttp.ClientSession,
        breaker: CircuitBreaker,
        commitment: str = "confirmed",
    ):
        self.rpc_url = rpc_url
        self.session = session
        self.breaker = breaker
        self.commitment = commitment
        self._request_id = 0

    # =========================================================================
    # Core RPC Call
    # =========================================================================

    async def _post(self, method: str, params: list) -> Any:
        """
        One raw JSON-RPC round trip.

        Raises HttpStatusError for non-200 answers and RpcError when the body
        carries an `error` object; the breaker decides what is retryable.
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }
        async with self.session.post(self.rpc_url, json=payload) as response:
            if response.status != 200:
                raise HttpStatusError(response.status, await response.text())
            data = await response.json(content_type=None)

        if not isinstance(data, dict):
            raise RpcError(None, f"unexpected response payload for {method}")
        if data.get("error"):
            error = data["error"]
            raise RpcError(error.get("code"), error.get("message", ""), error.get("data"))
        return data.get("result")

    async def _rpc_call(self, method: str, params: list, context: str) -> Any:
        """Make a JSON-RPC call through the circuit breaker."""
        return await self.breaker.call(lambda: self._post(method, params), context)

    # =========================================================================
    # Methods used by a scan
    # =========================================================================

    async def get_token_accounts_by_owner(
        self, owner: str, mint: str | None = None
    ) -> list[TokenAccount]:
        """
        Get the token accounts owned by an address.

        With `mint`, only that token's accounts come back; otherwise every
        account under the SPL Token program.
        """
        filter_ = {"mint": mint} if mint else {"programId": TOKEN_PROGRAM_ID}
        result = await self._rpc_call(
            "getTokenAccountsByOwner",
            [owner, filter_, {"encoding": "jsonParsed", "commitment": self.commitment}],
            f"getTokenAccountsByOwner {owner[:8]}..." + (f" mint {mint[:8]}..." if mint else ""),
        )
        rows = (result or {}).get("value", []) if isinstance(result, dict) else []
        return [TokenAccount.from_rpc(row) for row in rows]

    async def get_signatures_for_address(
        self, address: str, limit: int = 1000, before: str | None = None
    ) -> list[SignatureRef]:
        """
        Get one page of transaction signatures for an address, newest first.

        Args:
            address: The account to look up
            limit: Page size (max 1000)
            before: Cursor — only return signatures older than this one
        """
        options: dict[str, Any] = {"limit": limit, "commitment": self.commitment}
        if before:
            options["before"] = before
        result = await self._rpc_call(
            "getSignaturesForAddress",
            [address, options],
            f"getSignaturesForAddress {address[:8]}...",
        )
        return [SignatureRef.from_rpc(row) for row in (result or [])]

    async def get_transaction(self, signature: str, encoding: str = "jsonParsed") -> dict | None:
        """Get the full body of a transaction. None if the node doesn't have it."""
        return await self._rpc_call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": encoding,
                    "commitment": self.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
            f"getTransaction {signature[:8]}... ({encoding})",
        )
