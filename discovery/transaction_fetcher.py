"""
Transaction Fetcher
===================
Fetches one full transaction body by signature.

Quirks we have to live with:
- Some transaction shapes make the node fail while building the parsed
  (jsonParsed) view and it answers with an "internal error" (-32603).
  Asking again for the raw base64 encoding usually works.
- Pruned nodes simply return no result for old transactions. That is a
  skip, not an error.
- Rate-limited free tiers answer with a "Request timeout on the free tier"
  error. We skip the signature so the scan can finish partially.

Anything else that fails for a single signature is logged and skipped.
Only an open circuit (the endpoint is down for everyone) propagates.
"""

from scanner.context import ScanContext
from scanner.models import TransactionRecord
from utils.logger import get_logger
from utils.resilience import RemoteCallFailed, RpcError
from utils.solana_client import SolanaClient

logger = get_logger(__name__)

INTERNAL_ERROR_CODE = -32603
FREE_TIER_TIMEOUT_CODE = 30
FREE_TIER_TIMEOUT_MESSAGE = "Request timeout on the free tier"


def _is_free_tier_timeout(error: BaseException) -> bool:
    if isinstance(error, RpcError) and error.code == FREE_TIER_TIMEOUT_CODE:
        return True
    return FREE_TIER_TIMEOUT_MESSAGE in str(error)


class TransactionFetcher:
    """
    Usage:
        fetcher = TransactionFetcher(solana)
        tx = await fetcher.fetch(signature, ctx)   # TransactionRecord or None
    """

    def __init__(self, solana: SolanaClient):
        self.solana = solana

    async def fetch(self, signature: str, ctx: ScanContext | None = None) -> TransactionRecord | None:
        """Fetch (once per scan) and parse one transaction."""
        if ctx and signature in ctx.transactions:
            return ctx.transactions[signature]

        record = await self._fetch_uncached(signature, ctx)
        if ctx:
            ctx.transactions[signature] = record
            if record is None:
                ctx.skipped_signatures += 1
        return record

    async def _fetch_uncached(self, signature: str, ctx: ScanContext | None) -> TransactionRecord | None:
        try:
            result = await self._get(signature, "jsonParsed", ctx)
        except RemoteCallFailed as e:
            cause = e.cause
            if isinstance(cause, RpcError) and cause.code == INTERNAL_ERROR_CODE:
                logger.debug("transaction_encoding_fallback", signature=signature[:8] + "...")
                try:
                    result = await self._get(signature, "base64", ctx)
                except RemoteCallFailed as retry_error:
                    return self._skip(signature, retry_error.cause, ctx)
            else:
                return self._skip(signature, cause, ctx)

        if not result:
            logger.debug("transaction_not_found", signature=signature[:8] + "...")
            return None

        return TransactionRecord.from_rpc(signature, result)

    async def _get(self, signature: str, encoding: str, ctx: ScanContext | None) -> dict | None:
        if ctx:
            ctx.raise_if_cancelled()
            ctx.rpc_calls += 1
        return await self.solana.get_transaction(signature, encoding=encoding)

    @staticmethod
    def _skip(signature: str, cause: BaseException, ctx: ScanContext | None) -> None:
        if _is_free_tier_timeout(cause):
            logger.warning("transaction_rate_limited_skip", signature=signature[:8] + "...")
        else:
            logger.warning("transaction_fetch_failed", signature=signature[:8] + "...", error=str(cause))
        if ctx:
            ctx.failed_signatures += 1
        return None
