import pytest

from discovery.signature_harvester import SignatureHarvester
from scanner.context import ScanCancelled, ScanContext
from scanner.models import SignatureRef, TransactionRecord
from utils.resilience import CircuitOpenError, HttpStatusError, RemoteCallFailed
from tests.factories import ATA, TOKEN_MINT, WALLET, build_tx_result


class PagedSolana:
    """Serves pre-built signature pages and records every request."""

    def __init__(self, pages: list[list[SignatureRef]], fail_on_page: int | None = None, error=None):
        self.pages = pages
        self.fail_on_page = fail_on_page
        self.error = error
        self.requests: list[dict] = []

    async def get_signatures_for_address(self, address, limit=1000, before=None):
        self.requests.append({"address": address, "limit": limit, "before": before})
        page_number = len(self.requests)
        if page_number == self.fail_on_page:
            raise self.error
        return self.pages[page_number - 1] if page_number <= len(self.pages) else []


class MapFetcher:
    def __init__(self, records: dict[str, TransactionRecord | None]):
        self.records = records
        self.fetched: list[str] = []

    async def fetch(self, signature, ctx=None):
        self.fetched.append(signature)
        return self.records.get(signature)


def _page(start: int, size: int, newest_time: int = 2_000_000) -> list[SignatureRef]:
    return [SignatureRef(f"sig{i}", newest_time - i) for i in range(start, start + size)]


def _harvester(solana, fetcher=None) -> SignatureHarvester:
    return SignatureHarvester(solana, fetcher or MapFetcher({}), page_delay_seconds=0)


@pytest.mark.asyncio
async def test_stops_after_partial_page():
    solana = PagedSolana([_page(0, 1000), _page(1000, 1000), _page(2000, 400)])

    refs = await _harvester(solana).harvest(WALLET, page_size=1000, is_root=True)

    assert len(solana.requests) == 3
    assert len(refs) == 2400
    assert [r["before"] for r in solana.requests] == [None, "sig999", "sig1999"]


@pytest.mark.asyncio
async def test_empty_first_page_ends_harvest():
    solana = PagedSolana([[]])

    refs = await _harvester(solana).harvest(WALLET, page_size=1000, is_root=True)

    assert refs == []
    assert len(solana.requests) == 1


@pytest.mark.asyncio
async def test_cutoff_stops_paging_and_drops_older_signatures():
    # block times run from 2_000_000 down to 1_999_001
    solana = PagedSolana([_page(0, 1000), _page(1000, 1000)])

    refs = await _harvester(solana).harvest(WALLET, cutoff=1_999_500, page_size=1000, is_root=True)

    assert len(solana.requests) == 1
    assert len(refs) == 501
    assert min(r.block_time for r in refs) == 1_999_500


@pytest.mark.asyncio
async def test_sub_account_keeps_only_trade_like_transactions():
    def record(signature, **kwargs):
        return TransactionRecord.from_rpc(signature, build_tx_result(signature=signature, **kwargs))

    fetcher = MapFetcher({
        "sig0": record("sig0", pre_tokens=[(1, TOKEN_MINT, WALLET, 0.0)], post_tokens=[(1, TOKEN_MINT, WALLET, 5.0)]),
        "sig1": record("sig1", pre_tokens=None, post_tokens=None),
        "sig2": record(
            "sig2",
            pre_sol=5.0,
            post_sol=4.999995,
            pre_tokens=[(1, TOKEN_MINT, WALLET, 5.0)],
            post_tokens=[(1, TOKEN_MINT, WALLET, 0.0)],
        ),
        "sig3": None,
    })
    solana = PagedSolana([_page(0, 4)])

    refs = await _harvester(solana, fetcher).harvest(ATA, page_size=250, is_root=False)

    assert [r.signature for r in refs] == ["sig0"]
    assert fetcher.fetched == ["sig0", "sig1", "sig2", "sig3"]
    assert solana.requests[0]["limit"] == 250


@pytest.mark.asyncio
async def test_root_account_is_not_filtered():
    fetcher = MapFetcher({})
    solana = PagedSolana([_page(0, 3)])

    refs = await _harvester(solana, fetcher).harvest(WALLET, page_size=1000, is_root=True)

    assert len(refs) == 3
    assert fetcher.fetched == []


@pytest.mark.asyncio
async def test_page_failure_keeps_what_was_collected():
    solana = PagedSolana(
        [_page(0, 1000)],
        fail_on_page=2,
        error=RemoteCallFailed("getSignaturesForAddress", HttpStatusError(503)),
    )

    ctx = ScanContext(WALLET)

    refs = await _harvester(solana).harvest(WALLET, page_size=1000, is_root=True, ctx=ctx)

    assert len(refs) == 1000
    assert len(solana.requests) == 2
    assert ctx.failed_pages == 1
    assert ctx.failed_calls() == 1


@pytest.mark.asyncio
async def test_open_circuit_propagates():
    solana = PagedSolana(
        [_page(0, 1000)],
        fail_on_page=2,
        error=CircuitOpenError("getSignaturesForAddress", "solana_rpc", 42),
    )

    with pytest.raises(CircuitOpenError):
        await _harvester(solana).harvest(WALLET, page_size=1000, is_root=True)


@pytest.mark.asyncio
async def test_cancelled_scan_makes_no_requests():
    solana = PagedSolana([_page(0, 10)])
    ctx = ScanContext(WALLET)
    ctx.cancel()

    with pytest.raises(ScanCancelled):
        await _harvester(solana).harvest(WALLET, is_root=True, ctx=ctx)

    assert solana.requests == []
