import asyncio

from yieldwatch.markets.models import MarketRecord
from yieldwatch.markets.scanner import YieldScanner, build_sources
from yieldwatch.sources.base import SourceError
from yieldwatch.sources.exponent import ExponentSource
from yieldwatch.sources.pendle import PendleClient
from yieldwatch.sources.ratex import RateXClient
from yieldwatch.sources.spectra import SpectraSource


class FakeSource:
    def __init__(self, venue: str, records=None, error: Exception = None):
        self.venue = venue
        self.records = records or []
        self.error = error
        self.closed = False

    async def fetch_markets(self, now=None):
        if self.error:
            raise self.error
        return list(self.records)

    async def close(self):
        self.closed = True

    def metrics(self):
        return {"fetch_count": 0}


def _record(venue: str, address: str) -> MarketRecord:
    return MarketRecord(venue=venue, chain_id=1, chain_name="Ethereum",
                        market_address=address, name=address, implied_apy=0.05)


def test_failing_source_does_not_stop_others(fake_db) -> None:
    sources = [
        FakeSource("pendle", [_record("pendle", "0xa")]),
        FakeSource("spectra", error=SourceError("scrape broke")),
        FakeSource("ratex", [_record("ratex", "ratex-SOL")]),
    ]
    scanner = YieldScanner(fake_db, sources)
    results = asyncio.run(scanner.scan_once())

    assert sorted(results) == ["pendle", "ratex"]
    metrics = scanner.metrics()
    assert metrics["scan_count"] == 1
    assert metrics["sources"]["spectra"]["errors"] == 1
    assert metrics["sources"]["pendle"]["last_result"]["markets_processed"] == 1
    assert len(fake_db.pools) == 2


def test_scan_once_for_single_venue(fake_db) -> None:
    sources = [FakeSource("pendle", [_record("pendle", "0xa")]), FakeSource("ratex")]
    scanner = YieldScanner(fake_db, sources)
    results = asyncio.run(scanner.scan_once("ratex"))
    assert list(results) == ["ratex"]
    assert fake_db.pools == {}


def test_close_closes_every_source(fake_db) -> None:
    sources = [FakeSource("pendle"), FakeSource("ratex")]
    asyncio.run(YieldScanner(fake_db, sources).close())
    assert all(s.closed for s in sources)


def test_run_stops_cleanly_on_cancel(fake_db) -> None:
    source = FakeSource("pendle", [_record("pendle", "0xa")])
    scanner = YieldScanner(fake_db, [source], interval_sec=3600)

    async def _run_then_cancel():
        task = asyncio.create_task(scanner.run())
        await asyncio.sleep(0.05)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    asyncio.run(_run_then_cancel())
    assert scanner.metrics()["scan_count"] == 1
    assert source.closed


def test_build_sources_skips_scraped_venues_without_key() -> None:
    sources = build_sources(["pendle", "spectra", "exponent", "ratex"],
                            pendle_api_url="https://pendle.test", ratex_api_url="https://ratex.test")
    assert [type(s) for s in sources] == [PendleClient, RateXClient]


def test_build_sources_shares_firecrawl() -> None:
    sources = build_sources(["spectra", "exponent", "ratex"],
                            pendle_api_url="https://pendle.test", ratex_api_url="https://ratex.test",
                            firecrawl_api_key="fc-test", ratex_scrape_implied=True)
    spectra, exponent, ratex = sources
    assert isinstance(spectra, SpectraSource) and isinstance(exponent, ExponentSource)
    assert spectra.firecrawl is exponent.firecrawl is ratex.firecrawl
    assert ratex.scrape_implied is True


def test_build_sources_reports_unknown_venue(capsys) -> None:
    sources = build_sources(["pendle", "kamino", "spectra"],
                            pendle_api_url="https://pendle.test", ratex_api_url="https://ratex.test")
    out = capsys.readouterr().out

    assert [type(s) for s in sources] == [PendleClient]
    assert "Unknown source 'kamino' skipped" in out
    assert "Source 'spectra' skipped (no Firecrawl key)" in out
    assert "'kamino' skipped (no Firecrawl key)" not in out
