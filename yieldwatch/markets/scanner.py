"""
Yield Scanner — poll loop that fetches every enabled venue, normalizes,
persists snapshots to Supabase and raises alerts.

Designed to run as a background asyncio task. Polls every SCAN_INTERVAL_SEC
(default 15 min). Venues run one after another; a failing venue is logged
and the rest of the tick continues.
"""

import asyncio
import time
from typing import Dict, List, Optional

from yieldwatch.markets.ingest import MarketIngestor
from yieldwatch.markets.models import (
    IngestResult, VENUE_PENDLE, VENUE_SPECTRA, VENUE_EXPONENT, VENUE_RATEX,
)
from yieldwatch.sources.exponent import ExponentSource
from yieldwatch.sources.firecrawl import FirecrawlClient
from yieldwatch.sources.pendle import PendleClient
from yieldwatch.sources.ratex import RateXClient
from yieldwatch.sources.spectra import SpectraSource

SCAN_INTERVAL_SEC = 900
ERROR_COOLDOWN_SEC = 30


def build_sources(enabled: List[str], pendle_api_url: str, ratex_api_url: str,
                  firecrawl_api_key: str = "", firecrawl_api_url: Optional[str] = None,
                  ratex_scrape_implied: bool = False, http_timeout_sec: float = 30) -> list:
    """Instantiate the enabled venue sources, in scan order.

    Spectra and Exponent need Firecrawl; without a key they are skipped.
    One FirecrawlClient is shared between the scraped venues.
    """
    firecrawl = None
    if firecrawl_api_key:
        kwargs = {"api_url": firecrawl_api_url} if firecrawl_api_url else {}
        firecrawl = FirecrawlClient(firecrawl_api_key, **kwargs)

    sources = []
    for venue in enabled:
        if venue == VENUE_PENDLE:
            sources.append(PendleClient(api_url=pendle_api_url, timeout_sec=http_timeout_sec))
        elif venue == VENUE_SPECTRA and firecrawl:
            sources.append(SpectraSource(firecrawl))
        elif venue == VENUE_EXPONENT and firecrawl:
            sources.append(ExponentSource(firecrawl))
        elif venue == VENUE_RATEX:
            sources.append(RateXClient(api_url=ratex_api_url, firecrawl=firecrawl,
                                       scrape_implied=ratex_scrape_implied,
                                       timeout_sec=http_timeout_sec))
        elif venue in (VENUE_SPECTRA, VENUE_EXPONENT):
            print(f"[SCAN] Source '{venue}' skipped (no Firecrawl key)")
        else:
            print(f"[SCAN] Unknown source '{venue}' skipped")
    return sources


class YieldScanner:
    """Background multi-venue scanner.

    Usage:
        scanner = YieldScanner(db, sources)
        asyncio.create_task(scanner.run())

        # or a single pass:
        results = await scanner.scan_once()
    """

    def __init__(self, db, sources: list, interval_sec: int = SCAN_INTERVAL_SEC,
                 verbose: bool = False):
        """
        Args:
            db: Database instance (yieldwatch.db.client.Database).
            sources: objects with `venue`, `fetch_markets()`, `close()`, `metrics()`.
        """
        self.db = db
        self.sources = list(sources)
        self.interval_sec = interval_sec
        self.ingestor = MarketIngestor(db, verbose=verbose)

        self._last_scan_ts: float = 0.0
        self._scan_count: int = 0
        self._scan_errors: int = 0
        self._source_errors: Dict[str, int] = {s.venue: 0 for s in self.sources}
        self._last_results: Dict[str, IngestResult] = {}

    @property
    def last_scan_ts(self) -> float:
        return self._last_scan_ts

    @property
    def is_stale(self) -> bool:
        """True if data is older than 2x the scan interval."""
        if self._last_scan_ts == 0:
            return True
        return (time.time() - self._last_scan_ts) > (self.interval_sec * 2)

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def run(self):
        """Main loop — runs until cancelled, one tick every interval_sec."""
        print(f"[SCAN] Scanner starting ({', '.join(s.venue for s in self.sources)})...")
        try:
            await self._scan_tick()
            while True:
                try:
                    await asyncio.sleep(self.interval_sec)
                    await self._scan_tick()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._scan_errors += 1
                    print(f"[SCAN] Scan loop error: {e}")
                    await asyncio.sleep(ERROR_COOLDOWN_SEC)
        except asyncio.CancelledError:
            print("[SCAN] Scanner shutting down")
        finally:
            await self.close()

    async def scan_once(self, venue: Optional[str] = None) -> Dict[str, IngestResult]:
        """Run a single tick, optionally for one venue only."""
        return await self._scan_tick(venue)

    async def _scan_tick(self, venue: Optional[str] = None) -> Dict[str, IngestResult]:
        """Single scan cycle: fetch → normalize → persist → alert, per venue."""
        t0 = time.monotonic()
        results: Dict[str, IngestResult] = {}

        for source in self.sources:
            if venue and source.venue != venue:
                continue
            try:
                records = await source.fetch_markets()
            except Exception as e:
                self._source_errors[source.venue] = self._source_errors.get(source.venue, 0) + 1
                print(f"[SCAN] {source.venue} fetch failed: {e}")
                continue
            results[source.venue] = await self.ingestor.ingest(source.venue, records)

        self._last_results.update(results)
        self._last_scan_ts = time.time()
        self._scan_count += 1

        elapsed_ms = (time.monotonic() - t0) * 1000
        total_alerts = sum(r.alerts_generated for r in results.values())
        print(f"[SCAN] Scan #{self._scan_count} complete ({elapsed_ms:.0f}ms): "
              f"{len(results)} venues, {total_alerts} alerts")
        return results

    async def close(self):
        for source in self.sources:
            try:
                await source.close()
            except Exception as e:
                print(f"[SCAN] Error closing {source.venue}: {e}")

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def metrics(self) -> dict:
        return {
            "scan_count": self._scan_count,
            "scan_errors": self._scan_errors,
            "last_scan_ts": self._last_scan_ts,
            "is_stale": self.is_stale,
            "sources": {
                s.venue: {
                    "errors": self._source_errors.get(s.venue, 0),
                    "last_result": self._last_results[s.venue].summary()
                    if s.venue in self._last_results else None,
                    **s.metrics(),
                }
                for s in self.sources
            },
            "db": self.db.metrics() if hasattr(self.db, "metrics") else {},
        }
