"""
RateX (Solana) client — JSON-RPC-like admin backend.

API: POST {RATEX_API_URL}
  body:     {"serverName": "AdminSvr", "method": <name>, "content": {"cid": uuid4, ...}}
  response: {"code": 0, "msg": str, "data": ..., "cid": str}

The backend only answers requests carrying app.rate-x.io's Origin/Referer, so
RATEX_API_URL may point at a CORS proxy that forwards to api.rate-x.io.

Methods used:
  querySymbol             → list of markets (sometimes wrapped as {"symbols": [...]})
  queryTotalVolumeAndTvl  → {"total_u_tvl": str, "total_u_volume": str}

querySymbol market fields used:
  symbol, symbol_name, symbol_level1_category, due_date, is_delete ("1" = removed),
  initial_upper_yield_range / initial_lower_yield_range (percent), sum_price, earn_w

The API yield range is only a proxy for the live rates. The swap page shows the
real "Implied Yield" / "Real Yield"; scrape_implied_yields() reads them through
Firecrawl when enabled.
"""

import asyncio
import re
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

import aiohttp

from yieldwatch.markets.models import MarketRecord, VENUE_RATEX, VENUE_PREFIXES
from yieldwatch.sources.base import HttpClient, SourceError
from yieldwatch.sources.chains import SOLANA_RATEX_CHAIN_ID, chain_name
from yieldwatch.sources.firecrawl import ScrapeError
from yieldwatch.sources.normalize import clean_markdown, parse_datetime, to_float

RATEX_API_URL = "https://api.rate-x.io/"
RATEX_APP_URL = "https://app.rate-x.io"
RATEX_SERVER_NAME = "AdminSvr"
SWAP_SCRAPE_WAIT_MS = 5000

_IMPLIED_RE = re.compile(r"Implied\s*Yield[\s:]*(\d+(?:\.\d+)?)\s*%", re.IGNORECASE)
_REAL_RE = re.compile(r"Real\s*Yield[\s:]*(\d+(?:\.\d+)?)\s*%", re.IGNORECASE)


class RateXError(SourceError):
    """Non-zero `code` or malformed envelope from the RateX backend."""


def parse_ratex_yields(markdown: str) -> Optional[Dict[str, float]]:
    """Read implied/real yield (decimal) from a scraped swap page.

    None when the page has no Implied Yield figure.
    """
    text = clean_markdown(markdown)
    implied = _IMPLIED_RE.search(text)
    if not implied:
        return None
    real = _REAL_RE.search(text)
    return {
        "implied_yield": to_float(implied.group(1)) / 100,
        "real_yield": to_float(real.group(1)) / 100 if real else 0.0,
    }


def is_active_market(market: dict, now: datetime) -> bool:
    if str(market.get("is_delete", "")) == "1":
        return False
    due = parse_datetime(market.get("due_date"))
    return due is None or due > now


def normalize_market(market: dict) -> Optional[MarketRecord]:
    """Map one querySymbol entry to a MarketRecord. None without a symbol."""
    symbol = market.get("symbol")
    if not symbol:
        return None
    return MarketRecord(
        venue=VENUE_RATEX,
        chain_id=SOLANA_RATEX_CHAIN_ID,
        chain_name=chain_name(SOLANA_RATEX_CHAIN_ID),
        market_address=f"ratex-{symbol}",
        name=f"{VENUE_PREFIXES[VENUE_RATEX]} {market.get('symbol_name') or symbol}",
        underlying_asset=market.get("symbol_level1_category") or None,
        expiry=parse_datetime(market.get("due_date")),
        # upper bound of the quoted yield range tracks the implied rate, lower the underlying
        implied_apy=to_float(market.get("initial_upper_yield_range")) / 100,
        underlying_apy=to_float(market.get("initial_lower_yield_range")) / 100,
        liquidity=0.0,  # querySymbol carries no per-market TVL
    )


class RateXClient(HttpClient):
    """Async client for the RateX admin backend."""

    tag = "RATEX"
    venue = VENUE_RATEX

    def __init__(self, api_url: str = RATEX_API_URL, firecrawl=None,
                 scrape_implied: bool = False, **kwargs):
        super().__init__(**kwargs)
        self.api_url = api_url
        self.firecrawl = firecrawl
        self.scrape_implied = scrape_implied and firecrawl is not None
        self.total_tvl = 0.0
        self.total_volume = 0.0

    async def call(self, method: str, content: Optional[dict] = None):
        """POST one envelope and return its `data`. Raises RateXError."""
        await self._ensure_session()
        payload = {
            "serverName": RATEX_SERVER_NAME,
            "method": method,
            "content": {"cid": str(uuid.uuid4()), **(content or {})},
        }
        headers = {
            "Content-Type": "application/json",
            "Accept": "*/*",
            "Origin": RATEX_APP_URL,
            "Referer": f"{RATEX_APP_URL}/",
        }
        async with self._session.post(self.api_url, json=payload, headers=headers) as resp:
            if resp.status != 200:
                raise RateXError(f"{method}: HTTP {resp.status}")
            result = await resp.json(content_type=None)

        if not isinstance(result, dict):
            raise RateXError(f"{method}: unexpected response type {type(result).__name__}")
        if result.get("code") != 0:
            raise RateXError(f"{method}: error code {result.get('code')}: {result.get('msg')}")

        data = result.get("data")
        if method == "querySymbol" and isinstance(data, dict) and isinstance(data.get("symbols"), list):
            data = data["symbols"]
        return data

    async def query_symbols(self) -> List[dict]:
        data = await self.call("querySymbol")
        return data if isinstance(data, list) else []

    async def query_tvl(self) -> Dict[str, float]:
        data = await self.call("queryTotalVolumeAndTvl") or {}
        return {
            "total_tvl": to_float(data.get("total_u_tvl")),
            "total_volume": to_float(data.get("total_u_volume")),
        }

    async def scrape_implied_yields(self, symbols: List[str]) -> Dict[str, Dict[str, float]]:
        """Scrape each swap page sequentially. Symbols that fail are skipped."""
        if self.firecrawl is None:
            raise RuntimeError("scrape_implied_yields needs a Firecrawl client")
        results: Dict[str, Dict[str, float]] = {}
        for symbol in symbols:
            url = f"{RATEX_APP_URL}/swap/{symbol}"
            try:
                markdown = await self.firecrawl.scrape(url, wait_for_ms=SWAP_SCRAPE_WAIT_MS)
            except ScrapeError as e:
                print(f"[RATEX] Error scraping {symbol}: {e}")
                continue
            yields = parse_ratex_yields(markdown)
            if yields is not None:
                results[symbol] = yields
        print(f"[RATEX] Scraped implied yield for {len(results)}/{len(symbols)} symbols")
        return results

    async def fetch_markets(self, now: Optional[datetime] = None) -> List[MarketRecord]:
        now = now or datetime.now(timezone.utc)
        try:
            all_markets = await self.query_symbols()
        except asyncio.TimeoutError:
            self._fetch_errors += 1
            raise SourceError(f"querySymbol timed out ({self._timeout_sec}s)")
        except aiohttp.ClientError as e:
            self._fetch_errors += 1
            raise SourceError(f"querySymbol transport error: {e}") from e
        print(f"[RATEX] Fetched {len(all_markets)} markets")

        try:
            stats = await self.query_tvl()
            self.total_tvl = stats["total_tvl"]
            self.total_volume = stats["total_volume"]
            print(f"[RATEX] TVL: ${self.total_tvl:,.2f}, Volume: ${self.total_volume:,.2f}")
        except (RateXError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            print(f"[RATEX] Failed to fetch TVL/volume stats: {e}")

        active = [m for m in all_markets if is_active_market(m, now)]
        print(f"[RATEX] Active markets: {len(active)} of {len(all_markets)}")

        records = [r for r in (normalize_market(m) for m in active) if r is not None]

        if self.scrape_implied and records:
            symbols = [r.market_address[len("ratex-"):] for r in records]
            scraped = await self.scrape_implied_yields(symbols)
            for record, symbol in zip(records, symbols):
                live = scraped.get(symbol)
                if live:
                    record.implied_apy = live["implied_yield"]
                    record.underlying_apy = live["real_yield"]

        self._fetch_count += 1
        self._last_fetch_count = len(records)
        return records

    async def close(self):
        await super().close()
        if self.firecrawl is not None:
            await self.firecrawl.close()

    def metrics(self) -> dict:
        m = super().metrics()
        m.update({"total_tvl": self.total_tvl, "total_volume": self.total_volume})
        return m
