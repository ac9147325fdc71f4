"""
Pendle markets client — official JSON API, one request per chain page.

API: GET {PENDLE_API_URL}/{chainId}/markets?order_by=name:1&skip=N&limit=100
Response: {"total": int, "limit": int, "skip": int, "results": [market, ...]}
(older deployments return the bare list).

Market fields used (verified against the live v1 API):
  address:          market address
  name:             display name ("sUSDe")
  expiry:           ISO-8601 string
  pt / yt / sy:     {"address": "0x..."} or "<chainId>-0x..." id strings
  underlyingAsset:  {"address", "symbol"} or id string
  impliedApy:       decimal (0.0841 == 8.41%)
  underlyingApy:    decimal
  liquidity:        {"usd": float}
  tradingVolume:    {"usd": float}
"""

import asyncio
from datetime import datetime, timezone
from typing import List, Optional

import aiohttp

from yieldwatch.markets.models import MarketRecord, VENUE_PENDLE
from yieldwatch.sources.base import HttpClient, SourceError
from yieldwatch.sources.chains import PENDLE_CHAINS
from yieldwatch.sources.normalize import parse_datetime, to_float

PENDLE_API_URL = "https://api-v2.pendle.finance/core/v1"
PAGE_LIMIT = 100
MAX_PAGES = 10  # 1000 markets per chain is far beyond any live chain


def _address(value) -> Optional[str]:
    """Pendle returns token refs as {"address": ...} or "<chainId>-<address>"."""
    if isinstance(value, dict):
        return value.get("address") or None
    if isinstance(value, str) and value:
        return value.split("-", 1)[1] if "-" in value else value
    return None


def _symbol(value) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("symbol") or None
    return None


def _usd(value) -> float:
    if isinstance(value, dict):
        return to_float(value.get("usd"))
    return to_float(value)


def normalize_market(market: dict, chain_id: int, chain_name: str) -> Optional[MarketRecord]:
    """Map one Pendle market payload to a MarketRecord. None if it has no address."""
    address = market.get("address")
    if not address:
        return None
    underlying = _symbol(market.get("underlyingAsset"))
    return MarketRecord(
        venue=VENUE_PENDLE,
        chain_id=chain_id,
        chain_name=chain_name,
        market_address=address,
        name=market.get("name") or f"{underlying or 'Unknown'} Pool",
        underlying_asset=underlying,
        pt_address=_address(market.get("pt")),
        yt_address=_address(market.get("yt")),
        sy_address=_address(market.get("sy")),
        expiry=parse_datetime(market.get("expiry")),
        implied_apy=to_float(market.get("impliedApy")),
        underlying_apy=to_float(market.get("underlyingApy")),
        liquidity=_usd(market.get("liquidity")),
        volume_24h=_usd(market.get("tradingVolume")),
    )


class PendleClient(HttpClient):
    """Async client for the Pendle v1 markets API across all configured chains."""

    tag = "PENDLE"
    venue = VENUE_PENDLE

    def __init__(self, api_url: str = PENDLE_API_URL, chains=PENDLE_CHAINS, **kwargs):
        super().__init__(**kwargs)
        self.api_url = api_url.rstrip("/")
        self.chains = tuple(chains)

    async def _get_page(self, chain_id: int, skip: int) -> dict:
        url = f"{self.api_url}/{chain_id}/markets"
        params = {"order_by": "name:1", "skip": str(skip), "limit": str(PAGE_LIMIT)}
        async with self._session.get(url, params=params,
                                     headers={"Accept": "application/json"}) as resp:
            if resp.status != 200:
                raise SourceError(f"HTTP {resp.status} for chain {chain_id}")
            try:
                data = await resp.json()
            except ValueError as e:
                raise SourceError(f"invalid JSON for chain {chain_id}: {e}")
        if isinstance(data, list):
            return {"results": data, "total": len(data)}
        if not isinstance(data, dict):
            raise SourceError(f"unexpected payload type {type(data).__name__} for chain {chain_id}")
        return data

    async def fetch_chain(self, chain_id: int, chain_name: str) -> List[dict]:
        """All raw markets for one chain, following skip/limit pagination."""
        markets: List[dict] = []
        skip = 0
        for _ in range(MAX_PAGES):
            page = await self._get_page(chain_id, skip)
            results = page.get("results") or []
            markets.extend(results)
            total = page.get("total")
            skip += len(results)
            if len(results) < PAGE_LIMIT or (total is not None and skip >= int(total)):
                break
        print(f"[PENDLE] {chain_name} ({chain_id}): {len(markets)} markets")
        return markets

    async def fetch_markets(self, now: Optional[datetime] = None) -> List[MarketRecord]:
        """Fetch every chain sequentially; a failing chain is logged and skipped."""
        await self._ensure_session()
        now = now or datetime.now(timezone.utc)

        records: List[MarketRecord] = []
        total = 0
        for chain_id, chain_name in self.chains:
            try:
                raw = await self.fetch_chain(chain_id, chain_name)
            except asyncio.TimeoutError:
                print(f"[PENDLE] Timeout fetching {chain_name} ({self._timeout_sec}s)")
                self._fetch_errors += 1
                continue
            except (aiohttp.ClientError, SourceError, ValueError) as e:
                print(f"[PENDLE] Error fetching {chain_name}: {e}")
                self._fetch_errors += 1
                continue

            total += len(raw)
            for market in raw:
                record = normalize_market(market, chain_id, chain_name)
                if record is None or record.is_expired(now):
                    continue
                records.append(record)

        self._fetch_count += 1
        self._last_fetch_count = len(records)
        print(f"[PENDLE] Total markets fetched: {total}, active (non-expired): {len(records)}")
        return records
