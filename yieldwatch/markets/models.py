"""
MarketRecord and Alert — the canonical shapes every venue is normalized into.

One pool row per (chain_id, market_address) in `pendle_pools`, one rate row
per scan in `pendle_rates_history`, alerts in `pendle_alerts`. The table names
predate the multi-venue support and are kept as-is.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

POOLS_TABLE = "pendle_pools"
RATES_TABLE = "pendle_rates_history"
ALERTS_TABLE = "pendle_alerts"

VENUE_PENDLE = "pendle"
VENUE_SPECTRA = "spectra"
VENUE_EXPONENT = "exponent"
VENUE_RATEX = "ratex"

KNOWN_VENUES = (VENUE_PENDLE, VENUE_SPECTRA, VENUE_EXPONENT, VENUE_RATEX)

# Display-name prefix per scraped/secondary venue. Pendle pools carry none.
VENUE_PREFIXES = {
    VENUE_SPECTRA: "[Spectra]",
    VENUE_EXPONENT: "[Exponent]",
    VENUE_RATEX: "[RateX]",
}

ALERT_STATUSES = ("new", "reviewed", "dismissed")


@dataclass
class MarketRecord:
    """One market from any venue, normalized. APYs are decimal fractions."""
    venue: str
    chain_id: int
    chain_name: str
    market_address: str
    name: str
    underlying_asset: Optional[str] = None
    pt_address: Optional[str] = None
    yt_address: Optional[str] = None
    sy_address: Optional[str] = None
    expiry: Optional[datetime] = None
    implied_apy: float = 0.0
    underlying_apy: float = 0.0
    liquidity: float = 0.0
    volume_24h: float = 0.0

    @property
    def key(self) -> str:
        return f"{self.chain_id}:{self.market_address}"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Markets without an expiry never expire."""
        if self.expiry is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.expiry <= now

    def to_pool_row(self) -> dict:
        return {
            "chain_id": self.chain_id,
            "market_address": self.market_address,
            "name": self.name,
            "underlying_asset": self.underlying_asset,
            "pt_address": self.pt_address,
            "yt_address": self.yt_address,
            "sy_address": self.sy_address,
            "expiry": self.expiry.isoformat() if self.expiry else None,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }

    def to_rate_row(self, pool_id: str) -> dict:
        return {
            "pool_id": pool_id,
            "implied_apy": self.implied_apy,
            "underlying_apy": self.underlying_apy,
            "liquidity": self.liquidity,
            "volume_24h": self.volume_24h,
        }


@dataclass
class Alert:
    """A threshold crossing for one pool, ready for insertion."""
    pool_id: str
    alert_type: str
    previous_value: float
    current_value: float
    change_percent: float
    pool_name: str = ""
    chain_name: str = ""
    venue: str = ""

    def to_row(self) -> dict:
        return {
            "pool_id": self.pool_id,
            "alert_type": self.alert_type,
            "previous_value": self.previous_value,
            "current_value": self.current_value,
            "change_percent": self.change_percent,
        }


@dataclass
class IngestResult:
    """Outcome of one ingestion run for a venue."""
    venue: str
    fetched: int = 0
    processed: int = 0
    inserted: int = 0
    errors: int = 0
    alerts: list = field(default_factory=list)

    @property
    def alerts_generated(self) -> int:
        return len(self.alerts)

    def summary(self) -> dict:
        return {
            "venue": self.venue,
            "markets_fetched": self.fetched,
            "markets_processed": self.processed,
            "pools_inserted": self.inserted,
            "errors": self.errors,
            "alerts_generated": self.alerts_generated,
        }
