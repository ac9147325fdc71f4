"""
Read views over stored pools, snapshots and alerts — what the CLI prints.

Pure helpers (platform detection, URLs, filtering/sorting) take plain row
dicts as returned by PostgREST; the async loaders combine them with Database
queries.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from yieldwatch.alerts.rules import IMPLIED_SPIKE, UNDERLYING_SPIKE, YIELD_DIVERGENCE
from yieldwatch.markets.models import (
    VENUE_PENDLE, VENUE_SPECTRA, VENUE_EXPONENT, VENUE_RATEX, VENUE_PREFIXES, POOLS_TABLE,
)
from yieldwatch.sources.chains import (
    PENDLE_CHAIN_SLUGS, SPECTRA_CHAIN_SLUGS, chain_name,
)
from yieldwatch.sources.exponent import EXPONENT_INCOME_URL
from yieldwatch.sources.normalize import parse_datetime, to_float
from yieldwatch.sources.ratex import RATEX_APP_URL

LOWEST_YIELD_LIMIT = 10
IMPLIED_DROP_WINDOW_HOURS = 1
NEW_POOL_WINDOW_HOURS = 24

DROP_SORTS = ("change", "time", "apy")
NEW_POOL_SORTS = ("time", "liquidity", "expiry")

# market_address prefixes written by the scraped/secondary venues
_ADDRESS_PREFIXES = {
    VENUE_SPECTRA: "spectra-",
    VENUE_EXPONENT: "exponent-",
    VENUE_RATEX: "ratex-",
}

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def detect_platform(pool: Optional[dict]) -> str:
    """Venue of a stored pool, from its name prefix or market_address prefix."""
    if not pool:
        return VENUE_PENDLE
    name = pool.get("name") or ""
    address = pool.get("market_address") or ""
    for venue, prefix in VENUE_PREFIXES.items():
        if name.startswith(prefix) or address.startswith(_ADDRESS_PREFIXES[venue]):
            return venue
    return VENUE_PENDLE


def market_url(pool: Optional[dict]) -> str:
    if not pool:
        return "#"
    venue = detect_platform(pool)
    chain_id = pool.get("chain_id")
    address = pool.get("market_address") or ""
    if venue == VENUE_SPECTRA:
        return f"https://app.spectra.finance/trade-yield?network={SPECTRA_CHAIN_SLUGS.get(chain_id, 'eth')}"
    if venue == VENUE_EXPONENT:
        return EXPONENT_INCOME_URL
    if venue == VENUE_RATEX:
        return f"{RATEX_APP_URL}/swap/{address[len(_ADDRESS_PREFIXES[VENUE_RATEX]):]}"
    slug = PENDLE_CHAIN_SLUGS.get(chain_id, "ethereum")
    return f"https://app.pendle.finance/trade/markets/{address}?chain={slug}"


def is_active_pool(pool: dict, now: Optional[datetime] = None) -> bool:
    expiry = parse_datetime(pool.get("expiry"))
    if expiry is None:
        return True
    return expiry > (now or datetime.now(timezone.utc))


def _rate(pool: dict, field: str) -> float:
    return to_float((pool.get("latest_rate") or {}).get(field))


def lowest_yield(pools: List[dict], limit: int = LOWEST_YIELD_LIMIT) -> List[dict]:
    """Pools with a positive implied APY, lowest first."""
    ranked = [p for p in pools if _rate(p, "implied_apy") > 0]
    ranked.sort(key=lambda p: _rate(p, "implied_apy"))
    return ranked[:limit]


def implied_drops(alerts: List[dict], sort_by: str = "change",
                  now: Optional[datetime] = None) -> List[dict]:
    """Negative implied_spike alerts from the last hour that are not dismissed.

    sort_by: change (most negative first), time (newest first), apy (lowest current first).
    """
    if sort_by not in DROP_SORTS:
        raise ValueError(f"sort_by must be one of {DROP_SORTS}, got {sort_by!r}")
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(hours=IMPLIED_DROP_WINDOW_HOURS)

    drops = []
    for a in alerts:
        if a.get("alert_type") != IMPLIED_SPIKE or a.get("status") == "dismissed":
            continue
        if to_float(a.get("change_percent")) >= 0:
            continue
        created = parse_datetime(a.get("created_at"))
        if created is None or created < since:
            continue
        drops.append(a)

    if sort_by == "change":
        drops.sort(key=lambda a: to_float(a.get("change_percent")))
    elif sort_by == "time":
        drops.sort(key=lambda a: parse_datetime(a.get("created_at")) or _EPOCH, reverse=True)
    else:
        drops.sort(key=lambda a: to_float(a.get("current_value")))
    return drops


def sort_new_pools(pools: List[dict], sort_by: str = "time") -> List[dict]:
    """time: newest first; liquidity: largest first; expiry: soonest first, undated last."""
    if sort_by not in NEW_POOL_SORTS:
        raise ValueError(f"sort_by must be one of {NEW_POOL_SORTS}, got {sort_by!r}")
    if sort_by == "time":
        return sorted(pools, key=lambda p: parse_datetime(p.get("created_at")) or _EPOCH, reverse=True)
    if sort_by == "liquidity":
        return sorted(pools, key=lambda p: _rate(p, "liquidity"), reverse=True)
    return sorted(pools, key=lambda p: parse_datetime(p.get("expiry")) or _FAR_FUTURE)


def alert_label(alert_type: str, change_percent: Optional[float]) -> str:
    if alert_type == YIELD_DIVERGENCE:
        return "Implied vs Underlying divergence"
    base = {
        IMPLIED_SPIKE: "Implied APY (YT)",
        UNDERLYING_SPIKE: "Underlying APY",
    }.get(alert_type, alert_type)
    if change_percent is None:
        return f"Change in {base}"
    return f"{'Rise' if change_percent >= 0 else 'Drop'} in {base}"


def format_apy(value) -> str:
    """Decimal fraction → '8.41%'."""
    return f"{to_float(value) * 100:.2f}%"


def format_usd(value) -> str:
    v = to_float(value)
    if v >= 1_000_000_000:
        return f"${v / 1_000_000_000:.2f}B"
    if v >= 1_000_000:
        return f"${v / 1_000_000:.2f}M"
    if v >= 1_000:
        return f"${v / 1_000:.1f}K"
    return f"${v:.0f}"


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------

async def _attach_latest_rates(db, pools: List[dict]) -> List[dict]:
    latest = await db.get_latest_rates([p["id"] for p in pools])
    return [{**p, "latest_rate": latest.get(p["id"])} for p in pools]


async def active_pools(db, now: Optional[datetime] = None) -> List[dict]:
    """Non-expired pools, each with its most recent snapshot under `latest_rate`."""
    pools = [p for p in await db.list_pools() if is_active_pool(p, now)]
    return await _attach_latest_rates(db, pools)


async def new_pools(db, sort_by: str = "time") -> List[dict]:
    pools = await db.new_pools(hours=NEW_POOL_WINDOW_HOURS)
    return sort_new_pools(await _attach_latest_rates(db, pools), sort_by)


async def recent_implied_drops(db, sort_by: str = "change") -> List[dict]:
    alerts = await db.recent_alerts(IMPLIED_SPIKE, hours=IMPLIED_DROP_WINDOW_HOURS)
    return implied_drops(alerts, sort_by)


async def stats(db) -> dict:
    chain_ids = await db.pool_chain_ids()
    return {
        "total_pools": await db.count_pools(),
        "new_alerts": await db.count_new_alerts(),
        "network_count": len(set(chain_ids)),
    }


def alert_pool(alert: dict) -> dict:
    return alert.get(POOLS_TABLE) or {}


def pool_chain(pool: dict) -> str:
    return chain_name(pool.get("chain_id"))
