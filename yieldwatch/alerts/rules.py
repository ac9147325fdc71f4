"""
Alert rules — compare a fresh MarketRecord against the pool's previous rate
snapshot and emit candidate alerts.

Pure functions: no DB access. Dedup against stored alerts (24h divergence
window) and within a run happens in MarketIngestor.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from yieldwatch.markets.models import (
    Alert, MarketRecord,
    VENUE_PENDLE, VENUE_SPECTRA, VENUE_EXPONENT, VENUE_RATEX,
)
from yieldwatch.sources.normalize import to_float

IMPLIED_SPIKE = "implied_spike"
UNDERLYING_SPIKE = "underlying_spike"
YIELD_DIVERGENCE = "yield_divergence"

ALERT_TYPES = (IMPLIED_SPIKE, UNDERLYING_SPIKE, YIELD_DIVERGENCE)

DIVERGENCE_DEDUP_HOURS = 24


@dataclass(frozen=True)
class AlertRules:
    """Thresholds for one venue. None disables that alert type."""
    implied_threshold: Optional[float] = None      # relative change, 0.01 == 1%
    underlying_threshold: Optional[float] = None   # relative change
    divergence_ratio: Optional[float] = None       # underlying > implied * ratio


VENUE_RULES: Dict[str, AlertRules] = {
    VENUE_PENDLE: AlertRules(implied_threshold=0.01, underlying_threshold=0.20, divergence_ratio=1.2),
    VENUE_SPECTRA: AlertRules(implied_threshold=0.01),
    VENUE_EXPONENT: AlertRules(implied_threshold=0.01),
    # RateX quotes move in coarse steps; 1% would alert on every scan
    VENUE_RATEX: AlertRules(implied_threshold=0.10),
}


def relative_change(previous: float, current: float) -> Optional[float]:
    """Signed (current - previous) / previous. None when previous is not positive."""
    if previous is None or previous <= 0:
        return None
    return (current - previous) / previous


def _spike(alert_type: str, pool_id: str, record: MarketRecord,
           previous: float, current: float, threshold: Optional[float]) -> Optional[Alert]:
    if threshold is None:
        return None
    change = relative_change(previous, current)
    if change is None or abs(change) < threshold:
        return None
    return Alert(
        pool_id=pool_id,
        alert_type=alert_type,
        previous_value=previous,
        current_value=current,
        change_percent=change * 100,
        pool_name=record.name,
        chain_name=record.chain_name,
        venue=record.venue,
    )


def evaluate(record: MarketRecord, previous_rate: Optional[dict], pool_id: str,
             rules: Optional[AlertRules] = None) -> List[Alert]:
    """Candidate alerts for one record.

    previous_rate is the latest stored snapshot row (or None for a new pool);
    spikes need it, divergence only looks at the current record.
    """
    rules = rules or VENUE_RULES.get(record.venue, AlertRules())
    alerts: List[Alert] = []

    if previous_rate:
        prev_implied = to_float(previous_rate.get("implied_apy"))
        prev_underlying = to_float(previous_rate.get("underlying_apy"))

        implied = _spike(IMPLIED_SPIKE, pool_id, record,
                         prev_implied, record.implied_apy, rules.implied_threshold)
        if implied:
            alerts.append(implied)

        underlying = _spike(UNDERLYING_SPIKE, pool_id, record,
                            prev_underlying, record.underlying_apy, rules.underlying_threshold)
        if underlying:
            alerts.append(underlying)

    if (rules.divergence_ratio is not None and record.implied_apy > 0
            and record.underlying_apy > record.implied_apy * rules.divergence_ratio):
        alerts.append(Alert(
            pool_id=pool_id,
            alert_type=YIELD_DIVERGENCE,
            previous_value=record.implied_apy,
            current_value=record.underlying_apy,
            change_percent=(record.underlying_apy - record.implied_apy) / record.implied_apy * 100,
            pool_name=record.name,
            chain_name=record.chain_name,
            venue=record.venue,
        ))

    return alerts

