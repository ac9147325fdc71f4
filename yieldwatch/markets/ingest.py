"""
MarketIngestor — persist one venue's normalized records and raise alerts.

Per record:
  1. upsert pool on (chain_id, market_address) → pool id
  2. read the pool's previous rate snapshot
  3. insert the new snapshot
  4. evaluate alert rules against the previous snapshot
  5. drop divergence alerts already raised for the pool in the last 24h,
     and repeats of (pool_id, alert_type) within this run

Alerts are inserted in one batch at the end, falling back to one insert per
alert when the batch is rejected. A record that fails is logged,
counted and skipped; the rest of the run continues.
"""

from typing import Iterable, List, Set, Tuple

from yieldwatch.alerts.rules import (
    DIVERGENCE_DEDUP_HOURS, VENUE_RULES, YIELD_DIVERGENCE, AlertRules, evaluate,
)
from yieldwatch.markets.models import Alert, IngestResult, MarketRecord


class MarketIngestor:
    """Writes snapshots through a Database and collects alerts."""

    def __init__(self, db, rules=None, verbose: bool = False):
        self.db = db
        self.rules = rules or VENUE_RULES
        self.verbose = verbose

    async def _process(self, record: MarketRecord, rules: AlertRules) -> Tuple[str, List[Alert]]:
        pool_id = await self.db.upsert_pool(record.to_pool_row())
        previous = await self.db.get_latest_rate(pool_id)
        await self.db.insert_rate(record.to_rate_row(pool_id))
        if self.verbose:
            print(f"[INGEST] {record.name} ({record.chain_name}): "
                  f"implied={record.implied_apy:.4f} underlying={record.underlying_apy:.4f} "
                  f"liq=${record.liquidity:,.0f}")
        return pool_id, evaluate(record, previous, pool_id, rules)

    async def _store_alerts(self, venue: str, result: IngestResult) -> List[Alert]:
        """Insert the run's alerts in one batch; if that fails, retry row by row."""
        try:
            await self.db.insert_alerts([a.to_row() for a in result.alerts])
            return result.alerts
        except Exception as e:
            print(f"[INGEST] Batch insert of {len(result.alerts)} {venue} alerts failed: {e}. "
                  f"Retrying one by one")

        stored = []
        for alert in result.alerts:
            try:
                await self.db.insert_alerts([alert.to_row()])
                stored.append(alert)
            except Exception as e:
                result.errors += 1
                print(f"[INGEST] Failed to insert {alert.alert_type} alert for {alert.pool_name}: {e}")
        return stored

    async def ingest(self, venue: str, records: Iterable[MarketRecord]) -> IngestResult:
        records = list(records)
        rules = self.rules.get(venue, AlertRules())
        result = IngestResult(venue=venue, fetched=len(records))
        seen: Set[Tuple[str, str]] = set()

        for record in records:
            try:
                pool_id, candidates = await self._process(record, rules)
            except Exception as e:
                result.errors += 1
                print(f"[INGEST] Error processing {venue} market {record.market_address}: {e}")
                continue
            result.inserted += 1
            result.processed += 1

            for alert in candidates:
                key = (alert.pool_id, alert.alert_type)
                if key in seen:
                    continue
                if alert.alert_type == YIELD_DIVERGENCE:
                    try:
                        if await self.db.has_recent_alert(pool_id, YIELD_DIVERGENCE,
                                                          hours=DIVERGENCE_DEDUP_HOURS):
                            continue
                    except Exception as e:
                        print(f"[INGEST] Divergence dedup check failed for {record.name}: {e}")
                        continue
                seen.add(key)
                result.alerts.append(alert)

        if result.alerts:
            result.alerts = await self._store_alerts(venue, result)

        for alert in result.alerts:
            print(f"[ALERT] {alert.alert_type} {alert.pool_name} ({alert.chain_name}): "
                  f"{alert.previous_value:.4f} → {alert.current_value:.4f} "
                  f"({alert.change_percent:+.2f}%)")
        print(f"[INGEST] {venue}: {result.processed}/{result.fetched} processed, "
              f"{result.alerts_generated} alerts, {result.errors} errors")
        return result
