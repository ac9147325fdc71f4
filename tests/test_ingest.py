import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from yieldwatch.alerts.rules import IMPLIED_SPIKE, YIELD_DIVERGENCE
from yieldwatch.markets.ingest import MarketIngestor
from yieldwatch.markets.models import MarketRecord


def _record(address: str = "0xm", implied: float = 0.08, underlying: float = 0.05,
            venue: str = "pendle") -> MarketRecord:
    return MarketRecord(
        venue=venue, chain_id=1, chain_name="Ethereum", market_address=address,
        name=f"pool {address}", implied_apy=implied, underlying_apy=underlying,
        liquidity=1_000_000,
    )


def test_first_run_stores_pools_and_snapshots_without_spikes(fake_db) -> None:
    ingestor = MarketIngestor(fake_db)
    result = asyncio.run(ingestor.ingest("pendle", [_record("0xa"), _record("0xb")]))

    assert result.summary() == {
        "venue": "pendle",
        "markets_fetched": 2,
        "markets_processed": 2,
        "pools_inserted": 2,
        "errors": 0,
        "alerts_generated": 0,
    }
    assert len(fake_db.pools) == 2
    assert [r["pool_id"] for r in fake_db.rates] == ["pool-1", "pool-2"]


def test_second_run_compares_against_previous_snapshot(fake_db) -> None:
    ingestor = MarketIngestor(fake_db)
    asyncio.run(ingestor.ingest("pendle", [_record(implied=0.08)]))
    result = asyncio.run(ingestor.ingest("pendle", [_record(implied=0.07)]))

    (alert,) = result.alerts
    assert alert.alert_type == IMPLIED_SPIKE
    assert alert.change_percent == pytest.approx(-12.5)
    assert len(fake_db.pools) == 1
    assert fake_db.alerts[0]["pool_id"] == "pool-1"
    assert fake_db.alerts[0]["change_percent"] == pytest.approx(-12.5)


def test_divergence_is_suppressed_for_24h(fake_db) -> None:
    ingestor = MarketIngestor(fake_db)
    diverging = _record(implied=0.05, underlying=0.08)

    first = asyncio.run(ingestor.ingest("pendle", [diverging]))
    second = asyncio.run(ingestor.ingest("pendle", [diverging]))

    assert [a.alert_type for a in first.alerts] == [YIELD_DIVERGENCE]
    assert second.alerts == []
    assert len(fake_db.alerts) == 1


def test_one_alert_per_pool_and_type_per_run(fake_db) -> None:
    ingestor = MarketIngestor(fake_db)
    asyncio.run(ingestor.ingest("pendle", [_record(implied=0.08)]))

    result = asyncio.run(ingestor.ingest("pendle", [_record(implied=0.09), _record(implied=0.10)]))

    assert [a.alert_type for a in result.alerts] == [IMPLIED_SPIKE]
    assert result.alerts[0].current_value == 0.09
    assert len(fake_db.rates) == 3


def test_failing_record_is_counted_and_skipped(fake_db) -> None:
    fake_db.fail_on.add("0xbad")
    ingestor = MarketIngestor(fake_db)
    result = asyncio.run(ingestor.ingest("spectra", [
        _record("0xbad", venue="spectra"), _record("0xgood", venue="spectra"),
    ]))

    assert result.errors == 1
    assert result.processed == 1
    assert [r["pool_id"] for r in fake_db.rates] == ["pool-1"]


def test_venue_rules_apply_per_venue(fake_db) -> None:
    ingestor = MarketIngestor(fake_db)
    asyncio.run(ingestor.ingest("ratex", [_record(venue="ratex", implied=0.10)]))
    result = asyncio.run(ingestor.ingest("ratex", [_record(venue="ratex", implied=0.105)]))
    assert result.alerts == []


def test_divergence_fires_again_after_24h(fake_db) -> None:
    ingestor = MarketIngestor(fake_db)
    diverging = _record(implied=0.05, underlying=0.08)
    asyncio.run(ingestor.ingest("pendle", [diverging]))

    fake_db.alerts[0]["created_at"] = (datetime.now(timezone.utc) - timedelta(hours=25)).isoformat()
    later = asyncio.run(ingestor.ingest("pendle", [diverging]))

    assert [a.alert_type for a in later.alerts] == [YIELD_DIVERGENCE]
    assert len(fake_db.alerts) == 2


def test_rejected_alert_does_not_drop_the_rest(fake_db) -> None:
    ingestor = MarketIngestor(fake_db)
    asyncio.run(ingestor.ingest("pendle", [_record("0xa"), _record("0xb")]))
    fake_db.reject_alerts_for.add("pool-1")

    result = asyncio.run(ingestor.ingest("pendle", [
        _record("0xa", implied=0.07), _record("0xb", implied=0.07),
    ]))

    assert [a.pool_id for a in result.alerts] == ["pool-2"]
    assert result.errors == 1
    assert [a["pool_id"] for a in fake_db.alerts] == ["pool-2"]
