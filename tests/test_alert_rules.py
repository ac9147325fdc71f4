import pytest

from yieldwatch.alerts.rules import (
    IMPLIED_SPIKE, UNDERLYING_SPIKE, YIELD_DIVERGENCE, AlertRules, evaluate, relative_change,
)
from yieldwatch.markets.models import MarketRecord


def _record(venue: str = "pendle", implied: float = 0.08, underlying: float = 0.05) -> MarketRecord:
    return MarketRecord(
        venue=venue, chain_id=1, chain_name="Ethereum", market_address="0xm",
        name="sUSDe", implied_apy=implied, underlying_apy=underlying,
    )


def _types(alerts) -> list:
    return [a.alert_type for a in alerts]


def test_relative_change_needs_positive_previous() -> None:
    assert relative_change(0.08, 0.1) == pytest.approx(0.25)
    assert relative_change(0, 0.1) is None
    assert relative_change(None, 0.1) is None


def test_new_pool_without_history_raises_no_spikes() -> None:
    assert evaluate(_record(implied=0.2), None, "p1") == []


def test_implied_spike_is_signed() -> None:
    prev = {"implied_apy": 0.08, "underlying_apy": 0.05}
    (up,) = evaluate(_record(implied=0.085), prev, "p1")
    assert up.alert_type == IMPLIED_SPIKE
    assert up.change_percent == pytest.approx(6.25)
    assert (up.previous_value, up.current_value) == (0.08, 0.085)

    (down,) = evaluate(_record(implied=0.07), prev, "p1")
    assert down.change_percent == pytest.approx(-12.5)


def test_small_implied_move_is_ignored() -> None:
    prev = {"implied_apy": 0.08, "underlying_apy": 0.05}
    assert evaluate(_record(implied=0.0801), prev, "p1") == []


def test_underlying_spike_threshold_and_sign() -> None:
    prev = {"implied_apy": 0.08, "underlying_apy": 0.05}
    assert evaluate(_record(underlying=0.055), prev, "p1") == []

    (drop,) = evaluate(_record(underlying=0.03), prev, "p1")
    assert drop.alert_type == UNDERLYING_SPIKE
    assert drop.change_percent == pytest.approx(-40.0)


def test_previous_values_may_be_strings() -> None:
    prev = {"implied_apy": "0.08", "underlying_apy": "0.05"}
    assert _types(evaluate(_record(implied=0.09), prev, "p1")) == [IMPLIED_SPIKE]


def test_zero_previous_implied_skips_spike() -> None:
    prev = {"implied_apy": 0, "underlying_apy": 0.05}
    assert evaluate(_record(implied=0.09), prev, "p1") == []


def test_divergence_uses_current_record_only() -> None:
    (alert,) = evaluate(_record(implied=0.05, underlying=0.07), None, "p1")
    assert alert.alert_type == YIELD_DIVERGENCE
    assert alert.previous_value == 0.05
    assert alert.current_value == 0.07
    assert alert.change_percent == pytest.approx(40.0)

    assert evaluate(_record(implied=0.05, underlying=0.059), None, "p1") == []
    assert evaluate(_record(implied=0.0, underlying=0.07), None, "p1") == []


def test_scraped_venues_only_watch_implied() -> None:
    prev = {"implied_apy": 0.08, "underlying_apy": 0.05}
    for venue in ("spectra", "exponent"):
        alerts = evaluate(_record(venue, implied=0.09, underlying=0.2), prev, "p1")
        assert _types(alerts) == [IMPLIED_SPIKE]
        assert alerts[0].venue == venue


def test_ratex_needs_ten_percent() -> None:
    prev = {"implied_apy": 0.10, "underlying_apy": 0.05}
    assert evaluate(_record("ratex", implied=0.105), prev, "p1") == []
    (alert,) = evaluate(_record("ratex", implied=0.085), prev, "p1")
    assert alert.change_percent == pytest.approx(-15.0)


def test_change_exactly_on_threshold_alerts() -> None:
    # binary-exact values: 0.5 -> 0.625 is +25%, 0.5 -> 0.375 is -25%
    rules = AlertRules(implied_threshold=0.25)
    prev = {"implied_apy": 0.5, "underlying_apy": 0.05}

    (up,) = evaluate(_record(implied=0.625), prev, "p1", rules)
    assert up.change_percent == 25.0
    (down,) = evaluate(_record(implied=0.375), prev, "p1", rules)
    assert down.change_percent == -25.0
    assert evaluate(_record(implied=0.6171875), prev, "p1", rules) == []
