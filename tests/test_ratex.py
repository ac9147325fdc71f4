import asyncio
import uuid
from datetime import datetime, timezone

import pytest

from conftest import FakeFirecrawl, FakeResponse, FakeSession
from yieldwatch.sources.ratex import (
    RATEX_APP_URL, RateXClient, RateXError, normalize_market, parse_ratex_yields,
)

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)

SYMBOLS = [
    {
        "symbol": "JitoSOL-2603",
        "symbol_name": "JitoSOL Mar 2026",
        "symbol_level1_category": "JitoSOL",
        "due_date": "2026-03-31 00:00:00",
        "is_delete": "0",
        "initial_upper_yield_range": "12.5",
        "initial_lower_yield_range": "8",
    },
    {
        "symbol": "USDe-2512",
        "symbol_level1_category": "USDe",
        "due_date": "2025-12-31 00:00:00",
        "is_delete": "0",
        "initial_upper_yield_range": "20",
        "initial_lower_yield_range": "10",
    },
    {
        "symbol": "old-2606",
        "due_date": "2026-06-30 00:00:00",
        "is_delete": "1",
        "initial_upper_yield_range": "5",
        "initial_lower_yield_range": "1",
    },
]


def _backend(symbols_payload, code: int = 0):
    def handler(method, url, kwargs):
        rpc = kwargs["json"]["method"]
        if rpc == "querySymbol":
            return FakeResponse(200, {"code": code, "msg": "boom" if code else "ok", "data": symbols_payload})
        if rpc == "queryTotalVolumeAndTvl":
            return FakeResponse(200, {"code": 0, "data": {"total_u_tvl": "1234.5", "total_u_volume": "99"}})
        raise AssertionError(f"unexpected method {rpc}")
    return handler


def test_call_sends_envelope_with_origin_headers() -> None:
    session = FakeSession(_backend(SYMBOLS))
    client = RateXClient(api_url="https://proxy.example/ratex", session=session)
    asyncio.run(client.call("querySymbol"))

    (method, url, kwargs), = session.calls
    assert (method, url) == ("POST", "https://proxy.example/ratex")
    body = kwargs["json"]
    assert body["serverName"] == "AdminSvr"
    assert body["method"] == "querySymbol"
    uuid.UUID(body["content"]["cid"])
    assert kwargs["headers"]["Origin"] == RATEX_APP_URL
    assert kwargs["headers"]["Referer"] == RATEX_APP_URL + "/"


def test_nonzero_code_raises() -> None:
    client = RateXClient(session=FakeSession(_backend(SYMBOLS, code=500)))
    with pytest.raises(RateXError, match="boom"):
        asyncio.run(client.query_symbols())


def test_http_error_raises() -> None:
    client = RateXClient(session=FakeSession(lambda *a: FakeResponse(403, None)))
    with pytest.raises(RateXError, match="HTTP 403"):
        asyncio.run(client.call("querySymbol"))


def test_nested_symbols_are_unwrapped() -> None:
    client = RateXClient(session=FakeSession(_backend({"symbols": SYMBOLS})))
    assert len(asyncio.run(client.query_symbols())) == 3


def test_query_tvl_parses_string_totals() -> None:
    client = RateXClient(session=FakeSession(_backend(SYMBOLS)))
    assert asyncio.run(client.query_tvl()) == {"total_tvl": 1234.5, "total_volume": 99.0}


def test_fetch_markets_drops_deleted_and_expired() -> None:
    client = RateXClient(session=FakeSession(_backend(SYMBOLS)))
    records = asyncio.run(client.fetch_markets(now=NOW))
    assert [r.market_address for r in records] == ["ratex-JitoSOL-2603"]

    (record,) = records
    assert record.chain_id == 502
    assert record.name == "[RateX] JitoSOL Mar 2026"
    assert record.underlying_asset == "JitoSOL"
    assert record.implied_apy == pytest.approx(0.125)
    assert record.underlying_apy == pytest.approx(0.08)
    assert record.liquidity == 0.0
    assert client.metrics()["total_tvl"] == 1234.5


def test_name_falls_back_to_symbol() -> None:
    record = normalize_market({"symbol": "USDe-2512"})
    assert record.name == "[RateX] USDe-2512"
    assert normalize_market({"symbol_name": "no symbol"}) is None


def test_parse_ratex_yields() -> None:
    assert parse_ratex_yields("Implied Yield\n\n14.2%\n\nReal Yield: 9.1%") == pytest.approx(
        {"implied_yield": 0.142, "real_yield": 0.091}
    )
    assert parse_ratex_yields("Implied Yield 7.5%") == pytest.approx({"implied_yield": 0.075, "real_yield": 0.0})
    assert parse_ratex_yields("Connect wallet") is None


def test_scraped_yields_override_api_range() -> None:
    url = f"{RATEX_APP_URL}/swap/JitoSOL-2603"
    firecrawl = FakeFirecrawl({url: "Implied Yield 14.2%\nReal Yield 9.1%"})
    client = RateXClient(session=FakeSession(_backend(SYMBOLS)), firecrawl=firecrawl,
                         scrape_implied=True)
    (record,) = asyncio.run(client.fetch_markets(now=NOW))
    assert record.implied_apy == pytest.approx(0.142)
    assert record.underlying_apy == pytest.approx(0.091)
    assert firecrawl.calls == [(url, 5000, None)]


def test_scrape_flag_ignored_without_firecrawl() -> None:
    client = RateXClient(session=FakeSession(_backend(SYMBOLS)), scrape_implied=True)
    assert client.scrape_implied is False
